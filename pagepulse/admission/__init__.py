"""Admission control: concurrency cap and per-client request windows."""

from .controller import (
    AdmissionController,
    AdmissionConfig,
    AdmissionDecision,
)

__all__ = [
    'AdmissionController',
    'AdmissionConfig',
    'AdmissionDecision',
]
