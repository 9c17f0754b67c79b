"""Command line interface for PagePulse."""

from .main import app, cli_main

__all__ = ['app', 'cli_main']
