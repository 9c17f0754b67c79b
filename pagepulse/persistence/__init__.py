"""Result persistence collaborators."""

from .store import (
    ResultStore,
    InMemoryResultStore,
    FileResultStore,
    CachedResult,
    PersistenceError,
    ResultNotFoundError,
    create_result_store,
)

__all__ = [
    'ResultStore',
    'InMemoryResultStore',
    'FileResultStore',
    'CachedResult',
    'PersistenceError',
    'ResultNotFoundError',
    'create_result_store',
]
