"""Result store collaborators for finished runs.

The orchestrator hands every finished RunRecord to a ResultStore: it is
always cached for a limited time under ``run-result:<run id>`` and, when the
run has an owner, saved permanently. A cached result can later be promoted to
a saved one with save_from_cache.

Two implementations are provided: an in-memory store for tests and single
process use, and a file store that writes one JSON document per saved result.
"""

import asyncio
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiofiles

from ..models.capture import CaptureSpec, RunRecord

logger = logging.getLogger(__name__)


CACHE_KEY_PREFIX = "run-result:"
DEFAULT_CACHE_TTL_MS = 7200000


class PersistenceError(Exception):
    """Raised when a result cannot be stored or read."""
    pass


class ResultNotFoundError(PersistenceError):
    """Raised when a cached or saved result does not exist."""
    pass


@dataclass
class CachedResult:
    """A temporarily cached run result."""
    spec: CaptureSpec
    record: RunRecord
    expires_at: float

    @property
    def is_expired(self) -> bool:
        return time.time() >= self.expires_at


def cache_key(run_id: str) -> str:
    return f"{CACHE_KEY_PREFIX}{run_id}"


def build_document(result_id: str, user_id: str, spec: CaptureSpec, record: RunRecord) -> Dict[str, Any]:
    return {
        'id': result_id,
        'user_id': user_id,
        'saved_at': datetime.utcnow().isoformat(),
        'spec': spec.model_dump(mode='json'),
        'record': record.model_dump(mode='json'),
    }


class ResultStore(ABC):
    """Persistence collaborator used by the orchestrator."""

    def __init__(self):
        self._cache: Dict[str, CachedResult] = {}

    @abstractmethod
    async def _write(self, document: Dict[str, Any]) -> None:
        """Persist a saved-result document."""

    @abstractmethod
    async def _read(self, result_id: str) -> Optional[Dict[str, Any]]:
        """Load a saved-result document, or None."""

    async def save(self, user_id: str, spec: CaptureSpec, record: RunRecord) -> str:
        """Save a finished run for a user.

        Returns:
            Identifier of the saved result
        """
        if not user_id:
            raise PersistenceError("user_id is required to save a result")
        result_id = str(uuid.uuid4())
        await self._write(build_document(result_id, user_id, spec, record))
        logger.info(f"Saved result {result_id} for run {record.id}")
        return result_id

    async def get(self, result_id: str) -> Dict[str, Any]:
        document = await self._read(result_id)
        if document is None:
            raise ResultNotFoundError(f"Result not found: {result_id}")
        return document

    async def cache_temporarily(self, run_id: str, spec: CaptureSpec, record: RunRecord,
                                ttl_ms: int = DEFAULT_CACHE_TTL_MS) -> None:
        """Keep a run result available for later promotion."""
        self._purge_expired()
        self._cache[cache_key(run_id)] = CachedResult(
            spec=spec,
            record=record.model_copy(deep=True),
            expires_at=time.time() + ttl_ms / 1000,
        )
        logger.debug(f"Cached result for run {run_id} (ttl={ttl_ms}ms)")

    async def get_cached(self, run_id: str) -> Optional[CachedResult]:
        entry = self._cache.get(cache_key(run_id))
        if entry is None:
            return None
        if entry.is_expired:
            del self._cache[cache_key(run_id)]
            return None
        return entry

    async def save_from_cache(self, user_id: str, run_id: str) -> str:
        """Promote a cached result to a saved one.

        Raises:
            ResultNotFoundError: If the run is not cached or its entry expired
        """
        entry = await self.get_cached(run_id)
        if entry is None:
            raise ResultNotFoundError(f"No cached result for run {run_id}")
        result_id = await self.save(user_id, entry.spec, entry.record)
        self._cache.pop(cache_key(run_id), None)
        return result_id

    def _purge_expired(self) -> int:
        expired = [key for key, entry in self._cache.items() if entry.is_expired]
        for key in expired:
            del self._cache[key]
        return len(expired)

    @property
    def cached_count(self) -> int:
        return len(self._cache)


class InMemoryResultStore(ResultStore):
    """Keeps saved results in a dictionary."""

    def __init__(self):
        super().__init__()
        self._documents: Dict[str, Dict[str, Any]] = {}

    async def _write(self, document: Dict[str, Any]) -> None:
        self._documents[document['id']] = document

    async def _read(self, result_id: str) -> Optional[Dict[str, Any]]:
        return self._documents.get(result_id)

    async def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return [d for d in self._documents.values() if d['user_id'] == user_id]


class FileResultStore(ResultStore):
    """Writes each saved result as a JSON file."""

    def __init__(self, storage_path: Union[str, Path] = "./data/results"):
        """Initialize file-based storage.

        Args:
            storage_path: Directory for result files
        """
        super().__init__()
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        logger.info(f"FileResultStore initialized with storage_path={storage_path}")

    def _path(self, result_id: str) -> Path:
        return self.storage_path / f"{result_id}.json"

    async def _write(self, document: Dict[str, Any]) -> None:
        path = self._path(document['id'])
        try:
            async with self._lock:
                async with aiofiles.open(path, 'w') as f:
                    await f.write(json.dumps(document, indent=2))
        except OSError as e:
            raise PersistenceError(f"Failed to write {path}: {e}")

    async def _read(self, result_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(result_id)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, 'r') as f:
                return json.loads(await f.read())
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to read {path}: {e}")


def create_result_store(backend: str = "memory", **options) -> ResultStore:
    """Create a result store by backend name ('memory' or 'file')."""
    if backend == "memory":
        return InMemoryResultStore()
    if backend == "file":
        return FileResultStore(**options)
    raise ValueError(f"Unknown persistence backend: {backend}")
