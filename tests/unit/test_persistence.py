"""Unit tests for result stores."""

import json
from unittest.mock import patch

import pytest

from pagepulse.models.capture import CaptureSpec, RunRecord, RunStatus
from pagepulse.persistence import (
    InMemoryResultStore, FileResultStore, PersistenceError, ResultNotFoundError,
    create_result_store
)
from pagepulse.persistence.store import cache_key


@pytest.fixture
def spec():
    return CaptureSpec(url="https://example.com", run_id="run-1")


@pytest.fixture
def record(spec):
    record = RunRecord.from_spec(spec, "run-1")
    record.results.metrics = {'navigation': {'ttfb': 80}}
    record.finalize(RunStatus.COMPLETED)
    return record


class TestInMemoryResultStore:
    """Tests for the in-memory store."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, spec, record):
        store = InMemoryResultStore()

        result_id = await store.save("user-1", spec, record)
        document = await store.get(result_id)

        assert document['id'] == result_id
        assert document['user_id'] == "user-1"
        assert document['record']['results']['metrics'] == {'navigation': {'ttfb': 80}}
        assert await store.list_for_user("user-1") == [document]

    @pytest.mark.asyncio
    async def test_save_requires_user(self, spec, record):
        with pytest.raises(PersistenceError):
            await InMemoryResultStore().save("", spec, record)

    @pytest.mark.asyncio
    async def test_missing_result(self):
        with pytest.raises(ResultNotFoundError):
            await InMemoryResultStore().get("nope")

    @pytest.mark.asyncio
    async def test_cached_copy_is_independent(self, spec, record):
        store = InMemoryResultStore()

        await store.cache_temporarily("run-1", spec, record)
        record.results.metrics = None
        cached = await store.get_cached("run-1")

        assert cached.record.results.metrics == {'navigation': {'ttfb': 80}}
        assert cache_key("run-1") == "run-result:run-1"

    @pytest.mark.asyncio
    async def test_cache_expires(self, spec, record):
        store = InMemoryResultStore()
        with patch('time.time', return_value=1000.0):
            await store.cache_temporarily("run-1", spec, record, ttl_ms=5000)

        with patch('time.time', return_value=1004.0):
            assert await store.get_cached("run-1") is not None

        with patch('time.time', return_value=1006.0):
            assert await store.get_cached("run-1") is None
        assert store.cached_count == 0

    @pytest.mark.asyncio
    async def test_save_from_cache(self, spec, record):
        store = InMemoryResultStore()
        await store.cache_temporarily("run-1", spec, record)

        result_id = await store.save_from_cache("user-2", "run-1")

        assert (await store.get(result_id))['user_id'] == "user-2"
        assert await store.get_cached("run-1") is None

    @pytest.mark.asyncio
    async def test_save_from_cache_without_entry(self):
        with pytest.raises(ResultNotFoundError):
            await InMemoryResultStore().save_from_cache("user-1", "run-unknown")


class TestFileResultStore:
    """Tests for the file-backed store."""

    @pytest.mark.asyncio
    async def test_writes_json_document(self, tmp_path, spec, record):
        store = FileResultStore(tmp_path / "results")

        result_id = await store.save("user-1", spec, record)

        path = tmp_path / "results" / f"{result_id}.json"
        assert path.exists()
        assert json.loads(path.read_text())['record']['status'] == "completed"
        assert (await store.get(result_id))['spec']['url'] == "https://example.com"

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        with pytest.raises(ResultNotFoundError):
            await FileResultStore(tmp_path).get("absent")

    @pytest.mark.asyncio
    async def test_corrupt_file(self, tmp_path):
        store = FileResultStore(tmp_path)
        (tmp_path / "broken.json").write_text("{not json")

        with pytest.raises(PersistenceError):
            await store.get("broken")


class TestFactory:
    """Tests for create_result_store."""

    def test_memory_backend(self):
        assert isinstance(create_result_store("memory"), InMemoryResultStore)

    def test_file_backend(self, tmp_path):
        store = create_result_store("file", storage_path=str(tmp_path))

        assert isinstance(store, FileResultStore)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_result_store("redis")
