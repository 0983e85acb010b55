"""Tests for app.services.retrieval_cache: kv_cache backed read-through cache."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from app.config import CacheSettings
from app.models.kv_cache import KVCache
from app.pipeline.symbol_graph import SymbolGraphBuilder
from app.services import retrieval_cache
from app.services.retrieval_cache import RetrievalCache


def _rows(entry=None) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = entry
    return result


def _entry(value: str, expires_in: int | None = 60) -> KVCache:
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in) if expires_in is not None else None
    return KVCache(cache_key="k", value_text=value, expires_at=expires_at)


class TestKeys:
    def test_key_includes_scan(self, project):
        assert RetrievalCache().key("routes", project) == f"retrieval:routes:{project.id}:scan-1"

    def test_key_without_scan(self, project):
        project.last_kb_scan_id = None
        assert RetrievalCache().key("routes", project, "x") == f"retrieval:routes:{project.id}:none:x"

    def test_result_key_depends_on_message_and_options(self, project):
        cache = RetrievalCache()
        first = cache.result_key(project, "add export", {"max_chunks": 5})
        assert first == cache.result_key(project, "add export", {"max_chunks": 5})
        assert first != cache.result_key(project, "add import", {"max_chunks": 5})
        assert first != cache.result_key(project, "add export", {"max_chunks": 6})
        assert first.startswith(f"retrieval:results:{project.id}:scan-1:")


class TestGetPut:
    async def test_miss(self, db):
        db.execute.return_value = _rows(None)
        assert await RetrievalCache().get(db, "k") is None

    async def test_hit(self, db):
        db.execute.return_value = _rows(_entry("cached"))
        assert await RetrievalCache().get(db, "k") == "cached"

    async def test_entry_without_expiry_never_expires(self, db):
        db.execute.return_value = _rows(_entry("cached", expires_in=None))
        assert await RetrievalCache().get(db, "k") == "cached"

    async def test_expired_entry_is_deleted(self, db):
        entry = _entry("stale", expires_in=-5)
        db.execute.return_value = _rows(entry)
        db.delete = AsyncMock()
        assert await RetrievalCache().get(db, "k") is None
        db.delete.assert_awaited_once_with(entry)

    async def test_disabled_cache_skips_database(self, db):
        cache = RetrievalCache(CacheSettings(enabled=False))
        assert await cache.get(db, "k") is None
        await cache.put(db, "k", "v", 10)
        db.execute.assert_not_awaited()
        db.add.assert_not_called()

    async def test_put_inserts_new_entry(self, db):
        db.execute.return_value = _rows(None)
        await RetrievalCache().put(db, "k", "value", 30)
        added = db.add.call_args.args[0]
        assert isinstance(added, KVCache)
        assert added.cache_key == "k"
        assert added.value_text == "value"
        assert added.expires_at > datetime.now(timezone.utc)

    async def test_put_updates_existing_entry(self, db):
        entry = _entry("old")
        db.execute.return_value = _rows(entry)
        await RetrievalCache().put(db, "k", "new", 30)
        assert entry.value_text == "new"
        db.add.assert_not_called()


class TestTypedEntries:
    async def test_corrupt_symbol_graph_is_forgotten(self, db, project):
        db.execute.side_effect = [_rows(_entry("{not json")), MagicMock()]
        assert await RetrievalCache().get_symbol_graph(db, project) is None
        assert db.execute.await_count == 2

    async def test_symbol_graph_round_trip(self, db, project, code_index):
        graph = SymbolGraphBuilder().build(code_index, project.id)
        db.execute.return_value = _rows(_entry(graph.serialize()))
        cached = await RetrievalCache().get_symbol_graph(db, project)
        assert cached.node_count == graph.node_count

    async def test_routes_round_trip(self, db, project, code_index):
        db.execute.return_value = _rows(None)
        cache = RetrievalCache()
        await cache.put_routes(db, project, code_index.routes)
        stored = db.add.call_args.args[0].value_text

        db.execute.return_value = _rows(_entry(stored))
        routes = await cache.get_routes(db, project)
        assert [r.uri for r in routes] == ["orders", "orders/{order}", "api/orders", "about"]


class TestLoad:
    async def test_builds_and_stores_on_miss(self, db, project, code_index, monkeypatch):
        monkeypatch.setattr(retrieval_cache, "load_code_index", AsyncMock(return_value=code_index))
        db.execute.return_value = _rows(None)

        index, graph = await RetrievalCache().load(db, project)

        assert index is code_index
        assert graph.node_count > 0
        stored_keys = [call.args[0].cache_key for call in db.add.call_args_list]
        assert stored_keys == [
            f"retrieval:routes:{project.id}:scan-1",
            f"retrieval:symbol_graph:{project.id}:scan-1",
        ]

    async def test_uses_cached_entries(self, db, project, code_index, monkeypatch):
        monkeypatch.setattr(retrieval_cache, "load_code_index", AsyncMock(return_value=code_index))
        cache = RetrievalCache()
        cached_graph = SymbolGraphBuilder().build(code_index, project.id)
        cache.get_routes = AsyncMock(return_value=code_index.routes[:1])
        cache.get_symbol_graph = AsyncMock(return_value=cached_graph)
        cache.builder = MagicMock()

        index, graph = await cache.load(db, project)

        assert [r.uri for r in index.routes] == ["orders"]
        assert graph is cached_graph
        cache.builder.build.assert_not_called()
        db.add.assert_not_called()

    async def test_invalidate_project(self, db, project):
        db.execute.return_value = MagicMock(rowcount=4)
        assert await RetrievalCache().invalidate_project(db, project) == 4
