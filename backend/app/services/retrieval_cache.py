import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import CacheSettings, settings
from app.models.kv_cache import KVCache
from app.models.project import Project
from app.pipeline.symbol_graph import SymbolGraph, SymbolGraphBuilder
from app.services.code_index import CodeIndex, RouteEntry, load_code_index, load_routes

logger = logging.getLogger(__name__)


class RetrievalCache:
    """Read-through cache for per-scan retrieval inputs, stored in ``kv_cache``.

    Keys are ``{prefix}:{kind}:{project_id}:{scan_id}``; a re-scan changes the
    scan id and ``invalidate_project`` clears every key of the project.
    """

    def __init__(self, config: CacheSettings | None = None, builder: SymbolGraphBuilder | None = None):
        self.config = config or settings.cache
        self.builder = builder or SymbolGraphBuilder()

    def key(self, kind: str, project: Project, suffix: str | None = None) -> str:
        scan_id = project.last_kb_scan_id or "none"
        key = f"{self.config.prefix}:{kind}:{project.id}:{scan_id}"
        return f"{key}:{suffix}" if suffix else key

    async def get(self, db: AsyncSession, key: str) -> str | None:
        if not self.config.enabled:
            return None
        result = await db.execute(select(KVCache).where(KVCache.cache_key == key))
        entry = result.scalar_one_or_none()
        if entry is None:
            logger.debug("Cache miss: %s", key)
            return None
        if entry.expires_at and entry.expires_at <= datetime.now(timezone.utc):
            await db.delete(entry)
            await db.flush()
            logger.debug("Cache entry expired: %s", key)
            return None
        return entry.value_text

    async def put(self, db: AsyncSession, key: str, value: str, ttl: int) -> None:
        if not self.config.enabled:
            return
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        result = await db.execute(select(KVCache).where(KVCache.cache_key == key))
        entry = result.scalar_one_or_none()
        if entry is None:
            db.add(KVCache(cache_key=key, value_text=value, expires_at=expires_at))
        else:
            entry.value_text = value
            entry.expires_at = expires_at
        await db.flush()

    async def forget(self, db: AsyncSession, key: str) -> None:
        await db.execute(delete(KVCache).where(KVCache.cache_key == key))
        await db.flush()

    async def get_symbol_graph(self, db: AsyncSession, project: Project) -> SymbolGraph | None:
        key = self.key("symbol_graph", project)
        data = await self.get(db, key)
        if data is None:
            return None
        try:
            return SymbolGraph.deserialize(data)
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("Dropping corrupt symbol graph cache for project %s: %s", project.id, e)
            await self.forget(db, key)
            return None

    async def put_symbol_graph(self, db: AsyncSession, project: Project, graph: SymbolGraph) -> None:
        await self.put(db, self.key("symbol_graph", project), graph.serialize(), self.config.symbol_graph_ttl)

    async def get_routes(self, db: AsyncSession, project: Project) -> list[RouteEntry] | None:
        key = self.key("routes", project)
        data = await self.get(db, key)
        if data is None:
            return None
        try:
            return [RouteEntry(**r) for r in json.loads(data)]
        except (ValueError, TypeError) as e:
            logger.warning("Dropping corrupt route cache for project %s: %s", project.id, e)
            await self.forget(db, key)
            return None

    async def put_routes(self, db: AsyncSession, project: Project, routes: list[RouteEntry]) -> None:
        payload = json.dumps([r.model_dump() for r in routes])
        await self.put(db, self.key("routes", project), payload, self.config.routes_ttl)

    def result_key(self, project: Project, message: str, options: dict) -> str:
        digest = hashlib.sha1(
            json.dumps({"message": message, "options": options}, sort_keys=True).encode()
        ).hexdigest()
        return self.key("results", project, digest)

    async def load(self, db: AsyncSession, project: Project) -> tuple[CodeIndex, SymbolGraph]:
        """Code index plus symbol graph for the project's current scan."""
        index = await load_code_index(db, project)

        routes = await self.get_routes(db, project)
        if routes is None:
            await self.put_routes(db, project, index.routes)
        else:
            index.routes = routes

        graph = await self.get_symbol_graph(db, project)
        if graph is None:
            graph = self.builder.build(index, project.id)
            if graph.node_count > 0:
                await self.put_symbol_graph(db, project, graph)
        return index, graph

    async def invalidate_project(self, db: AsyncSession, project: Project) -> int:
        pattern = f"{self.config.prefix}:%:{project.id}:%"
        result = await db.execute(delete(KVCache).where(KVCache.cache_key.like(pattern)))
        await db.flush()
        logger.info("Invalidated %d retrieval cache entries for project %s", result.rowcount, project.id)
        return result.rowcount

    async def warm_up(self, db: AsyncSession, project: Project) -> dict:
        if not self.config.enabled:
            return {"enabled": False}
        logger.info("Warming retrieval cache for project %s", project.id)
        index = await load_code_index(db, project)
        graph = self.builder.build(index, project.id)
        await self.put_symbol_graph(db, project, graph)
        routes = load_routes(project)
        await self.put_routes(db, project, routes)
        return {"enabled": True, "symbol_nodes": graph.node_count, "routes": len(routes)}

    async def stats(self, db: AsyncSession, project: Project) -> dict:
        return {
            "enabled": self.config.enabled,
            "symbol_graph": await self.get(db, self.key("symbol_graph", project)) is not None,
            "routes": await self.get(db, self.key("routes", project)) is not None,
        }
