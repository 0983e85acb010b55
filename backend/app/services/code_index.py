import json
import logging
import posixpath
from pathlib import Path
from typing import Any

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.indexed_file import IndexedChunk, IndexedFile
from app.models.project import Project
from app.schemas.retrieval import flatten_symbols

logger = logging.getLogger(__name__)


class FileEntry(BaseModel):
    path: str
    language: str = "plaintext"
    size_bytes: int = 0
    is_binary: bool = False
    is_excluded: bool = False
    symbols_declared: list[Any] = []
    imports: list[Any] = []


class ChunkEntry(BaseModel):
    chunk_id: str
    path: str
    start_line: int
    end_line: int
    sha1: str | None = None
    is_complete_file: bool = False
    symbols_declared: list[Any] = []
    symbols_used: list[Any] = []
    imports: list[Any] = []

    def declared_names(self) -> list[str]:
        return flatten_symbols(self.symbols_declared)

    def used_names(self) -> list[str]:
        names = []
        for usage in self.symbols_used:
            name = usage.get("symbol", "") if isinstance(usage, dict) else usage
            if isinstance(name, str) and name:
                names.append(name)
        return names

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1


class RouteEntry(BaseModel):
    uri: str = ""
    method: str = "GET"
    controller: str | None = None
    action: str | None = None
    name: str | None = None
    file: str = ""
    type: str = "standard"
    view: str | None = None
    redirect_to: str | None = None


class CodeIndex:
    """In-memory snapshot of one scan of a project: files, chunks and routes."""

    def __init__(
        self,
        files: list[FileEntry] | None = None,
        chunks: list[ChunkEntry] | None = None,
        routes: list[RouteEntry] | None = None,
        scan_id: str | None = None,
    ):
        self.files = files or []
        self.chunks = chunks or []
        self.routes = routes or []
        self.scan_id = scan_id
        self._files_by_path = {f.path: f for f in self.files}
        self._chunks_by_path: dict[str, list[ChunkEntry]] = {}
        for chunk in self.chunks:
            self._chunks_by_path.setdefault(chunk.path, []).append(chunk)

    def has_file(self, path: str) -> bool:
        return path in self._files_by_path

    def get_file(self, path: str) -> FileEntry | None:
        return self._files_by_path.get(path)

    def file_paths(self) -> list[str]:
        return list(self._files_by_path)

    def chunks_for(self, path: str) -> list[ChunkEntry]:
        return self._chunks_by_path.get(path, [])

    def find_files(self, needle: str) -> list[str]:
        """Paths containing ``needle`` (case-insensitive)."""
        needle = needle.lower()
        return [p for p in self._files_by_path if needle in p.lower()]

    def files_declaring(self, symbol: str) -> list[str]:
        paths = []
        for chunk in self.chunks:
            if symbol in chunk.declared_names() and chunk.path not in paths:
                paths.append(chunk.path)
        return paths

    def is_empty(self) -> bool:
        return not self.files and not self.chunks


async def load_code_index(db: AsyncSession, project: Project) -> CodeIndex:
    """Stream the project's latest scan out of the index tables."""
    scan_id = project.last_kb_scan_id
    files: list[FileEntry] = []
    chunks: list[ChunkEntry] = []

    file_query = select(IndexedFile).where(IndexedFile.project_id == project.id)
    chunk_query = select(IndexedChunk).where(IndexedChunk.project_id == project.id)
    if scan_id:
        file_query = file_query.where(IndexedFile.scan_id == scan_id)
        chunk_query = chunk_query.where(IndexedChunk.scan_id == scan_id)

    rows = await db.stream_scalars(file_query.order_by(IndexedFile.id))
    async for row in rows:
        files.append(FileEntry(
            path=row.path,
            language=row.language or "plaintext",
            size_bytes=row.size_bytes or 0,
            is_binary=row.is_binary,
            is_excluded=row.is_excluded,
            symbols_declared=row.symbols_declared or [],
            imports=row.imports or [],
        ))

    rows = await db.stream_scalars(chunk_query.order_by(IndexedChunk.id))
    async for row in rows:
        chunks.append(ChunkEntry(
            chunk_id=row.chunk_id,
            path=row.path,
            start_line=row.start_line,
            end_line=row.end_line,
            sha1=row.sha1,
            is_complete_file=row.is_complete_file,
            symbols_declared=row.symbols_declared or [],
            symbols_used=row.symbols_used or [],
            imports=row.imports or [],
        ))

    routes = load_routes(project)
    logger.debug(
        "Loaded code index for project %s: %d files, %d chunks, %d routes",
        project.id, len(files), len(chunks), len(routes),
    )
    return CodeIndex(files=files, chunks=chunks, routes=routes, scan_id=scan_id)


def load_routes(project: Project) -> list[RouteEntry]:
    """Read ``routes.json`` from the project's knowledge directory."""
    if not project.knowledge_path:
        return []
    routes_path = Path(project.knowledge_path) / "routes.json"
    if not routes_path.is_file():
        logger.debug("routes.json not found for project %s at %s", project.id, routes_path)
        return []
    try:
        data = json.loads(routes_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Failed to read routes for project %s: %s", project.id, e)
        return []

    routes = []
    for key, file_data in (data.get("files") or {}).items():
        for route in file_data.get("routes") or []:
            routes.append(RouteEntry(
                uri=route.get("uri") or "",
                method=route.get("method") or "GET",
                controller=route.get("controller"),
                action=route.get("action"),
                name=route.get("name"),
                file=file_data.get("file") or key,
                type=route.get("type") or "standard",
                view=route.get("view"),
                redirect_to=route.get("redirect_to"),
            ))
    return routes


def detect_language(path: str) -> str:
    ext = posixpath.splitext(path)[1].lstrip(".").lower()
    return _LANGUAGES.get(ext, "plaintext")


_LANGUAGES = {
    "php": "php",
    "js": "javascript",
    "ts": "typescript",
    "vue": "vue",
    "jsx": "jsx",
    "tsx": "tsx",
    "css": "css",
    "scss": "scss",
    "sass": "scss",
    "json": "json",
    "md": "markdown",
    "yaml": "yaml",
    "yml": "yaml",
}
