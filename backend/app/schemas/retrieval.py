import math
import posixpath
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from app.config import settings


class RetrievedChunk(BaseModel):
    chunk_id: str
    path: str
    start_line: int
    end_line: int
    content_hash: str | None = None
    content: str = ""
    relevance_score: float = 0.0
    matched_signals: list[str] = []
    declared_symbols: list[Any] = []
    imports: list[Any] = []
    language: str = "plaintext"
    is_complete_file: bool = False

    model_config = {"frozen": True}

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1

    def symbol_names(self) -> list[str]:
        return flatten_symbols(self.declared_symbols)


class DependencyInfo(BaseModel):
    path: str
    relationship: str
    depth: int = 1
    weight: float = 1.0

    model_config = {"frozen": True}


class FileSummary(BaseModel):
    path: str
    language: str
    relevance: float

    model_config = {"frozen": True}


class RetrievalOptions(BaseModel):
    max_chunks: int | None = None
    token_budget: int | None = None
    include_dependencies: bool = True
    depth: int | None = None


def flatten_symbols(symbols: Any) -> list[str]:
    """Collect symbol names from strings, ``{"name": ...}`` dicts and nested lists."""
    if isinstance(symbols, str):
        return [symbols]
    names: list[str] = []
    if isinstance(symbols, dict):
        if isinstance(symbols.get("name"), str):
            names.append(symbols["name"])
        return names
    if isinstance(symbols, (list, tuple)):
        for item in symbols:
            for name in flatten_symbols(item):
                if name not in names:
                    names.append(name)
    return names


def estimate_tokens(chunks: list[RetrievedChunk], tokens_per_char: float | None = None) -> int:
    ratio = tokens_per_char if tokens_per_char is not None else settings.retrieval.tokens_per_char
    return math.ceil(sum(len(c.content) for c in chunks) * ratio)


class RetrievalResult(BaseModel):
    chunks: list[RetrievedChunk] = []
    files: list[FileSummary] = []
    entry_points: list[str] = []
    dependencies: dict[str, DependencyInfo] = {}
    related_routes: list[dict] = []
    metadata: dict = {}

    model_config = {"frozen": True}

    @classmethod
    def empty(cls, reason: str = "No relevant context found", **extra) -> "RetrievalResult":
        return cls(metadata={
            "empty": True,
            "reason": reason,
            "retrieved_at": datetime.now(timezone.utc).isoformat(),
            **extra,
        })

    def is_empty(self) -> bool:
        return not self.chunks

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    @property
    def file_count(self) -> int:
        return len(self.files)

    def file_list(self) -> list[str]:
        seen: list[str] = []
        for f in self.files:
            if f.path not in seen:
                seen.append(f.path)
        return seen

    def top_chunks(self, n: int) -> list[RetrievedChunk]:
        return sorted(self.chunks, key=lambda c: c.relevance_score, reverse=True)[:n]

    def total_token_estimate(self) -> int:
        return estimate_tokens(self.chunks)

    def limit_to_token_budget(self, budget: int) -> "RetrievalResult":
        """Return a new result holding the most relevant chunks that fit ``budget`` tokens.

        A chunk too large for the remaining budget is skipped so smaller, less relevant
        chunks can still fill it.
        """
        max_chars = int(budget / settings.retrieval.tokens_per_char)
        current = 0
        selected: list[RetrievedChunk] = []
        files: list[FileSummary] = []
        seen_paths: set[str] = set()

        for chunk in sorted(self.chunks, key=lambda c: c.relevance_score, reverse=True):
            size = len(chunk.content)
            if current + size > max_chars:
                continue
            selected.append(chunk)
            current += size
            if chunk.path not in seen_paths:
                seen_paths.add(chunk.path)
                files.append(FileSummary(path=chunk.path, language=chunk.language, relevance=chunk.relevance_score))

        entry_points = [p for p in self.entry_points if p in seen_paths]
        dependencies = {
            path: dep for path, dep in self.dependencies.items()
            if path in seen_paths or _has_related_file(path, seen_paths)
        }

        return RetrievalResult(
            chunks=selected,
            files=files,
            entry_points=entry_points,
            dependencies=dependencies,
            related_routes=self.related_routes,
            metadata={
                **self.metadata,
                "token_limited": len(selected) < len(self.chunks),
                "original_chunks": len(self.chunks),
                "selected_chunks": len(selected),
                "token_budget": budget,
                "estimated_tokens": estimate_tokens(selected),
            },
        )

    def to_prompt_context(self) -> str:
        if not self.chunks:
            return "No relevant code context available.\n"

        parts = ["<retrieved_context>\n<summary>\n"]
        parts.append(
            f"Files: {len(self.files)} | Chunks: {len(self.chunks)} | "
            f"Entry Points: {len(self.entry_points)} | Dependencies: {len(self.dependencies)}\n"
        )
        if self.related_routes:
            routes = ", ".join(f"{r.get('method', '')} {r.get('uri', '')}" for r in self.related_routes[:5])
            parts.append(f"Related Routes: {routes}\n")
        parts.append("</summary>\n\n")

        by_file: dict[str, list[RetrievedChunk]] = {}
        for chunk in self.chunks:
            by_file.setdefault(chunk.path, []).append(chunk)

        for path, file_chunks in by_file.items():
            role = ' role="entry_point"' if path in self.entry_points else ""
            parts.append(f'<file path="{path}"{role}>\n')
            for chunk in file_chunks:
                parts.append(
                    f'<chunk lines="{chunk.start_line}-{chunk.end_line}" '
                    f'relevance="{round(chunk.relevance_score, 2)}">\n'
                )
                symbols = chunk.symbol_names()
                if symbols:
                    parts.append(f"<!-- Declares: {', '.join(symbols[:10])} -->\n")
                parts.append(f"```{chunk.language}\n{chunk.content}\n```\n</chunk>\n")
            parts.append("</file>\n\n")

        if self.dependencies:
            parts.append("<dependencies>\n")
            by_depth: dict[int, list[str]] = {}
            for dep in self.dependencies.values():
                by_depth.setdefault(dep.depth, []).append(dep.path)
            for depth in sorted(by_depth):
                parts.append(f"Depth {depth}: {', '.join(by_depth[depth])}\n")
            parts.append("</dependencies>\n")

        parts.append("</retrieved_context>")
        return "".join(parts)

    def to_dict(self) -> dict:
        data = self.model_dump(mode="json")
        data["stats"] = {
            "chunk_count": len(self.chunks),
            "file_count": len(self.files),
            "entry_point_count": len(self.entry_points),
            "dependency_count": len(self.dependencies),
            "route_count": len(self.related_routes),
            "estimated_tokens": self.total_token_estimate(),
        }
        return data


def _has_related_file(dep_path: str, paths: set[str]) -> bool:
    base = posixpath.splitext(posixpath.basename(dep_path))[0]
    return any(base in p for p in paths)
