"""Gathers, scores and trims the code context handed to the reasoning service."""
import fnmatch
import logging
import math
import time
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import RetrievalSettings, settings
from app.models.project import Project
from app.pipeline.route_resolver import RouteResolver
from app.pipeline.symbol_graph import SymbolGraph
from app.schemas.intent import Intent, IntentType
from app.schemas.retrieval import (
    DependencyInfo, FileSummary, RetrievalOptions, RetrievalResult, RetrievedChunk,
)
from app.services.code_index import ChunkEntry, CodeIndex, detect_language
from app.services.redactor import Redactor
from app.services.retrieval_cache import RetrievalCache

logger = logging.getLogger(__name__)

ROUTE_KEYWORDS = [
    "route", "endpoint", "api", "url", "path", "controller", "page",
    "form", "submit", "redirect", "request", "response",
]
ROUTE_FEATURE_KEYWORDS = [
    "login", "logout", "register", "signup", "signin", "signout",
    "password", "reset", "forgot", "verify", "confirm",
    "dashboard", "profile", "settings", "admin",
]
ROUTE_DOMAINS = {"api", "ui", "routing", "auth", "users"}
ROUTE_INTENTS = {IntentType.FEATURE_REQUEST, IntentType.BUG_FIX, IntentType.UI_COMPONENT}
ROUTE_PATH_MARKERS = ["routes/", "Controller", "Request", "Resource"]

KEYWORD_BOOST = 3.0


class ScoredChunk:
    __slots__ = ("chunk", "score", "matched", "breakdown")

    def __init__(self, chunk: ChunkEntry, score: float, matched: list[str], breakdown: dict[str, float]):
        self.chunk = chunk
        self.score = score
        self.matched = matched
        self.breakdown = breakdown


def extract_keywords(intent: Intent) -> list[str]:
    terms = [
        *intent.entities.files,
        *intent.entities.components,
        *intent.entities.features,
        *intent.entities.symbols,
        intent.domain.primary,
        *intent.domain.secondary,
    ]
    keywords: list[str] = []
    for term in terms:
        if len(term) > 2 and term not in keywords:
            keywords.append(term)
    return keywords


def is_route_related(intent: Intent, message: str) -> bool:
    lowered = message.lower()
    if any(k in lowered for k in ROUTE_KEYWORDS) or any(k in lowered for k in ROUTE_FEATURE_KEYWORDS):
        return True
    return intent.domain.primary in ROUTE_DOMAINS or intent.intent_type in ROUTE_INTENTS


def select_diverse_chunks(scored: list[ScoredChunk], max_chunks: int) -> list[ScoredChunk]:
    """Greedy pick in score order, capping how many chunks any single file contributes."""
    per_file_cap = max(3, math.ceil(max_chunks / 3))
    counts: dict[str, int] = {}
    selected: list[ScoredChunk] = []
    for item in scored:
        if len(selected) >= max_chunks:
            break
        path = item.chunk.path
        if counts.get(path, 0) >= per_file_cap:
            continue
        counts[path] = counts.get(path, 0) + 1
        selected.append(item)
    return selected


def _path_matches(path: str, pattern: str) -> bool:
    return fnmatch.fnmatchcase(path.lower(), pattern.lower() + "*")


class ContextRetrievalEngine:
    """Retrieval over one in-memory snapshot of a project's index."""

    def __init__(
        self,
        index: CodeIndex,
        graph: SymbolGraph,
        resolver: RouteResolver,
        redactor: Redactor | None = None,
        config: RetrievalSettings | None = None,
    ):
        self.index = index
        self.graph = graph
        self.resolver = resolver
        self.redactor = redactor or Redactor()
        self.config = config or settings.retrieval

    def retrieve(
        self,
        project: Project,
        intent: Intent,
        message: str,
        options: RetrievalOptions | None = None,
    ) -> RetrievalResult:
        options = options or RetrievalOptions()
        max_chunks = options.max_chunks or self.config.max_chunks
        token_budget = options.token_budget if options.token_budget is not None else self.config.max_token_budget
        depth = options.depth or self.config.default_depth
        started = time.monotonic()

        try:
            entry_points = self.identify_entry_points(intent, message)
            candidates = self.gather_candidates(project, intent, message, entry_points, max_chunks * 3)
            if not candidates:
                return RetrievalResult.empty("No relevant code found for this request.")

            scored = self.rank_chunks(candidates, intent, entry_points)
            selected = select_diverse_chunks(scored, max_chunks)

            dependencies: dict[str, DependencyInfo] = {}
            if options.include_dependencies and entry_points:
                dependencies = self.expand_dependencies(entry_points, depth)

            related_routes = self.related_routes(intent, message)
            chunks = self.materialize(project, selected)

            result = RetrievalResult(
                chunks=chunks,
                files=self._file_list(chunks),
                entry_points=entry_points,
                dependencies=dependencies,
                related_routes=related_routes,
                metadata={
                    "project_id": str(project.id),
                    "intent_type": intent.intent_type.value,
                    "user_message": message[:100],
                    "candidates_found": len(candidates),
                    "chunks_selected": len(chunks),
                    "retrieval_time_ms": round((time.monotonic() - started) * 1000, 2),
                    "options": options.model_dump(),
                },
            )
            if token_budget and token_budget > 0:
                result = result.limit_to_token_budget(token_budget)
        except Exception as e:
            logger.exception("Context retrieval failed for project %s", project.id)
            return RetrievalResult.empty(f"Retrieval error: {e}", error=str(e))

        logger.info(
            "Retrieved %d chunks from %d files for project %s (~%d tokens)",
            result.chunk_count, result.file_count, project.id, result.total_token_estimate(),
        )
        return result

    def identify_entry_points(self, intent: Intent, message: str) -> list[str]:
        found: list[str] = []

        for hint in intent.entities.files:
            matches = self.index.find_files(hint)
            if matches:
                found.append(matches[0])

        if is_route_related(intent, message):
            for match in self.resolver.match_description_to_routes(message)[:3]:
                handler = self.resolver.find_handler(match.route.uri)
                if handler and handler.file:
                    found.append(handler.file)

        domain_paths = self.config.domain_paths.get(intent.domain.primary, [])
        if intent.domain.primary != "general" and domain_paths:
            domain_files: list[str] = []
            for chunk in self._chunks_under(domain_paths, self.config.max_chunks * 2):
                if chunk.path not in domain_files:
                    domain_files.append(chunk.path)
            found.extend(domain_files[:3])

        for symbol in intent.entities.symbols[:5]:
            found.extend(self.graph.find_by_symbol(symbol)[:2])

        entry_points = list(dict.fromkeys(found))
        return entry_points[: self.config.max_entry_points]

    def gather_candidates(
        self,
        project: Project,
        intent: Intent,
        message: str,
        entry_points: list[str],
        limit: int,
    ) -> list[ChunkEntry]:
        candidates: dict[str, ChunkEntry] = {}

        def merge(chunks) -> None:
            for chunk in chunks:
                candidates.setdefault(chunk.chunk_id, chunk)

        for path in entry_points:
            merge(self.index.chunks_for(path))

        merge(self.search_by_keywords(extract_keywords(intent)))

        domain_paths = self.config.domain_paths.get(intent.domain.primary, [])
        if intent.domain.primary != "general" and domain_paths:
            merge(self._chunks_under(domain_paths, self.config.max_chunks * 2))

        if is_route_related(intent, message):
            for match in self.resolver.match_description_to_routes(message)[:3]:
                merge(self.find_by_route(match.route.uri))

        for symbol in intent.entities.symbols[:5]:
            hits = [c for c in self.index.chunks if symbol in c.declared_names() or symbol in c.used_names()]
            merge(hits[:20])

        for stack_path in self.stack_paths(project):
            if len(candidates) >= limit:
                break
            merge([c for c in self.index.chunks if c.path.startswith(stack_path)][:20])

        file_types = self.config.intent_file_types.get(intent.intent_type.value, {})
        for type_name in file_types.get("primary", []):
            merge([c for c in self.index.chunks if type_name in c.path][:10])

        return list(candidates.values())[:limit]

    def search_by_keywords(self, keywords: list[str]) -> list[ChunkEntry]:
        limit = self.config.max_chunks * 2
        found: dict[str, ChunkEntry] = {}
        for keyword in keywords:
            if len(keyword) < 2:
                continue
            needle = keyword.lower()
            path_hits = [c for c in self.index.chunks if needle in c.path.lower()][:limit]
            symbol_hits = [
                c for c in self.index.chunks
                if any(needle in name.lower() for name in c.declared_names() + c.used_names())
            ][:limit]
            for chunk in path_hits + symbol_hits:
                found.setdefault(chunk.chunk_id, chunk)
        return list(found.values())

    def find_by_route(self, pattern: str) -> list[ChunkEntry]:
        stack = self.resolver.get_route_stack(pattern)
        paths = stack.files()
        if stack.route_file:
            paths.append(stack.route_file)
        if not paths:
            return []
        return [c for c in self.index.chunks if any(p in c.path for p in paths)]

    def stack_paths(self, project: Project) -> list[str]:
        stack = project.stack_info or {}
        paths: list[str] = []
        framework = stack.get("framework")
        if isinstance(framework, str):
            paths.extend(self.config.stack_paths.get(framework.lower(), []))
        frontend = stack.get("frontend") or []
        for name in frontend if isinstance(frontend, list) else [frontend]:
            paths.extend(self.config.stack_paths.get(str(name).lower(), []))
        return list(dict.fromkeys(paths))

    def rank_chunks(self, chunks: list[ChunkEntry], intent: Intent, entry_points: list[str]) -> list[ScoredChunk]:
        keywords = extract_keywords(intent)
        scored = [self.score_chunk(c, intent, keywords, entry_points) for c in chunks]
        kept = [s for s in scored if s.score > self.config.min_score]
        kept.sort(key=lambda s: s.score, reverse=True)
        return kept

    def score_chunk(self, chunk: ChunkEntry, intent: Intent, keywords: list[str], entry_points: list[str]) -> ScoredChunk:
        path = chunk.path
        lowered = path.lower()
        matched: list[str] = []

        keyword_total = 0.0
        for keyword in keywords:
            if keyword.lower() in lowered:
                keyword_total += KEYWORD_BOOST
                matched.append(f"keyword:{keyword}")

        breakdown = {
            "keyword": min(1.0, keyword_total / 10),
            "file_type": self._file_type_score(path, intent),
            "domain": self._domain_score(path, intent),
            "dependency": 1.0 if path in entry_points else 0.0,
            "route": 0.5 if any(m in path for m in ROUTE_PATH_MARKERS) else 0.0,
            "symbol": self._symbol_score(chunk, intent),
        }
        if breakdown["domain"] > 0.5:
            matched.append(f"domain:{intent.domain.primary}")
        if breakdown["dependency"]:
            matched.append("entry_point")
        if breakdown["route"]:
            matched.append("route_related")
        if breakdown["symbol"]:
            matched.append("symbol_match")

        weights = self.config.weights.model_dump()
        total = sum(breakdown[name] * weight for name, weight in weights.items())
        if chunk.is_complete_file:
            total *= 1.1
        if chunk.line_count > self.config.large_chunk_lines:
            total *= 0.9

        return ScoredChunk(chunk, max(0.0, min(1.0, total)), list(dict.fromkeys(matched)), breakdown)

    def expand_dependencies(self, entry_points: list[str], depth: int) -> dict[str, DependencyInfo]:
        depth = min(depth, self.config.max_depth)
        dependencies: dict[str, DependencyInfo] = {}
        for entry in entry_points:
            for path, related in self.graph.get_related(entry, depth).items():
                if path not in dependencies:
                    dependencies[path] = DependencyInfo(
                        path=path,
                        relationship=related.relationship,
                        depth=related.depth,
                        weight=related.weight,
                    )
        return dependencies

    def related_routes(self, intent: Intent, message: str) -> list[dict]:
        if not is_route_related(intent, message):
            return []
        return [m.route.model_dump() for m in self.resolver.match_description_to_routes(message)[:5]]

    def materialize(self, project: Project, selected: list[ScoredChunk]) -> list[RetrievedChunk]:
        root = Path(project.repo_path)
        files: dict[str, list[str] | None] = {}
        chunks = []
        for item in selected:
            chunk = item.chunk
            if chunk.path not in files:
                files[chunk.path] = self._read_lines(root / chunk.path)
            lines = files[chunk.path]
            if lines is None or chunk.start_line > len(lines):
                continue
            start = max(1, chunk.start_line)
            end = min(len(lines), chunk.end_line)
            content = "\n".join(lines[start - 1:end])
            chunks.append(RetrievedChunk(
                chunk_id=chunk.chunk_id,
                path=chunk.path,
                start_line=chunk.start_line,
                end_line=chunk.end_line,
                content_hash=chunk.sha1,
                content=self.redactor.redact(content, chunk.path),
                relevance_score=round(item.score, 4),
                matched_signals=item.matched,
                declared_symbols=chunk.symbols_declared,
                imports=chunk.imports,
                language=detect_language(chunk.path),
                is_complete_file=chunk.is_complete_file,
            ))
        return chunks

    def _chunks_under(self, patterns: list[str], limit: int) -> list[ChunkEntry]:
        hits = [c for c in self.index.chunks if any(_path_matches(c.path, p) for p in patterns)]
        return hits[:limit]

    def _file_type_score(self, path: str, intent: Intent) -> float:
        types = self.config.intent_file_types.get(intent.intent_type.value, {})
        if any(t in path for t in types.get("primary", [])):
            return 1.0
        if any(t in path for t in types.get("secondary", [])):
            return 0.6
        return 0.0

    def _domain_score(self, path: str, intent: Intent) -> float:
        for pattern in self.config.domain_paths.get(intent.domain.primary, []):
            if pattern.replace("*", "") in path:
                return 1.0
        for secondary in intent.domain.secondary:
            for pattern in self.config.domain_paths.get(secondary, []):
                if pattern.replace("*", "") in path:
                    return 0.5
        return 0.0

    @staticmethod
    def _symbol_score(chunk: ChunkEntry, intent: Intent) -> float:
        symbols = intent.entities.symbols
        if not symbols:
            return 0.0
        declared = chunk.declared_names()
        return min(1.0, sum(1 for s in symbols if s in declared) / len(symbols))

    @staticmethod
    def _file_list(chunks: list[RetrievedChunk]) -> list[FileSummary]:
        files: dict[str, FileSummary] = {}
        for chunk in chunks:
            current = files.get(chunk.path)
            if current is None or chunk.relevance_score > current.relevance:
                files[chunk.path] = FileSummary(
                    path=chunk.path, language=chunk.language, relevance=chunk.relevance_score
                )
        return sorted(files.values(), key=lambda f: f.relevance, reverse=True)

    @staticmethod
    def _read_lines(path: Path) -> list[str] | None:
        try:
            return path.read_text(encoding="utf-8").split("\n")
        except (OSError, UnicodeDecodeError):
            return None


class ContextRetriever:
    """Loads the project's cached index and graph, then runs the retrieval engine."""

    def __init__(
        self,
        cache: RetrievalCache | None = None,
        redactor: Redactor | None = None,
        config: RetrievalSettings | None = None,
    ):
        self.cache = cache or RetrievalCache()
        self.redactor = redactor or Redactor()
        self.config = config or settings.retrieval

    async def engine_for(self, db: AsyncSession, project: Project) -> ContextRetrievalEngine:
        index, graph = await self.cache.load(db, project)
        resolver = RouteResolver(index.routes, project.repo_path)
        return ContextRetrievalEngine(index, graph, resolver, self.redactor, self.config)

    async def retrieve(
        self,
        db: AsyncSession,
        project: Project,
        intent: Intent,
        message: str,
        options: RetrievalOptions | None = None,
    ) -> RetrievalResult:
        options = options or RetrievalOptions()
        key = self.cache.result_key(project, message, {
            **options.model_dump(), "intent": intent.model_dump(mode="json", exclude={"id", "metadata"}),
        })
        cached = await self.cache.get(db, key)
        if cached is not None:
            try:
                return RetrievalResult.model_validate_json(cached)
            except ValueError:
                await self.cache.forget(db, key)

        try:
            engine = await self.engine_for(db, project)
        except Exception as e:
            logger.exception("Failed to load retrieval index for project %s", project.id)
            return RetrievalResult.empty(f"Retrieval error: {e}", error=str(e))

        result = engine.retrieve(project, intent, message, options)
        if not result.is_empty():
            await self.cache.put(db, key, result.model_dump_json(), self.cache.config.retrieval_result_ttl)
        return result
