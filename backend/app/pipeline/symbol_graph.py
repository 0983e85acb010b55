"""File-level dependency graph built from the code index.

Nodes are files; edges are typed relationships (imports, extends, implements,
uses_trait, references). Two files may be linked by several edges as long as
their types differ.
"""
import json
import logging
import posixpath
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from app.config import SymbolGraphSettings, settings
from app.services.code_index import CodeIndex

logger = logging.getLogger(__name__)

_RELATIVE_EXTENSIONS = ["", ".js", ".ts", ".vue", ".jsx", ".tsx"]


class GraphNode(BaseModel):
    symbols_declared: list[Any] = []
    symbols_used: list[Any] = []
    imports: list[Any] = []
    language: str = "plaintext"
    size_bytes: int = 0


class GraphEdge(BaseModel):
    target: str
    type: str
    weight: float


class RelatedFile(BaseModel):
    path: str
    relationship: str
    depth: int
    weight: float
    direction: str = "outgoing"


def _symbol_name(symbol: Any) -> str:
    if isinstance(symbol, dict):
        return symbol.get("name") or ""
    return symbol if isinstance(symbol, str) else ""


def _usage_name(usage: Any) -> str:
    if isinstance(usage, dict):
        return usage.get("symbol") or ""
    return usage if isinstance(usage, str) else ""


def _import_path(entry: Any) -> str:
    if isinstance(entry, dict):
        return entry.get("path") or ""
    return entry if isinstance(entry, str) else ""


class SymbolGraph:
    def __init__(
        self,
        nodes: dict[str, GraphNode] | None = None,
        edges: dict[str, list[GraphEdge]] | None = None,
        metadata: dict | None = None,
    ):
        self.nodes = nodes or {}
        self.edges = edges or {}
        self.metadata = metadata or {}

    @classmethod
    def empty(cls) -> "SymbolGraph":
        return cls(metadata={"empty": True, "built_at": datetime.now(timezone.utc).isoformat()})

    def has_file(self, path: str) -> bool:
        return path in self.nodes

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    @property
    def edge_count(self) -> int:
        return sum(len(e) for e in self.edges.values())

    def all_edges(self) -> list[tuple[str, GraphEdge]]:
        return [(source, edge) for source, edges in self.edges.items() for edge in edges]

    def get_dependencies(self, path: str) -> list[GraphEdge]:
        return list(self.edges.get(path, []))

    def get_dependents(self, path: str) -> dict[str, list[GraphEdge]]:
        dependents = {}
        for source, edges in self.edges.items():
            matching = [e for e in edges if e.target == path]
            if matching:
                dependents[source] = matching
        return dependents

    def _neighbors(self, path: str) -> list[tuple[str, str, float, str]]:
        """Outgoing then incoming neighbours, strongest edge first."""
        found: dict[str, tuple[str, str, float, str]] = {}
        for edge in self.edges.get(path, []):
            current = found.get(edge.target)
            if current is None or edge.weight > current[2]:
                found[edge.target] = (edge.target, edge.type, edge.weight, "outgoing")
        for source, edges in self.edges.items():
            if source == path or source in found:
                continue
            for edge in edges:
                if edge.target != path:
                    continue
                current = found.get(source)
                if current is None or edge.weight > current[2]:
                    found[source] = (source, f"{edge.type}_by", edge.weight, "incoming")
        # stable sort keeps insertion order for equal weights
        return sorted(found.values(), key=lambda n: n[2], reverse=True)

    def get_related(self, path: str, max_depth: int = 1) -> dict[str, RelatedFile]:
        """Breadth-first walk from ``path`` up to ``max_depth`` hops.

        Each reachable file is annotated with the relationship it was reached
        through, its depth and the product of edge weights along the way.
        """
        if path not in self.nodes:
            return {}

        related: dict[str, RelatedFile] = {}
        visited = {path}
        queue = deque([(path, 0, 1.0)])
        while queue:
            current, depth, weight = queue.popleft()
            if depth >= max_depth:
                continue
            for neighbor, relationship, edge_weight, direction in self._neighbors(current):
                if neighbor in visited:
                    continue
                visited.add(neighbor)
                cumulative = round(weight * edge_weight, 4)
                related[neighbor] = RelatedFile(
                    path=neighbor,
                    relationship=relationship,
                    depth=depth + 1,
                    weight=cumulative,
                    direction=direction,
                )
                queue.append((neighbor, depth + 1, cumulative))

        ordered = sorted(related.values(), key=lambda r: (r.depth, -r.weight))
        return {r.path: r for r in ordered}

    def find_path_between(self, source: str, target: str) -> list[str] | None:
        if source not in self.nodes or target not in self.nodes:
            return None
        if source == target:
            return [source]

        parent: dict[str, str | None] = {source: None}
        queue = deque([source])
        while queue:
            current = queue.popleft()
            for neighbor, _, _, _ in self._neighbors(current):
                if neighbor in parent:
                    continue
                parent[neighbor] = current
                if neighbor == target:
                    path = [target]
                    while parent[path[0]] is not None:
                        path.insert(0, parent[path[0]])
                    return path
                queue.append(neighbor)
        return None

    def get_cluster(self, path: str, max_size: int = 20, depth: int = 3) -> list[dict]:
        scored = [
            {"path": r.path, "cluster_score": r.weight / (r.depth + 1)}
            for r in self.get_related(path, depth).values()
        ]
        scored.sort(key=lambda s: s["cluster_score"], reverse=True)
        return scored[:max_size]

    def find_by_symbol(self, name: str) -> list[str]:
        name = name.lower()
        results = []
        for path, node in self.nodes.items():
            if any(_symbol_name(s).lower() == name for s in node.symbols_declared):
                results.append(path)
        return results

    def find_symbol_usages(self, name: str) -> list[str]:
        name = name.lower()
        results = []
        for path, node in self.nodes.items():
            used = any(name in _usage_name(u).lower() for u in node.symbols_used)
            imported = any(name in _import_path(i).lower() for i in node.imports)
            if used or imported:
                results.append(path)
        return results

    def stats(self) -> dict:
        edge_count = self.edge_count
        node_count = self.node_count
        return {
            "node_count": node_count,
            "edge_count": edge_count,
            "symbol_count": sum(len(n.symbols_declared) for n in self.nodes.values()),
            "avg_dependencies": round(edge_count / node_count, 2) if node_count else 0,
        }

    def serialize(self) -> str:
        return json.dumps({
            "nodes": {p: n.model_dump() for p, n in self.nodes.items()},
            "edges": {p: [e.model_dump() for e in edges] for p, edges in self.edges.items()},
            "metadata": self.metadata,
        })

    @classmethod
    def deserialize(cls, data: str) -> "SymbolGraph":
        payload = json.loads(data)
        return cls(
            nodes={p: GraphNode(**n) for p, n in payload.get("nodes", {}).items()},
            edges={p: [GraphEdge(**e) for e in edges] for p, edges in payload.get("edges", {}).items()},
            metadata=payload.get("metadata", {}),
        )


class SymbolGraphBuilder:
    def __init__(self, config: SymbolGraphSettings | None = None):
        self.config = config or settings.symbol_graph
        self.weights = self.config.relationship_weights

    def build(self, index: CodeIndex, project_id=None) -> SymbolGraph:
        started = time.monotonic()
        nodes: dict[str, GraphNode] = {}
        truncated = False

        for entry in index.files:
            if entry.is_excluded or entry.is_binary:
                continue
            if len(nodes) >= self.config.max_nodes:
                truncated = True
                break
            nodes[entry.path] = GraphNode(
                symbols_declared=list(entry.symbols_declared),
                imports=list(entry.imports),
                language=entry.language,
                size_bytes=entry.size_bytes,
            )

        for chunk in index.chunks:
            node = nodes.get(chunk.path)
            if node is None:
                continue
            node.symbols_used.extend(chunk.symbols_used)
            known = {_import_path(i) for i in node.imports}
            for entry in chunk.imports:
                path = _import_path(entry)
                if path not in known:
                    node.imports.append(entry)
                    known.add(path)

        symbol_index = self._symbol_index(nodes)
        edges: dict[str, list[GraphEdge]] = {}
        for source, node in nodes.items():
            found: list[GraphEdge] = []

            def add(target: str | None, type_: str) -> None:
                if not target or target == source:
                    return
                if any(e.target == target and e.type == type_ for e in found):
                    return
                found.append(GraphEdge(target=target, type=type_, weight=self.weights[type_]))

            for entry in node.imports:
                add(self._resolve_import(_import_path(entry), nodes, source), "imports")
            for usage in node.symbols_used:
                for target in symbol_index.get(_usage_name(usage), []):
                    add(target, "references")
            for symbol in node.symbols_declared:
                for target, type_ in self._inheritance_targets(symbol, symbol_index):
                    add(target, type_)

            if found:
                edges[source] = found

        graph = SymbolGraph(nodes, edges, {
            "project_id": str(project_id) if project_id else None,
            "scan_id": index.scan_id,
            "built_at": datetime.now(timezone.utc).isoformat(),
            "build_duration_ms": round((time.monotonic() - started) * 1000, 2),
            "node_count": len(nodes),
            "truncated": truncated,
        })
        logger.info(
            "Symbol graph built for project %s: %d nodes, %d edges%s",
            project_id, graph.node_count, graph.edge_count, " (truncated)" if truncated else "",
        )
        return graph

    @staticmethod
    def _symbol_index(nodes: dict[str, GraphNode]) -> dict[str, list[str]]:
        index: dict[str, list[str]] = {}
        for path, node in nodes.items():
            for symbol in node.symbols_declared:
                name = _symbol_name(symbol)
                if name:
                    index.setdefault(name, []).append(path)
        return index

    @staticmethod
    def _inheritance_targets(symbol: Any, symbol_index: dict[str, list[str]]) -> list[tuple[str, str]]:
        if not isinstance(symbol, dict) or symbol.get("type") not in ("class", "trait", "interface"):
            return []
        targets = []
        parent = symbol.get("extends")
        if isinstance(parent, str):
            targets.extend((p, "extends") for p in symbol_index.get(parent, []))
        for interface in symbol.get("implements") or []:
            targets.extend((p, "implements") for p in symbol_index.get(interface, []))
        for trait in symbol.get("uses") or []:
            targets.extend((p, "uses_trait") for p in symbol_index.get(trait, []))
        return targets

    def _resolve_import(self, import_path: str, nodes: dict[str, GraphNode], source: str) -> str | None:
        if not import_path:
            return None

        if "\\" in import_path:
            expected = import_path.replace("\\", "/") + ".php"
            if expected.startswith("App/"):
                expected = "app/" + expected[4:]
            if expected in nodes:
                return expected
            lowered = expected.lower()
            for candidate in nodes:
                if candidate.lower().endswith(lowered):
                    return candidate
            class_name = posixpath.basename(import_path.replace("\\", "/"))
            for candidate in nodes:
                if posixpath.splitext(posixpath.basename(candidate))[0] == class_name:
                    return candidate
            return None

        if import_path.startswith(".") or import_path.startswith("@/"):
            resolved = self._resolve_relative(posixpath.dirname(source), import_path)
            for ext in _RELATIVE_EXTENSIONS:
                if resolved + ext in nodes:
                    return resolved + ext
                index_path = f"{resolved}/index{ext or '.js'}"
                if index_path in nodes:
                    return index_path
        return None

    @staticmethod
    def _resolve_relative(base_dir: str, relative: str) -> str:
        if relative.startswith("@/"):
            return "resources/js/" + relative[2:]
        parts = [p for p in base_dir.split("/") if p]
        for part in relative.split("/"):
            if part in (".", ""):
                continue
            if part == "..":
                if parts:
                    parts.pop()
            else:
                parts.append(part)
        return "/".join(parts)
