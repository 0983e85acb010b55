import logging
import re
from pathlib import Path

from pydantic import BaseModel

from app.config import RouteSettings, settings
from app.services.code_index import RouteEntry

logger = logging.getLogger(__name__)

_VERB_PREFIX_RE = re.compile(r"^(get|post|put|patch|delete)\s+", re.IGNORECASE)
_KEYWORD_SPLIT_RE = re.compile(r"[\s\-_/]+")

STOP_WORDS = {
    "the", "a", "an", "is", "are", "was", "were", "how", "what", "where",
    "when", "why", "which", "does", "do", "did", "can", "could", "would",
    "should", "this", "that", "these", "those", "in", "on", "at", "to",
    "for", "of", "with", "by", "from", "and", "or", "but", "not", "it",
    "page", "route", "endpoint", "api", "url", "path", "handler",
}

METHOD_KEYWORDS = {
    "GET": ["get", "show", "view", "list", "fetch", "retrieve", "display"],
    "POST": ["create", "add", "new", "submit", "post", "store"],
    "PUT": ["update", "edit", "modify", "change", "put"],
    "PATCH": ["update", "patch", "modify", "partial"],
    "DELETE": ["delete", "remove", "destroy", "erase"],
}


class RouteHandler(BaseModel):
    controller: str
    action: str | None = None
    file: str
    route: RouteEntry


class RouteStack(BaseModel):
    controller: str | None = None
    request: str | None = None
    resource: str | None = None
    model: str | None = None
    view: str | None = None
    page: str | None = None
    route_file: str = ""
    related: list[str] = []

    def files(self) -> list[str]:
        """Every concrete file in the stack, handler first."""
        paths = [self.controller, self.request, self.resource, self.model, self.view, self.page]
        found = [p for p in paths if p]
        found.extend(p for p in self.related if p not in found)
        return found


class RouteMatch(BaseModel):
    route: RouteEntry
    score: float
    reason: str


def normalize_pattern(pattern: str) -> str:
    pattern = _VERB_PREFIX_RE.sub("", pattern.strip())
    return pattern.lower().strip("/")


def route_match_score(pattern: str, uri: str) -> float:
    uri = uri.lower().strip("/")
    pattern = pattern.lower().strip("/")

    if uri == pattern:
        return 1.0
    if uri.startswith(pattern):
        return 0.9
    if pattern.startswith(uri):
        return 0.8
    if pattern in uri or uri in pattern:
        return 0.6

    pattern_segments = [s for s in pattern.split("/") if s]
    uri_segments = ["*" if s.startswith("{") else s for s in uri.split("/") if s]
    total = max(len(pattern_segments), len(uri_segments))
    if total == 0:
        return 0.0
    matches = sum(1 for s in pattern_segments if s in uri_segments or "*" in uri_segments)
    return matches / total * 0.5


def resolve_controller_path(controller: str) -> str:
    if "\\" in controller:
        path = controller.replace("\\", "/")
        if path.startswith("App/"):
            path = "app/" + path[4:]
        return path + ".php"
    return f"app/Http/Controllers/{controller}.php"


def controller_base_name(controller: str) -> str | None:
    class_name = controller.replace("/", "\\").rsplit("\\", 1)[-1]
    if not class_name.endswith("Controller"):
        return None
    base = class_name[: -len("Controller")]
    if base.startswith("Api"):
        base = base[3:]
    return base or None


def resolve_view_path(view: str) -> str:
    return "resources/views/" + view.replace(".", "/") + ".blade.php"


def extract_keywords(description: str) -> list[str]:
    keywords = []
    for word in _KEYWORD_SPLIT_RE.split(description.lower()):
        if len(word) > 2 and word not in STOP_WORDS and word not in keywords:
            keywords.append(word)
    return keywords


def method_matches_description(method: str, description: str) -> bool:
    description = description.lower()
    return any(k in description for k in METHOD_KEYWORDS.get(method.upper(), []))


class RouteResolver:
    """Maps URL patterns and free text onto the files that serve them."""

    def __init__(self, routes: list[RouteEntry], repo_path: str | Path, config: RouteSettings | None = None):
        self.routes = routes
        self.repo_path = Path(repo_path)
        self.config = config or settings.routes

    def find_handler(self, pattern: str) -> RouteHandler | None:
        normalized = normalize_pattern(pattern)
        best: RouteEntry | None = None
        best_score = 0.0
        for route in self.routes:
            score = route_match_score(normalized, route.uri)
            if score > best_score:
                best, best_score = route, score

        if best is None or not best.controller:
            return None
        return RouteHandler(
            controller=best.controller,
            action=best.action,
            file=resolve_controller_path(best.controller),
            route=best,
        )

    def get_route_stack(self, pattern: str) -> RouteStack:
        handler = self.find_handler(pattern)
        stack = RouteStack()

        if handler is None:
            normalized = normalize_pattern(pattern)
            for route in self.routes:
                if route_match_score(normalized, route.uri) > 0.5:
                    stack.route_file = f"routes/{route.file}"
                    if route.view:
                        stack.view = resolve_view_path(route.view)
                    break
            return stack

        stack.controller = handler.file
        stack.route_file = f"routes/{handler.route.file}"

        base = controller_base_name(handler.controller)
        if base:
            patterns = self.config.handler_patterns
            action = handler.action or "index"
            candidates = {
                "request": patterns["request"] % base,
                "resource": patterns["resource"] % base,
                "model": patterns["model"] % base,
                "view": patterns["view"] % f"{base.lower()}/{action}",
                "page": patterns["page"] % f"{base}/{action[:1].upper()}{action[1:]}",
            }
            for field, path in candidates.items():
                if self._exists(path):
                    setattr(stack, field, path)
            stack.related = self._find_related(base, stack)
        return stack

    def match_description_to_routes(self, description: str) -> list[RouteMatch]:
        keywords = extract_keywords(description)
        matches = []
        for route in self.routes:
            score = 0.0
            reasons: list[str] = []

            segments = [s for s in route.uri.split("/") if s]
            for keyword in keywords:
                for segment in segments:
                    if keyword in segment.lower():
                        score += 0.3
                        reasons.append(f"URI contains '{keyword}'")
            if route.controller:
                controller = route.controller.lower()
                for keyword in keywords:
                    if keyword in controller:
                        score += 0.4
                        reasons.append(f"Controller matches '{keyword}'")
            if route.name:
                name = route.name.lower()
                for keyword in keywords:
                    if keyword in name:
                        score += 0.3
                        reasons.append(f"Route name matches '{keyword}'")
            if method_matches_description(route.method, description):
                score += 0.2
                reasons.append(f"HTTP method '{route.method.upper()}' matches intent")

            if score > 0:
                matches.append(RouteMatch(
                    route=route,
                    score=min(1.0, score),
                    reason="; ".join(dict.fromkeys(reasons)),
                ))

        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:10]

    def routes_by_domain(self) -> dict[str, list[RouteEntry]]:
        groups: dict[str, list[RouteEntry]] = {}
        for route in self.routes:
            segments = [s for s in route.uri.split("/") if s]
            first = segments[0] if segments else "root"
            if first.startswith("api"):
                first = "api"
            groups.setdefault(first, []).append(route)
        return groups

    def _exists(self, path: str) -> bool:
        return (self.repo_path / path).is_file()

    def _find_related(self, base: str, stack: RouteStack) -> list[str]:
        taken = {stack.controller, stack.request, stack.resource, stack.model, stack.view, stack.page}
        related: list[str] = []

        controllers = self.repo_path / "app/Http/Controllers"
        if controllers.is_dir():
            for match in sorted(controllers.glob(f"*{base}*.php")):
                relative = match.relative_to(self.repo_path).as_posix()
                if relative not in taken:
                    related.append(relative)

        pages = self.repo_path / "resources/js/Pages" / base
        if pages.is_dir():
            for match in sorted(pages.glob("*.vue")):
                relative = match.relative_to(self.repo_path).as_posix()
                if relative not in taken:
                    related.append(relative)

        return related[:5]
