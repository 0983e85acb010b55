from pydantic import BaseModel
from pydantic_settings import BaseSettings


# Models that require max_completion_tokens instead of max_tokens
_MAX_COMPLETION_TOKENS_MODELS = {"gpt-5.2", "gpt-5", "o1", "o3", "o3-mini", "o1-mini"}


class IntentSettings(BaseModel):
    clarification_threshold: float = 0.5
    max_clarification_questions: int = 3
    history_turns: int = 5
    history_chars_per_turn: int = 500
    max_tokens: int = 1000
    temperature: float = 0.1


class RetrievalWeights(BaseModel):
    keyword: float = 0.25
    file_type: float = 0.20
    domain: float = 0.20
    dependency: float = 0.15
    route: float = 0.10
    symbol: float = 0.10


class RetrievalSettings(BaseModel):
    max_chunks: int = 50
    max_token_budget: int = 100000
    tokens_per_char: float = 0.25
    default_depth: int = 2
    max_depth: int = 5
    max_entry_points: int = 10
    min_score: float = 0.1
    large_chunk_lines: int = 300
    weights: RetrievalWeights = RetrievalWeights()

    intent_file_types: dict[str, dict[str, list[str]]] = {
        "feature_request": {
            "primary": ["Controller", "Service", "Action"],
            "secondary": ["Model", "Request", "Resource", "View", "Component"],
        },
        "bug_fix": {
            "primary": ["Controller", "Service", "Model"],
            "secondary": ["Middleware", "Exception", "Test"],
        },
        "test_writing": {
            "primary": ["Test", "Service", "Controller"],
            "secondary": ["Factory", "Model"],
        },
        "ui_component": {
            "primary": ["Component", "View", "Page"],
            "secondary": ["Controller", "Resource", "css", "scss"],
        },
        "refactoring": {
            "primary": ["Service", "Action", "Controller"],
            "secondary": ["Model", "Repository", "Interface"],
        },
        "question": {"primary": [], "secondary": []},
    }

    domain_paths: dict[str, list[str]] = {
        "auth": [
            "app/Http/Controllers/Auth",
            "app/Http/Middleware",
            "app/Guards",
            "app/Policies",
            "routes/auth.php",
            "resources/js/pages/auth",
            "resources/views/auth",
        ],
        "users": [
            "app/Models/User.php",
            "app/Http/Controllers/User",
            "app/Services/User",
            "database/migrations/*_users_*",
        ],
        "api": ["app/Http/Controllers/Api", "routes/api.php", "app/Http/Resources"],
        "database": ["app/Models", "database/migrations", "database/seeders", "database/factories"],
        "ui": [
            "resources/js/components",
            "resources/js/pages",
            "resources/js/Pages",
            "resources/views",
            "resources/css",
        ],
        "testing": ["tests/Feature", "tests/Unit", "tests/Browser"],
        "config": ["config/", ".env.example"],
        "services": ["app/Services", "app/Actions", "app/Jobs"],
        "events": ["app/Events", "app/Listeners", "app/Notifications"],
    }

    stack_paths: dict[str, list[str]] = {
        "laravel": [
            "app/Http/Controllers",
            "app/Models",
            "app/Services",
            "routes",
            "config",
            "database/migrations",
        ],
        "vue": ["resources/js/components", "resources/js/pages", "resources/js/composables"],
        "inertia": ["resources/js/Pages", "resources/js/Layouts", "app/Http/Controllers"],
        "livewire": ["app/Livewire", "resources/views/livewire"],
        "react": ["resources/js/components", "resources/js/pages", "resources/js/hooks"],
        "tailwind": ["tailwind.config.js", "resources/css"],
    }


class RedactionSettings(BaseModel):
    enabled: bool = True
    replacement: str = "[REDACTED]"
    patterns: list[str] = [
        r"""(?i)(?:API_KEY|SECRET|PASSWORD|TOKEN|PRIVATE_KEY|AUTH_KEY|DB_PASSWORD|MAIL_PASSWORD|AWS_SECRET)\s*=\s*['"]?([^\s'"]+)['"]?""",
        r"""(?i)(?:api[_-]?key|secret|password|token|auth[_-]?key)\s*[:=]\s*['"]([^'"]{8,})['"]?""",
        r"(?i)Bearer\s+[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+",
        r"(?i)(?:AKIA|ABIA|ACCA|ASIA)[A-Z0-9]{16}",
        r"(?i)-----BEGIN\s+(?:RSA\s+)?PRIVATE\s+KEY-----",
        r"(?i)(?:mysql|postgres|mongodb)://[^:]+:([^@]+)@",
    ]


class SymbolGraphSettings(BaseModel):
    max_nodes: int = 5000
    relationship_weights: dict[str, float] = {
        "imports": 1.0,
        "extends": 0.9,
        "implements": 0.9,
        "uses_trait": 0.8,
        "references": 0.5,
    }


class RouteSettings(BaseModel):
    handler_patterns: dict[str, str] = {
        "controller": "app/Http/Controllers/%s.php",
        "request": "app/Http/Requests/%sRequest.php",
        "resource": "app/Http/Resources/%sResource.php",
        "model": "app/Models/%s.php",
        "view": "resources/views/%s.blade.php",
        "page": "resources/js/Pages/%s.vue",
    }


class CacheSettings(BaseModel):
    enabled: bool = True
    prefix: str = "retrieval"
    symbol_graph_ttl: int = 3600
    routes_ttl: int = 1800
    retrieval_result_ttl: int = 300


class PlanningSettings(BaseModel):
    max_chunks: int = 60
    token_budget: int = 80000
    dependency_depth: int = 3
    refine_max_chunks: int = 40
    refine_token_budget: int = 60000
    max_tokens: int = 8192
    temperature: float = 0.2
    high_delete_threshold: int = 3
    high_modify_threshold: int = 10


class ExecutionSettings(BaseModel):
    auto_approve: bool = False
    stop_on_error: bool = True
    backup_dir: str = "storage/backups"
    backup_retention_days: int = 7
    max_tokens: int = 8192
    temperature: float = 0.1


class OrchestratorSettings(BaseModel):
    question_max_chunks: int = 30
    question_token_budget: int = 50000
    question_context_chunks: int = 20
    discovery_max_chunks: int = 60
    discovery_token_budget: int = 80000
    discovery_depth: int = 2
    history_messages: int = 10
    title_max_length: int = 50
    max_tokens: int = 4096
    temperature: float = 0.3


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://postgres@localhost:5432/changepilot"
    openai_api_key: str = ""
    openai_base_url: str | None = None
    openai_model: str = "gpt-5.2"
    openai_timeout: float = 120.0
    app_env: str = "development"
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:5173"

    intent: IntentSettings = IntentSettings()
    retrieval: RetrievalSettings = RetrievalSettings()
    redaction: RedactionSettings = RedactionSettings()
    symbol_graph: SymbolGraphSettings = SymbolGraphSettings()
    routes: RouteSettings = RouteSettings()
    cache: CacheSettings = CacheSettings()
    planning: PlanningSettings = PlanningSettings()
    execution: ExecutionSettings = ExecutionSettings()
    orchestrator: OrchestratorSettings = OrchestratorSettings()

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "env_nested_delimiter": "__"}

    def max_tokens_param(self, n: int) -> dict:
        """Return the right max-tokens kwarg for the current model."""
        if self.openai_model in _MAX_COMPLETION_TOKENS_MODELS:
            return {"max_completion_tokens": n}
        return {"max_tokens": n}


settings = Settings()
