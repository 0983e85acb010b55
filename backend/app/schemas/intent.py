import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class ComplexityLevel(str, Enum):
    TRIVIAL = "trivial"
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"
    MAJOR = "major"

    @property
    def weight(self) -> int:
        return _COMPLEXITY_ORDER.index(self) + 1

    @property
    def label(self) -> str:
        return self.value.capitalize()

    def estimated_files_affected(self) -> tuple[int, int]:
        return _FILES_AFFECTED[self]

    def is_higher_than(self, other: "ComplexityLevel") -> bool:
        return self.weight > other.weight

    @classmethod
    def from_score(cls, score: float) -> "ComplexityLevel":
        if score < 0.2:
            return cls.TRIVIAL
        if score < 0.4:
            return cls.SIMPLE
        if score < 0.6:
            return cls.MEDIUM
        if score < 0.8:
            return cls.COMPLEX
        return cls.MAJOR

    @classmethod
    def parse(cls, value: Any) -> "ComplexityLevel":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        return _COMPLEXITY_ALIASES.get(normalized, cls.MEDIUM)


_COMPLEXITY_ORDER = list(ComplexityLevel)

_FILES_AFFECTED = {
    ComplexityLevel.TRIVIAL: (1, 1),
    ComplexityLevel.SIMPLE: (1, 3),
    ComplexityLevel.MEDIUM: (3, 10),
    ComplexityLevel.COMPLEX: (10, 25),
    ComplexityLevel.MAJOR: (25, 100),
}

_COMPLEXITY_ALIASES = {
    "trivial": ComplexityLevel.TRIVIAL, "tiny": ComplexityLevel.TRIVIAL,
    "simple": ComplexityLevel.SIMPLE, "easy": ComplexityLevel.SIMPLE, "small": ComplexityLevel.SIMPLE,
    "medium": ComplexityLevel.MEDIUM, "moderate": ComplexityLevel.MEDIUM, "normal": ComplexityLevel.MEDIUM,
    "complex": ComplexityLevel.COMPLEX, "hard": ComplexityLevel.COMPLEX, "difficult": ComplexityLevel.COMPLEX,
    "major": ComplexityLevel.MAJOR, "huge": ComplexityLevel.MAJOR, "large": ComplexityLevel.MAJOR,
    "massive": ComplexityLevel.MAJOR,
}


class IntentType(str, Enum):
    FEATURE_REQUEST = "feature_request"
    BUG_FIX = "bug_fix"
    TEST_WRITING = "test_writing"
    UI_COMPONENT = "ui_component"
    REFACTORING = "refactoring"
    QUESTION = "question"
    CLARIFICATION = "clarification"
    UNKNOWN = "unknown"

    @property
    def label(self) -> str:
        return _INTENT_LABELS[self]

    @property
    def requires_code_changes(self) -> bool:
        return self in (
            IntentType.FEATURE_REQUEST, IntentType.BUG_FIX, IntentType.TEST_WRITING,
            IntentType.UI_COMPONENT, IntentType.REFACTORING,
        )

    def default_complexity(self) -> ComplexityLevel:
        return _DEFAULT_COMPLEXITY[self]

    @classmethod
    def parse(cls, value: Any) -> "IntentType":
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        return _INTENT_ALIASES.get(normalized, cls.UNKNOWN)


_INTENT_LABELS = {
    IntentType.FEATURE_REQUEST: "Feature Request",
    IntentType.BUG_FIX: "Bug Fix",
    IntentType.TEST_WRITING: "Test Writing",
    IntentType.UI_COMPONENT: "UI Component",
    IntentType.REFACTORING: "Refactoring",
    IntentType.QUESTION: "Question",
    IntentType.CLARIFICATION: "Clarification",
    IntentType.UNKNOWN: "Unknown",
}

_DEFAULT_COMPLEXITY = {
    IntentType.FEATURE_REQUEST: ComplexityLevel.MEDIUM,
    IntentType.BUG_FIX: ComplexityLevel.SIMPLE,
    IntentType.TEST_WRITING: ComplexityLevel.SIMPLE,
    IntentType.UI_COMPONENT: ComplexityLevel.MEDIUM,
    IntentType.REFACTORING: ComplexityLevel.COMPLEX,
    IntentType.QUESTION: ComplexityLevel.TRIVIAL,
    IntentType.CLARIFICATION: ComplexityLevel.TRIVIAL,
    IntentType.UNKNOWN: ComplexityLevel.MEDIUM,
}

_INTENT_ALIASES = {
    "feature_request": IntentType.FEATURE_REQUEST, "feature": IntentType.FEATURE_REQUEST,
    "new_feature": IntentType.FEATURE_REQUEST,
    "bug_fix": IntentType.BUG_FIX, "bug": IntentType.BUG_FIX, "fix": IntentType.BUG_FIX,
    "bugfix": IntentType.BUG_FIX,
    "test_writing": IntentType.TEST_WRITING, "test": IntentType.TEST_WRITING, "tests": IntentType.TEST_WRITING,
    "testing": IntentType.TEST_WRITING,
    "ui_component": IntentType.UI_COMPONENT, "ui": IntentType.UI_COMPONENT, "component": IntentType.UI_COMPONENT,
    "frontend": IntentType.UI_COMPONENT,
    "refactoring": IntentType.REFACTORING, "refactor": IntentType.REFACTORING, "cleanup": IntentType.REFACTORING,
    "question": IntentType.QUESTION, "query": IntentType.QUESTION, "ask": IntentType.QUESTION,
    "clarification": IntentType.CLARIFICATION, "clarify": IntentType.CLARIFICATION,
}


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


class ExtractedEntities(BaseModel):
    files: list[str] = []
    components: list[str] = []
    features: list[str] = []
    symbols: list[str] = []

    model_config = {"frozen": True}

    @classmethod
    def from_payload(cls, data: Any) -> "ExtractedEntities":
        if not isinstance(data, dict):
            return cls()
        return cls(
            files=_string_list(data.get("files", data.get("mentioned_files", []))),
            components=_string_list(data.get("components", data.get("mentioned_components", []))),
            features=_string_list(data.get("features", data.get("mentioned_features", []))),
            symbols=_string_list(data.get("symbols", data.get("mentioned_symbols", []))),
        )


class DomainClassification(BaseModel):
    primary: str = "general"
    secondary: list[str] = []

    model_config = {"frozen": True}

    @classmethod
    def from_payload(cls, data: Any) -> "DomainClassification":
        if not isinstance(data, dict):
            return cls()
        primary = data.get("primary")
        return cls(
            primary=primary if isinstance(primary, str) and primary else "general",
            secondary=_string_list(data.get("secondary", [])),
        )


class Intent(BaseModel):
    """Structured classification of one user request. Immutable once built."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    message: str = ""
    intent_type: IntentType = IntentType.UNKNOWN
    confidence: float = 0.5
    entities: ExtractedEntities = ExtractedEntities()
    domain: DomainClassification = DomainClassification()
    complexity: ComplexityLevel = ComplexityLevel.MEDIUM
    requires_clarification: bool = False
    clarification_questions: list[str] = []
    metadata: dict = {}

    model_config = {"frozen": True}

    @field_validator("intent_type", mode="before")
    @classmethod
    def _parse_intent_type(cls, v):
        return IntentType.parse(v)

    @field_validator("complexity", mode="before")
    @classmethod
    def _parse_complexity(cls, v):
        return ComplexityLevel.parse(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v):
        try:
            score = float(v)
        except (TypeError, ValueError):
            return 0.5
        if score > 1.0:
            score = score / 100.0
        return max(0.0, min(1.0, score))

    @field_validator("clarification_questions", mode="before")
    @classmethod
    def _clean_questions(cls, v):
        return _string_list(v)

    @classmethod
    def from_payload(cls, data: dict, message: str = "", metadata: dict | None = None) -> "Intent":
        """Build an intent from an untrusted reasoning-service payload."""
        return cls(
            message=message,
            intent_type=data.get("intent_type", "unknown"),
            confidence=data.get("confidence_score", data.get("confidence", 0.5)),
            entities=ExtractedEntities.from_payload(data.get("extracted_entities")),
            domain=DomainClassification.from_payload(data.get("domain_classification")),
            complexity=data.get("complexity_estimate", data.get("complexity", "medium")),
            requires_clarification=bool(data.get("requires_clarification", False)),
            clarification_questions=data.get("clarification_questions", []),
            metadata=metadata or {},
        )

    @classmethod
    def default(cls, message: str = "", metadata: dict | None = None) -> "Intent":
        return cls(
            message=message,
            intent_type=IntentType.UNKNOWN,
            confidence=0.3,
            domain=DomainClassification(primary="general"),
            complexity=ComplexityLevel.MEDIUM,
            requires_clarification=True,
            clarification_questions=["Could you provide more details about what you would like to do?"],
            metadata=metadata or {},
        )


class MultiIntentReport(BaseModel):
    is_multi_intent: bool
    detected_intents: list[str]
    suggestion: str | None = None
