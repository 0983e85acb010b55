import posixpath
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class FileOperationType(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    RENAME = "rename"
    MOVE = "move"

    @property
    def label(self) -> str:
        return self.value.capitalize()

    def requires_existing_file(self) -> bool:
        return self is not FileOperationType.CREATE

    def requires_new_path(self) -> bool:
        return self in (FileOperationType.RENAME, FileOperationType.MOVE)

    def is_destructive(self) -> bool:
        return self is FileOperationType.DELETE


class PlannedChange(BaseModel):
    """One edit inside a modify operation."""

    section: str = "unknown"
    change_type: str = "replace"
    before: str | None = None
    after: str = ""
    start_line: int | None = None
    end_line: int | None = None
    explanation: str = ""

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _accept_camel_case(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            for camel, snake in (("changeType", "change_type"), ("startLine", "start_line"), ("endLine", "end_line")):
                if camel in data and snake not in data:
                    data[snake] = data.pop(camel)
            if data.get("after") is None or data.get("change_type") == "remove":
                data["after"] = ""
        return data

    @model_validator(mode="after")
    def _check_change_type(self) -> "PlannedChange":
        if self.change_type not in ("add", "remove", "replace"):
            raise ValueError(f"Invalid change type '{self.change_type}'. Must be: add, remove, replace")
        if self.change_type == "replace" and self.before is None:
            raise ValueError("Replace changes require 'before' content")
        if self.change_type == "remove" and self.before is None:
            raise ValueError("Remove changes require 'before' content")
        return self

    @property
    def estimated_lines_changed(self) -> int:
        before_lines = self.before.count("\n") + 1 if self.before else 0
        after_lines = self.after.count("\n") + 1
        if self.change_type == "add":
            return after_lines
        if self.change_type == "remove":
            return before_lines
        return max(before_lines, after_lines)

    def summary(self) -> str:
        return f"{self.change_type.capitalize()} ~{self.estimated_lines_changed} lines in {self.section}"


class FileOperation(BaseModel):
    type: FileOperationType
    path: str
    new_path: str | None = None
    description: str | None = None
    changes: list[PlannedChange] | None = None
    template_content: str | None = None
    priority: int = 1
    dependencies: list[str] = []

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _accept_camel_case(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            for camel, snake in (("newPath", "new_path"), ("templateContent", "template_content")):
                if camel in data and snake not in data:
                    data[snake] = data.pop(camel)
            if data.get("priority") is None:
                data["priority"] = 1
            if data.get("dependencies") is None:
                data["dependencies"] = []
            if not data.get("changes"):
                data["changes"] = None
        return data

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _check_required_fields(self) -> "FileOperation":
        if not self.path or not self.path.strip():
            raise ValueError("File path cannot be empty")
        if self.type.requires_new_path() and not self.new_path:
            raise ValueError(f"Operation type '{self.type.value}' requires a new path")
        if self.type is FileOperationType.MODIFY and not self.changes:
            raise ValueError("Modify operations require changes array")
        return self

    @property
    def estimated_lines_affected(self) -> int:
        if self.template_content:
            return self.template_content.count("\n") + 1
        if self.changes:
            return sum(c.estimated_lines_changed for c in self.changes)
        return 0

    def depends_on(self, path: str) -> bool:
        return path in self.dependencies

    def summary(self) -> str:
        name = posixpath.basename(self.path)
        if self.new_path:
            return f"{self.type.label}: {name} → {posixpath.basename(self.new_path)}"
        lines = self.estimated_lines_affected
        return f"{self.type.label}: {name}" + (f" (~{lines} lines)" if lines > 0 else "")


class ValidationResult(BaseModel):
    is_valid: bool = True
    errors: list[str] = []
    warnings: list[str] = []
    missing_files: list[str] = []
    circular_dependencies: list[dict] = []

    def has_errors(self) -> bool:
        return bool(self.errors)

    def has_warnings(self) -> bool:
        return bool(self.warnings)

    def has_missing_files(self) -> bool:
        return bool(self.missing_files)

    def has_circular_dependencies(self) -> bool:
        return bool(self.circular_dependencies)

    def total_issue_count(self) -> int:
        return len(self.errors) + len(self.missing_files) + len(self.circular_dependencies)

    def summary(self) -> str:
        if self.is_valid and not self.warnings:
            return "Plan is valid and ready for execution"
        if self.is_valid:
            return f"Plan is valid with {len(self.warnings)} warning(s)"
        issues = []
        if self.errors:
            issues.append(f"{len(self.errors)} error(s)")
        if self.missing_files:
            issues.append(f"{len(self.missing_files)} missing file(s)")
        if self.circular_dependencies:
            issues.append(f"{len(self.circular_dependencies)} circular dependency(s)")
        return "Plan is invalid: " + ", ".join(issues)

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        missing = list(self.missing_files)
        missing.extend(p for p in other.missing_files if p not in missing)
        return ValidationResult(
            is_valid=self.is_valid and other.is_valid,
            errors=self.errors + other.errors,
            warnings=self.warnings + other.warnings,
            missing_files=missing,
            circular_dependencies=self.circular_dependencies + other.circular_dependencies,
        )


class Risk(BaseModel):
    level: str = "low"
    description: str = ""
    mitigation: str | None = None

    @field_validator("level", mode="before")
    @classmethod
    def _normalize_level(cls, v):
        level = str(v or "low").strip().lower()
        return level if level in ("low", "medium", "high") else "low"


class RiskAssessment(BaseModel):
    overall_level: str = "low"
    risks: list[Risk] = []
    prerequisites: list[str] = []
    requires_manual_steps: bool = False
    manual_steps: list[str] = []

    @classmethod
    def calculate(
        cls,
        risks: list[Risk],
        prerequisites: list[str] | None = None,
        manual_steps: list[str] | None = None,
        delete_count: int = 0,
    ) -> "RiskAssessment":
        medium = sum(1 for r in risks if r.level == "medium")
        if any(r.level == "high" for r in risks) or medium >= 2 or delete_count >= 2:
            overall = "high"
        elif medium == 1:
            overall = "medium"
        else:
            overall = "low"
        return cls(
            overall_level=overall,
            risks=risks,
            prerequisites=prerequisites or [],
            requires_manual_steps=bool(manual_steps),
            manual_steps=manual_steps or [],
        )

    def has_risks(self) -> bool:
        return bool(self.risks)

    def high_risks(self) -> list[Risk]:
        return [r for r in self.risks if r.level == "high"]

    def risk_counts(self) -> dict[str, int]:
        counts = {"high": 0, "medium": 0, "low": 0}
        for r in self.risks:
            counts[r.level] += 1
        return counts

    def is_safe_for_auto_execution(self) -> bool:
        return self.overall_level == "low" and not self.requires_manual_steps and not self.prerequisites

    def summary(self) -> str:
        parts = []
        for level, count in self.risk_counts().items():
            if count:
                parts.append(f"{count} {level} risk" + ("s" if count > 1 else ""))
        if not parts:
            return "No risks identified"
        return f"Overall: {self.overall_level} - " + ", ".join(parts)


class PlanDraft(BaseModel):
    """Structured plan payload returned by the reasoning service."""

    title: str = ""
    summary: str = ""
    approach: str | None = None
    testing_notes: str | None = None
    estimated_time: str | None = None
    manual_steps: list[str] = []
    file_operations: list[dict] = []
    risks: list[Risk] = []
    prerequisites: list[str] = []

    @field_validator("manual_steps", "prerequisites", mode="before")
    @classmethod
    def _string_items(cls, v):
        if not isinstance(v, list):
            return []
        return [str(item) for item in v if item]

    @field_validator("file_operations", mode="before")
    @classmethod
    def _dict_items(cls, v):
        if not isinstance(v, list):
            return []
        return [item for item in v if isinstance(item, dict)]

    @field_validator("risks", mode="before")
    @classmethod
    def _risk_items(cls, v):
        if not isinstance(v, list):
            return []
        return [item if isinstance(item, dict) else {"level": "medium", "description": str(item)} for item in v]


class PlanResponse(BaseModel):
    id: uuid.UUID
    project_id: uuid.UUID
    conversation_id: uuid.UUID | None
    parent_plan_id: uuid.UUID | None
    status: str
    title: str
    description: str
    file_operations: list[dict]
    estimated_complexity: str
    estimated_files_affected: int
    risks: list[dict] | None
    prerequisites: list[str] | None
    refinement_count: int
    approved_at: datetime | None
    execution_started_at: datetime | None
    execution_completed_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class FileExecutionResponse(BaseModel):
    id: uuid.UUID
    execution_plan_id: uuid.UUID
    operation_index: int
    operation_type: str
    file_path: str
    new_file_path: str | None
    status: str
    diff: str | None
    error_message: str | None
    user_approved: bool
    auto_approved: bool
    backup_path: str | None
    started_at: datetime | None
    completed_at: datetime | None

    model_config = {"from_attributes": True}


class PlanFeedback(BaseModel):
    feedback: str = Field(min_length=1)
