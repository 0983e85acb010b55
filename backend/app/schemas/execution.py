import uuid

from pydantic import BaseModel


class WriteResult(BaseModel):
    success: bool
    path: str
    backup_path: str | None = None
    error: str | None = None
    original_content: str | None = None
    metadata: dict = {}

    @classmethod
    def ok(cls, path: str, backup_path: str | None = None, original_content: str | None = None, **metadata):
        return cls(success=True, path=path, backup_path=backup_path, original_content=original_content,
                   metadata=metadata)

    @classmethod
    def failure(cls, path: str, error: str, **metadata):
        return cls(success=False, path=path, error=error, metadata=metadata)

    def has_backup(self) -> bool:
        return self.backup_path is not None


class FileExecutionResult(BaseModel):
    success: bool
    new_content: str | None = None
    diff: str | None = None
    error: str | None = None
    backup_path: str | None = None
    original_content: str | None = None
    metadata: dict = {}

    @classmethod
    def failure(cls, error: str, **metadata):
        return cls(success=False, error=error, metadata=metadata)

    @classmethod
    def skipped(cls, reason: str):
        return cls(success=True, metadata={"skipped": True, "skip_reason": reason})

    def was_skipped(self) -> bool:
        return bool(self.metadata.get("skipped"))

    def diff_line_count(self) -> int:
        return len(self.diff.splitlines()) if self.diff else 0


class RollbackFailure(BaseModel):
    path: str
    error: str


class RollbackResult(BaseModel):
    success: bool = True
    rolled_back: list[str] = []
    failed: list[RollbackFailure] = []
    skipped: list[str] = []
    metadata: dict = {}

    @classmethod
    def from_results(cls, rolled_back: list[str], failed: list[RollbackFailure], skipped: list[str], **metadata):
        return cls(success=not failed, rolled_back=rolled_back, failed=failed, skipped=skipped, metadata=metadata)

    def is_partial_success(self) -> bool:
        return not self.success and bool(self.rolled_back)

    def is_complete(self) -> bool:
        return self.success and not self.skipped

    def failed_paths(self) -> list[str]:
        return [f.path for f in self.failed]

    def summary(self) -> str:
        parts = []
        if self.rolled_back:
            parts.append(f"{len(self.rolled_back)} rolled back")
        if self.failed:
            parts.append(f"{len(self.failed)} failed")
        if self.skipped:
            parts.append(f"{len(self.skipped)} skipped")
        return ", ".join(parts) if parts else "Nothing to roll back"


class ExecutionOutcome(BaseModel):
    """What one engine pass ended with.

    ``awaiting_approval`` is a normal return: the pending FileExecution is
    persisted and ``continue_execution`` resumes from it.
    """

    plan_id: uuid.UUID
    status: str  # completed, failed, awaiting_approval, stopped
    files_completed: int = 0
    files_failed: int = 0
    files_skipped: int = 0
    total_files: int = 0
    pending_execution_id: uuid.UUID | None = None
    pending_path: str | None = None
    failed_file: str | None = None
    error: str | None = None

    @property
    def awaiting_approval(self) -> bool:
        return self.status == "awaiting_approval"

    @property
    def finished(self) -> bool:
        return self.status in ("completed", "failed", "stopped")
