"""Typed progress events and the channel they are written into.

The orchestrator and the execution engine emit events into an ``EventStream``;
callers drain the stream (e.g. to relay it as SSE). Events describe work that
already happened and never drive state on their own.
"""
import asyncio
import uuid
from collections.abc import AsyncIterator, Callable
from datetime import datetime, timezone
from typing import Any, ClassVar

from pydantic import BaseModel, Field


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _id(value: uuid.UUID | str | None) -> str | None:
    return str(value) if value is not None else None


class PipelineEvent(BaseModel):
    type: str
    data: dict[str, Any] = {}
    conversation_id: str | None = None
    plan_id: str | None = None
    timestamp: str = Field(default_factory=_now)

    def to_wire(self) -> dict:
        payload: dict[str, Any] = {"type": self.type, "data": self.data, "timestamp": self.timestamp}
        if self.conversation_id is not None:
            payload["conversation_id"] = self.conversation_id
        if self.plan_id is not None:
            payload["plan_id"] = self.plan_id
        return payload


class ExecutionEvent(PipelineEvent):
    STARTED: ClassVar[str] = "started"
    FILE_STARTED: ClassVar[str] = "file_started"
    FILE_GENERATING: ClassVar[str] = "file_generating"
    FILE_COMPLETED: ClassVar[str] = "file_completed"
    FILE_FAILED: ClassVar[str] = "file_failed"
    AWAITING_APPROVAL: ClassVar[str] = "awaiting_approval"
    FILE_APPROVED: ClassVar[str] = "file_approved"
    FILE_SKIPPED: ClassVar[str] = "file_skipped"
    EXECUTION_STOPPED: ClassVar[str] = "execution_stopped"
    COMPLETED: ClassVar[str] = "completed"
    ROLLBACK_STARTED: ClassVar[str] = "rollback_started"
    ROLLBACK_COMPLETED: ClassVar[str] = "rollback_completed"
    ERROR: ClassVar[str] = "error"

    @classmethod
    def make(cls, type_: str, plan_id, **data) -> "ExecutionEvent":
        pid = _id(plan_id)
        return cls(type=type_, plan_id=pid, data={"plan_id": pid, **data})

    @classmethod
    def started(cls, plan_id, total_files: int):
        return cls.make(cls.STARTED, plan_id, total_files=total_files)

    @classmethod
    def file_started(cls, plan_id, index: int, path: str, operation_type: str, description: str | None = None):
        return cls.make(
            cls.FILE_STARTED, plan_id, index=index, path=path, type=operation_type, description=description
        )

    @classmethod
    def file_generating(cls, plan_id, index: int, path: str):
        return cls.make(cls.FILE_GENERATING, plan_id, index=index, path=path)

    @classmethod
    def file_completed(cls, plan_id, index: int, path: str, diff: str | None = None):
        return cls.make(cls.FILE_COMPLETED, plan_id, index=index, path=path, diff=diff, success=True)

    @classmethod
    def file_failed(cls, plan_id, index: int, path: str, error: str):
        return cls.make(cls.FILE_FAILED, plan_id, index=index, path=path, error=error, success=False)

    @classmethod
    def awaiting_approval(cls, plan_id, execution_id, path: str, diff: str | None = None):
        return cls.make(cls.AWAITING_APPROVAL, plan_id, execution_id=_id(execution_id), path=path, diff=diff)

    @classmethod
    def file_approved(cls, plan_id, execution_id, path: str):
        return cls.make(cls.FILE_APPROVED, plan_id, execution_id=_id(execution_id), path=path)

    @classmethod
    def file_skipped(cls, plan_id, index: int, path: str, reason: str):
        return cls.make(cls.FILE_SKIPPED, plan_id, index=index, path=path, reason=reason)

    @classmethod
    def execution_stopped(cls, plan_id, reason: str, failed_file: str | None = None):
        return cls.make(cls.EXECUTION_STOPPED, plan_id, reason=reason, failed_file=failed_file)

    @classmethod
    def completed(cls, plan_id, files_completed: int, files_failed: int = 0):
        return cls.make(
            cls.COMPLETED, plan_id,
            files_completed=files_completed, files_failed=files_failed, success=files_failed == 0,
        )

    @classmethod
    def rollback_started(cls, plan_id, files_to_rollback: int):
        return cls.make(cls.ROLLBACK_STARTED, plan_id, files_to_rollback=files_to_rollback)

    @classmethod
    def rollback_completed(cls, plan_id, rolled_back: int, failed: int):
        return cls.make(cls.ROLLBACK_COMPLETED, plan_id, rolled_back=rolled_back, failed=failed, success=failed == 0)

    @classmethod
    def error(cls, plan_id, message: str, context: str | None = None):
        return cls.make(cls.ERROR, plan_id, message=message, context=context)


class OrchestratorEvent(PipelineEvent):
    MESSAGE_RECEIVED: ClassVar[str] = "message_received"
    PHASE_CHANGED: ClassVar[str] = "phase_changed"
    ANALYZING_INTENT: ClassVar[str] = "analyzing_intent"
    INTENT_ANALYZED: ClassVar[str] = "intent_analyzed"
    CLARIFICATION_NEEDED: ClassVar[str] = "clarification_needed"
    RETRIEVING_CONTEXT: ClassVar[str] = "retrieving_context"
    CONTEXT_RETRIEVED: ClassVar[str] = "context_retrieved"
    GENERATING_PLAN: ClassVar[str] = "generating_plan"
    PLAN_GENERATED: ClassVar[str] = "plan_generated"
    AWAITING_APPROVAL: ClassVar[str] = "awaiting_approval"
    PLAN_APPROVED: ClassVar[str] = "plan_approved"
    PLAN_REJECTED: ClassVar[str] = "plan_rejected"
    EXECUTION_STARTED: ClassVar[str] = "execution_started"
    EXECUTION_PROGRESS: ClassVar[str] = "execution_progress"
    FILE_APPROVAL_NEEDED: ClassVar[str] = "file_approval_needed"
    EXECUTION_COMPLETED: ClassVar[str] = "execution_completed"
    RESPONSE_CHUNK: ClassVar[str] = "response_chunk"
    RESPONSE_COMPLETE: ClassVar[str] = "response_complete"
    ERROR: ClassVar[str] = "error"
    CANCELLED: ClassVar[str] = "cancelled"

    @classmethod
    def make(cls, type_: str, conversation_id, **data) -> "OrchestratorEvent":
        cid = _id(conversation_id)
        return cls(type=type_, conversation_id=cid, data={"conversation_id": cid, **data})

    @classmethod
    def message_received(cls, conversation_id, message: str):
        return cls.make(cls.MESSAGE_RECEIVED, conversation_id, message=message)

    @classmethod
    def phase_changed(cls, conversation_id, from_phase: str, to_phase: str):
        return cls.make(cls.PHASE_CHANGED, conversation_id, from_phase=from_phase, to_phase=to_phase)

    @classmethod
    def analyzing_intent(cls, conversation_id):
        return cls.make(cls.ANALYZING_INTENT, conversation_id, status="Analyzing your request...")

    @classmethod
    def intent_analyzed(cls, conversation_id, intent_type: str, confidence: float, summary: str):
        return cls.make(
            cls.INTENT_ANALYZED, conversation_id, intent_type=intent_type, confidence=confidence, summary=summary
        )

    @classmethod
    def clarification_needed(cls, conversation_id, questions: list[str]):
        return cls.make(cls.CLARIFICATION_NEEDED, conversation_id, questions=questions)

    @classmethod
    def retrieving_context(cls, conversation_id):
        return cls.make(cls.RETRIEVING_CONTEXT, conversation_id, status="Searching relevant code...")

    @classmethod
    def context_retrieved(cls, conversation_id, files_found: int, chunks_found: int):
        return cls.make(cls.CONTEXT_RETRIEVED, conversation_id, files_found=files_found, chunks_found=chunks_found)

    @classmethod
    def generating_plan(cls, conversation_id):
        return cls.make(cls.GENERATING_PLAN, conversation_id, status="Creating implementation plan...")

    @classmethod
    def plan_generated(cls, conversation_id, plan_id, title: str, files_affected: int, **review):
        return cls.make(
            cls.PLAN_GENERATED, conversation_id, plan_id=_id(plan_id), title=title, files_affected=files_affected,
            **review,
        )

    @classmethod
    def awaiting_approval(cls, conversation_id, plan_id):
        return cls.make(cls.AWAITING_APPROVAL, conversation_id, plan_id=_id(plan_id))

    @classmethod
    def plan_approved(cls, conversation_id, plan_id):
        return cls.make(cls.PLAN_APPROVED, conversation_id, plan_id=_id(plan_id))

    @classmethod
    def plan_rejected(cls, conversation_id, plan_id, reason: str | None = None):
        return cls.make(cls.PLAN_REJECTED, conversation_id, plan_id=_id(plan_id), reason=reason)

    @classmethod
    def execution_started(cls, conversation_id, plan_id, total_files: int):
        return cls.make(cls.EXECUTION_STARTED, conversation_id, plan_id=_id(plan_id), total_files=total_files)

    @classmethod
    def execution_progress(cls, conversation_id, completed: int, total: int, current_file: str | None = None):
        percentage = round(completed / total * 100) if total > 0 else 0
        return cls.make(
            cls.EXECUTION_PROGRESS, conversation_id,
            completed=completed, total=total, current_file=current_file, percentage=percentage,
        )

    @classmethod
    def file_approval_needed(cls, conversation_id, execution_id, path: str, diff: str | None = None):
        return cls.make(
            cls.FILE_APPROVAL_NEEDED, conversation_id, execution_id=_id(execution_id), path=path, diff=diff
        )

    @classmethod
    def execution_completed(cls, conversation_id, files_completed: int, files_failed: int):
        return cls.make(
            cls.EXECUTION_COMPLETED, conversation_id,
            files_completed=files_completed, files_failed=files_failed, success=files_failed == 0,
        )

    @classmethod
    def response_chunk(cls, conversation_id, chunk: str):
        return cls.make(cls.RESPONSE_CHUNK, conversation_id, chunk=chunk)

    @classmethod
    def response_complete(cls, conversation_id, message_id=None):
        return cls.make(cls.RESPONSE_COMPLETE, conversation_id, message_id=_id(message_id))

    @classmethod
    def error(cls, conversation_id, error: str, phase: str | None = None):
        return cls.make(cls.ERROR, conversation_id, error=error, phase=phase)

    @classmethod
    def cancelled(cls, conversation_id, reason: str | None = None):
        return cls.make(cls.CANCELLED, conversation_id, reason=reason)


_CLOSED = object()


class EventStream:
    """Ordered, single-consumer channel of pipeline events."""

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._listeners: list[Callable[[PipelineEvent], None]] = []
        self._closed = False
        self.history: list[PipelineEvent] = []

    def add_listener(self, listener: Callable[[PipelineEvent], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[PipelineEvent], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event: PipelineEvent) -> None:
        if self._closed:
            raise RuntimeError("Cannot emit into a closed event stream")
        self.history.append(event)
        self._queue.put_nowait(event)
        for listener in list(self._listeners):
            listener(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def types(self) -> list[str]:
        return [e.type for e in self.history]

    def of_type(self, type_: str) -> list[PipelineEvent]:
        return [e for e in self.history if e.type == type_]

    async def __aiter__(self) -> AsyncIterator[PipelineEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item
