"""Applies an approved plan to the project's working copy, one file operation at a time.

Each operation gets a FileExecution row. Without auto-approval the engine stops
after creating the row and returns an ``awaiting_approval`` outcome; callers
resume with ``continue_execution`` (or ``skip_file``) using only persisted state.
"""
import logging
import uuid
from datetime import datetime, timezone

from openai import AsyncOpenAI, OpenAIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ExecutionSettings, settings
from app.models.execution_plan import ExecutionPlan, FileExecution
from app.models.project import Project
from app.pipeline.events import EventStream, ExecutionEvent
from app.pipeline.llm import complete, extract_code
from app.pipeline.prompts.executor import build_create_prompt, build_executor_system, build_modify_prompt
from app.pipeline.states import FileExecutionStatus, PlanStatus, transition_plan
from app.schemas.execution import ExecutionOutcome, FileExecutionResult, RollbackFailure, RollbackResult
from app.schemas.plan import FileOperation, FileOperationType
from app.services.code_index import detect_language
from app.services.diff_service import DiffService
from app.services.file_writer import FileWriter

logger = logging.getLogger(__name__)

PLACEHOLDER_MARKERS = ["{{", "/* TODO", "// TODO", "...", "PLACEHOLDER"]

_NEVER_EXECUTED = {PlanStatus.DRAFT, PlanStatus.PENDING_REVIEW, PlanStatus.APPROVED, PlanStatus.REJECTED}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def needs_generation(content: str | None) -> bool:
    if not content:
        return True
    return any(marker in content for marker in PLACEHOLDER_MARKERS) or len(content) < 50


def generation_language(path: str) -> str:
    if path.lower().endswith(".blade.php"):
        return "blade"
    return detect_language(path)


def plan_operations(plan: ExecutionPlan) -> list[FileOperation]:
    """Operations in execution order; ``operation_index`` refers to positions in this list."""
    operations = [FileOperation.model_validate(op) for op in plan.file_operations or []]
    return sorted(operations, key=lambda op: op.priority)


class ExecutionEngine:
    def __init__(
        self,
        client: AsyncOpenAI,
        writer: FileWriter | None = None,
        differ: DiffService | None = None,
        config: ExecutionSettings | None = None,
    ):
        self.client = client
        self.config = config or settings.execution
        self.writer = writer or FileWriter(self.config.backup_dir)
        self.differ = differ or DiffService()

    async def execute(
        self,
        db: AsyncSession,
        project: Project,
        plan: ExecutionPlan,
        stream: EventStream | None = None,
        auto_approve: bool | None = None,
        stop_on_error: bool | None = None,
    ) -> ExecutionOutcome:
        stream = stream or EventStream()
        auto_approve = self.config.auto_approve if auto_approve is None else auto_approve
        stop_on_error = self.config.stop_on_error if stop_on_error is None else stop_on_error

        if not PlanStatus(plan.status).can_execute():
            stream.emit(ExecutionEvent.error(plan.id, "Plan is not in an executable state"))
            return ExecutionOutcome(plan_id=plan.id, status="failed", error="Plan is not in an executable state")

        operations = plan_operations(plan)
        transition_plan(plan, PlanStatus.EXECUTING)
        plan.execution_started_at = _now()
        stream.emit(ExecutionEvent.started(plan.id, len(operations)))
        logger.info("Executing plan %s for project %s (%d operations)", plan.id, project.id, len(operations))

        return await self._run_from(db, project, plan, operations, 0, stream, auto_approve, stop_on_error)

    async def continue_execution(
        self,
        db: AsyncSession,
        project: Project,
        plan: ExecutionPlan,
        execution: FileExecution,
        stream: EventStream | None = None,
        auto_approve: bool = False,
        stop_on_error: bool | None = None,
    ) -> ExecutionOutcome:
        """Run the approved pending operation, then the rest of the plan."""
        stream = stream or EventStream()
        stop_on_error = self.config.stop_on_error if stop_on_error is None else stop_on_error

        error = self._check_resumable(plan, execution)
        if error:
            stream.emit(ExecutionEvent.error(plan.id, error))
            return ExecutionOutcome(plan_id=plan.id, status="failed", error=error)

        execution.user_approved = True
        stream.emit(ExecutionEvent.file_approved(plan.id, execution.id, execution.file_path))

        operations = plan_operations(plan)
        operation = operations[execution.operation_index]
        result = await self._run_operation(db, project, plan, operation, execution, stream)
        if not result.success and stop_on_error:
            return await self._stop(db, plan, execution.file_path, result.error, stream)

        return await self._run_from(
            db, project, plan, operations, execution.operation_index + 1, stream, auto_approve, stop_on_error
        )

    async def approve_file(self, db, project, plan, execution, stream=None, auto_approve=False, stop_on_error=None):
        return await self.continue_execution(db, project, plan, execution, stream, auto_approve, stop_on_error)

    async def skip_file(
        self,
        db: AsyncSession,
        project: Project,
        plan: ExecutionPlan,
        execution: FileExecution,
        reason: str = "User skipped",
        stream: EventStream | None = None,
        auto_approve: bool = False,
        stop_on_error: bool | None = None,
    ) -> ExecutionOutcome:
        """Mark the pending operation skipped and resume with the next one."""
        stream = stream or EventStream()
        stop_on_error = self.config.stop_on_error if stop_on_error is None else stop_on_error

        error = self._check_resumable(plan, execution)
        if error:
            stream.emit(ExecutionEvent.error(plan.id, error))
            return ExecutionOutcome(plan_id=plan.id, status="failed", error=error)

        execution.status = FileExecutionStatus.SKIPPED.value
        execution.completed_at = _now()
        execution.meta = {**(execution.meta or {}), "skip_reason": reason}
        await db.flush()
        stream.emit(ExecutionEvent.file_skipped(plan.id, execution.operation_index, execution.file_path, reason))
        logger.info("Skipped %s in plan %s: %s", execution.file_path, plan.id, reason)

        return await self._run_from(
            db, project, plan, plan_operations(plan), execution.operation_index + 1, stream, auto_approve, stop_on_error
        )

    async def rollback_plan(
        self,
        db: AsyncSession,
        project: Project,
        plan: ExecutionPlan,
        stream: EventStream | None = None,
    ) -> RollbackResult:
        """Undo completed operations, most recent first.

        Operations still waiting for approval or in flight are marked skipped.
        An executing plan always ends in ``failed``; a completed plan ends in
        ``failed`` once at least one file was reverted; other statuses are left alone.
        """
        stream = stream or EventStream()
        status = PlanStatus(plan.status)
        if status in _NEVER_EXECUTED:
            return RollbackResult.from_results([], [], [], plan_id=str(plan.id))

        for execution in plan.file_executions:
            if execution.status in (FileExecutionStatus.PENDING.value, FileExecutionStatus.IN_PROGRESS.value):
                execution.status = FileExecutionStatus.SKIPPED.value
                execution.completed_at = _now()
                execution.meta = {**(execution.meta or {}), "skip_reason": "Execution rolled back"}
                stream.emit(ExecutionEvent.file_skipped(
                    plan.id, execution.operation_index, execution.file_path, "Execution rolled back"
                ))

        executions = sorted(
            (e for e in plan.file_executions if e.status == FileExecutionStatus.COMPLETED.value),
            key=lambda e: e.operation_index,
            reverse=True,
        )
        stream.emit(ExecutionEvent.rollback_started(plan.id, len(executions)))

        rolled_back: list[str] = []
        failed: list[RollbackFailure] = []
        skipped: list[str] = []
        for execution in executions:
            if not execution.can_rollback():
                skipped.append(execution.file_path)
                continue
            error = self.rollback_file(project, execution)
            if error is None:
                rolled_back.append(execution.file_path)
            else:
                failed.append(RollbackFailure(path=execution.file_path, error=error))

        result = RollbackResult.from_results(
            rolled_back, failed, skipped, plan_id=str(plan.id), rolled_back_at=_now().isoformat()
        )
        if status is PlanStatus.EXECUTING or (rolled_back and status is PlanStatus.COMPLETED):
            transition_plan(plan, PlanStatus.FAILED)
        if rolled_back or status is PlanStatus.EXECUTING:
            plan.meta = {**(plan.meta or {}), "rollback": result.model_dump()}
        await db.flush()

        stream.emit(ExecutionEvent.rollback_completed(plan.id, len(rolled_back), len(failed)))
        logger.info("Rolled back plan %s: %s", plan.id, result.summary())
        return result

    def rollback_file(self, project: Project, execution: FileExecution) -> str | None:
        """Revert one completed execution. Returns an error message, or None on success."""
        op_type = execution.operation_type
        if op_type == FileOperationType.CREATE.value:
            write = self.writer.delete_permanently(project, execution.file_path)
        elif execution.original_content is None:
            return "No original content recorded"
        elif op_type == FileOperationType.DELETE.value:
            write = self.writer.create(project, execution.file_path, execution.original_content)
        else:
            write = self.writer.restore_content(project, execution.file_path, execution.original_content)
            if write.success and execution.new_file_path:
                write = self.writer.delete_permanently(project, execution.new_file_path)

        if not write.success:
            logger.error("Rollback of %s failed: %s", execution.file_path, write.error)
            return write.error or "Rollback failed"

        execution.status = FileExecutionStatus.ROLLED_BACK.value
        execution.meta = {**(execution.meta or {}), "rolled_back_at": _now().isoformat()}
        return None

    async def execute_operation(
        self, project: Project, plan: ExecutionPlan, operation: FileOperation, stream: EventStream, index: int
    ) -> FileExecutionResult:
        match operation.type:
            case FileOperationType.CREATE:
                return await self._create(project, plan, operation, stream, index)
            case FileOperationType.MODIFY:
                return await self._modify(project, plan, operation, stream, index)
            case FileOperationType.DELETE:
                return self._delete(project, operation)
            case FileOperationType.RENAME | FileOperationType.MOVE:
                return self._move(project, operation)

    async def generate_file_content(self, project: Project, plan: ExecutionPlan, operation: FileOperation) -> str:
        content = await complete(
            self.client,
            build_executor_system(project),
            build_create_prompt(operation, plan, generation_language(operation.path)),
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )
        return extract_code(content)

    async def generate_modification(
        self, project: Project, plan: ExecutionPlan, operation: FileOperation, current: str
    ) -> str:
        content = await complete(
            self.client,
            build_executor_system(project),
            build_modify_prompt(operation, plan, generation_language(operation.path), current),
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )
        return extract_code(content)

    async def _create(self, project, plan, operation, stream, index) -> FileExecutionResult:
        content = operation.template_content
        if needs_generation(content):
            stream.emit(ExecutionEvent.file_generating(plan.id, index, operation.path))
            content = await self.generate_file_content(project, plan, operation)

        write = self.writer.create(project, operation.path, content)
        if not write.success:
            return FileExecutionResult.failure(write.error or "Failed to create file")

        return FileExecutionResult(
            success=True,
            new_content=content,
            diff=self.differ.diff("", content, operation.path),
            metadata={"operation": "create", "path": operation.path},
        )

    async def _modify(self, project, plan, operation, stream, index) -> FileExecutionResult:
        current = self.writer.read(project, operation.path)
        if current is None:
            return FileExecutionResult.failure(f"File not found: {operation.path}")

        stream.emit(ExecutionEvent.file_generating(plan.id, index, operation.path))
        modified = await self.generate_modification(project, plan, operation, current)
        if not modified:
            return FileExecutionResult.failure("Reasoning service returned empty content")

        write = self.writer.modify(project, operation.path, modified)
        if not write.success:
            return FileExecutionResult.failure(write.error or "Failed to write modifications")

        applied = [
            {"section": c.section, "type": c.change_type, "applied": True, "explanation": c.explanation}
            for c in operation.changes or []
        ]
        return FileExecutionResult(
            success=True,
            new_content=modified,
            diff=self.differ.diff(current, modified, operation.path),
            backup_path=write.backup_path,
            original_content=current,
            metadata={"changes_applied": applied},
        )

    def _delete(self, project, operation) -> FileExecutionResult:
        current = self.writer.read(project, operation.path)
        write = self.writer.delete(project, operation.path)
        if not write.success:
            return FileExecutionResult.failure(write.error or "Failed to delete file")

        return FileExecutionResult(
            success=True,
            new_content="",
            diff=self.differ.diff(current, "", operation.path) if current else "",
            backup_path=write.backup_path,
            original_content=current,
            metadata={"operation": "delete", "path": operation.path},
        )

    def _move(self, project, operation) -> FileExecutionResult:
        if not operation.new_path:
            return FileExecutionResult.failure("New path not specified")

        current = self.writer.read(project, operation.path)
        write = self.writer.move(project, operation.path, operation.new_path)
        if not write.success:
            return FileExecutionResult.failure(write.error or "Failed to move file")

        return FileExecutionResult(
            success=True,
            new_content=current,
            backup_path=write.backup_path,
            original_content=current,
            metadata={"operation": operation.type.value, "old_path": operation.path, "new_path": operation.new_path},
        )

    async def _run_from(
        self,
        db: AsyncSession,
        project: Project,
        plan: ExecutionPlan,
        operations: list[FileOperation],
        start: int,
        stream: EventStream,
        auto_approve: bool,
        stop_on_error: bool,
    ) -> ExecutionOutcome:
        for index in range(start, len(operations)):
            operation = operations[index]
            execution = FileExecution(
                id=uuid.uuid4(),
                execution_plan_id=plan.id,
                operation_index=index,
                operation_type=operation.type.value,
                file_path=operation.path,
                new_file_path=operation.new_path,
                status=FileExecutionStatus.PENDING.value,
                user_approved=False,
                auto_approved=False,
                meta={},
            )
            plan.file_executions.append(execution)
            await db.flush()
            stream.emit(ExecutionEvent.file_started(
                plan.id, index, operation.path, operation.type.value, operation.description
            ))

            if not auto_approve:
                stream.emit(ExecutionEvent.awaiting_approval(plan.id, execution.id, operation.path))
                return self._outcome(
                    plan, len(operations), "awaiting_approval",
                    pending_execution_id=execution.id, pending_path=operation.path,
                )

            execution.auto_approved = True
            result = await self._run_operation(db, project, plan, operation, execution, stream)
            if not result.success and stop_on_error:
                return await self._stop(db, plan, operation.path, result.error, stream, len(operations))

        return await self._finish(db, plan, len(operations), stream)

    async def _run_operation(
        self,
        db: AsyncSession,
        project: Project,
        plan: ExecutionPlan,
        operation: FileOperation,
        execution: FileExecution,
        stream: EventStream,
    ) -> FileExecutionResult:
        index = execution.operation_index
        execution.status = FileExecutionStatus.IN_PROGRESS.value
        execution.started_at = _now()

        try:
            result = await self.execute_operation(project, plan, operation, stream, index)
        except (OpenAIError, ValueError) as e:
            logger.error("Operation %d (%s) of plan %s failed: %s", index, operation.path, plan.id, e)
            result = FileExecutionResult.failure(str(e))

        if result.original_content is not None:
            execution.original_content = result.original_content
        execution.completed_at = _now()
        if result.success:
            execution.status = FileExecutionStatus.COMPLETED.value
            execution.new_content = result.new_content
            execution.diff = result.diff
            execution.backup_path = result.backup_path
            if result.diff:
                execution.meta = {**(execution.meta or {}), "diff_stats": self.differ.stats(result.diff)}
            stream.emit(ExecutionEvent.file_completed(plan.id, index, operation.path, result.diff))
        else:
            execution.status = FileExecutionStatus.FAILED.value
            execution.error_message = result.error
            stream.emit(ExecutionEvent.file_failed(plan.id, index, operation.path, result.error or "Unknown error"))
        await db.flush()
        return result

    async def _stop(
        self,
        db: AsyncSession,
        plan: ExecutionPlan,
        path: str,
        error: str | None,
        stream: EventStream,
        total: int | None = None,
    ) -> ExecutionOutcome:
        stream.emit(ExecutionEvent.execution_stopped(plan.id, "file_failed", path))
        transition_plan(plan, PlanStatus.FAILED)
        plan.execution_completed_at = _now()
        plan.meta = {**(plan.meta or {}), "error": error or "File execution failed"}
        await db.flush()
        logger.warning("Plan %s stopped at %s: %s", plan.id, path, error)
        total = total if total is not None else len(plan.file_operations or [])
        return self._outcome(plan, total, "stopped", failed_file=path, error=error)

    async def _finish(self, db: AsyncSession, plan: ExecutionPlan, total: int, stream: EventStream) -> ExecutionOutcome:
        outcome = self._outcome(plan, total, "completed")
        if outcome.files_failed:
            transition_plan(plan, PlanStatus.FAILED)
            plan.meta = {**(plan.meta or {}), "error": f"Completed with {outcome.files_failed} failures"}
            outcome = outcome.model_copy(update={"status": "failed"})
        else:
            transition_plan(plan, PlanStatus.COMPLETED)
        plan.execution_completed_at = _now()
        await db.flush()

        stream.emit(ExecutionEvent.completed(plan.id, outcome.files_completed, outcome.files_failed))
        logger.info(
            "Plan %s finished: %d completed, %d failed, %d skipped",
            plan.id, outcome.files_completed, outcome.files_failed, outcome.files_skipped,
        )
        return outcome

    @staticmethod
    def _outcome(plan: ExecutionPlan, total: int, status: str, **extra) -> ExecutionOutcome:
        counts = {s: 0 for s in FileExecutionStatus}
        for execution in plan.file_executions:
            counts[FileExecutionStatus(execution.status)] += 1
        return ExecutionOutcome(
            plan_id=plan.id,
            status=status,
            files_completed=counts[FileExecutionStatus.COMPLETED],
            files_failed=counts[FileExecutionStatus.FAILED],
            files_skipped=counts[FileExecutionStatus.SKIPPED],
            total_files=total,
            **extra,
        )

    @staticmethod
    def _check_resumable(plan: ExecutionPlan, execution: FileExecution) -> str | None:
        if PlanStatus(plan.status) is not PlanStatus.EXECUTING:
            return "Plan is not executing"
        if execution.status != FileExecutionStatus.PENDING.value:
            return "File execution is not awaiting approval"
        if execution.operation_index >= len(plan.file_operations or []):
            return "Operation not found in plan"
        return None
