"""Tests for app.pipeline.executor against a real working copy under tmp_path."""

import pytest
from openai import OpenAIError

from conftest import llm_client, write_file

from app.pipeline.events import EventStream, ExecutionEvent
from app.pipeline.executor import ExecutionEngine, generation_language, needs_generation
from app.pipeline.states import FileExecutionStatus, PlanStatus
from app.services.file_writer import FileWriter

CONTROLLER = "app/Http/Controllers/OrderController.php"
EXPORT = "app/Exports/OrderExport.php"
OLD = "app/Legacy/OldExport.php"

ORIGINAL_CONTROLLER = "<?php\nclass OrderController\n{\n    public function index() {}\n}\n"
EXPORT_SOURCE = "<?php\n\nnamespace App\\Exports;\n\nclass OrderExport\n{\n    public function rows(): array { return []; }\n}\n"
MODIFIED_REPLY = "```php\n<?php\nclass OrderController\n{\n    public function index() {}\n    public function export() {}\n}\n```"

ADD_EXPORT = [{"section": "export", "change_type": "add", "after": "public function export() {}"}]


@pytest.fixture
def working_copy(repo_path):
    write_file(repo_path, CONTROLLER, ORIGINAL_CONTROLLER)
    write_file(repo_path, OLD, "<?php\nclass OldExport {}\n")
    return repo_path


@pytest.fixture
def writer(tmp_path) -> FileWriter:
    return FileWriter(tmp_path / "backups")


@pytest.fixture
def plan(make_plan):
    return make_plan([
        {"type": "modify", "path": CONTROLLER, "changes": ADD_EXPORT, "priority": 2, "description": "Add action"},
        {"type": "create", "path": EXPORT, "template_content": EXPORT_SOURCE, "priority": 1},
        {"type": "delete", "path": OLD, "priority": 3},
    ])


def _engine(writer, *replies) -> ExecutionEngine:
    return ExecutionEngine(llm_client(*replies), writer=writer)


def _statuses(plan) -> list[str]:
    return [e.status for e in sorted(plan.file_executions, key=lambda e: e.operation_index)]


class TestHelpers:
    def test_needs_generation(self):
        assert needs_generation(None)
        assert needs_generation("<?php")
        assert needs_generation(EXPORT_SOURCE + "// TODO fill in")
        assert not needs_generation(EXPORT_SOURCE)

    def test_generation_language(self):
        assert generation_language("resources/views/orders/index.blade.php") == "blade"
        assert generation_language(CONTROLLER) == "php"


class TestAutoApprovedRun:
    async def test_all_operations_applied(self, db, project, plan, working_copy, writer):
        stream = EventStream()
        outcome = await _engine(writer, MODIFIED_REPLY).execute(db, project, plan, stream, auto_approve=True)

        assert outcome.status == "completed"
        assert outcome.files_completed == 3
        assert plan.status == PlanStatus.COMPLETED.value
        assert plan.execution_started_at is not None
        assert plan.execution_completed_at is not None

        assert (working_copy / EXPORT).read_text() == EXPORT_SOURCE
        assert "public function export() {}" in (working_copy / CONTROLLER).read_text()
        assert not (working_copy / OLD).exists()

        executions = sorted(plan.file_executions, key=lambda e: e.operation_index)
        assert [e.file_path for e in executions] == [EXPORT, CONTROLLER, OLD]
        assert all(e.auto_approved for e in executions)
        assert executions[1].original_content == ORIGINAL_CONTROLLER
        assert "+    public function export() {}" in executions[1].diff
        assert executions[1].backup_path
        assert executions[2].original_content == "<?php\nclass OldExport {}\n"

        assert stream.types()[0] == ExecutionEvent.STARTED
        assert stream.types()[-1] == ExecutionEvent.COMPLETED
        assert len(stream.of_type(ExecutionEvent.FILE_COMPLETED)) == 3

    async def test_template_without_content_is_generated(self, db, project, make_plan, working_copy, writer):
        plan = make_plan([{"type": "create", "path": EXPORT, "description": "CSV exporter"}])
        stream = EventStream()
        engine = _engine(writer, "```php\n" + EXPORT_SOURCE + "```")

        outcome = await engine.execute(db, project, plan, stream, auto_approve=True)

        assert outcome.status == "completed"
        assert "class OrderExport" in (working_copy / EXPORT).read_text()
        assert ExecutionEvent.FILE_GENERATING in stream.types()

    async def test_plan_must_be_approved(self, db, project, make_plan, writer):
        plan = make_plan([{"type": "delete", "path": OLD}], status=PlanStatus.PENDING_REVIEW)
        stream = EventStream()
        outcome = await _engine(writer).execute(db, project, plan, stream, auto_approve=True)
        assert outcome.status == "failed"
        assert outcome.error == "Plan is not in an executable state"
        assert plan.status == PlanStatus.PENDING_REVIEW.value
        assert stream.types() == [ExecutionEvent.ERROR]


class TestFailures:
    async def test_stop_on_error(self, db, project, make_plan, working_copy, writer):
        plan = make_plan([
            {"type": "modify", "path": "app/Missing.php", "changes": ADD_EXPORT, "priority": 1},
            {"type": "delete", "path": OLD, "priority": 2},
        ])
        stream = EventStream()
        outcome = await _engine(writer).execute(db, project, plan, stream, auto_approve=True, stop_on_error=True)

        assert outcome.status == "stopped"
        assert outcome.failed_file == "app/Missing.php"
        assert outcome.error == "File not found: app/Missing.php"
        assert plan.status == PlanStatus.FAILED.value
        assert _statuses(plan) == ["failed"]
        assert (working_copy / OLD).exists()
        assert ExecutionEvent.EXECUTION_STOPPED in stream.types()

    async def test_continue_past_errors(self, db, project, make_plan, working_copy, writer):
        plan = make_plan([
            {"type": "modify", "path": "app/Missing.php", "changes": ADD_EXPORT, "priority": 1},
            {"type": "delete", "path": OLD, "priority": 2},
        ])
        outcome = await _engine(writer).execute(db, project, plan, auto_approve=True, stop_on_error=False)

        assert outcome.status == "failed"
        assert outcome.files_completed == 1
        assert outcome.files_failed == 1
        assert plan.status == PlanStatus.FAILED.value
        assert plan.meta["error"] == "Completed with 1 failures"
        assert not (working_copy / OLD).exists()

    async def test_service_error_fails_the_file(self, db, project, plan, working_copy, writer):
        engine = _engine(writer, OpenAIError("model overloaded"))
        outcome = await engine.execute(db, project, plan, auto_approve=True)

        assert outcome.status == "stopped"
        assert outcome.failed_file == CONTROLLER
        assert _statuses(plan) == ["completed", "failed"]
        failed = plan.file_executions[1]
        assert failed.error_message == "model overloaded"
        assert (working_copy / CONTROLLER).read_text() == ORIGINAL_CONTROLLER

    async def test_create_over_existing_file_fails(self, db, project, make_plan, working_copy, writer):
        plan = make_plan([{"type": "create", "path": OLD, "template_content": EXPORT_SOURCE}])
        outcome = await _engine(writer).execute(db, project, plan, auto_approve=True)
        assert outcome.status == "stopped"
        assert plan.file_executions[0].error_message == "File already exists"


class TestPerFileApproval:
    async def test_pause_approve_skip(self, db, project, plan, working_copy, writer):
        engine = _engine(writer, MODIFIED_REPLY)
        stream = EventStream()

        outcome = await engine.execute(db, project, plan, stream, auto_approve=False)
        assert outcome.awaiting_approval
        assert outcome.pending_path == EXPORT
        assert plan.status == PlanStatus.EXECUTING.value
        assert not (working_copy / EXPORT).exists()
        pending = plan.file_executions[0]
        assert pending.id == outcome.pending_execution_id
        assert pending.status == FileExecutionStatus.PENDING.value

        outcome = await engine.continue_execution(db, project, plan, pending, stream)
        assert pending.user_approved
        assert pending.status == FileExecutionStatus.COMPLETED.value
        assert (working_copy / EXPORT).exists()
        assert outcome.pending_path == CONTROLLER

        outcome = await engine.skip_file(db, project, plan, plan.file_executions[1], "Not now", stream)
        assert plan.file_executions[1].meta["skip_reason"] == "Not now"
        assert outcome.pending_path == OLD

        outcome = await engine.approve_file(db, project, plan, plan.file_executions[2], stream)
        assert outcome.status == "completed"
        assert outcome.files_skipped == 1
        assert plan.status == PlanStatus.COMPLETED.value
        assert (working_copy / CONTROLLER).read_text() == ORIGINAL_CONTROLLER
        assert not (working_copy / OLD).exists()

    async def test_resume_requires_pending_execution(self, db, project, plan, working_copy, writer):
        engine = _engine(writer, MODIFIED_REPLY)
        await engine.execute(db, project, plan, auto_approve=False)
        pending = plan.file_executions[0]
        await engine.continue_execution(db, project, plan, pending)

        outcome = await engine.continue_execution(db, project, plan, pending)
        assert outcome.status == "failed"
        assert outcome.error == "File execution is not awaiting approval"

    async def test_resume_requires_executing_plan(self, db, project, plan, make_execution, writer):
        execution = make_execution(plan, 0, EXPORT, status="pending")
        outcome = await _engine(writer).skip_file(db, project, plan, execution)
        assert outcome.error == "Plan is not executing"


class TestRollback:
    async def test_rollback_restores_working_copy(self, db, project, plan, working_copy, writer):
        engine = _engine(writer, MODIFIED_REPLY)
        await engine.execute(db, project, plan, auto_approve=True)
        stream = EventStream()

        result = await engine.rollback_plan(db, project, plan, stream)

        assert result.success
        assert result.rolled_back == [OLD, CONTROLLER, EXPORT]
        assert not (working_copy / EXPORT).exists()
        assert (working_copy / CONTROLLER).read_text() == ORIGINAL_CONTROLLER
        assert (working_copy / OLD).read_text() == "<?php\nclass OldExport {}\n"
        assert plan.status == PlanStatus.FAILED.value
        assert plan.meta["rollback"]["rolled_back"] == [OLD, CONTROLLER, EXPORT]
        assert set(_statuses(plan)) == {FileExecutionStatus.ROLLED_BACK.value}
        assert stream.types() == [ExecutionEvent.ROLLBACK_STARTED, ExecutionEvent.ROLLBACK_COMPLETED]

    async def test_rollback_of_move_removes_new_path(self, db, project, make_plan, working_copy, writer):
        plan = make_plan([{"type": "move", "path": OLD, "new_path": "app/Exports/OldExport.php"}])
        engine = _engine(writer)
        await engine.execute(db, project, plan, auto_approve=True)
        assert (working_copy / "app/Exports/OldExport.php").exists()

        result = await engine.rollback_plan(db, project, plan)

        assert result.rolled_back == [OLD]
        assert (working_copy / OLD).exists()
        assert not (working_copy / "app/Exports/OldExport.php").exists()

    async def test_unexecuted_plan_has_nothing_to_roll_back(self, db, project, plan, writer):
        result = await _engine(writer).rollback_plan(db, project, plan)
        assert result.rolled_back == []
        assert result.summary() == "Nothing to roll back"
        assert plan.status == PlanStatus.APPROVED.value

    async def test_missing_original_content_is_skipped(self, db, project, plan, make_execution, writer):
        plan.status = PlanStatus.COMPLETED.value
        make_execution(plan, 0, CONTROLLER, original_content=None)
        result = await _engine(writer).rollback_plan(db, project, plan)
        assert result.skipped == [CONTROLLER]
        assert plan.status == PlanStatus.COMPLETED.value

    async def test_rollback_at_approval_checkpoint_closes_plan(self, db, project, plan, working_copy, writer):
        engine = _engine(writer, MODIFIED_REPLY)
        outcome = await engine.execute(db, project, plan, auto_approve=False)
        assert outcome.awaiting_approval
        stream = EventStream()

        result = await engine.rollback_plan(db, project, plan, stream)

        assert result.rolled_back == []
        assert plan.status == PlanStatus.FAILED.value
        assert _statuses(plan) == [FileExecutionStatus.SKIPPED.value]
        assert plan.file_executions[0].meta["skip_reason"] == "Execution rolled back"
        assert plan.meta["rollback"]["rolled_back"] == []
        assert not (working_copy / EXPORT).exists()
        assert stream.types()[0] == ExecutionEvent.FILE_SKIPPED

    async def test_rollback_of_executing_plan_fails_it(self, db, project, plan, working_copy, writer):
        engine = _engine(writer, MODIFIED_REPLY)
        outcome = await engine.execute(db, project, plan, auto_approve=False)
        outcome = await engine.continue_execution(db, project, plan, plan.file_executions[0])
        assert outcome.pending_path == CONTROLLER

        result = await engine.rollback_plan(db, project, plan)

        assert result.rolled_back == [EXPORT]
        assert plan.status == PlanStatus.FAILED.value
        assert _statuses(plan) == [FileExecutionStatus.ROLLED_BACK.value, FileExecutionStatus.SKIPPED.value]
        assert not (working_copy / EXPORT).exists()
