"""Tests for app.pipeline.orchestrator with the pipeline stages mocked out."""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from openai import OpenAIError

from conftest import llm_client

from app.models.intent_analysis import IntentAnalysis
from app.pipeline.events import EventStream, ExecutionEvent, OrchestratorEvent
from app.pipeline.executor import ExecutionEngine
from app.pipeline.orchestrator import (
    CANCELLED_RESPONSE,
    EXECUTING_RESPONSE,
    QUESTION_ERROR_RESPONSE,
    REJECTED_RESPONSE,
    ConversationOrchestrator,
    format_clarification_questions,
    interpret_approval,
)
from app.pipeline.states import ConversationPhase, PlanStatus
from app.schemas.execution import ExecutionOutcome, RollbackResult
from app.schemas.intent import Intent
from app.schemas.plan import RiskAssessment, ValidationResult
from app.schemas.retrieval import RetrievalResult
from app.services.file_writer import FileWriter

EXPORT_SOURCE = "<?php\n\nnamespace App\\Exports;\n\nclass OrderExport\n{\n    public function rows(): array { return []; }\n}\n"

OPERATIONS = [
    {"type": "create", "path": "app/Exports/OrderExport.php", "template_content": "<?php", "priority": 1},
    {"type": "modify", "path": "app/Http/Controllers/OrderController.php",
     "changes": [{"change_type": "add", "after": "x"}], "priority": 2},
]


def _orchestrator(*replies) -> ConversationOrchestrator:
    classifier = MagicMock()
    classifier.analyze = AsyncMock(return_value=Intent(intent_type="feature_request", confidence=0.9))
    classifier.reanalyze_with_clarification = AsyncMock()
    classifier.needs_clarification = MagicMock(return_value=False)
    classifier.generate_clarification_questions = MagicMock(return_value=[])

    retriever = MagicMock()
    retriever.retrieve = AsyncMock(return_value=RetrievalResult.empty("nothing indexed"))

    planner = MagicMock()
    planner.validate = AsyncMock(return_value=ValidationResult())
    planner.assess_risk = MagicMock(return_value=RiskAssessment())

    return ConversationOrchestrator(
        llm_client(*replies),
        classifier=classifier,
        retriever=retriever,
        planner=planner,
        engine=MagicMock(),
    )


def _store(db, *records):
    """Serve ``db.get(Model, id)`` from ``records``."""
    by_id = {r.id: r for r in records}
    db.get.side_effect = lambda model, key: by_id.get(key)


def _outcome(plan, status="completed", **fields) -> ExecutionOutcome:
    return ExecutionOutcome(plan_id=plan.id, status=status, total_files=len(plan.file_operations), **fields)


def _phases(stream: EventStream) -> list[str]:
    return [e.data["to_phase"] for e in stream.of_type(OrchestratorEvent.PHASE_CHANGED)]


@pytest.fixture
def pending_plan(make_plan, conversation):
    return make_plan(OPERATIONS, status=PlanStatus.PENDING_REVIEW, conversation_id=conversation.id)


@pytest.fixture
def awaiting(conversation, pending_plan, db):
    conversation.current_phase = ConversationPhase.APPROVAL.value
    conversation.current_plan_id = pending_plan.id
    _store(db, pending_plan)
    return conversation


class TestHelpers:
    @pytest.mark.parametrize("text,expected", [
        ("Yes", True), ("  do it ", True), ("PROCEED", True),
        ("no", False), ("Reject", False),
        ("yes but use XLSX", None), ("", None),
    ])
    def test_interpret_approval(self, text, expected):
        assert interpret_approval(text) is expected

    def test_clarification_text(self):
        text = format_clarification_questions(["Which page?", "Which format?"])
        assert text == "I need a bit more information to help you:\n\n1. Which page?\n2. Which format?\n"
        assert format_clarification_questions([]).startswith("Could you provide more details")


class TestIntake:
    async def test_change_request_reaches_approval(self, db, project, conversation, pending_plan):
        orchestrator = _orchestrator()
        orchestrator.planner.generate_plan = AsyncMock(return_value=pending_plan)
        stream = EventStream()

        await orchestrator.process_message(db, conversation, project, "Add CSV export to the orders page", stream)

        assert conversation.current_phase == ConversationPhase.APPROVAL.value
        assert conversation.current_plan_id == pending_plan.id
        assert conversation.title == "Add CSV export to the orders page"
        assert conversation.context_summary == {"files_found": 0, "chunks_found": 0, "entry_points": []}
        assert _phases(stream) == ["discovery", "planning", "approval"]
        assert stream.types()[0] == OrchestratorEvent.MESSAGE_RECEIVED
        assert stream.types()[-1] == OrchestratorEvent.AWAITING_APPROVAL

        preview = conversation.messages[-1]
        assert preview.message_type == "plan_preview"
        assert preview.meta == {"plan_id": str(pending_plan.id), "is_valid": True, "risk_level": "low"}
        assert preview.content.startswith("## Add export")

        args = orchestrator.classifier.analyze.call_args.args
        assert args[3] == []
        assert args[4] == conversation.id
        options = orchestrator.retriever.retrieve.call_args.args[4]
        assert (options.max_chunks, options.token_budget, options.depth) == (60, 80000, 2)

    async def test_validation_problems_are_shown_before_approval(self, db, project, conversation, pending_plan):
        orchestrator = _orchestrator()
        orchestrator.planner.generate_plan = AsyncMock(return_value=pending_plan)
        orchestrator.planner.validate = AsyncMock(return_value=ValidationResult(
            is_valid=False,
            errors=["Operation #0: create operation missing content for app/Exports/OrderExport.php"],
            missing_files=["app/Http/Controllers/OrderController.php"],
            circular_dependencies=[{"from": "b", "to": "a", "cycle": ["a", "b", "a"]}],
        ))
        orchestrator.planner.assess_risk = MagicMock(return_value=RiskAssessment(overall_level="high"))
        stream = EventStream()

        await orchestrator.process_message(db, conversation, project, "Add CSV export", stream)

        generated = stream.of_type(OrchestratorEvent.PLAN_GENERATED)[0].data
        assert generated["is_valid"] is False
        assert generated["missing_files"] == ["app/Http/Controllers/OrderController.php"]
        assert generated["circular_dependencies"][0]["cycle"] == ["a", "b", "a"]
        assert generated["risk_level"] == "high"
        assert generated["missing_context"] == ["app/Http/Controllers/OrderController.php"]

        preview = conversation.messages[-1].content
        assert "### Validation" in preview
        assert "- **[CYCLE]** a -> b -> a" in preview
        assert "- **Risk level:** High" in preview
        assert "**This plan has validation problems.**" in preview
        assert pending_plan.meta["validation"]["is_valid"] is False
        assert conversation.current_phase == ConversationPhase.APPROVAL.value

    async def test_unclear_request_asks_questions(self, db, project, conversation):
        orchestrator = _orchestrator()
        orchestrator.classifier.needs_clarification.return_value = True
        orchestrator.classifier.generate_clarification_questions.return_value = ["Which page?"]
        stream = EventStream()

        await orchestrator.process_message(db, conversation, project, "make it better", stream)

        assert conversation.current_phase == ConversationPhase.CLARIFICATION.value
        assert conversation.messages[-1].message_type == "clarification"
        assert "1. Which page?" in conversation.messages[-1].content
        assert stream.of_type(OrchestratorEvent.CLARIFICATION_NEEDED)[0].data["questions"] == ["Which page?"]
        orchestrator.planner.generate_plan.assert_not_called()

    async def test_clarification_reanalyzes_previous_intent(self, db, project, conversation, pending_plan):
        record = IntentAnalysis(
            id=uuid.uuid4(), message="make it better", intent_type="unknown", confidence=0.3,
            extracted_entities={}, domain_classification={}, complexity="medium",
            requires_clarification=True, clarification_questions=["Which page?"], meta={},
        )
        _store(db, record)
        conversation.current_phase = ConversationPhase.CLARIFICATION.value
        conversation.current_intent_id = record.id
        orchestrator = _orchestrator()
        orchestrator.classifier.reanalyze_with_clarification.return_value = Intent(intent_type="ui_component")
        orchestrator.planner.generate_plan = AsyncMock(return_value=pending_plan)

        await orchestrator.process_message(db, conversation, project, "the orders page", EventStream())

        previous = orchestrator.classifier.reanalyze_with_clarification.call_args.args[2]
        assert previous.id == record.id
        orchestrator.classifier.analyze.assert_not_called()
        assert conversation.current_phase == ConversationPhase.APPROVAL.value

    async def test_question_is_answered_in_place(self, db, project, conversation):
        orchestrator = _orchestrator("Orders are exported by the OrderExport class.")
        orchestrator.classifier.analyze.return_value = Intent(intent_type="question", confidence=0.9)
        stream = EventStream()

        await orchestrator.process_message(db, conversation, project, "How are orders exported?", stream)

        assert conversation.current_phase == ConversationPhase.INTAKE.value
        assert conversation.messages[-1].content == "Orders are exported by the OrderExport class."
        assert stream.types()[-1] == OrchestratorEvent.RESPONSE_COMPLETE
        system = orchestrator.client.chat.completions.create.call_args.kwargs["messages"][0]["content"]
        assert "acme/shop" in system

    async def test_question_service_error_is_answered_gracefully(self, db, project, conversation):
        orchestrator = _orchestrator(OpenAIError("unavailable"))
        orchestrator.classifier.analyze.return_value = Intent(intent_type="question", confidence=0.9)

        await orchestrator.process_message(db, conversation, project, "How are orders exported?", EventStream())

        assert conversation.messages[-1].content == QUESTION_ERROR_RESPONSE
        assert conversation.current_phase == ConversationPhase.INTAKE.value

    async def test_failed_plan_fails_conversation(self, db, project, conversation, make_plan):
        failed = make_plan([], status=PlanStatus.DRAFT)
        failed.plan_data = {"error": "context too large"}
        orchestrator = _orchestrator()
        orchestrator.planner.generate_plan = AsyncMock(return_value=failed)
        stream = EventStream()

        await orchestrator.process_message(db, conversation, project, "Add export", stream)

        assert conversation.current_phase == ConversationPhase.FAILED.value
        assert conversation.status == "failed"
        assert conversation.meta["last_error"] == "context too large"
        assert conversation.messages[-1].message_type == "error"
        assert stream.of_type(OrchestratorEvent.ERROR)[0].data["phase"] == "planning"

    async def test_stage_errors_fail_conversation(self, db, project, conversation):
        orchestrator = _orchestrator()
        orchestrator.planner.generate_plan = AsyncMock(side_effect=ValueError("bad payload"))
        stream = EventStream()

        await orchestrator.process_message(db, conversation, project, "Add export", stream)

        assert conversation.current_phase == ConversationPhase.FAILED.value
        assert conversation.meta["last_error"] == "bad payload"
        error = stream.of_type(OrchestratorEvent.ERROR)[-1]
        assert error.data == {"conversation_id": str(conversation.id), "error": "bad payload", "phase": "planning"}

    async def test_executing_phase_replies_with_status(self, db, project, conversation):
        conversation.current_phase = ConversationPhase.EXECUTING.value
        orchestrator = _orchestrator()

        await orchestrator.process_message(db, conversation, project, "how is it going?", EventStream())

        assert conversation.messages[-1].content == EXECUTING_RESPONSE
        orchestrator.classifier.analyze.assert_not_called()


class TestApproval:
    async def test_yes_executes_plan(self, db, project, awaiting, pending_plan):
        orchestrator = _orchestrator()

        async def execute(db, project, plan, stream):
            for index, op in enumerate(plan.file_operations):
                stream.emit(ExecutionEvent.file_completed(plan.id, index, op["path"]))
            return _outcome(plan, files_completed=2)

        orchestrator.engine.execute = AsyncMock(side_effect=execute)
        stream = EventStream()

        await orchestrator.process_message(db, awaiting, project, "yes", stream)

        assert pending_plan.status == PlanStatus.APPROVED.value
        assert pending_plan.approved_by == "dev-1"
        assert awaiting.current_phase == ConversationPhase.COMPLETED.value
        assert awaiting.status == "completed"
        assert _phases(stream) == ["executing", "completed"]
        progress = stream.of_type(OrchestratorEvent.EXECUTION_PROGRESS)
        assert [p.data["percentage"] for p in progress] == [50, 100]
        assert awaiting.messages[-1].content.startswith("All 2 file(s) were updated successfully.")
        assert [m.role for m in awaiting.messages] == ["user", "assistant"]

    async def test_feedback_refines_plan(self, db, project, awaiting, pending_plan, make_plan):
        refined = make_plan(OPERATIONS[:1], status=PlanStatus.PENDING_REVIEW, title="Add export (v2)")
        orchestrator = _orchestrator()
        orchestrator.planner.refine_plan = AsyncMock(return_value=refined)
        stream = EventStream()

        await orchestrator.process_message(db, awaiting, project, "only create the export class", stream)

        orchestrator.planner.refine_plan.assert_awaited_once_with(
            db, project, pending_plan, "only create the export class"
        )
        assert awaiting.current_plan_id == refined.id
        assert awaiting.current_phase == ConversationPhase.APPROVAL.value
        assert awaiting.messages[-1].content.startswith("## Add export (v2)")
        assert [m.role for m in awaiting.messages] == ["user", "assistant"]

    async def test_failed_refinement_keeps_previous_plan(self, db, project, awaiting, pending_plan, make_plan):
        failed = make_plan([], status=PlanStatus.DRAFT)
        failed.plan_data = {"error": "timeout"}
        orchestrator = _orchestrator()
        orchestrator.planner.refine_plan = AsyncMock(return_value=failed)

        await orchestrator.process_message(db, awaiting, project, "smaller", EventStream())

        assert awaiting.current_plan_id == pending_plan.id
        assert awaiting.current_phase == ConversationPhase.APPROVAL.value
        assert "timeout" in awaiting.messages[-1].content

    async def test_no_rejects_plan(self, db, project, awaiting, pending_plan):
        orchestrator = _orchestrator()
        stream = EventStream()

        await orchestrator.process_message(db, awaiting, project, "no", stream)

        assert pending_plan.status == PlanStatus.REJECTED.value
        assert awaiting.current_plan_id is None
        assert awaiting.current_phase == ConversationPhase.INTAKE.value
        assert awaiting.messages[-1].content == REJECTED_RESPONSE
        assert OrchestratorEvent.PLAN_REJECTED in stream.types()

    async def test_approval_outside_approval_phase(self, db, project, conversation):
        stream = EventStream()
        await _orchestrator().handle_approval(db, conversation, project, True, None, stream)
        assert stream.of_type(OrchestratorEvent.ERROR)[0].data["error"] == "No plan to approve"

    async def test_explicit_approval_records_message(self, db, project, awaiting, pending_plan):
        orchestrator = _orchestrator()
        orchestrator.engine.execute = AsyncMock(return_value=_outcome(pending_plan, files_completed=2))

        await orchestrator.handle_approval(db, awaiting, project, True, None, EventStream())

        assert awaiting.messages[0].content == "Approved the execution plan"
        assert awaiting.messages[0].meta == {"action": "approve"}


class TestExecution:
    async def test_file_approval_round_trip(self, db, project, awaiting, pending_plan, make_execution):
        pending = make_execution(pending_plan, 0, OPERATIONS[0]["path"], status="pending")
        _store(db, pending_plan, pending)
        orchestrator = _orchestrator()
        orchestrator.engine.execute = AsyncMock(return_value=_outcome(
            pending_plan, "awaiting_approval", pending_execution_id=pending.id, pending_path=pending.file_path,
        ))
        orchestrator.engine.continue_execution = AsyncMock(return_value=_outcome(pending_plan, files_completed=2))
        stream = EventStream()

        await orchestrator.process_message(db, awaiting, project, "go", stream)

        assert awaiting.current_phase == ConversationPhase.EXECUTING.value
        needed = stream.of_type(OrchestratorEvent.FILE_APPROVAL_NEEDED)[0]
        assert needed.data["execution_id"] == str(pending.id)

        await orchestrator.handle_file_decision(db, awaiting, project, pending.id, True, stream)

        orchestrator.engine.continue_execution.assert_awaited_once()
        assert awaiting.current_phase == ConversationPhase.COMPLETED.value

    async def test_skip_passes_reason(self, db, project, conversation, make_plan, make_execution):
        plan = make_plan(OPERATIONS, status=PlanStatus.EXECUTING)
        pending = make_execution(plan, 0, OPERATIONS[0]["path"], status="pending")
        _store(db, plan, pending)
        conversation.current_phase = ConversationPhase.EXECUTING.value
        conversation.current_plan_id = plan.id
        orchestrator = _orchestrator()
        orchestrator.engine.skip_file = AsyncMock(return_value=_outcome(plan, files_skipped=1))

        await orchestrator.handle_file_decision(db, conversation, project, pending.id, False, EventStream(), "later")

        assert orchestrator.engine.skip_file.call_args.args[4] == "later"

    async def test_unknown_file_execution(self, db, project, conversation, make_plan):
        plan = make_plan(OPERATIONS, status=PlanStatus.EXECUTING)
        _store(db, plan)
        conversation.current_phase = ConversationPhase.EXECUTING.value
        conversation.current_plan_id = plan.id
        stream = EventStream()

        await _orchestrator().handle_file_decision(db, conversation, project, uuid.uuid4(), True, stream)

        assert stream.of_type(OrchestratorEvent.ERROR)[0].data["error"] == "File execution not found"

    async def test_failed_execution_is_reported(self, db, project, awaiting, pending_plan, make_execution):
        make_execution(pending_plan, 0, OPERATIONS[0]["path"])
        broken = make_execution(pending_plan, 1, OPERATIONS[1]["path"], status="failed",
                                error_message="File not found")
        orchestrator = _orchestrator()
        orchestrator.engine.execute = AsyncMock(return_value=_outcome(
            pending_plan, "stopped", files_completed=1, files_failed=1,
            failed_file=broken.file_path, error="File not found",
        ))
        stream = EventStream()

        await orchestrator.process_message(db, awaiting, project, "yes", stream)

        assert awaiting.current_phase == ConversationPhase.FAILED.value
        assert awaiting.meta["last_error"] == "Execution completed with 1 failure(s) out of 2 file(s)."
        errors = [m.content for m in awaiting.messages if m.message_type == "error"]
        assert errors[0] == f"Failed: {broken.file_path} - File not found"
        assert broken.meta["reported"] is True
        completed = stream.of_type(OrchestratorEvent.EXECUTION_COMPLETED)[0]
        assert completed.data["success"] is False


class TestCancel:
    async def test_cancel_during_execution_rolls_back(self, db, project, conversation, make_plan):
        plan = make_plan(OPERATIONS, status=PlanStatus.EXECUTING)
        _store(db, plan)
        conversation.current_phase = ConversationPhase.EXECUTING.value
        conversation.current_plan_id = plan.id
        orchestrator = _orchestrator()
        orchestrator.engine.rollback_plan = AsyncMock(return_value=RollbackResult.from_results(["a.php"], [], []))
        stream = EventStream()

        await orchestrator.cancel(db, conversation, project, stream)

        orchestrator.engine.rollback_plan.assert_awaited_once()
        assert conversation.meta["last_rollback"]["rolled_back"] == ["a.php"]
        assert conversation.current_phase == ConversationPhase.INTAKE.value
        assert conversation.current_plan_id is None
        assert conversation.status == "paused"
        assert conversation.messages[-1].content == CANCELLED_RESPONSE
        assert conversation.messages[-1].message_type == "system_notice"
        assert stream.types()[-1] == OrchestratorEvent.CANCELLED

    async def test_cancel_at_file_checkpoint_closes_plan(
        self, db, project, conversation, make_plan, repo_path, tmp_path
    ):
        plan = make_plan([{"type": "create", "path": "app/Exports/OrderExport.php", "template_content": EXPORT_SOURCE}])
        orchestrator = _orchestrator()
        orchestrator.engine = ExecutionEngine(llm_client(), writer=FileWriter(tmp_path / "backups"))
        outcome = await orchestrator.engine.execute(db, project, plan, auto_approve=False)
        assert outcome.awaiting_approval
        _store(db, plan)
        conversation.current_phase = ConversationPhase.EXECUTING.value
        conversation.current_plan_id = plan.id

        await orchestrator.cancel(db, conversation, project, EventStream())

        assert plan.status == PlanStatus.FAILED.value
        assert [e.status for e in plan.file_executions] == ["skipped"]
        assert conversation.current_phase == ConversationPhase.INTAKE.value
        assert conversation.status == "paused"
        assert not (repo_path / "app/Exports/OrderExport.php").exists()

    async def test_next_message_resumes(self, db, project, conversation, pending_plan):
        orchestrator = _orchestrator()
        await orchestrator.cancel(db, conversation, project, EventStream())
        assert conversation.status == "paused"

        orchestrator.planner.generate_plan = AsyncMock(return_value=pending_plan)
        await orchestrator.process_message(db, conversation, project, "Add export", EventStream())

        assert conversation.status == "active"
        assert conversation.current_phase == ConversationPhase.APPROVAL.value

    async def test_terminal_conversation_cannot_be_cancelled(self, db, project, conversation):
        conversation.current_phase = ConversationPhase.COMPLETED.value
        stream = EventStream()

        await _orchestrator().cancel(db, conversation, project, stream)

        assert stream.of_type(OrchestratorEvent.ERROR)[0].data["error"] == "Nothing to cancel"
        assert conversation.current_phase == ConversationPhase.COMPLETED.value
