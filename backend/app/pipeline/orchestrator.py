"""Conversation driver: routes each user message through classify, retrieve, plan, approve and execute.

All phase changes happen in this module through ``transition_phase``/``force_phase``.
Progress is written into an ``EventStream``; control flow only looks at return values.
"""
import logging
import uuid

from openai import AsyncOpenAI, OpenAIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import OrchestratorSettings, settings
from app.models.conversation import Conversation
from app.models.execution_plan import ExecutionPlan
from app.models.intent_analysis import IntentAnalysis
from app.models.project import Project
from app.pipeline.context_retrieval import ContextRetriever
from app.pipeline.events import EventStream, ExecutionEvent, OrchestratorEvent, PipelineEvent
from app.pipeline.executor import ExecutionEngine, plan_operations
from app.pipeline.intent_classifier import IntentClassifier, intent_from_record
from app.pipeline.llm import complete
from app.pipeline.planner import PlanBuilder, identify_missing_context, render_plan_preview
from app.pipeline.prompts.planner import build_project_info, build_tech_stack
from app.pipeline.prompts.responder import RESPONDER_SYSTEM, build_question_prompt
from app.pipeline.states import (
    ConversationPhase, FileExecutionStatus, PlanStatus, force_phase, transition_phase,
)
from app.schemas.conversation import MessageType
from app.schemas.execution import ExecutionOutcome
from app.schemas.intent import Intent, IntentType
from app.schemas.retrieval import RetrievalOptions, RetrievalResult
from app.services import conversation_service, plan_service

logger = logging.getLogger(__name__)

APPROVE_TOKENS = {"yes", "approve", "ok", "go", "proceed", "execute", "do it"}
REJECT_TOKENS = {"no", "cancel", "stop", "reject"}

READY_RESPONSE = "I'm ready to help. Please describe what you'd like to do with this project."
COMPLETED_RESPONSE = (
    "The previous task has been completed. Would you like to start a new task? "
    "Just describe what you'd like to do."
)
FAILED_RESPONSE = "The previous operation encountered an error. Would you like to try again or start something new?"
EXECUTING_RESPONSE = (
    "Execution is in progress. Please wait for the current operation to complete, "
    "or use the cancel button to stop."
)
REJECTED_RESPONSE = (
    "I understand. The plan has been cancelled. Feel free to describe what changes you'd like to make, "
    "and I'll create a new plan."
)
CANCELLED_RESPONSE = "Operation cancelled. You can continue whenever you're ready."
QUESTION_ERROR_RESPONSE = "I encountered an error while processing your question. Please try again."


def format_clarification_questions(questions: list[str]) -> str:
    if not questions:
        return "Could you provide more details about what you'd like to do?"
    lines = ["I need a bit more information to help you:", ""]
    lines += [f"{i}. {q}" for i, q in enumerate(questions, 1)]
    return "\n".join(lines) + "\n"


def interpret_approval(message: str) -> bool | None:
    """True for an approve token, False for a reject token, None for free-form feedback."""
    normalized = message.strip().lower()
    if normalized in APPROVE_TOKENS:
        return True
    if normalized in REJECT_TOKENS:
        return False
    return None


class ConversationOrchestrator:
    def __init__(
        self,
        client: AsyncOpenAI,
        classifier: IntentClassifier | None = None,
        retriever: ContextRetriever | None = None,
        planner: PlanBuilder | None = None,
        engine: ExecutionEngine | None = None,
        config: OrchestratorSettings | None = None,
    ):
        self.client = client
        self.classifier = classifier or IntentClassifier(client)
        self.retriever = retriever or ContextRetriever()
        self.planner = planner or PlanBuilder(client, self.retriever)
        self.engine = engine or ExecutionEngine(client)
        self.config = config or settings.orchestrator

    async def process_message(
        self,
        db: AsyncSession,
        conversation: Conversation,
        project: Project,
        message: str,
        stream: EventStream,
    ) -> None:
        await conversation_service.add_message(db, conversation, "user", message)
        stream.emit(OrchestratorEvent.message_received(conversation.id, message))

        if not conversation.title:
            conversation.title = conversation_service.make_title(message, self.config.title_max_length)
        if conversation.status == "paused":
            conversation.status = "active"

        phase = ConversationPhase(conversation.current_phase)
        try:
            if phase in (ConversationPhase.INTAKE, ConversationPhase.CLARIFICATION):
                await self._handle_intake(db, conversation, project, message, stream)
            elif phase is ConversationPhase.APPROVAL:
                decision = interpret_approval(message)
                feedback = message if decision is None else None
                await self.handle_approval(db, conversation, project, bool(decision), feedback, stream,
                                           record_message=False)
            elif phase is ConversationPhase.EXECUTING:
                await self._respond(db, conversation, EXECUTING_RESPONSE, stream)
            elif phase is ConversationPhase.COMPLETED:
                await self._respond(db, conversation, COMPLETED_RESPONSE, stream)
            elif phase is ConversationPhase.FAILED:
                await self._respond(db, conversation, FAILED_RESPONSE, stream)
            else:
                await self._respond(db, conversation, READY_RESPONSE, stream)
        except (OpenAIError, ValueError) as e:
            logger.error("Error processing message in conversation %s: %s", conversation.id, e)
            current = ConversationPhase(conversation.current_phase)
            await self._fail(db, conversation, str(e), stream)
            stream.emit(OrchestratorEvent.error(conversation.id, str(e), current.value))

    async def handle_approval(
        self,
        db: AsyncSession,
        conversation: Conversation,
        project: Project,
        approved: bool,
        feedback: str | None,
        stream: EventStream,
        record_message: bool = True,
    ) -> None:
        plan = await self._current_plan(db, conversation)
        if plan is None or ConversationPhase(conversation.current_phase) is not ConversationPhase.APPROVAL:
            stream.emit(OrchestratorEvent.error(conversation.id, "No plan to approve", conversation.current_phase))
            return

        if approved:
            plan_service.approve(plan, conversation.user_id)
            stream.emit(OrchestratorEvent.plan_approved(conversation.id, plan.id))
            if record_message:
                await conversation_service.add_message(
                    db, conversation, "user", "Approved the execution plan", metadata={"action": "approve"}
                )
            await self._start_execution(db, conversation, project, plan, stream)
            return

        if feedback:
            if record_message:
                await conversation_service.add_message(db, conversation, "user", feedback)
            await self._refine(db, conversation, project, plan, feedback, stream)
            return

        plan_service.reject(plan, "User rejected without feedback")
        stream.emit(OrchestratorEvent.plan_rejected(conversation.id, plan.id))
        conversation.current_plan_id = None
        self._force(conversation, ConversationPhase.INTAKE, stream)
        await self._respond(db, conversation, REJECTED_RESPONSE, stream)

    async def handle_file_decision(
        self,
        db: AsyncSession,
        conversation: Conversation,
        project: Project,
        execution_id: uuid.UUID,
        approved: bool,
        stream: EventStream,
        reason: str | None = None,
    ) -> None:
        plan = await self._current_plan(db, conversation)
        execution = await plan_service.get_file_execution(db, execution_id)
        if (
            plan is None
            or execution is None
            or execution.execution_plan_id != plan.id
            or ConversationPhase(conversation.current_phase) is not ConversationPhase.EXECUTING
        ):
            stream.emit(OrchestratorEvent.error(conversation.id, "File execution not found", conversation.current_phase))
            return

        total = len(plan.file_operations or [])
        listener = self._progress_listener(conversation, plan, total, stream)
        stream.add_listener(listener)
        try:
            if approved:
                outcome = await self.engine.continue_execution(db, project, plan, execution, stream)
            else:
                outcome = await self.engine.skip_file(db, project, plan, execution, reason or "User skipped", stream)
        finally:
            stream.remove_listener(listener)
        await self._after_execution(db, conversation, plan, outcome, stream)

    async def cancel(self, db: AsyncSession, conversation: Conversation, project: Project, stream: EventStream) -> None:
        phase = ConversationPhase(conversation.current_phase)
        if phase.is_terminal():
            stream.emit(OrchestratorEvent.error(conversation.id, "Nothing to cancel", phase.value))
            return

        if phase is ConversationPhase.EXECUTING:
            plan = await self._current_plan(db, conversation)
            if plan is not None:
                result = await self.engine.rollback_plan(db, project, plan, stream)
                conversation.meta = {**(conversation.meta or {}), "last_rollback": result.model_dump()}
        if phase in (ConversationPhase.APPROVAL, ConversationPhase.EXECUTING):
            conversation.current_plan_id = None
        if phase is not ConversationPhase.INTAKE:
            self._force(conversation, ConversationPhase.INTAKE, stream)

        conversation.status = "paused"
        stream.emit(OrchestratorEvent.cancelled(conversation.id, "User cancelled"))
        await conversation_service.add_message(
            db, conversation, "assistant", CANCELLED_RESPONSE, MessageType.SYSTEM_NOTICE
        )
        logger.info("Conversation %s cancelled in phase %s", conversation.id, phase.value)

    async def _handle_intake(
        self,
        db: AsyncSession,
        conversation: Conversation,
        project: Project,
        message: str,
        stream: EventStream,
    ) -> None:
        stream.emit(OrchestratorEvent.analyzing_intent(conversation.id))

        previous = await self._current_intent(db, conversation)
        if ConversationPhase(conversation.current_phase) is ConversationPhase.CLARIFICATION and previous:
            intent = await self.classifier.reanalyze_with_clarification(
                db, project, previous, message, conversation.id
            )
        else:
            history = conversation_service.context_history(conversation, self.config.history_messages)
            intent = await self.classifier.analyze(db, project, message, history[:-1], conversation.id)

        conversation.current_intent_id = intent.id
        stream.emit(OrchestratorEvent.intent_analyzed(
            conversation.id, intent.intent_type.value, intent.confidence, intent.intent_type.label
        ))

        if self.classifier.needs_clarification(intent):
            questions = self.classifier.generate_clarification_questions(intent)
            stream.emit(OrchestratorEvent.clarification_needed(conversation.id, questions))
            await conversation_service.add_message(
                db, conversation, "assistant", format_clarification_questions(questions), MessageType.CLARIFICATION
            )
            self._force(conversation, ConversationPhase.CLARIFICATION, stream)
            return

        if intent.intent_type is IntentType.QUESTION:
            if ConversationPhase(conversation.current_phase) is ConversationPhase.CLARIFICATION:
                self._move(conversation, ConversationPhase.INTAKE, stream)
            await self._answer_question(db, conversation, project, intent, message, stream)
            return

        await self._discover_and_plan(db, conversation, project, intent, message, stream)

    async def _answer_question(
        self,
        db: AsyncSession,
        conversation: Conversation,
        project: Project,
        intent: Intent,
        message: str,
        stream: EventStream,
    ) -> None:
        stream.emit(OrchestratorEvent.retrieving_context(conversation.id))
        context = await self.retriever.retrieve(db, project, intent, message, RetrievalOptions(
            max_chunks=self.config.question_max_chunks,
            token_budget=self.config.question_token_budget,
        ))
        stream.emit(OrchestratorEvent.context_retrieved(conversation.id, context.file_count, context.chunk_count))

        top = context.model_copy(update={"chunks": context.top_chunks(self.config.question_context_chunks)})
        system = RESPONDER_SYSTEM.format(project_info=build_project_info(project), tech_stack=build_tech_stack(project))
        try:
            answer = await complete(
                self.client, system, build_question_prompt(message, top.to_prompt_context()),
                max_tokens=self.config.max_tokens, temperature=self.config.temperature,
            )
        except OpenAIError as e:
            logger.error("Question answering failed for conversation %s: %s", conversation.id, e)
            answer = QUESTION_ERROR_RESPONSE
        await self._respond(db, conversation, answer or QUESTION_ERROR_RESPONSE, stream)

    async def _discover_and_plan(
        self,
        db: AsyncSession,
        conversation: Conversation,
        project: Project,
        intent: Intent,
        message: str,
        stream: EventStream,
    ) -> None:
        self._move(conversation, ConversationPhase.DISCOVERY, stream)
        stream.emit(OrchestratorEvent.retrieving_context(conversation.id))
        context = await self.retriever.retrieve(db, project, intent, message, RetrievalOptions(
            max_chunks=self.config.discovery_max_chunks,
            token_budget=self.config.discovery_token_budget,
            include_dependencies=True,
            depth=self.config.discovery_depth,
        ))
        stream.emit(OrchestratorEvent.context_retrieved(conversation.id, context.file_count, context.chunk_count))
        conversation.context_summary = {
            "files_found": context.file_count,
            "chunks_found": context.chunk_count,
            "entry_points": context.entry_points[:5],
        }

        self._move(conversation, ConversationPhase.PLANNING, stream)
        stream.emit(OrchestratorEvent.generating_plan(conversation.id))
        plan = await self.planner.generate_plan(db, project, intent, message, conversation.id)
        conversation.current_plan_id = plan.id

        if PlanStatus(plan.status) is not PlanStatus.PENDING_REVIEW:
            await self._report_plan_failure(db, conversation, plan, stream)
            return

        await self._present_plan(db, conversation, project, plan, stream, context)
        self._move(conversation, ConversationPhase.APPROVAL, stream)
        stream.emit(OrchestratorEvent.awaiting_approval(conversation.id, plan.id))

    async def _refine(
        self,
        db: AsyncSession,
        conversation: Conversation,
        project: Project,
        plan: ExecutionPlan,
        feedback: str,
        stream: EventStream,
    ) -> None:
        stream.emit(OrchestratorEvent.generating_plan(conversation.id))
        refined = await self.planner.refine_plan(db, project, plan, feedback)
        if PlanStatus(refined.status) is not PlanStatus.PENDING_REVIEW:
            error = (refined.plan_data or {}).get("error", "unknown error")
            stream.emit(OrchestratorEvent.error(conversation.id, f"Plan refinement failed: {error}", "approval"))
            await conversation_service.add_message(
                db, conversation, "assistant",
                f"I couldn't update the plan: {error}. The previous plan is still awaiting your approval.",
                MessageType.ERROR,
            )
            return

        conversation.current_plan_id = refined.id
        await self._present_plan(db, conversation, project, refined, stream)
        stream.emit(OrchestratorEvent.awaiting_approval(conversation.id, refined.id))

    async def _present_plan(
        self,
        db: AsyncSession,
        conversation: Conversation,
        project: Project,
        plan: ExecutionPlan,
        stream: EventStream,
        context: RetrievalResult | None = None,
    ) -> None:
        """Validate and risk-assess ``plan`` and show the results alongside it."""
        validation = await self.planner.validate(db, project, plan)
        risk = self.planner.assess_risk(plan)
        missing_context = identify_missing_context(plan, context) if context is not None else []
        plan.meta = {
            **(plan.meta or {}),
            "validation": validation.model_dump(),
            "risk_level": risk.overall_level,
            "missing_context": missing_context,
        }
        if not validation.is_valid:
            logger.warning("Plan %s presented with problems: %s", plan.id, validation.summary())

        stream.emit(OrchestratorEvent.plan_generated(
            conversation.id, plan.id, plan.title, plan.estimated_files_affected,
            is_valid=validation.is_valid,
            validation_summary=validation.summary(),
            errors=validation.errors,
            missing_files=validation.missing_files,
            circular_dependencies=validation.circular_dependencies,
            warnings=validation.warnings,
            risk_level=risk.overall_level,
            missing_context=missing_context,
        ))
        await conversation_service.add_message(
            db, conversation, "assistant", render_plan_preview(plan, validation, risk, missing_context),
            MessageType.PLAN_PREVIEW,
            {"plan_id": str(plan.id), "is_valid": validation.is_valid, "risk_level": risk.overall_level},
        )

    async def _report_plan_failure(
        self, db: AsyncSession, conversation: Conversation, plan: ExecutionPlan, stream: EventStream
    ) -> None:
        error = (plan.plan_data or {}).get("error", plan.description)
        self._move(conversation, ConversationPhase.FAILED, stream)
        conversation.meta = {**(conversation.meta or {}), "last_error": error}
        await conversation_service.add_message(
            db, conversation, "assistant", f"I wasn't able to create a plan: {error}", MessageType.ERROR,
            {"plan_id": str(plan.id)},
        )
        stream.emit(OrchestratorEvent.error(conversation.id, error, ConversationPhase.PLANNING.value))

    async def _start_execution(
        self,
        db: AsyncSession,
        conversation: Conversation,
        project: Project,
        plan: ExecutionPlan,
        stream: EventStream,
    ) -> None:
        self._move(conversation, ConversationPhase.EXECUTING, stream)
        total = len(plan_operations(plan))
        stream.emit(OrchestratorEvent.execution_started(conversation.id, plan.id, total))

        listener = self._progress_listener(conversation, plan, total, stream)
        stream.add_listener(listener)
        try:
            outcome = await self.engine.execute(db, project, plan, stream)
        finally:
            stream.remove_listener(listener)
        await self._after_execution(db, conversation, plan, outcome, stream)

    def _progress_listener(self, conversation: Conversation, plan: ExecutionPlan, total: int, stream: EventStream):
        done = [sum(1 for e in plan.file_executions if e.status == FileExecutionStatus.COMPLETED.value)]

        def relay(event: PipelineEvent) -> None:
            if event.type == ExecutionEvent.FILE_COMPLETED and event.plan_id == str(plan.id):
                done[0] += 1
                stream.emit(OrchestratorEvent.execution_progress(
                    conversation.id, done[0], total, event.data.get("path")
                ))

        return relay

    async def _after_execution(
        self,
        db: AsyncSession,
        conversation: Conversation,
        plan: ExecutionPlan,
        outcome: ExecutionOutcome,
        stream: EventStream,
    ) -> None:
        for execution in plan.file_executions:
            if execution.status == FileExecutionStatus.FAILED.value and not (execution.meta or {}).get("reported"):
                await conversation_service.add_message(
                    db, conversation, "assistant",
                    f"Failed: {execution.file_path} - {execution.error_message}", MessageType.ERROR,
                    {"path": execution.file_path, "error": execution.error_message},
                )
                execution.meta = {**(execution.meta or {}), "reported": True}

        if outcome.awaiting_approval:
            stream.emit(OrchestratorEvent.file_approval_needed(
                conversation.id, outcome.pending_execution_id, outcome.pending_path
            ))
            return

        stream.emit(OrchestratorEvent.execution_completed(
            conversation.id, outcome.files_completed, outcome.files_failed
        ))
        if outcome.status == "completed":
            self._move(conversation, ConversationPhase.COMPLETED, stream)
            await self._respond(
                db, conversation,
                f"All {outcome.files_completed} file(s) were updated successfully. "
                "The changes have been applied to your project.",
                stream,
            )
            return

        failures = max(outcome.files_failed, 1) if outcome.error else outcome.files_failed
        message = f"Execution completed with {failures} failure(s) out of {outcome.total_files} file(s)."
        await self._fail(db, conversation, message, stream)
        await conversation_service.add_message(db, conversation, "assistant", message, MessageType.ERROR)
        stream.emit(OrchestratorEvent.error(conversation.id, message, ConversationPhase.EXECUTING.value))

    async def _respond(self, db: AsyncSession, conversation: Conversation, text: str, stream: EventStream) -> None:
        stream.emit(OrchestratorEvent.response_chunk(conversation.id, text))
        message = await conversation_service.add_message(db, conversation, "assistant", text)
        stream.emit(OrchestratorEvent.response_complete(conversation.id, message.id))

    async def _fail(self, db: AsyncSession, conversation: Conversation, error: str, stream: EventStream) -> None:
        conversation.meta = {**(conversation.meta or {}), "last_error": error}
        if not ConversationPhase(conversation.current_phase).is_terminal():
            self._force(conversation, ConversationPhase.FAILED, stream)
        await db.flush()

    async def _current_plan(self, db: AsyncSession, conversation: Conversation) -> ExecutionPlan | None:
        if not conversation.current_plan_id:
            return None
        return await plan_service.get_plan(db, conversation.current_plan_id)

    async def _current_intent(self, db: AsyncSession, conversation: Conversation) -> Intent | None:
        if not conversation.current_intent_id:
            return None
        record = await db.get(IntentAnalysis, conversation.current_intent_id)
        return intent_from_record(record) if record else None

    @staticmethod
    def _move(conversation: Conversation, target: ConversationPhase, stream: EventStream) -> None:
        source = transition_phase(conversation, target)
        stream.emit(OrchestratorEvent.phase_changed(conversation.id, source.value, target.value))

    @staticmethod
    def _force(conversation: Conversation, target: ConversationPhase, stream: EventStream) -> None:
        source = force_phase(conversation, target)
        stream.emit(OrchestratorEvent.phase_changed(conversation.id, source.value, target.value))
