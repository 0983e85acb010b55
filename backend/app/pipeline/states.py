"""Conversation phase and plan status state machines.

Both the orchestrator and the execution engine move conversations and plans
through the helpers in this module; nothing else assigns ``current_phase`` or
``status`` directly.
"""
from enum import Enum

from app.models.conversation import Conversation
from app.models.execution_plan import ExecutionPlan


class IllegalTransitionError(RuntimeError):
    def __init__(self, kind: str, source: str, target: str):
        super().__init__(f"Illegal {kind} transition: {source} -> {target}")
        self.kind = kind
        self.source = source
        self.target = target


class ConversationPhase(str, Enum):
    INTAKE = "intake"
    CLARIFICATION = "clarification"
    DISCOVERY = "discovery"
    PLANNING = "planning"
    APPROVAL = "approval"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def label(self) -> str:
        return _PHASE_LABELS[self][0]

    @property
    def description(self) -> str:
        return _PHASE_LABELS[self][1]

    def is_terminal(self) -> bool:
        return self in (ConversationPhase.COMPLETED, ConversationPhase.FAILED)

    def is_active(self) -> bool:
        return self in (ConversationPhase.DISCOVERY, ConversationPhase.PLANNING, ConversationPhase.EXECUTING)

    def requires_user_action(self) -> bool:
        return self in (ConversationPhase.CLARIFICATION, ConversationPhase.APPROVAL)

    def can_transition_to(self, target: "ConversationPhase") -> bool:
        return target in PHASE_TRANSITIONS[self]


_PHASE_LABELS = {
    ConversationPhase.INTAKE: ("Receiving Request", "Understanding what you want to do"),
    ConversationPhase.CLARIFICATION: ("Gathering Details", "Need more information to proceed"),
    ConversationPhase.DISCOVERY: ("Analyzing Codebase", "Finding relevant code and context"),
    ConversationPhase.PLANNING: ("Creating Plan", "Designing the implementation approach"),
    ConversationPhase.APPROVAL: ("Awaiting Approval", "Review the plan before execution"),
    ConversationPhase.EXECUTING: ("Making Changes", "Applying code changes"),
    ConversationPhase.COMPLETED: ("Completed", "All changes applied successfully"),
    ConversationPhase.FAILED: ("Failed", "An error occurred during processing"),
}

PHASE_TRANSITIONS: dict[ConversationPhase, frozenset[ConversationPhase]] = {
    ConversationPhase.INTAKE: frozenset({
        ConversationPhase.CLARIFICATION, ConversationPhase.DISCOVERY, ConversationPhase.FAILED,
    }),
    ConversationPhase.CLARIFICATION: frozenset({
        ConversationPhase.INTAKE, ConversationPhase.DISCOVERY, ConversationPhase.FAILED,
    }),
    ConversationPhase.DISCOVERY: frozenset({ConversationPhase.PLANNING, ConversationPhase.FAILED}),
    ConversationPhase.PLANNING: frozenset({ConversationPhase.APPROVAL, ConversationPhase.FAILED}),
    ConversationPhase.APPROVAL: frozenset({
        ConversationPhase.EXECUTING, ConversationPhase.PLANNING, ConversationPhase.INTAKE, ConversationPhase.FAILED,
    }),
    ConversationPhase.EXECUTING: frozenset({ConversationPhase.COMPLETED, ConversationPhase.FAILED}),
    ConversationPhase.COMPLETED: frozenset(),
    ConversationPhase.FAILED: frozenset(),
}


class PlanStatus(str, Enum):
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_modifiable(self) -> bool:
        return self in (PlanStatus.DRAFT, PlanStatus.PENDING_REVIEW, PlanStatus.REJECTED)

    def can_execute(self) -> bool:
        return self is PlanStatus.APPROVED

    def is_terminal(self) -> bool:
        return self in (PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.REJECTED)

    def can_transition_to(self, target: "PlanStatus") -> bool:
        return target in PLAN_TRANSITIONS[self]


# completed -> failed is only taken by a rollback pass
PLAN_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.DRAFT: frozenset({PlanStatus.PENDING_REVIEW, PlanStatus.REJECTED}),
    PlanStatus.PENDING_REVIEW: frozenset({PlanStatus.APPROVED, PlanStatus.REJECTED, PlanStatus.DRAFT}),
    PlanStatus.APPROVED: frozenset({PlanStatus.EXECUTING, PlanStatus.REJECTED}),
    PlanStatus.REJECTED: frozenset({PlanStatus.DRAFT}),
    PlanStatus.EXECUTING: frozenset({PlanStatus.COMPLETED, PlanStatus.FAILED}),
    PlanStatus.COMPLETED: frozenset({PlanStatus.FAILED}),
    PlanStatus.FAILED: frozenset({PlanStatus.DRAFT, PlanStatus.APPROVED}),
}


class FileExecutionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"

    def is_terminal(self) -> bool:
        return self not in (FileExecutionStatus.PENDING, FileExecutionStatus.IN_PROGRESS)


def _status_for_phase(phase: ConversationPhase, current: str) -> str:
    if phase is ConversationPhase.COMPLETED:
        return "completed"
    if phase is ConversationPhase.FAILED:
        return "failed"
    return current if current == "paused" else "active"


def transition_phase(conversation: Conversation, target: ConversationPhase) -> ConversationPhase:
    """Move a conversation along a legal edge and return the phase it left."""
    source = ConversationPhase(conversation.current_phase)
    if not source.can_transition_to(target):
        raise IllegalTransitionError("phase", source.value, target.value)
    conversation.current_phase = target.value
    conversation.status = _status_for_phase(target, conversation.status)
    return source


def force_phase(conversation: Conversation, target: ConversationPhase) -> ConversationPhase:
    """Set a phase without consulting the edge table. Terminal phases are never left."""
    source = ConversationPhase(conversation.current_phase)
    if source.is_terminal() and source is not target:
        raise IllegalTransitionError("phase", source.value, target.value)
    conversation.current_phase = target.value
    conversation.status = _status_for_phase(target, conversation.status)
    return source


def transition_plan(plan: ExecutionPlan, target: PlanStatus) -> PlanStatus:
    source = PlanStatus(plan.status)
    if not source.can_transition_to(target):
        raise IllegalTransitionError("plan status", source.value, target.value)
    plan.status = target.value
    return source
