import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.conversation import Conversation, ConversationMessage
from app.models.execution_plan import ExecutionPlan
from app.pipeline.states import ConversationPhase, FileExecutionStatus
from app.schemas.conversation import ConversationCreate, ConversationState, MessageType, PendingExecution

logger = logging.getLogger(__name__)

_HISTORY_TYPES = (MessageType.TEXT.value, MessageType.CLARIFICATION.value)


async def create_conversation(db: AsyncSession, project_id: uuid.UUID, data: ConversationCreate) -> Conversation:
    conversation = Conversation(
        id=uuid.uuid4(),
        project_id=project_id,
        user_id=data.user_id,
        title=data.title,
        status="active",
        current_phase=ConversationPhase.INTAKE.value,
        meta={},
    )
    db.add(conversation)
    await db.commit()
    await db.refresh(conversation)
    return conversation


async def list_conversations(db: AsyncSession, project_id: uuid.UUID) -> list[Conversation]:
    result = await db.execute(
        select(Conversation)
        .where(Conversation.project_id == project_id)
        .order_by(Conversation.updated_at.desc())
    )
    return list(result.scalars().all())


async def get_conversation(db: AsyncSession, conversation_id: uuid.UUID) -> Conversation | None:
    return await db.get(Conversation, conversation_id)


async def delete_conversation(db: AsyncSession, conversation_id: uuid.UUID) -> bool:
    conversation = await db.get(Conversation, conversation_id)
    if not conversation:
        return False
    await db.delete(conversation)
    await db.commit()
    return True


async def add_message(
    db: AsyncSession,
    conversation: Conversation,
    role: str,
    content: str,
    message_type: MessageType = MessageType.TEXT,
    metadata: dict | None = None,
) -> ConversationMessage:
    message = ConversationMessage(
        id=uuid.uuid4(),
        conversation_id=conversation.id,
        role=role,
        content=content,
        message_type=message_type.value,
        meta=metadata or {},
    )
    conversation.messages.append(message)
    await db.flush()
    return message


async def get_messages(db: AsyncSession, conversation_id: uuid.UUID) -> list[ConversationMessage]:
    result = await db.execute(
        select(ConversationMessage)
        .where(ConversationMessage.conversation_id == conversation_id)
        .order_by(ConversationMessage.created_at)
    )
    return list(result.scalars().all())


def context_history(conversation: Conversation, limit: int | None = None) -> list[dict]:
    """Recent user/assistant turns used as classification context."""
    limit = limit or settings.orchestrator.history_messages
    turns = [
        {"role": m.role, "content": m.content}
        for m in conversation.messages
        if m.role in ("user", "assistant") and m.message_type in _HISTORY_TYPES
    ]
    return turns[-limit:]


def make_title(message: str, max_length: int | None = None) -> str:
    max_length = max_length or settings.orchestrator.title_max_length
    title = " ".join(message.split())
    if len(title) <= max_length:
        return title
    cut = title[:max_length]
    space = cut.rfind(" ")
    if space > 30:
        cut = cut[:space]
    return cut.rstrip() + "..."


def available_actions(conversation: Conversation) -> list[str]:
    if conversation.status == "paused":
        return ["resume"]

    phase = ConversationPhase(conversation.current_phase)
    if phase.is_terminal():
        return ["new_conversation", "retry"] if phase is ConversationPhase.FAILED else ["new_conversation"]

    actions = ["send_message", "cancel"]
    if phase is ConversationPhase.APPROVAL:
        actions += ["approve_plan", "reject_plan", "request_changes"]
    if phase is ConversationPhase.EXECUTING:
        actions += ["approve_file", "skip_file", "rollback"]
    return actions


async def get_state(db: AsyncSession, conversation: Conversation) -> ConversationState:
    phase = ConversationPhase(conversation.current_phase)
    pending = None
    if phase is ConversationPhase.EXECUTING and conversation.current_plan_id:
        plan = await db.get(ExecutionPlan, conversation.current_plan_id)
        if plan is not None:
            pending = [
                PendingExecution.model_validate(e) for e in plan.file_executions
                if e.status in (FileExecutionStatus.PENDING.value, FileExecutionStatus.IN_PROGRESS.value)
            ]

    return ConversationState(
        conversation_id=conversation.id,
        phase=phase.value,
        phase_label=phase.label,
        phase_description=phase.description,
        status=conversation.status,
        title=conversation.title,
        current_intent_id=conversation.current_intent_id,
        current_plan_id=conversation.current_plan_id,
        pending_executions=pending,
        available_actions=available_actions(conversation),
        metadata={
            "message_count": len(conversation.messages),
            "created_at": conversation.created_at.isoformat() if conversation.created_at else None,
            "updated_at": conversation.updated_at.isoformat() if conversation.updated_at else None,
            "context_summary": conversation.context_summary,
        },
    )


async def resume(db: AsyncSession, conversation: Conversation) -> Conversation:
    if conversation.status == "paused":
        conversation.status = "active"
        await db.commit()
        logger.info("Conversation %s resumed", conversation.id)
    return conversation
