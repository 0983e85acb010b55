import asyncio
import logging
import uuid
from collections import defaultdict
from collections.abc import Awaitable, Callable

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_db, get_orchestrator
from app.models.conversation import Conversation
from app.models.project import Project
from app.pipeline.events import EventStream
from app.pipeline.intent_classifier import detect_multiple_intents
from app.pipeline.orchestrator import ConversationOrchestrator
from app.schemas.conversation import (
    ApprovalRequest,
    ConversationCreate,
    ConversationResponse,
    ConversationState,
    FileDecision,
    IntentCheckRequest,
    MessageResponse,
    SendMessageRequest,
)
from app.schemas.intent import MultiIntentReport
from app.services import conversation_service, project_service
from app.utils.sse import relay, sse_done, sse_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/projects/{project_id}/conversations", tags=["conversations"])

# One pipeline run per conversation at a time
_conversation_locks: dict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)


async def _load(db: AsyncSession, project_id: uuid.UUID, conversation_id: uuid.UUID) -> tuple[Project, Conversation]:
    project = await project_service.get_project(db, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    conversation = await conversation_service.get_conversation(db, conversation_id)
    if not conversation or conversation.project_id != project_id:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return project, conversation


def _stream_run(
    db: AsyncSession,
    conversation: Conversation,
    run: Callable[[EventStream], Awaitable[None]],
) -> StreamingResponse:
    lock = _conversation_locks[conversation.id]
    if lock.locked():
        raise HTTPException(status_code=409, detail="Conversation is busy")

    async def event_stream():
        async with lock:
            stream = EventStream()
            try:
                async for chunk in relay(stream, run(stream)):
                    yield chunk
                await db.commit()
            except Exception as e:
                logger.exception("Pipeline run failed for conversation %s", conversation.id)
                await db.rollback()
                yield sse_error(str(e))
                yield sse_done()
                return
            state = await conversation_service.get_state(db, conversation)
            yield sse_done(state.model_dump(mode="json"))

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@router.get("", response_model=list[ConversationResponse])
async def list_conversations(project_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    return await conversation_service.list_conversations(db, project_id)


@router.post("", response_model=ConversationResponse, status_code=201)
async def create_conversation(project_id: uuid.UUID, data: ConversationCreate, db: AsyncSession = Depends(get_db)):
    project = await project_service.get_project(db, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return await conversation_service.create_conversation(db, project_id, data)


@router.post("/intent-check", response_model=MultiIntentReport)
async def check_intents(project_id: uuid.UUID, data: IntentCheckRequest):
    return detect_multiple_intents(data.message)


@router.get("/{conversation_id}", response_model=ConversationState)
async def get_conversation_state(
    project_id: uuid.UUID, conversation_id: uuid.UUID, db: AsyncSession = Depends(get_db)
):
    _, conversation = await _load(db, project_id, conversation_id)
    return await conversation_service.get_state(db, conversation)


@router.get("/{conversation_id}/messages", response_model=list[MessageResponse])
async def get_messages(project_id: uuid.UUID, conversation_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    await _load(db, project_id, conversation_id)
    return await conversation_service.get_messages(db, conversation_id)


@router.delete("/{conversation_id}", status_code=204)
async def delete_conversation(project_id: uuid.UUID, conversation_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    await _load(db, project_id, conversation_id)
    await conversation_service.delete_conversation(db, conversation_id)


@router.post("/{conversation_id}/messages")
async def send_message(
    project_id: uuid.UUID,
    conversation_id: uuid.UUID,
    data: SendMessageRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    project, conversation = await _load(db, project_id, conversation_id)
    return _stream_run(
        db, conversation,
        lambda stream: orchestrator.process_message(db, conversation, project, data.content, stream),
    )


@router.post("/{conversation_id}/approval")
async def decide_plan(
    project_id: uuid.UUID,
    conversation_id: uuid.UUID,
    data: ApprovalRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    project, conversation = await _load(db, project_id, conversation_id)
    return _stream_run(
        db, conversation,
        lambda stream: orchestrator.handle_approval(db, conversation, project, data.approved, data.feedback, stream),
    )


@router.post("/{conversation_id}/executions/{execution_id}/approve")
async def approve_file(
    project_id: uuid.UUID,
    conversation_id: uuid.UUID,
    execution_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    project, conversation = await _load(db, project_id, conversation_id)
    return _stream_run(
        db, conversation,
        lambda stream: orchestrator.handle_file_decision(db, conversation, project, execution_id, True, stream),
    )


@router.post("/{conversation_id}/executions/{execution_id}/skip")
async def skip_file(
    project_id: uuid.UUID,
    conversation_id: uuid.UUID,
    execution_id: uuid.UUID,
    data: FileDecision,
    db: AsyncSession = Depends(get_db),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    project, conversation = await _load(db, project_id, conversation_id)
    return _stream_run(
        db, conversation,
        lambda stream: orchestrator.handle_file_decision(
            db, conversation, project, execution_id, False, stream, data.reason
        ),
    )


@router.post("/{conversation_id}/cancel")
async def cancel(
    project_id: uuid.UUID,
    conversation_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    project, conversation = await _load(db, project_id, conversation_id)
    return _stream_run(db, conversation, lambda stream: orchestrator.cancel(db, conversation, project, stream))


@router.post("/{conversation_id}/resume", response_model=ConversationState)
async def resume(project_id: uuid.UUID, conversation_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    _, conversation = await _load(db, project_id, conversation_id)
    await conversation_service.resume(db, conversation)
    return await conversation_service.get_state(db, conversation)
