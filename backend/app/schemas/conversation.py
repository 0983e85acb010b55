import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from app.pipeline.states import ConversationPhase


class MessageType(str, Enum):
    TEXT = "text"
    PLAN_PREVIEW = "plan_preview"
    FILE_DIFF = "file_diff"
    APPROVAL_REQUEST = "approval_request"
    EXECUTION_UPDATE = "execution_update"
    ERROR = "error"
    CLARIFICATION = "clarification"
    CODE_CONTEXT = "code_context"
    SYSTEM_NOTICE = "system_notice"


class ConversationCreate(BaseModel):
    user_id: str | None = None
    title: str | None = None


class ConversationResponse(BaseModel):
    id: uuid.UUID
    project_id: uuid.UUID
    title: str | None
    status: str
    current_phase: str
    current_intent_id: uuid.UUID | None
    current_plan_id: uuid.UUID | None
    context_summary: dict | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class MessageResponse(BaseModel):
    id: uuid.UUID
    role: str
    content: str
    message_type: str
    created_at: datetime

    model_config = {"from_attributes": True}


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=10000)


class ApprovalRequest(BaseModel):
    approved: bool
    feedback: str | None = None


class FileDecision(BaseModel):
    reason: str | None = None


class IntentCheckRequest(BaseModel):
    message: str = Field(min_length=1)


class PendingExecution(BaseModel):
    id: uuid.UUID
    operation_index: int
    file_path: str
    status: str

    model_config = {"from_attributes": True}


class ConversationState(BaseModel):
    conversation_id: uuid.UUID
    phase: str
    phase_label: str
    phase_description: str
    status: str
    title: str | None
    current_intent_id: uuid.UUID | None = None
    current_plan_id: uuid.UUID | None = None
    pending_executions: list[PendingExecution] | None = None
    available_actions: list[str] = []
    metadata: dict = {}

    def is_awaiting_approval(self) -> bool:
        return self.phase == ConversationPhase.APPROVAL.value

    def is_executing(self) -> bool:
        return self.phase == ConversationPhase.EXECUTING.value

    def is_terminal(self) -> bool:
        return ConversationPhase(self.phase).is_terminal()

    def can_send_message(self) -> bool:
        return "send_message" in self.available_actions
