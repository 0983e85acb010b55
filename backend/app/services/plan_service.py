import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.execution_plan import ExecutionPlan, FileExecution
from app.pipeline.states import FileExecutionStatus, PlanStatus, transition_plan


async def get_plan(db: AsyncSession, plan_id: uuid.UUID) -> ExecutionPlan | None:
    return await db.get(ExecutionPlan, plan_id)


async def list_plans(db: AsyncSession, conversation_id: uuid.UUID) -> list[ExecutionPlan]:
    result = await db.execute(
        select(ExecutionPlan)
        .where(ExecutionPlan.conversation_id == conversation_id)
        .order_by(ExecutionPlan.created_at)
    )
    return list(result.scalars().all())


async def get_file_execution(db: AsyncSession, execution_id: uuid.UUID) -> FileExecution | None:
    return await db.get(FileExecution, execution_id)


def pending_execution(plan: ExecutionPlan) -> FileExecution | None:
    for execution in plan.file_executions:
        if execution.status == FileExecutionStatus.PENDING.value:
            return execution
    return None


def approve(plan: ExecutionPlan, approved_by: str | None = None) -> None:
    transition_plan(plan, PlanStatus.APPROVED)
    plan.approved_at = datetime.now(timezone.utc)
    plan.approved_by = approved_by


def reject(plan: ExecutionPlan, feedback: str | None = None) -> None:
    transition_plan(plan, PlanStatus.REJECTED)
    if feedback:
        plan.user_feedback = feedback
