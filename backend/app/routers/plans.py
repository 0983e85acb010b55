import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.dependencies import get_db, get_orchestrator
from app.models.execution_plan import ExecutionPlan
from app.models.project import Project
from app.pipeline.orchestrator import ConversationOrchestrator
from app.pipeline.planner import render_plan_preview
from app.schemas.execution import RollbackResult
from app.schemas.plan import FileExecutionResponse, PlanResponse, RiskAssessment, ValidationResult
from app.services import plan_service, project_service

router = APIRouter(prefix="/api/v1/projects/{project_id}/plans", tags=["plans"])


async def _load(db: AsyncSession, project_id: uuid.UUID, plan_id: uuid.UUID) -> tuple[Project, ExecutionPlan]:
    project = await project_service.get_project(db, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    plan = await plan_service.get_plan(db, plan_id)
    if not plan or plan.project_id != project_id:
        raise HTTPException(status_code=404, detail="Plan not found")
    return project, plan


@router.get("", response_model=list[PlanResponse])
async def list_plans(project_id: uuid.UUID, conversation_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    return await plan_service.list_plans(db, conversation_id)


@router.get("/{plan_id}", response_model=PlanResponse)
async def get_plan(project_id: uuid.UUID, plan_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    _, plan = await _load(db, project_id, plan_id)
    return plan


@router.get("/{plan_id}/preview")
async def get_plan_preview(project_id: uuid.UUID, plan_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    _, plan = await _load(db, project_id, plan_id)
    return {"plan_id": str(plan.id), "markdown": render_plan_preview(plan)}


@router.get("/{plan_id}/executions", response_model=list[FileExecutionResponse])
async def list_executions(project_id: uuid.UUID, plan_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    _, plan = await _load(db, project_id, plan_id)
    return plan.file_executions


@router.post("/{plan_id}/validate", response_model=ValidationResult)
async def validate_plan(
    project_id: uuid.UUID,
    plan_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    project, plan = await _load(db, project_id, plan_id)
    return await orchestrator.planner.validate(db, project, plan)


@router.get("/{plan_id}/risk", response_model=RiskAssessment)
async def assess_risk(
    project_id: uuid.UUID,
    plan_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    _, plan = await _load(db, project_id, plan_id)
    return orchestrator.planner.assess_risk(plan)


@router.post("/{plan_id}/rollback", response_model=RollbackResult)
async def rollback_plan(
    project_id: uuid.UUID,
    plan_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    project, plan = await _load(db, project_id, plan_id)
    result = await orchestrator.engine.rollback_plan(db, project, plan)
    await db.commit()
    return result
