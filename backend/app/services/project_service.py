import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.project import Project
from app.schemas.project import ProjectCreate, ProjectRescan, ProjectUpdate
from app.services.retrieval_cache import RetrievalCache

logger = logging.getLogger(__name__)


async def create_project(db: AsyncSession, data: ProjectCreate) -> Project:
    project = Project(id=uuid.uuid4(), **data.model_dump())
    db.add(project)
    await db.commit()
    await db.refresh(project)
    return project


async def list_projects(db: AsyncSession) -> list[Project]:
    result = await db.execute(select(Project).order_by(Project.created_at.desc()))
    return list(result.scalars().all())


async def get_project(db: AsyncSession, project_id: uuid.UUID) -> Project | None:
    return await db.get(Project, project_id)


async def update_project(db: AsyncSession, project_id: uuid.UUID, data: ProjectUpdate) -> Project | None:
    project = await db.get(Project, project_id)
    if not project:
        return None
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(project, field, value)
    await db.commit()
    await db.refresh(project)
    return project


async def mark_rescanned(
    db: AsyncSession, project_id: uuid.UUID, data: ProjectRescan, cache: RetrievalCache | None = None
) -> Project | None:
    """Point the project at a new index scan and drop every cached retrieval input."""
    project = await db.get(Project, project_id)
    if not project:
        return None
    cache = cache or RetrievalCache()
    await cache.invalidate_project(db, project)
    project.last_kb_scan_id = data.scan_id
    if data.total_files is not None:
        project.total_files = data.total_files
    if data.total_lines is not None:
        project.total_lines = data.total_lines
    await db.commit()
    await db.refresh(project)
    logger.info("Project %s re-scanned (scan %s)", project.id, data.scan_id)
    return project


async def delete_project(db: AsyncSession, project_id: uuid.UUID) -> bool:
    project = await db.get(Project, project_id)
    if not project:
        return False
    await db.delete(project)
    await db.commit()
    return True
