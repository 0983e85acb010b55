import uuid
from datetime import datetime

from pydantic import BaseModel


class ProjectCreate(BaseModel):
    repo_full_name: str
    repo_path: str
    default_branch: str = "main"
    knowledge_path: str | None = None
    stack_info: dict | None = None
    total_files: int = 0
    total_lines: int = 0
    last_kb_scan_id: str | None = None


class ProjectUpdate(BaseModel):
    default_branch: str | None = None
    knowledge_path: str | None = None
    stack_info: dict | None = None
    total_files: int | None = None
    total_lines: int | None = None


class ProjectRescan(BaseModel):
    scan_id: str
    total_files: int | None = None
    total_lines: int | None = None


class ProjectResponse(BaseModel):
    id: uuid.UUID
    repo_full_name: str
    default_branch: str
    repo_path: str
    knowledge_path: str | None
    stack_info: dict | None
    total_files: int
    total_lines: int
    last_kb_scan_id: str | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
