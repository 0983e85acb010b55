"""Shared test fixtures for the changepilot backend."""

import uuid
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.models.conversation import Conversation
from app.models.execution_plan import ExecutionPlan, FileExecution
from app.models.project import Project
from app.pipeline.states import ConversationPhase, PlanStatus
from app.services.code_index import ChunkEntry, CodeIndex, FileEntry, RouteEntry


@pytest.fixture
def repo_path(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    return path


@pytest.fixture
def project(repo_path: Path) -> Project:
    return Project(
        id=uuid.uuid4(),
        repo_full_name="acme/shop",
        default_branch="main",
        repo_path=str(repo_path),
        knowledge_path=None,
        stack_info={"framework": "laravel", "framework_version": "11", "frontend": ["vue", "inertia"]},
        total_files=120,
        total_lines=8400,
        last_kb_scan_id="scan-1",
    )


@pytest.fixture
def conversation(project: Project) -> Conversation:
    return Conversation(
        id=uuid.uuid4(),
        project_id=project.id,
        user_id="dev-1",
        title=None,
        status="active",
        current_phase=ConversationPhase.INTAKE.value,
        meta={},
        messages=[],
    )


@pytest.fixture
def db() -> MagicMock:
    """Async session stand-in: writes are recorded, nothing is persisted."""
    session = MagicMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.get = AsyncMock(return_value=None)
    session.execute = AsyncMock()
    return session


@pytest.fixture
def make_plan(project: Project):
    def factory(operations: list[dict], status: PlanStatus = PlanStatus.APPROVED, **fields) -> ExecutionPlan:
        return ExecutionPlan(
            id=uuid.uuid4(),
            project_id=project.id,
            conversation_id=fields.pop("conversation_id", None),
            intent_id=None,
            status=status.value,
            title=fields.pop("title", "Add export"),
            description=fields.pop("description", "Adds CSV export to orders"),
            plan_data={},
            file_operations=operations,
            estimated_complexity=fields.pop("estimated_complexity", "medium"),
            estimated_files_affected=len(operations),
            risks=fields.pop("risks", []),
            prerequisites=[],
            refinement_count=0,
            meta={},
            file_executions=[],
            **fields,
        )

    return factory


@pytest.fixture
def make_execution():
    def factory(plan: ExecutionPlan, index: int, path: str, status: str = "completed", **fields) -> FileExecution:
        execution = FileExecution(
            id=uuid.uuid4(),
            execution_plan_id=plan.id,
            operation_index=index,
            operation_type=fields.pop("operation_type", "modify"),
            file_path=path,
            status=status,
            user_approved=False,
            auto_approved=True,
            meta={},
            **fields,
        )
        plan.file_executions.append(execution)
        return execution

    return factory


@pytest.fixture
def code_index() -> CodeIndex:
    files = [
        FileEntry(
            path="app/Http/Controllers/OrderController.php",
            language="php",
            symbols_declared=[{"name": "OrderController", "type": "class", "extends": "Controller"}],
            imports=["App\\Models\\Order", "App\\Services\\OrderService"],
        ),
        FileEntry(
            path="app/Http/Controllers/Controller.php",
            language="php",
            symbols_declared=[{"name": "Controller", "type": "class"}],
        ),
        FileEntry(
            path="app/Models/Order.php",
            language="php",
            symbols_declared=[{"name": "Order", "type": "class", "uses": ["HasFactory"]}],
        ),
        FileEntry(
            path="app/Models/Concerns/HasFactory.php",
            language="php",
            symbols_declared=[{"name": "HasFactory", "type": "trait"}],
        ),
        FileEntry(
            path="app/Services/OrderService.php",
            language="php",
            symbols_declared=[{"name": "OrderService", "type": "class"}],
        ),
        FileEntry(path="resources/js/Pages/Orders/Index.vue", language="vue", imports=["./Row"]),
        FileEntry(path="resources/js/Pages/Orders/Row.vue", language="vue"),
        FileEntry(path="public/logo.png", is_binary=True),
    ]
    chunks = [
        ChunkEntry(
            chunk_id="c1",
            path="app/Http/Controllers/OrderController.php",
            start_line=1,
            end_line=40,
            symbols_declared=[{"name": "OrderController", "type": "class"}],
            symbols_used=[{"symbol": "OrderService"}],
        ),
        ChunkEntry(
            chunk_id="c2",
            path="app/Models/Order.php",
            start_line=1,
            end_line=30,
            symbols_declared=[{"name": "Order", "type": "class"}],
        ),
        ChunkEntry(
            chunk_id="c3",
            path="app/Services/OrderService.php",
            start_line=1,
            end_line=25,
            symbols_declared=[{"name": "OrderService", "type": "class"}],
            symbols_used=["Order"],
        ),
        ChunkEntry(
            chunk_id="c4",
            path="resources/js/Pages/Orders/Index.vue",
            start_line=1,
            end_line=20,
            is_complete_file=True,
        ),
    ]
    routes = [
        RouteEntry(uri="orders", method="GET", controller="OrderController", action="index",
                   name="orders.index", file="web.php"),
        RouteEntry(uri="orders/{order}", method="GET", controller="OrderController", action="show",
                   name="orders.show", file="web.php"),
        RouteEntry(uri="api/orders", method="POST", controller="Api\\OrderController", action="store",
                   name="api.orders.store", file="api.php"),
        RouteEntry(uri="about", method="GET", view="pages.about", file="web.php", type="view"),
    ]
    return CodeIndex(files=files, chunks=chunks, routes=routes, scan_id="scan-1")


def write_file(root: Path, relative: str, content: str) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def llm_client(*replies) -> MagicMock:
    """Reasoning-service client whose completions return ``replies`` in order.

    A reply that is an exception instance is raised instead of returned.
    """
    def response(reply):
        if isinstance(reply, Exception):
            return reply
        message = MagicMock()
        message.content = reply
        choice = MagicMock()
        choice.message = message
        completion = MagicMock()
        completion.choices = [choice]
        return completion

    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=[response(r) for r in replies])
    return client
