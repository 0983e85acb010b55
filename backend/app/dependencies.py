from collections.abc import AsyncGenerator

from openai import AsyncOpenAI
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.engine import async_session_factory
from app.pipeline.orchestrator import ConversationOrchestrator


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        yield session


def get_openai_client() -> AsyncOpenAI:
    kwargs: dict = {"api_key": settings.openai_api_key, "timeout": settings.openai_timeout}
    if settings.openai_base_url:
        kwargs["base_url"] = settings.openai_base_url
    return AsyncOpenAI(**kwargs)


def get_orchestrator() -> ConversationOrchestrator:
    return ConversationOrchestrator(get_openai_client())
