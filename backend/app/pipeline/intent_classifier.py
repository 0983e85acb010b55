import json
import logging
import re
import time
import uuid

from openai import AsyncOpenAI, OpenAIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import IntentSettings, settings
from app.models.intent_analysis import IntentAnalysis
from app.models.project import Project
from app.pipeline.llm import complete, extract_json_object
from app.pipeline.prompts.intent_classifier import INTENT_CLASSIFIER_SYSTEM, build_intent_user_prompt
from app.schemas.intent import (
    ComplexityLevel, DomainClassification, ExtractedEntities, Intent, IntentType, MultiIntentReport,
)

logger = logging.getLogger(__name__)

MULTI_INTENT_INDICATORS = {
    "feature_request": [r"\b(add|create|build|implement|new)\b", r"\b(feature|functionality)\b"],
    "bug_fix": [r"\b(fix|bug|broken|error|crash|issue)\b", r"\b(doesn't work|not working)\b"],
    "test_writing": [r"\b(test|tests|testing|spec)\b"],
    "refactoring": [r"\b(refactor|cleanup|clean up|improve|optimize)\b"],
    "question": [r"\b(how|what|where|why|explain)\b", r"\?\s*$"],
}

MULTI_INTENT_SUGGESTION = (
    "Your message seems to contain multiple requests. "
    "Consider breaking them into separate messages for better results."
)


def detect_multiple_intents(message: str) -> MultiIntentReport:
    """Keyword heuristic run before classification; no reasoning-service call."""
    detected = [
        intent for intent, patterns in MULTI_INTENT_INDICATORS.items()
        if any(re.search(p, message, re.IGNORECASE) for p in patterns)
    ]
    is_multi = len(detected) > 1
    return MultiIntentReport(
        is_multi_intent=is_multi,
        detected_intents=detected,
        suggestion=MULTI_INTENT_SUGGESTION if is_multi else None,
    )


def format_project_info(project: Project) -> str:
    return json.dumps({
        "name": project.repo_full_name,
        "default_branch": project.default_branch,
        "total_files": project.total_files,
        "total_lines": project.total_lines,
    }, indent=2)


def format_tech_stack(project: Project) -> str:
    stack = project.stack_info or {}
    lines = []
    if stack.get("framework"):
        lines.append(f"Framework: {stack['framework']}")
    for key, label in (("frontend", "Frontend"), ("features", "Features"), ("testing", "Testing")):
        value = stack.get(key)
        if value:
            items = value if isinstance(value, list) else [value]
            lines.append(f"{label}: {', '.join(str(i) for i in items)}")
    return "\n".join(lines) if lines else "Unknown stack"


def intent_from_record(record: IntentAnalysis) -> Intent:
    """Rebuild an immutable Intent from its audit row."""
    return Intent(
        id=record.id,
        message=record.message,
        intent_type=record.intent_type,
        confidence=record.confidence,
        entities=ExtractedEntities.from_payload(record.extracted_entities),
        domain=DomainClassification.from_payload(record.domain_classification),
        complexity=record.complexity,
        requires_clarification=record.requires_clarification,
        clarification_questions=record.clarification_questions or [],
        metadata=record.meta or {},
    )


class IntentClassifier:
    def __init__(self, client: AsyncOpenAI, config: IntentSettings | None = None):
        self.client = client
        self.config = config or settings.intent

    async def analyze(
        self,
        db: AsyncSession,
        project: Project,
        message: str,
        history: list[dict] | None = None,
        conversation_id: uuid.UUID | None = None,
    ) -> Intent:
        started = time.monotonic()
        system = INTENT_CLASSIFIER_SYSTEM.format(
            project_info=format_project_info(project),
            tech_stack=format_tech_stack(project),
            conversation_history=self.format_history(history or []),
        )

        try:
            content = await complete(
                self.client, system, build_intent_user_prompt(message),
                max_tokens=self.config.max_tokens, temperature=self.config.temperature,
            )
        except OpenAIError as e:
            logger.error("Intent analysis failed for project %s: %s", project.id, e)
            intent = Intent.default(message, {"error": str(e)})
        else:
            metadata = {
                "processing_time_ms": round((time.monotonic() - started) * 1000, 2),
                "model": settings.openai_model,
                "raw_response_length": len(content),
            }
            try:
                intent = Intent.from_payload(extract_json_object(content), message, metadata)
            except ValueError as e:
                logger.warning("Failed to parse intent response (%s): %s", e, content[:500])
                intent = Intent.default(message, {**metadata, "parse_error": str(e)})

        await self._persist(db, project, intent, conversation_id)
        return intent

    async def reanalyze_with_clarification(
        self,
        db: AsyncSession,
        project: Project,
        original: Intent,
        clarification: str,
        conversation_id: uuid.UUID | None = None,
    ) -> Intent:
        combined = f"Original request: {original.message}\n\nClarification: {clarification}"
        return await self.analyze(db, project, combined, [], conversation_id)

    def needs_clarification(self, intent: Intent) -> bool:
        return (
            intent.requires_clarification
            or intent.confidence < self.config.clarification_threshold
            or intent.intent_type is IntentType.UNKNOWN
        )

    def generate_clarification_questions(self, intent: Intent) -> list[str]:
        if intent.clarification_questions:
            return list(intent.clarification_questions)

        questions = []
        if intent.intent_type is IntentType.UNKNOWN:
            questions.append("Could you describe what you would like me to do in more detail?")
            questions.append("Are you looking to add a feature, fix a bug, write tests, or something else?")
        if not intent.entities.files and intent.intent_type.requires_code_changes:
            questions.append("Which files or components should this change affect?")
        if intent.complexity.weight >= ComplexityLevel.COMPLEX.weight:
            questions.append("This seems like a significant change. Would you like to break it down into smaller steps?")
        if intent.confidence < 0.5:
            questions.append("I'm not entirely sure I understand. Could you rephrase or provide more context?")
        return questions[: self.config.max_clarification_questions]

    def detect_multiple_intents(self, message: str) -> MultiIntentReport:
        return detect_multiple_intents(message)

    def format_history(self, history: list[dict]) -> str:
        if not history:
            return "No previous conversation context."
        turns = []
        for entry in history[-self.config.history_turns:]:
            role = str(entry.get("role") or "unknown").capitalize()
            content = str(entry.get("content") or "")[: self.config.history_chars_per_turn]
            turns.append(f"{role}: {content}")
        return "\n\n".join(turns)

    @staticmethod
    async def _persist(
        db: AsyncSession, project: Project, intent: Intent, conversation_id: uuid.UUID | None
    ) -> IntentAnalysis:
        record = IntentAnalysis(
            id=intent.id,
            project_id=project.id,
            conversation_id=conversation_id,
            message=intent.message,
            intent_type=intent.intent_type.value,
            confidence=intent.confidence,
            extracted_entities=intent.entities.model_dump(),
            domain_classification=intent.domain.model_dump(),
            complexity=intent.complexity.value,
            requires_clarification=intent.requires_clarification,
            clarification_questions=list(intent.clarification_questions),
            meta=intent.metadata,
        )
        db.add(record)
        await db.flush()
        return record
