import logging
import time
import uuid

from openai import AsyncOpenAI, OpenAIError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import PlanningSettings, settings
from app.models.execution_plan import ExecutionPlan
from app.models.intent_analysis import IntentAnalysis
from app.models.project import Project
from app.pipeline.context_retrieval import ContextRetriever
from app.pipeline.intent_classifier import intent_from_record
from app.pipeline.llm import complete, extract_json_object
from app.pipeline.prompts.planner import build_planner_system, build_planning_prompt, build_refinement_prompt
from app.pipeline.states import PlanStatus, transition_plan
from app.schemas.intent import ComplexityLevel, Intent
from app.schemas.plan import FileOperation, FileOperationType, PlanDraft, Risk, RiskAssessment, ValidationResult
from app.schemas.retrieval import RetrievalOptions, RetrievalResult
from app.services.code_index import CodeIndex, load_code_index

logger = logging.getLogger(__name__)

_EXISTING_FILE_TYPES = ("modify", "delete", "rename", "move")


def parse_plan_response(content: str) -> PlanDraft:
    """Read a plan payload. Raises ``ValueError`` when the reply holds no usable plan object."""
    try:
        return PlanDraft.model_validate(extract_json_object(content))
    except ValueError:
        logger.warning("Failed to parse plan response: %s", content[:500])
        raise


def draft_operations(draft: PlanDraft) -> list[FileOperation]:
    """Valid operations of ``draft`` in execution order. A draft without any raises ``ValueError``."""
    operations = order_operations(parse_file_operations(draft.file_operations))
    if not operations:
        raise ValueError("Plan contains no valid file operations")
    return operations


def parse_file_operations(raw_operations: list[dict]) -> list[FileOperation]:
    operations = []
    for raw in raw_operations:
        try:
            operations.append(FileOperation.model_validate(raw))
        except ValueError as e:
            logger.warning("Dropping invalid file operation %s: %s", raw, e)
    return operations


def order_operations(operations: list[FileOperation]) -> list[FileOperation]:
    return sorted(operations, key=lambda op: op.priority)


def calculate_complexity(operations: list[FileOperation], intent: Intent | None = None) -> ComplexityLevel:
    count = len(operations)
    if count >= 15:
        complexity = ComplexityLevel.MAJOR
    elif count >= 8:
        complexity = ComplexityLevel.COMPLEX
    elif count >= 4:
        complexity = ComplexityLevel.MEDIUM
    elif count >= 2:
        complexity = ComplexityLevel.SIMPLE
    else:
        complexity = ComplexityLevel.TRIVIAL

    total_lines = sum(op.estimated_lines_affected for op in operations)
    if total_lines > 500 and ComplexityLevel.COMPLEX.is_higher_than(complexity):
        complexity = ComplexityLevel.COMPLEX
    if any(op.type is FileOperationType.DELETE for op in operations) and ComplexityLevel.MEDIUM.is_higher_than(complexity):
        complexity = ComplexityLevel.MEDIUM

    if intent is not None and intent.complexity.is_higher_than(complexity):
        return intent.complexity
    return complexity


def generate_title(message: str) -> str:
    message = message.strip()
    if len(message) <= 60:
        return message
    return message[:57] + "..."


def detect_circular_dependencies(operations: list[dict]) -> list[dict]:
    """DFS over path -> dependencies, reporting each back edge with the cycle it closes."""
    graph: dict[str, list[str]] = {}
    for op in operations:
        path = op.get("path") or ""
        graph.setdefault(path, []).extend(op.get("dependencies") or [])

    cycles: list[dict] = []
    visited: set[str] = set()
    stack: list[str] = []
    on_stack: set[str] = set()

    def visit(node: str) -> None:
        visited.add(node)
        stack.append(node)
        on_stack.add(node)
        for dep in graph.get(node, []):
            if dep in on_stack:
                cycle = stack[stack.index(dep):] + [dep]
                cycles.append({"from": node, "to": dep, "cycle": cycle})
            elif dep not in visited and dep in graph:
                visit(dep)
        stack.pop()
        on_stack.discard(node)

    for node in graph:
        if node not in visited:
            visit(node)
    return cycles


def validate_plan(plan: ExecutionPlan, index: CodeIndex) -> ValidationResult:
    operations = plan.file_operations or []
    if not operations:
        return ValidationResult(is_valid=False, errors=["Plan has no file operations"])

    errors: list[str] = []
    warnings: list[str] = []
    missing: list[str] = []
    plan_paths = {op.get("path") for op in operations}
    created: set[str] = set()

    for i, op in enumerate(operations):
        path = op.get("path") or ""
        op_type = str(op.get("type") or "").lower()

        if not path:
            errors.append(f"Operation #{i}: missing path")
        elif op_type in _EXISTING_FILE_TYPES and not index.has_file(path) and path not in created:
            if path not in missing:
                missing.append(path)

        if op_type == "create":
            created.add(path)
            if not op.get("template_content"):
                errors.append(f"Operation #{i}: create operation missing content for {path}")
        if op_type == "modify" and not op.get("changes"):
            errors.append(f"Operation #{i}: modify operation missing changes for {path}")

        for dep in op.get("dependencies") or []:
            if dep not in plan_paths and not index.has_file(dep):
                warnings.append(f"Operation for {path} depends on {dep} which is not in plan")

    cycles = detect_circular_dependencies(operations)

    priorities = [op.get("priority", 1) for op in operations]
    if len(priorities) > 1 and len(set(priorities)) == 1:
        warnings.append("All operations have the same priority - execution order may be undefined")

    return ValidationResult(
        is_valid=not errors and not missing and not cycles,
        errors=errors,
        warnings=warnings,
        missing_files=missing,
        circular_dependencies=cycles,
    )


def identify_missing_context(plan: ExecutionPlan, context: RetrievalResult) -> list[str]:
    known = set(context.file_list())
    missing: list[str] = []
    for op in plan.file_operations or []:
        if str(op.get("type") or "").lower() in _EXISTING_FILE_TYPES:
            path = op.get("path")
            if path and path not in known and path not in missing:
                missing.append(path)
        for dep in op.get("dependencies") or []:
            if dep not in known and dep not in missing:
                missing.append(dep)
    return missing


def assess_risk(plan: ExecutionPlan, config: PlanningSettings | None = None) -> RiskAssessment:
    config = config or settings.planning
    operations = plan.file_operations or []
    risks: list[Risk] = []

    deletes = [op for op in operations if op.get("type") == "delete"]
    modifies = [op for op in operations if op.get("type") == "modify"]
    for op in deletes:
        risks.append(Risk(
            level="medium",
            description=f"Deleting file: {op.get('path')}",
            mitigation="Ensure file is not referenced elsewhere",
        ))
    if len(deletes) >= config.high_delete_threshold:
        risks.append(Risk(
            level="high",
            description=f"Multiple file deletions ({len(deletes)} files)",
            mitigation="Review each deletion carefully",
        ))
    if len(modifies) >= config.high_modify_threshold:
        risks.append(Risk(
            level="medium",
            description=f"Large number of file modifications ({len(modifies)} files)",
            mitigation="Test thoroughly after changes",
        ))

    for declared in plan.risks or []:
        risks.append(Risk.model_validate(declared) if isinstance(declared, dict) else Risk(description=str(declared)))

    manual_steps = (plan.plan_data or {}).get("manual_steps") or []
    return RiskAssessment.calculate(risks, list(plan.prerequisites or []), list(manual_steps), len(deletes))


def render_plan_preview(
    plan: ExecutionPlan,
    validation: ValidationResult | None = None,
    risk: RiskAssessment | None = None,
    missing_context: list[str] | None = None,
) -> str:
    """Markdown shown to the user while the plan waits for approval."""
    lines = [f"## {plan.title}", "", plan.description or "", "", "### Files to be modified", ""]
    for op in plan.file_operations or []:
        op_type = str(op.get("type") or "").upper()
        line = f"- **[{op_type}]** `{op.get('path')}`"
        if op.get("description"):
            line += f" - {op['description']}"
        lines.append(line)

    lines += [
        "",
        "### Estimated Impact",
        "",
        f"- **Complexity:** {ComplexityLevel.parse(plan.estimated_complexity).label}",
        f"- **Files affected:** {plan.estimated_files_affected}",
    ]
    if risk is not None:
        lines.append(f"- **Risk level:** {risk.overall_level.capitalize()}")

    if plan.risks:
        lines += ["", "### Risks", ""]
        for declared in plan.risks:
            level = str(declared.get("level", "low")).upper() if isinstance(declared, dict) else "LOW"
            description = declared.get("description", "") if isinstance(declared, dict) else str(declared)
            lines.append(f"- **[{level}]** {description}")

    if validation is not None and (not validation.is_valid or validation.warnings):
        lines += ["", "### Validation", "", validation.summary(), ""]
        lines += [f"- **[ERROR]** {error}" for error in validation.errors]
        lines += [f"- **[MISSING]** `{path}` does not exist in the project" for path in validation.missing_files]
        lines += [
            f"- **[CYCLE]** {' -> '.join(cycle.get('cycle', []))}" for cycle in validation.circular_dependencies
        ]
        lines += [f"- **[WARNING]** {warning}" for warning in validation.warnings]

    if missing_context:
        lines += ["", "### Not in retrieved context", ""]
        lines += [f"- `{path}`" for path in missing_context]

    lines += ["", "---", ""]
    if validation is not None and not validation.is_valid:
        lines += ["**This plan has validation problems.** Review them before approving.", ""]
    lines += [
        "**Would you like me to proceed with these changes?** "
        "Reply with 'yes' to approve or provide feedback to refine the plan.",
    ]
    return "\n".join(lines)


class PlanBuilder:
    def __init__(
        self,
        client: AsyncOpenAI,
        retriever: ContextRetriever | None = None,
        config: PlanningSettings | None = None,
    ):
        self.client = client
        self.retriever = retriever or ContextRetriever()
        self.config = config or settings.planning

    async def generate_plan(
        self,
        db: AsyncSession,
        project: Project,
        intent: Intent,
        message: str,
        conversation_id: uuid.UUID | None = None,
    ) -> ExecutionPlan:
        started = time.monotonic()
        logger.info("Generating plan for project %s (%s): %s", project.id, intent.intent_type.value, message[:100])

        context = await self.retriever.retrieve(db, project, intent, message, RetrievalOptions(
            max_chunks=self.config.max_chunks,
            token_budget=self.config.token_budget,
            include_dependencies=True,
            depth=self.config.dependency_depth,
        ))

        try:
            content = await complete(
                self.client,
                build_planner_system(project),
                build_planning_prompt(message, intent, context.to_prompt_context()),
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
            draft = parse_plan_response(content)
            operations = draft_operations(draft)
        except (OpenAIError, ValueError) as e:
            logger.error("Plan generation failed for project %s: %s", project.id, e)
            return await self._failed_plan(db, project, intent, conversation_id, str(e))

        plan = ExecutionPlan(
            id=uuid.uuid4(),
            project_id=project.id,
            conversation_id=conversation_id,
            intent_id=intent.id,
            status=PlanStatus.DRAFT.value,
            title=draft.title or generate_title(message),
            description=draft.summary,
            plan_data={
                "approach": draft.approach or "",
                "testing_notes": draft.testing_notes or "",
                "estimated_time": draft.estimated_time or "",
                "manual_steps": draft.manual_steps,
            },
            file_operations=[op.model_dump(mode="json") for op in operations],
            estimated_complexity=calculate_complexity(operations, intent).value,
            estimated_files_affected=len(operations),
            risks=[r.model_dump() for r in draft.risks],
            prerequisites=draft.prerequisites,
            refinement_count=0,
            meta={
                "generation_time_ms": round((time.monotonic() - started) * 1000, 2),
                "model": settings.openai_model,
                "context_chunks": context.chunk_count,
                "context_tokens": context.total_token_estimate(),
            },
        )
        transition_plan(plan, PlanStatus.PENDING_REVIEW)
        db.add(plan)
        await db.flush()

        logger.info(
            "Plan %s generated for project %s: %d files, %s complexity",
            plan.id, project.id, len(operations), plan.estimated_complexity,
        )
        return plan

    async def refine_plan(self, db: AsyncSession, project: Project, plan: ExecutionPlan, feedback: str) -> ExecutionPlan:
        """Build a successor plan from ``plan`` and the user's feedback. ``plan`` itself is left as it was."""
        started = time.monotonic()
        intent = await self._load_intent(db, plan)

        context = await self.retriever.retrieve(db, project, intent, feedback, RetrievalOptions(
            max_chunks=self.config.refine_max_chunks,
            token_budget=self.config.refine_token_budget,
        ))

        try:
            content = await complete(
                self.client,
                build_planner_system(project),
                build_refinement_prompt(plan, feedback, context.to_prompt_context()),
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
            draft = parse_plan_response(content)
            operations = draft_operations(draft)
        except (OpenAIError, ValueError) as e:
            logger.error("Plan refinement failed for plan %s: %s", plan.id, e)
            failed = await self._failed_plan(db, project, intent, plan.conversation_id, str(e))
            failed.intent_id = plan.intent_id
            failed.parent_plan_id = plan.id
            failed.user_feedback = feedback
            failed.refinement_count = plan.refinement_count + 1
            await db.flush()
            return failed

        previous = plan.plan_data or {}
        refined = ExecutionPlan(
            id=uuid.uuid4(),
            project_id=plan.project_id,
            conversation_id=plan.conversation_id,
            intent_id=plan.intent_id,
            parent_plan_id=plan.id,
            status=PlanStatus.DRAFT.value,
            title=draft.title or plan.title,
            description=draft.summary or plan.description,
            plan_data={
                **previous,
                "approach": draft.approach or previous.get("approach", ""),
                "testing_notes": draft.testing_notes or "",
                "estimated_time": draft.estimated_time or previous.get("estimated_time", ""),
                "manual_steps": draft.manual_steps,
            },
            file_operations=[op.model_dump(mode="json") for op in operations],
            estimated_complexity=calculate_complexity(operations, intent).value,
            estimated_files_affected=len(operations),
            risks=[r.model_dump() for r in draft.risks],
            prerequisites=draft.prerequisites or list(plan.prerequisites or []),
            user_feedback=feedback,
            refinement_count=plan.refinement_count + 1,
            meta={
                "refined_from": str(plan.id),
                "refinement_time_ms": round((time.monotonic() - started) * 1000, 2),
                "model": settings.openai_model,
                "context_chunks": context.chunk_count,
            },
        )
        transition_plan(refined, PlanStatus.PENDING_REVIEW)
        db.add(refined)
        await db.flush()

        logger.info("Plan %s refined into %s (%d files)", plan.id, refined.id, len(operations))
        return refined

    async def validate(self, db: AsyncSession, project: Project, plan: ExecutionPlan) -> ValidationResult:
        index = await load_code_index(db, project)
        return validate_plan(plan, index)

    def assess_risk(self, plan: ExecutionPlan) -> RiskAssessment:
        return assess_risk(plan, self.config)

    @staticmethod
    async def _load_intent(db: AsyncSession, plan: ExecutionPlan) -> Intent:
        record = await db.get(IntentAnalysis, plan.intent_id) if plan.intent_id else None
        if record is None:
            logger.warning("Intent for plan %s not found, refining without it", plan.id)
            return Intent.default(plan.title)
        return intent_from_record(record)

    @staticmethod
    async def _failed_plan(
        db: AsyncSession,
        project: Project,
        intent: Intent,
        conversation_id: uuid.UUID | None,
        error: str,
    ) -> ExecutionPlan:
        plan = ExecutionPlan(
            id=uuid.uuid4(),
            project_id=project.id,
            conversation_id=conversation_id,
            intent_id=intent.id,
            status=PlanStatus.DRAFT.value,
            title="Plan Generation Failed",
            description=f"An error occurred while generating the plan: {error}",
            plan_data={"error": error},
            file_operations=[],
            estimated_complexity=intent.complexity.value,
            estimated_files_affected=0,
            risks=[],
            prerequisites=[],
            refinement_count=0,
            meta={"error": error},
        )
        db.add(plan)
        await db.flush()
        return plan
