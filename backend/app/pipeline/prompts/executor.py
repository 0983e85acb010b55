from app.models.project import Project
from app.pipeline.prompts.planner import build_project_info, build_tech_stack
from app.schemas.plan import FileOperation

EXECUTOR_SYSTEM = """You are the code executor of a coding assistant that edits an existing repository.
You write the complete content of exactly one file at a time.

Project:
{project_info}

Tech stack:
{tech_stack}

Rules:
- Output the COMPLETE file content inside a single code fence, nothing else
- Match the style, formatting and conventions of the existing code
- Apply only the requested changes; keep everything else byte-for-byte identical
- Never leave placeholders, TODO markers or elided sections ("...") in the output
"""

EXECUTION_REQUEST = """## Task
{task_description}

Operation: {operation_type}
File: {file_path}
Language: {language}
Priority: {priority}

## Plan
Title: {plan_title}
Summary: {plan_summary}
Approach: {plan_approach}
{body}"""


def build_executor_system(project: Project) -> str:
    return EXECUTOR_SYSTEM.format(project_info=build_project_info(project), tech_stack=build_tech_stack(project))


def _request(operation: FileOperation, plan, language: str, default_task: str, body: str) -> str:
    return EXECUTION_REQUEST.format(
        task_description=operation.description or default_task,
        operation_type=operation.type.value,
        file_path=operation.path,
        language=language,
        priority=operation.priority,
        plan_title=plan.title,
        plan_summary=plan.description,
        plan_approach=(plan.plan_data or {}).get("approach", ""),
        body=body,
    )


def build_create_prompt(operation: FileOperation, plan, language: str) -> str:
    body = ""
    if operation.template_content:
        body = f"\n## Template\nUse this draft as the starting point and complete it:\n```{language}\n{operation.template_content}\n```\n"
    body += "\nWrite the full content of the new file."
    return _request(operation, plan, language, "Create new file", body)


def build_modify_prompt(operation: FileOperation, plan, language: str, current_content: str) -> str:
    changes = []
    for change in operation.changes or []:
        line = f"- **{change.change_type}** in `{change.section}`: {change.explanation}"
        if change.before:
            line += f"\n  Before:\n  ```\n  {change.before}\n  ```"
        if change.after:
            line += f"\n  After:\n  ```\n  {change.after}\n  ```"
        changes.append(line)

    body = (
        f"\n## Current File Content\n```{language}\n{current_content}\n```\n"
        f"\n## Planned Changes\n" + "\n".join(changes) + "\n"
        "\nReturn the full updated file."
    )
    return _request(operation, plan, language, "Modify existing file", body)
