import json

from app.models.project import Project

PLANNER_SYSTEM = """You are the planning agent of a coding assistant that edits an existing repository.
Given the user's request and the retrieved codebase context, design the smallest set of file operations that fully implements it.

Project:
{project_info}

Tech stack:
{tech_stack}

Rules:
- Follow the conventions visible in the retrieved code (naming, directory layout, framework idioms)
- Only modify or delete files that exist in the project; create new files where needed
- Order operations so that each one only depends on operations that come before it
- Describe modifications as targeted changes, never as a full rewrite of the file
- Call out anything the user must do by hand (migrations, environment variables, package installs)

Respond with ONLY a JSON object, optionally inside a ```json code fence, with these fields:
- title: short plan title
- summary: what the plan does, in 1-3 sentences
- approach: how the change is implemented
- file_operations: array of operations, each with
  - type: "create" | "modify" | "delete" | "rename" | "move"
  - path: file path relative to the repository root
  - new_path: target path (rename/move only)
  - description: what changes in this file
  - priority: integer, lower runs first
  - dependencies: array of paths this operation depends on
  - template_content: full file content (create only)
  - changes: array of {{"section", "change_type": "add"|"remove"|"replace", "before", "after", "start_line", "end_line", "explanation"}} (modify only)
- risks: array of {{"level": "low"|"medium"|"high", "description", "mitigation"}}
- prerequisites: array of strings
- manual_steps: array of strings
- testing_notes: how to verify the change
- estimated_time: rough estimate, e.g. "30 minutes"

Example:
{{"title": "Add password reset link", "summary": "Adds a forgot-password link to the login page.", "approach": "Reuse the existing password.request route.", "file_operations": [{{"type": "modify", "path": "resources/js/Pages/Auth/Login.vue", "description": "Add forgot password link", "priority": 1, "dependencies": [], "changes": [{{"section": "template", "change_type": "add", "after": "<Link :href=\\"route('password.request')\\">Forgot your password?</Link>", "explanation": "Link below the submit button"}}]}}], "risks": [], "prerequisites": [], "manual_steps": [], "testing_notes": "Open /login and follow the link", "estimated_time": "10 minutes"}}
"""

PLANNING_REQUEST = """## Request
{message}

## Intent
Type: {intent_type}
Confidence: {confidence}
Complexity: {complexity}
Domain: {domain}
Mentioned files: {files}
Mentioned symbols: {symbols}

## Codebase Context
{codebase_context}

Create the implementation plan."""

REFINEMENT_REQUEST = """## Refinement Request

The user has provided feedback on the existing plan:

### User Feedback
{feedback}

### Current Plan
Title: {title}
Description: {description}

### Current File Operations
```json
{file_operations}
```

### Additional Context
{codebase_context}

Please update the plan based on the user's feedback. Respond with the same JSON format as the original plan."""


def _join(value) -> str:
    items = value if isinstance(value, list) else [value]
    return ", ".join(str(i) for i in items)


def build_project_info(project: Project) -> str:
    stack = project.stack_info or {}
    lines = [
        f"Repository: {project.repo_full_name}",
        f"Branch: {project.default_branch}",
        f"Files: {project.total_files or 'N/A'}",
        f"Lines: {project.total_lines or 'N/A'}",
    ]
    if stack.get("framework"):
        framework = str(stack["framework"])
        if stack.get("framework_version"):
            framework += f" {stack['framework_version']}"
        lines.append(f"Framework: {framework}")
    return "\n".join(lines)


def build_tech_stack(project: Project) -> str:
    stack = project.stack_info or {}
    lines = []
    for key, label in (
        ("framework", "Framework"), ("frontend", "Frontend"), ("database", "Database"),
        ("css", "CSS"), ("testing", "Testing"),
    ):
        if stack.get(key):
            lines.append(f"{label}: {_join(stack[key])}")
    return "\n".join(lines) if lines else "Unknown stack"


def build_planner_system(project: Project) -> str:
    return PLANNER_SYSTEM.format(
        project_info=build_project_info(project),
        tech_stack=build_tech_stack(project),
    )


def build_planning_prompt(message: str, intent, codebase_context: str) -> str:
    return PLANNING_REQUEST.format(
        message=message,
        intent_type=intent.intent_type.label,
        confidence=f"{intent.confidence:.0%}",
        complexity=intent.complexity.label,
        domain=intent.domain.primary,
        files=", ".join(intent.entities.files) or "None",
        symbols=", ".join(intent.entities.symbols) or "None",
        codebase_context=codebase_context,
    )


def build_refinement_prompt(plan, feedback: str, codebase_context: str) -> str:
    return REFINEMENT_REQUEST.format(
        feedback=feedback,
        title=plan.title,
        description=plan.description,
        file_operations=json.dumps(plan.file_operations or [], indent=2),
        codebase_context=codebase_context,
    )
