RESPONDER_SYSTEM = """You are a coding assistant answering questions about an existing repository.
Answer from the retrieved code below. Reference files by path and line range, keep answers concise,
and say so plainly when the retrieved code does not contain the answer.

Project:
{project_info}

Tech stack:
{tech_stack}
"""


def build_question_prompt(message: str, codebase_context: str) -> str:
    return f"""## Codebase Context
{codebase_context}

## Question
{message}"""
