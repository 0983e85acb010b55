import json
import re
from typing import Any

from openai import AsyncOpenAI

from app.config import settings

_JSON_FENCE_RE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_CODE_FENCE_RE = re.compile(r"```[\w.+-]*\s*\n([\s\S]*?)\n?```")


async def complete(
    client: AsyncOpenAI,
    system: str,
    user: str,
    max_tokens: int = 4096,
    temperature: float = 0.2,
) -> str:
    """One round-trip to the reasoning service. Provider errors propagate as ``openai.OpenAIError``."""
    response = await client.chat.completions.create(
        model=settings.openai_model,
        messages=[
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        temperature=temperature,
        **settings.max_tokens_param(max_tokens),
    )
    return response.choices[0].message.content or ""


def extract_json_object(content: str) -> dict[str, Any]:
    """Pull a JSON object out of a reply that may be fenced or wrapped in prose.

    Raises ``ValueError`` (``json.JSONDecodeError`` included) when no object can be read.
    """
    match = _JSON_FENCE_RE.search(content)
    candidate = match.group(1) if match else content
    start = candidate.find("{")
    if start == -1:
        raise ValueError("No JSON object found in response")

    data, _ = json.JSONDecoder().raw_decode(candidate, start)
    return data


def extract_code(content: str) -> str:
    """Strip a surrounding code fence, if any, from generated file content."""
    match = _CODE_FENCE_RE.search(content)
    if match:
        return match.group(1)
    return content.strip()
