import posixpath
import re

from app.config import RedactionSettings, settings

SENSITIVE_FILENAMES = [
    ".env",
    ".env.local",
    ".env.production",
    ".env.staging",
    ".env.development",
    "credentials.json",
    "secrets.json",
    "service-account.json",
    ".npmrc",
    ".pypirc",
    "id_rsa",
    "id_ed25519",
    ".pem",
    ".key",
]

_SECRET_DIR_RE = re.compile(r"/(secrets?|credentials?|private|keys?)/", re.IGNORECASE)
_HEX_RE = re.compile(r"""(['"])[a-f0-9]{32,}(['"])""", re.IGNORECASE)
_BASE64_RE = re.compile(r"""(['"])[A-Za-z0-9+/]{40,}={0,2}(['"])""")


class Redactor:
    """Masks secrets in file content before it is sent to the reasoning service."""

    def __init__(self, config: RedactionSettings | None = None):
        self.config = config or settings.redaction
        self.patterns = [re.compile(p) for p in self.config.patterns]

    def redact(self, content: str, path: str | None = None) -> str:
        if not self.config.enabled:
            return content
        if path and self.is_sensitive_file(path):
            return self._redact_entire_content(content, path)

        for pattern in self.patterns:
            content = pattern.sub(self._mask_match, content)

        replacement = self.config.replacement
        content = _HEX_RE.sub(lambda m: f"{m.group(1)}{replacement}{m.group(2)}", content)
        content = _BASE64_RE.sub(lambda m: f"{m.group(1)}{replacement}{m.group(2)}", content)
        return content

    def redact_chunks(self, chunks: list[dict]) -> list[dict]:
        redacted = []
        for chunk in chunks:
            if "content" in chunk:
                chunk = {**chunk, "content": self.redact(chunk["content"], chunk.get("path"))}
            redacted.append(chunk)
        return redacted

    def is_sensitive_file(self, path: str) -> bool:
        filename = posixpath.basename(path).lower()
        for sensitive in SENSITIVE_FILENAMES:
            if filename == sensitive:
                return True
            # e.g. server.pem, deploy.key
            if sensitive.startswith(".") and filename.endswith(sensitive):
                return True
        return bool(_SECRET_DIR_RE.search(path))

    def add_pattern(self, pattern: str) -> None:
        self.patterns.append(re.compile(pattern))

    def _mask_match(self, match: re.Match) -> str:
        # keep the label, mask only the captured value
        if match.lastindex:
            value = match.group(1)
            if value:
                return match.group(0).replace(value, self.config.replacement)
        return self.config.replacement

    @staticmethod
    def _redact_entire_content(content: str, path: str) -> str:
        filename = posixpath.basename(path)
        line_count = content.count("\n") + 1
        return (
            f"# Content of '{filename}' has been redacted for security.\n"
            "# This file appears to contain sensitive information.\n"
            f"# Original file had approximately {line_count} lines.\n"
            "# If you need to reference this file's structure, please review it directly in your codebase."
        )
