import difflib
import re

_HUNK_RE = re.compile(r"@@ -(\d+)(?:,\d+)? \+(\d+)(?:,\d+)? @@")


class DiffService:
    def __init__(self, context_lines: int = 3):
        self.context_lines = context_lines

    def diff(self, original: str, modified: str, path: str = "file") -> str:
        """Unified diff of two texts; empty string when they are identical."""
        lines = difflib.unified_diff(
            original.split("\n") if original else [],
            modified.split("\n") if modified else [],
            fromfile=f"a/{path}",
            tofile=f"b/{path}",
            n=self.context_lines,
            lineterm="",
        )
        return "\n".join(lines)

    def parse(self, diff: str) -> list[dict]:
        changes = []
        old_line = new_line = 0
        for line in diff.split("\n"):
            if line.startswith("@@"):
                match = _HUNK_RE.match(line)
                if match:
                    old_line, new_line = int(match.group(1)), int(match.group(2))
                changes.append({"type": "header", "old_line": None, "new_line": None, "content": line})
            elif line.startswith("---") or line.startswith("+++"):
                continue
            elif line.startswith("+"):
                changes.append({"type": "added", "old_line": None, "new_line": new_line, "content": line[1:]})
                new_line += 1
            elif line.startswith("-"):
                changes.append({"type": "removed", "old_line": old_line, "new_line": None, "content": line[1:]})
                old_line += 1
            elif line.startswith(" "):
                changes.append({"type": "context", "old_line": old_line, "new_line": new_line, "content": line[1:]})
                old_line += 1
                new_line += 1
        return changes

    def stats(self, diff: str) -> dict[str, int]:
        changes = self.parse(diff) if diff else []
        return {
            "added": sum(1 for c in changes if c["type"] == "added"),
            "removed": sum(1 for c in changes if c["type"] == "removed"),
            "changed_hunks": sum(1 for c in changes if c["type"] == "header"),
        }
