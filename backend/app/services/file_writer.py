import logging
import os
import shutil
import time
from datetime import datetime
from pathlib import Path

from app.config import settings
from app.models.project import Project
from app.schemas.execution import WriteResult

logger = logging.getLogger(__name__)

OUTSIDE_WORKING_COPY = "Path is outside the project working copy"


class FileWriter:
    """Writes into a project's working copy. Every destructive write leaves a backup."""

    def __init__(self, backup_dir: str | Path | None = None):
        self.backup_dir = Path(backup_dir or settings.execution.backup_dir)

    def create(self, project: Project, path: str, content: str) -> WriteResult:
        full = self._resolve(project, path)
        if full is None:
            return WriteResult.failure(path, OUTSIDE_WORKING_COPY)
        if full.exists():
            return WriteResult.failure(path, "File already exists")
        try:
            full.parent.mkdir(parents=True, exist_ok=True)
            full.write_text(content, encoding="utf-8")
        except OSError as e:
            logger.error("Failed to create %s in project %s: %s", path, project.id, e)
            return WriteResult.failure(path, str(e))
        logger.info("Created %s in project %s (%d bytes)", path, project.id, len(content))
        return WriteResult.ok(path, size_bytes=len(content), created_at=datetime.now().isoformat())

    def modify(self, project: Project, path: str, content: str) -> WriteResult:
        full = self._resolve(project, path)
        if full is None:
            return WriteResult.failure(path, OUTSIDE_WORKING_COPY)
        if not full.is_file():
            return WriteResult.failure(path, "File does not exist")
        try:
            original = full.read_text(encoding="utf-8")
        except OSError as e:
            return WriteResult.failure(path, f"Failed to read original file: {e}")
        try:
            backup = self.backup(project, path, original)
        except OSError as e:
            return WriteResult.failure(path, f"Failed to back up file: {e}")
        try:
            full.write_text(content, encoding="utf-8")
        except OSError as e:
            self.restore_from_backup(backup, full)
            logger.error("Failed to modify %s in project %s: %s", path, project.id, e)
            return WriteResult.failure(path, "Failed to write modified content")
        logger.info("Modified %s in project %s (backup %s)", path, project.id, backup)
        return WriteResult.ok(
            path, str(backup), original,
            original_size=len(original), new_size=len(content), modified_at=datetime.now().isoformat(),
        )

    def delete(self, project: Project, path: str) -> WriteResult:
        full = self._resolve(project, path)
        if full is None:
            return WriteResult.failure(path, OUTSIDE_WORKING_COPY)
        if not full.is_file():
            return WriteResult.failure(path, "File does not exist")
        try:
            original = full.read_text(encoding="utf-8")
            backup = self.backup(project, path, original)
            full.unlink()
        except OSError as e:
            logger.error("Failed to delete %s in project %s: %s", path, project.id, e)
            return WriteResult.failure(path, str(e))
        logger.info("Deleted %s in project %s (backup %s)", path, project.id, backup)
        return WriteResult.ok(path, str(backup), original, size_bytes=len(original))

    def move(self, project: Project, old_path: str, new_path: str) -> WriteResult:
        source = self._resolve(project, old_path)
        target = self._resolve(project, new_path)
        if source is None or target is None:
            return WriteResult.failure(old_path if source is None else new_path, OUTSIDE_WORKING_COPY)
        if not source.is_file():
            return WriteResult.failure(old_path, "Source file does not exist")
        if target.exists():
            return WriteResult.failure(new_path, "Destination file already exists")
        try:
            original = source.read_text(encoding="utf-8")
            backup = self.backup(project, old_path, original)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(source, target)
        except OSError as e:
            logger.error("Failed to move %s to %s in project %s: %s", old_path, new_path, project.id, e)
            return WriteResult.failure(old_path, str(e))
        logger.info("Moved %s to %s in project %s", old_path, new_path, project.id)
        return WriteResult.ok(new_path, str(backup), original, old_path=old_path)

    def read(self, project: Project, path: str) -> str | None:
        full = self._resolve(project, path)
        if full is None or not full.is_file():
            return None
        try:
            return full.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None

    def exists(self, project: Project, path: str) -> bool:
        full = self._resolve(project, path)
        return full is not None and full.exists()

    def backup(self, project: Project, path: str, content: str) -> Path:
        directory = self.backup_dir / str(project.id)
        directory.mkdir(parents=True, exist_ok=True)
        safe_name = path.replace("/", "_").replace("\\", "_")
        stamp = f"{datetime.now():%Y%m%d_%H%M%S_%f}"
        target = directory / f"{stamp}_{safe_name}"
        counter = 1
        while target.exists():
            target = directory / f"{stamp}-{counter}_{safe_name}"
            counter += 1
        target.write_text(content, encoding="utf-8")
        return target

    def restore_from_backup(self, backup_path: str | Path, target: Path) -> bool:
        backup = Path(backup_path)
        if not backup.is_file():
            logger.warning("Backup file not found: %s", backup)
            return False
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(backup, target)
        except OSError as e:
            logger.error("Failed to restore %s from %s: %s", target, backup, e)
            return False
        logger.info("Restored %s from backup %s", target, backup)
        return True

    def restore_content(self, project: Project, path: str, content: str) -> WriteResult:
        full = self._resolve(project, path)
        if full is None:
            return WriteResult.failure(path, OUTSIDE_WORKING_COPY)
        try:
            full.parent.mkdir(parents=True, exist_ok=True)
            full.write_text(content, encoding="utf-8")
        except OSError as e:
            return WriteResult.failure(path, str(e))
        logger.info("Restored content of %s in project %s", path, project.id)
        return WriteResult.ok(path, restored_at=datetime.now().isoformat())

    def delete_permanently(self, project: Project, path: str) -> WriteResult:
        full = self._resolve(project, path)
        if full is None:
            return WriteResult.failure(path, OUTSIDE_WORKING_COPY)
        if not full.exists():
            return WriteResult.ok(path, note="File did not exist")
        try:
            full.unlink()
        except OSError as e:
            return WriteResult.failure(path, str(e))
        return WriteResult.ok(path)

    def cleanup_old_backups(self, project: Project, keep_days: int | None = None) -> int:
        days = keep_days if keep_days is not None else settings.execution.backup_retention_days
        directory = self.backup_dir / str(project.id)
        if not directory.is_dir():
            return 0
        cutoff = time.time() - days * 86400
        deleted = 0
        for entry in directory.iterdir():
            if entry.is_file() and entry.stat().st_mtime < cutoff:
                entry.unlink()
                deleted += 1
        return deleted

    @staticmethod
    def _resolve(project: Project, path: str) -> Path | None:
        """Absolute target for ``path``, or None when it would land outside the working copy."""
        root = Path(project.repo_path).resolve()
        full = (root / path.lstrip("/").replace("\\", os.sep)).resolve()
        if full == root or not full.is_relative_to(root):
            logger.warning("Rejected path outside working copy of project %s: %s", project.id, path)
            return None
        return full
