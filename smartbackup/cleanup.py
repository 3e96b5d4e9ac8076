from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from pathlib import Path


logger = logging.getLogger(__name__)


class DeleteStatus(str, enum.Enum):
    DELETED = "deleted"
    NOT_FOUND = "not found"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class DeleteResult:
    path: Path
    status: DeleteStatus
    reason: str | None = None

    @property
    def deleted(self) -> bool:
        return self.status is DeleteStatus.DELETED

    def describe(self) -> str:
        if self.reason:
            return f"{self.status.value} ({self.reason})"
        return self.status.value


def remove_file(path: Path, *, dry_run: bool = False) -> DeleteResult:
    """Unlink a file, reporting the outcome instead of raising."""
    if dry_run:
        status = DeleteStatus.SKIPPED if path.is_file() else DeleteStatus.NOT_FOUND
        return DeleteResult(path=path, status=status, reason="dry-run" if path.is_file() else None)
    try:
        path.unlink()
    except FileNotFoundError:
        return DeleteResult(path=path, status=DeleteStatus.NOT_FOUND)
    except OSError as exc:
        logger.warning("Could not delete %s: %s", path, exc)
        return DeleteResult(path=path, status=DeleteStatus.FAILED, reason=str(exc))
    return DeleteResult(path=path, status=DeleteStatus.DELETED)


def remove_empty_dirs(root: Path, *, keep_root: bool = True) -> int:
    """Remove empty directories below ``root`` bottom-up and return how many went away."""
    if not root.is_dir():
        return 0

    removed = 0
    directories = sorted(
        (path for path in root.rglob("*") if path.is_dir() and not path.is_symlink()),
        key=lambda item: len(item.parts),
        reverse=True,
    )
    if not keep_root:
        directories.append(root)

    for directory in directories:
        try:
            directory.rmdir()
        except OSError:
            continue
        removed += 1
    return removed
