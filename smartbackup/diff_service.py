from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from smartbackup.models import FileRecord


DiffReason = Literal["no-previous", "no-files"]


@dataclass(slots=True)
class DiffResult:
    added: list[str]
    modified: list[str]
    removed: list[str]
    total: int
    previous_total: int
    reason: DiffReason | None = None
    current: dict[str, FileRecord] = field(default_factory=dict, repr=False)

    @property
    def changed(self) -> bool:
        if self.reason == "no-files":
            return False
        return bool(self.added or self.modified or self.removed)

    @property
    def changed_records(self) -> list[FileRecord]:
        """Records new or changed since the previous inventory, sorted by path."""
        paths = sorted({*self.added, *self.modified})
        return [self.current[path] for path in paths]


def diff_inventory(
    previous: dict[str, FileRecord] | None,
    current_records: list[FileRecord],
) -> DiffResult:
    current_map = {record.path: record for record in current_records}

    if not current_map:
        return DiffResult(
            added=[],
            modified=[],
            removed=[],
            total=0,
            previous_total=len(previous or {}),
            reason="no-files",
            current=current_map,
        )

    if previous is None:
        return DiffResult(
            added=sorted(current_map),
            modified=[],
            removed=[],
            total=len(current_map),
            previous_total=0,
            reason="no-previous",
            current=current_map,
        )

    added: list[str] = []
    modified: list[str] = []
    for path, record in current_map.items():
        old = previous.get(path)
        if old is None:
            added.append(path)
            continue
        # mtime alone is never a content change.
        if old.sha256 != record.sha256 or old.size != record.size:
            modified.append(path)

    removed = [path for path in previous if path not in current_map]

    return DiffResult(
        added=sorted(added),
        modified=sorted(modified),
        removed=sorted(removed),
        total=len(current_map),
        previous_total=len(previous),
        current=current_map,
    )
