from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class SnapshotType(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(slots=True, frozen=True)
class FileRecord:
    path: str
    sha256: str
    size: int
    mtime_ns: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "relPath": self.path,
            "hash": self.sha256,
            "size": self.size,
            "mtimeNs": self.mtime_ns,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileRecord":
        sha256 = data.get("hash") or data.get("contentHash") or ""
        if "mtimeNs" in data:
            mtime_ns = int(data["mtimeNs"])
        else:
            # Older records stored milliseconds as a float.
            mtime_ns = int(float(data.get("mtimeMs", 0)) * 1_000_000)
        return cls(
            path=str(data["relPath"]),
            sha256=str(sha256),
            size=int(data.get("size", 0)),
            mtime_ns=mtime_ns,
        )


@dataclass(slots=True)
class SnapshotStats:
    added: int = 0
    modified: int = 0
    removed: int = 0

    @property
    def contributed(self) -> int:
        return self.added + self.modified


@dataclass(slots=True)
class Snapshot:
    id: str
    created_at: str | None
    type: SnapshotType
    files: list[FileRecord]
    base_id: str | None = None
    prev_id: str | None = None
    depth: int = 0
    removed_files: list[str] = field(default_factory=list)
    stats: SnapshotStats = field(default_factory=SnapshotStats)

    @property
    def is_full(self) -> bool:
        return self.type is SnapshotType.FULL

    @property
    def has_archive_content(self) -> bool:
        if self.is_full:
            return bool(self.files)
        return self.stats.contributed > 0 or bool(self.files)

    @property
    def total_bytes(self) -> int:
        return sum(record.size for record in self.files)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "type": self.type.value,
            "baseId": self.base_id,
            "prevId": self.prev_id,
            "depth": self.depth,
            "removedFiles": list(self.removed_files),
            "stats": {
                "added": self.stats.added,
                "modified": self.stats.modified,
                "removed": self.stats.removed,
            },
            "files": [record.to_dict() for record in self.files],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, fallback_id: str | None = None) -> "Snapshot":
        snapshot_id = data.get("id") or fallback_id
        if not snapshot_id:
            raise ValueError("Snapshot record has no id")

        # Records written before chains existed carry no type and hold a full inventory.
        snapshot_type = SnapshotType(data.get("type") or SnapshotType.FULL.value)
        files = [FileRecord.from_dict(item) for item in data.get("files") or []]
        raw_stats = data.get("stats") or {}
        if snapshot_type is SnapshotType.FULL:
            stats = SnapshotStats(
                added=int(raw_stats.get("added", len(files))),
                modified=int(raw_stats.get("modified", 0)),
                removed=int(raw_stats.get("removed", 0)),
            )
        else:
            stats = SnapshotStats(
                added=int(raw_stats.get("added", 0)),
                modified=int(raw_stats.get("modified", 0)),
                removed=int(raw_stats.get("removed", 0)),
            )

        return cls(
            id=str(snapshot_id),
            created_at=data.get("createdAt"),
            type=snapshot_type,
            files=files,
            base_id=None if snapshot_type is SnapshotType.FULL else data.get("baseId"),
            prev_id=None if snapshot_type is SnapshotType.FULL else data.get("prevId"),
            depth=int(data.get("depth") or 0),
            removed_files=[str(path) for path in data.get("removedFiles") or []],
            stats=stats,
        )
