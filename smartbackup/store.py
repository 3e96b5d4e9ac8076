from __future__ import annotations

import errno
import json
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from smartbackup.cleanup import DeleteResult, remove_file
from smartbackup.config import BackupConfig
from smartbackup.errors import BackupError, SnapshotNotFound
from smartbackup.models import Snapshot


logger = logging.getLogger(__name__)

SNAPSHOT_SUFFIX = ".json"
ARCHIVE_SUFFIX = ".7z"
PARTIAL_SUFFIX = ".partial"
SNAPSHOT_ID_FORMAT = "%Y%m%d_%H%M%S"
_HASH_RE = re.compile(r"^[0-9a-f]{8,128}$")


@dataclass(slots=True)
class SnapshotIndex:
    """Every snapshot record on disk, loaded once per operation."""

    snapshots: dict[str, Snapshot] = field(default_factory=dict)
    unreadable: list[str] = field(default_factory=list)

    def __contains__(self, snapshot_id: object) -> bool:
        return snapshot_id in self.snapshots

    def __len__(self) -> int:
        return len(self.snapshots)

    def get(self, snapshot_id: str | None) -> Snapshot | None:
        if snapshot_id is None:
            return None
        return self.snapshots.get(snapshot_id)

    def ids(self) -> list[str]:
        return sorted(self.snapshots)

    def latest(self) -> Snapshot | None:
        if not self.snapshots:
            return None
        return self.snapshots[max(self.snapshots)]

    def dependents_of(self, snapshot_id: str) -> list[str]:
        return sorted(
            snap.id
            for snap in self.snapshots.values()
            if snap.id != snapshot_id and snapshot_id in (snap.prev_id, snap.base_id)
        )


class SnapshotRepository:
    def __init__(self, config: BackupConfig) -> None:
        self.config = config

    @property
    def snapshots_dir(self) -> Path:
        return self.config.snapshots_dir

    def ensure(self) -> None:
        for directory in (
            self.config.repo_path,
            self.config.snapshots_dir,
            self.config.archives_dir,
            self.config.logs_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)
        if self.config.blob_store:
            self.config.blobs_dir.mkdir(parents=True, exist_ok=True)

    def record_path(self, snapshot_id: str) -> Path:
        return self.snapshots_dir / f"{snapshot_id}{SNAPSHOT_SUFFIX}"

    def list_ids(self) -> list[str]:
        if not self.snapshots_dir.is_dir():
            return []
        return sorted(
            (
                path.name[: -len(SNAPSHOT_SUFFIX)]
                for path in self.snapshots_dir.iterdir()
                if path.name.endswith(SNAPSHOT_SUFFIX) and path.is_file()
            ),
            reverse=True,
        )

    def load(self, snapshot_id: str) -> Snapshot:
        path = self.record_path(snapshot_id)
        try:
            with path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError as exc:
            raise SnapshotNotFound(snapshot_id) from exc
        return Snapshot.from_dict(data, fallback_id=snapshot_id)

    def latest(self) -> Snapshot | None:
        for snapshot_id in self.list_ids():
            try:
                return self.load(snapshot_id)
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping unreadable snapshot %s: %s", snapshot_id, exc)
        return None

    def load_index(self) -> SnapshotIndex:
        index = SnapshotIndex()
        for snapshot_id in self.list_ids():
            try:
                snapshot = self.load(snapshot_id)
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Unreadable snapshot record %s: %s", snapshot_id, exc)
                index.unreadable.append(snapshot_id)
                continue
            index.snapshots[snapshot_id] = snapshot
        return index

    def save(self, snapshot: Snapshot) -> Path:
        self.snapshots_dir.mkdir(parents=True, exist_ok=True)
        target = self.record_path(snapshot.id)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{snapshot.id}.", suffix=".tmp", dir=self.snapshots_dir
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(snapshot.to_dict(), fh, indent=2)
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return target

    def delete_record(self, snapshot_id: str, *, dry_run: bool = False) -> DeleteResult:
        return remove_file(self.record_path(snapshot_id), dry_run=dry_run)

    def record_mtime(self, snapshot_id: str) -> datetime | None:
        try:
            stat = self.record_path(snapshot_id).stat()
        except OSError:
            return None
        return datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)

    def new_snapshot_id(self, now: datetime) -> str:
        base = now.astimezone(timezone.utc).strftime(SNAPSHOT_ID_FORMAT)
        candidate = base
        counter = 1
        while self.record_path(candidate).exists() or self.archive_path(candidate).exists():
            candidate = f"{base}_{counter:02d}"
            counter += 1
        return candidate

    # Archives

    def archive_path(self, snapshot_id: str) -> Path:
        return self.config.archives_dir / f"{snapshot_id}{ARCHIVE_SUFFIX}"

    def partial_archive_path(self, snapshot_id: str) -> Path:
        return self.config.archives_dir / f"{snapshot_id}{ARCHIVE_SUFFIX}{PARTIAL_SUFFIX}"

    def store_archive_path(self, snapshot_id: str) -> Path | None:
        if self.config.archive_store_path is None:
            return None
        return self.config.archive_store_path / f"{snapshot_id}{ARCHIVE_SUFFIX}"

    def archive_locations(self, snapshot_id: str) -> list[Path]:
        locations = [self.archive_path(snapshot_id)]
        store_path = self.store_archive_path(snapshot_id)
        if store_path is not None:
            locations.append(store_path)
        return locations

    def find_archive(self, snapshot_id: str) -> Path | None:
        for path in self.archive_locations(snapshot_id):
            if path.is_file():
                return path
        return None

    def iter_archive_files(self) -> Iterator[tuple[str, Path]]:
        """Yield ``(snapshot_id, path)`` for archive and partial archive files in the repo."""
        if not self.config.archives_dir.is_dir():
            return
        for path in sorted(self.config.archives_dir.iterdir()):
            if not path.is_file():
                continue
            name = path.name
            if name.endswith(ARCHIVE_SUFFIX + PARTIAL_SUFFIX):
                yield name[: -len(ARCHIVE_SUFFIX + PARTIAL_SUFFIX)], path
            elif name.endswith(ARCHIVE_SUFFIX):
                yield name[: -len(ARCHIVE_SUFFIX)], path

    def relocate_archive(self, snapshot_id: str) -> Path | None:
        if self.config.archive_store_path is None:
            raise ValueError("archiveStorePath is not set in the config")

        source = self.archive_path(snapshot_id)
        if not source.is_file():
            return None

        store_dir = self.config.archive_store_path
        store_dir.mkdir(parents=True, exist_ok=True)
        target = store_dir / source.name
        if target.exists():
            raise BackupError(
                f"Archive store already holds {target}; move or remove it before relocating {snapshot_id}."
            )
        _move_file(source, target)
        return target


class BlobStore:
    def __init__(self, root: Path) -> None:
        self.root = root

    def blob_path(self, sha256: str) -> Path:
        return self.root / sha256[:2] / sha256[2:4] / sha256

    def exists(self, sha256: str) -> bool:
        return self.blob_path(sha256).is_file()

    def store(self, sha256: str, source: Path) -> bool:
        """Copy ``source`` in under its hash. Returns False when the blob was already present."""
        target = self.blob_path(sha256)
        if target.is_file():
            return False
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{sha256[:8]}.", suffix=".tmp", dir=target.parent)
        os.close(fd)
        try:
            shutil.copyfile(source, tmp_name)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return True

    def iter_blobs(self) -> Iterator[tuple[str | None, Path]]:
        """Yield ``(hash, path)`` for every stored file; hash is None when the path is not a valid blob address."""
        if not self.root.is_dir():
            return
        for dirpath, _, filenames in os.walk(self.root):
            current = Path(dirpath)
            for name in sorted(filenames):
                path = current / name
                yield _hash_from_blob_path(self.root, path), path


def _hash_from_blob_path(root: Path, path: Path) -> str | None:
    parts = path.relative_to(root).parts
    if len(parts) != 3:
        return None
    first, second, name = parts
    if not _HASH_RE.match(name):
        return None
    if name[:2] != first or name[2:4] != second:
        return None
    return name


def _move_file(source: Path, target: Path) -> None:
    try:
        os.rename(source, target)
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
        shutil.copy2(source, target)
        source.unlink()
