from __future__ import annotations

import zipfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from smartbackup.archive_tool import ArchiveEntry
from smartbackup.config import BackupConfig, ChainSettings
from smartbackup.models import FileRecord, Snapshot, SnapshotStats, SnapshotType


PASSWORD = "s3cret"


class ZipArchiveTool:
    """Stands in for 7-Zip: same create/extract/test contract, backed by zipfile."""

    def __init__(self) -> None:
        self.created: list[Path] = []
        self.extracted: list[Path] = []
        self.fail_create = False

    def create(self, entries: list[ArchiveEntry], archive_path: Path, password: str) -> None:
        assert password
        if self.fail_create:
            archive_path.write_bytes(b"partial")
            raise RuntimeError("simulated archive failure")
        with zipfile.ZipFile(archive_path, "w") as zf:
            for entry in entries:
                zf.write(entry.abs_path, arcname=entry.dest_rel_path)
        self.created.append(archive_path)

    def extract(self, archive_path: Path, dest_root: Path, password: str, *, overwrite: bool = True) -> None:
        assert password
        dest_root.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(archive_path) as zf:
            for name in zf.namelist():
                target = dest_root / name
                if target.exists() and not overwrite:
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(zf.read(name))
        self.extracted.append(archive_path)

    def test(self, archive_path: Path, password: str) -> None:
        with zipfile.ZipFile(archive_path) as zf:
            assert zf.testzip() is None


@pytest.fixture
def tool() -> ZipArchiveTool:
    return ZipArchiveTool()


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    path = tmp_path / "docs"
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path: Path, source_dir: Path) -> BackupConfig:
    return BackupConfig(
        repo_path=tmp_path / "repo",
        sources=[source_dir],
        restore_path=tmp_path / "restore",
        archive_store_path=tmp_path / "store",
        retention_days=30,
        hash_workers=2,
        chain=ChainSettings(max_chain_length=20, full_every_snapshots=0, full_every_hours=0),
    )


def write(root: Path, rel: str, content: str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def record(path: str, sha: str, size: int = 1) -> FileRecord:
    return FileRecord(path=path, sha256=sha, size=size, mtime_ns=0)


def full(snapshot_id: str, files: list[FileRecord], created_at: str | None = None) -> Snapshot:
    return Snapshot(
        id=snapshot_id,
        created_at=created_at,
        type=SnapshotType.FULL,
        files=files,
        stats=SnapshotStats(added=len(files)),
    )


def incremental(
    snapshot_id: str,
    prev_id: str | None,
    base_id: str | None,
    files: list[FileRecord],
    removed: list[str] | None = None,
    *,
    depth: int = 1,
    created_at: str | None = None,
    stats: SnapshotStats | None = None,
) -> Snapshot:
    return Snapshot(
        id=snapshot_id,
        created_at=created_at,
        type=SnapshotType.INCREMENTAL,
        files=files,
        base_id=base_id,
        prev_id=prev_id,
        depth=depth,
        removed_files=list(removed or []),
        stats=stats or SnapshotStats(added=len(files), removed=len(removed or [])),
    )


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)
