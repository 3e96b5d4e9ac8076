from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from smartbackup.archive_tool import ArchiveEntry, ArchiveTool
from smartbackup.auth import require_backup_password
from smartbackup.chain_policy import ChainDecision, decide_snapshot_type, resolve_inventory, snapshot_time
from smartbackup.config import BackupConfig
from smartbackup.diff_service import DiffResult, diff_inventory
from smartbackup.errors import ChainBroken
from smartbackup.filters import build_path_filter
from smartbackup.gc import GcResult, garbage_collect
from smartbackup.models import FileRecord, Snapshot, SnapshotStats
from smartbackup.retention import RetentionResult, apply_retention
from smartbackup.scanner import SourceEntry, build_inventory, scan_sources
from smartbackup.state_db import load_cached_records, replace_cached_records
from smartbackup.store import BlobStore, SnapshotIndex, SnapshotRepository

if TYPE_CHECKING:
    from rich.console import Console


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BackupResult:
    diff: DiffResult
    snapshot: Snapshot | None = None
    decision: ChainDecision | None = None
    archive_path: Path | None = None
    blobs_stored: int = 0
    skipped_reason: str | None = None

    @property
    def snapshot_id(self) -> str | None:
        return self.snapshot.id if self.snapshot is not None else None


@dataclass(slots=True)
class CycleResult:
    backup: BackupResult
    retention: RetentionResult
    gc: GcResult | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(now: datetime) -> str:
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def previous_inventory(index: SnapshotIndex) -> dict[str, FileRecord] | None:
    """Complete file set of the latest snapshot, or None when there is none or its chain is broken."""
    latest = index.latest()
    if latest is None:
        return None
    try:
        return resolve_inventory(index, latest.id)
    except ChainBroken as exc:
        logger.warning("Latest snapshot chain is unusable, next snapshot will be Full: %s", exc)
        return None


async def _scan(
    config: BackupConfig,
    *,
    console: "Console | None" = None,
) -> tuple[list[SourceEntry], list[FileRecord]]:
    path_filter = build_path_filter(config.ignore)
    entries = scan_sources(config.sources, path_filter)
    cached = await load_cached_records(config.state_db_path)
    records = build_inventory(
        entries,
        cached_records=cached,
        workers=config.hash_workers,
        console=console,
    )
    return entries, records


async def check_for_changes(
    config: BackupConfig,
    *,
    console: "Console | None" = None,
) -> DiffResult:
    _, records = await _scan(config, console=console)
    if not records:
        return diff_inventory(None, records)
    index = SnapshotRepository(config).load_index()
    return diff_inventory(previous_inventory(index), records)


def _write_archive(
    repository: SnapshotRepository,
    tool: ArchiveTool,
    snapshot_id: str,
    entries: list[ArchiveEntry],
    password: str,
) -> Path:
    final_path = repository.archive_path(snapshot_id)
    partial_path = repository.partial_archive_path(snapshot_id)
    partial_path.unlink(missing_ok=True)
    try:
        tool.create(entries, partial_path, password)
        os.replace(partial_path, final_path)
    except BaseException:
        partial_path.unlink(missing_ok=True)
        raise
    return final_path


async def run_backup(
    config: BackupConfig,
    *,
    tool: ArchiveTool,
    password: str | None = None,
    now: datetime | None = None,
    console: "Console | None" = None,
) -> BackupResult:
    now = now or _utcnow()
    repository = SnapshotRepository(config)
    repository.ensure()

    entries, records = await _scan(config, console=console)
    if not records:
        logger.info("No files found. Backup skipped.")
        return BackupResult(diff=diff_inventory(None, records), skipped_reason="no-files")

    index = repository.load_index()
    diff = diff_inventory(previous_inventory(index), records)
    if not diff.changed:
        await replace_cached_records(config.state_db_path, records)
        logger.info("No changes detected. Backup skipped.")
        return BackupResult(diff=diff, skipped_reason="no-changes")

    password = password or require_backup_password()

    decision = decide_snapshot_type(
        diff,
        index,
        config.chain,
        now=now,
        archive_exists=lambda snapshot_id: repository.find_archive(snapshot_id) is not None,
        time_of=lambda snap: snapshot_time(snap, repository.record_mtime),
    )
    snapshot_id = repository.new_snapshot_id(now)
    logger.info("Backup started: %s (%s, %s)", snapshot_id, decision.type.value, decision.reason)

    files = records if decision.is_full else diff.changed_records
    snapshot = Snapshot(
        id=snapshot_id,
        created_at=_iso(now),
        type=decision.type,
        files=list(files),
        base_id=decision.base_id,
        prev_id=decision.prev_id,
        depth=decision.depth,
        removed_files=[] if decision.is_full else list(diff.removed),
        stats=SnapshotStats(
            added=len(diff.added),
            modified=len(diff.modified),
            removed=len(diff.removed),
        ),
    )

    result = BackupResult(diff=diff, snapshot=snapshot, decision=decision)
    sources = {entry.rel_path: entry for entry in entries}
    blob_store = BlobStore(config.blobs_dir) if config.blob_store else None

    archive_entries: list[ArchiveEntry] = []
    for record in files:
        source_path = sources[record.path].abs_path
        if blob_store is not None:
            if blob_store.store(record.sha256, source_path):
                result.blobs_stored += 1
            source_path = blob_store.blob_path(record.sha256)
        archive_entries.append(ArchiveEntry(abs_path=source_path, dest_rel_path=record.path))

    if archive_entries:
        result.archive_path = _write_archive(
            repository, tool, snapshot_id, archive_entries, password
        )
        logger.info("Archive written: %s (%d file(s))", result.archive_path, len(archive_entries))
    else:
        logger.info("Snapshot %s only removes files; no archive created.", snapshot_id)

    # The record goes down only once the archive step is settled.
    repository.save(snapshot)
    await replace_cached_records(config.state_db_path, records)
    logger.info(
        "Backup finished: %s (+%d ~%d -%d)",
        snapshot_id,
        snapshot.stats.added,
        snapshot.stats.modified,
        snapshot.stats.removed,
    )
    return result


async def run_cycle(
    config: BackupConfig,
    *,
    tool: ArchiveTool,
    password: str | None = None,
    now: datetime | None = None,
    console: "Console | None" = None,
) -> CycleResult:
    """Backup, then retention, then GC over the post-retention state."""
    now = now or _utcnow()
    backup = await run_backup(config, tool=tool, password=password, now=now, console=console)
    retention = apply_retention(config, now=now)
    gc_result = garbage_collect(config)
    return CycleResult(backup=backup, retention=retention, gc=gc_result)
