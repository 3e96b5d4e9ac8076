from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from smartbackup.cleanup import DeleteStatus, remove_empty_dirs, remove_file
from smartbackup.config import BackupConfig
from smartbackup.store import BlobStore, SnapshotIndex, SnapshotRepository


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GcResult:
    referenced: int = 0
    blobs_total: int = 0
    orphan_count: int = 0
    removed_count: int = 0
    bytes_freed: int = 0
    orphan_archives: list[Path] = field(default_factory=list)
    removed_archives: int = 0
    failed: list[Path] = field(default_factory=list)
    dirs_removed: int = 0
    dry_run: bool = False
    aborted_reason: str | None = None


def referenced_hashes(index: SnapshotIndex) -> set[str]:
    return {
        record.sha256
        for snapshot in index.snapshots.values()
        for record in snapshot.files
        if record.sha256
    }


def _file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError:
        return 0


def garbage_collect(
    config: BackupConfig,
    *,
    dry_run: bool = False,
    include_archives: bool = True,
) -> GcResult:
    """Reclaim blobs and archives that no snapshot record on disk refers to.

    Must run after retention: the live set is rebuilt here from whatever
    records survived, not from the retention plan.
    """
    repository = SnapshotRepository(config)
    index = repository.load_index()
    result = GcResult(dry_run=dry_run)

    if index.unreadable:
        result.aborted_reason = (
            f"unreadable snapshot record(s): {', '.join(sorted(index.unreadable))}"
        )
        logger.error("GC aborted, references unknown for %s", result.aborted_reason)
        return result

    referenced = referenced_hashes(index)
    result.referenced = len(referenced)

    blob_store = BlobStore(config.blobs_dir)
    for sha256, path in blob_store.iter_blobs():
        result.blobs_total += 1
        if sha256 is not None and sha256 in referenced:
            continue
        result.orphan_count += 1
        size = _file_size(path)
        if dry_run:
            continue
        outcome = remove_file(path)
        if outcome.deleted:
            result.removed_count += 1
            result.bytes_freed += size
        elif outcome.status is DeleteStatus.FAILED:
            result.failed.append(path)

    if include_archives:
        for snapshot_id, path in repository.iter_archive_files():
            if snapshot_id in index:
                continue
            result.orphan_archives.append(path)
            size = _file_size(path)
            if dry_run:
                continue
            outcome = remove_file(path)
            if outcome.deleted:
                result.removed_archives += 1
                result.bytes_freed += size
            elif outcome.status is DeleteStatus.FAILED:
                result.failed.append(path)

    if not dry_run:
        result.dirs_removed = remove_empty_dirs(config.blobs_dir)

    logger.info(
        "GC%s: %d blob(s), %d orphan(s), %d removed, %d orphan archive(s), %d bytes freed",
        " (dry-run)" if dry_run else "",
        result.blobs_total,
        result.orphan_count,
        result.removed_count,
        len(result.orphan_archives),
        result.bytes_freed,
    )
    return result
