from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from smartbackup.chain_policy import snapshot_time
from smartbackup.cleanup import DeleteResult, remove_file
from smartbackup.config import BackupConfig
from smartbackup.errors import SnapshotInUse
from smartbackup.models import Snapshot
from smartbackup.store import SnapshotIndex, SnapshotRepository


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetentionPlan:
    keep: set[str]
    keep_with_deps: set[str]
    delete: list[str]

    @property
    def protected(self) -> set[str]:
        """Expired snapshots kept alive only because a kept snapshot depends on them."""
        return self.keep_with_deps - self.keep


@dataclass(slots=True)
class PruneReport:
    snapshot_id: str
    record: DeleteResult
    archive: DeleteResult
    mirror: DeleteResult | None = None


@dataclass(slots=True)
class RetentionResult:
    plan: RetentionPlan
    pruned: list[PruneReport] = field(default_factory=list)
    dry_run: bool = False


def _ancestors(index: SnapshotIndex, snapshot: Snapshot) -> set[str]:
    found: set[str] = set()
    stack = [link for link in (snapshot.prev_id, snapshot.base_id) if link]
    while stack:
        snapshot_id = stack.pop()
        if snapshot_id in found:
            continue
        parent = index.get(snapshot_id)
        if parent is None:
            continue
        found.add(snapshot_id)
        stack.extend(link for link in (parent.prev_id, parent.base_id) if link)
    return found


def plan_retention(
    index: SnapshotIndex,
    retention_days: float,
    *,
    now: datetime,
    time_of: Callable[[Snapshot], datetime | None] = snapshot_time,
) -> RetentionPlan:
    max_age = timedelta(days=retention_days)
    keep: set[str] = set()
    for snapshot in index.snapshots.values():
        created = time_of(snapshot)
        # An undatable snapshot is never treated as expired.
        if created is None or now - created <= max_age:
            keep.add(snapshot.id)

    keep_with_deps = set(keep)
    for snapshot_id in keep:
        keep_with_deps |= _ancestors(index, index.snapshots[snapshot_id])

    delete = sorted(snapshot_id for snapshot_id in index.snapshots if snapshot_id not in keep_with_deps)
    return RetentionPlan(keep=keep, keep_with_deps=keep_with_deps, delete=delete)


def delete_snapshot_artifacts(
    repository: SnapshotRepository,
    snapshot_id: str,
    *,
    dry_run: bool = False,
) -> PruneReport:
    """Remove record, local archive and long-term copy; each step runs regardless of the others."""
    record = repository.delete_record(snapshot_id, dry_run=dry_run)
    archive = remove_file(repository.archive_path(snapshot_id), dry_run=dry_run)
    store_path = repository.store_archive_path(snapshot_id)
    mirror = remove_file(store_path, dry_run=dry_run) if store_path is not None else None
    return PruneReport(snapshot_id=snapshot_id, record=record, archive=archive, mirror=mirror)


def apply_retention(
    config: BackupConfig,
    *,
    now: datetime,
    dry_run: bool = False,
) -> RetentionResult:
    repository = SnapshotRepository(config)
    index = repository.load_index()
    plan = plan_retention(
        index,
        config.retention_days,
        now=now,
        time_of=lambda snap: snapshot_time(snap, repository.record_mtime),
    )

    for snapshot_id in sorted(plan.protected):
        logger.info("Retention: keeping expired snapshot %s (required by a newer snapshot)", snapshot_id)

    result = RetentionResult(plan=plan, dry_run=dry_run)
    for snapshot_id in plan.delete:
        report = delete_snapshot_artifacts(repository, snapshot_id, dry_run=dry_run)
        result.pruned.append(report)
        logger.info(
            "Retention: snapshot %s record=%s archive=%s mirror=%s",
            snapshot_id,
            report.record.describe(),
            report.archive.describe(),
            report.mirror.describe() if report.mirror else "n/a",
        )
    return result


def purge_snapshot(
    config: BackupConfig,
    snapshot_id: str,
    *,
    dry_run: bool = False,
    force: bool = False,
) -> PruneReport:
    """Delete one snapshot outright. Refuses while other snapshots still build on it."""
    repository = SnapshotRepository(config)
    index = repository.load_index()
    if snapshot_id in index and not force:
        dependents = index.dependents_of(snapshot_id)
        if dependents:
            raise SnapshotInUse(snapshot_id, dependents)

    report = delete_snapshot_artifacts(repository, snapshot_id, dry_run=dry_run)
    logger.info(
        "Purge%s: snapshot %s record=%s archive=%s mirror=%s",
        " (dry-run)" if dry_run else "",
        snapshot_id,
        report.record.describe(),
        report.archive.describe(),
        report.mirror.describe() if report.mirror else "n/a",
    )
    return report
