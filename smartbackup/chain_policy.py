from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from smartbackup.config import ChainSettings
from smartbackup.diff_service import DiffResult
from smartbackup.errors import ChainBroken
from smartbackup.models import FileRecord, Snapshot, SnapshotType
from smartbackup.store import SnapshotIndex


_ID_TIME_RE = re.compile(r"^(\d{8})_(\d{6})")


@dataclass(slots=True)
class ChainDecision:
    type: SnapshotType
    reason: str
    base_id: str | None = None
    prev_id: str | None = None
    depth: int = 0

    @property
    def is_full(self) -> bool:
        return self.type is SnapshotType.FULL


def parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def time_from_id(snapshot_id: str) -> datetime | None:
    match = _ID_TIME_RE.match(snapshot_id)
    if match is None:
        return None
    try:
        return datetime.strptime("".join(match.groups()), "%Y%m%d%H%M%S").replace(
            tzinfo=timezone.utc
        )
    except ValueError:
        return None


def snapshot_time(
    snapshot: Snapshot,
    fallback: Callable[[str], datetime | None] | None = None,
) -> datetime | None:
    """createdAt, then the id's timestamp, then whatever ``fallback`` knows (record mtime)."""
    return (
        parse_timestamp(snapshot.created_at)
        or time_from_id(snapshot.id)
        or (fallback(snapshot.id) if fallback is not None else None)
    )


def walk_chain(index: SnapshotIndex, snapshot_id: str) -> list[Snapshot]:
    """Return the chain ending at ``snapshot_id``, oldest (the Full base) first."""
    target = index.get(snapshot_id)
    if target is None:
        raise ChainBroken(ChainBroken.MISSING_ANCESTOR, snapshot_id, "snapshot record missing")
    if target.is_full:
        return [target]

    chain: list[Snapshot] = []
    visited: set[str] = set()
    current = target
    while True:
        visited.add(current.id)
        chain.append(current)
        if current.is_full:
            break
        prev_id = current.prev_id
        if not prev_id:
            raise ChainBroken(ChainBroken.MISSING_ANCESTOR, current.id, "incremental without prevId")
        if prev_id in visited:
            raise ChainBroken(ChainBroken.LOOP, current.id, f"prevId {prev_id} already visited")
        previous = index.get(prev_id)
        if previous is None:
            raise ChainBroken(ChainBroken.MISSING_ANCESTOR, current.id, f"prevId {prev_id} not found")
        current = previous

    base = chain[-1]
    if target.base_id and target.base_id != base.id:
        raise ChainBroken(
            ChainBroken.BASE_MISMATCH,
            target.id,
            f"baseId {target.base_id} but chain ends at {base.id}",
        )
    chain.reverse()
    return chain


def fold_chain(chain: list[Snapshot]) -> dict[str, FileRecord]:
    """Replay a chain oldest-first into the file set of its last snapshot."""
    inventory: dict[str, FileRecord] = {}
    for snapshot in chain:
        if snapshot.is_full:
            inventory = {record.path: record for record in snapshot.files}
            continue
        for record in snapshot.files:
            inventory[record.path] = record
        for path in snapshot.removed_files:
            inventory.pop(path, None)
            prefix = path.rstrip("/") + "/"
            for key in [key for key in inventory if key.startswith(prefix)]:
                inventory.pop(key)
    return inventory


def resolve_inventory(index: SnapshotIndex, snapshot_id: str) -> dict[str, FileRecord]:
    return fold_chain(walk_chain(index, snapshot_id))


def _threshold_hit(value: float, threshold: float) -> bool:
    return threshold > 0 and value >= threshold


def decide_snapshot_type(
    diff: DiffResult,
    index: SnapshotIndex,
    settings: ChainSettings,
    *,
    now: datetime,
    archive_exists: Callable[[str], bool],
    time_of: Callable[[Snapshot], datetime | None] = snapshot_time,
) -> ChainDecision:
    """Classify the next snapshot as Full or Incremental. Rules are evaluated in order."""
    latest = index.latest()
    if latest is None or diff.reason == "no-previous":
        return ChainDecision(type=SnapshotType.FULL, reason="no-previous")

    if index.unreadable and max(index.unreadable) > latest.id:
        return ChainDecision(type=SnapshotType.FULL, reason="broken-chain")

    try:
        chain = walk_chain(index, latest.id)
    except ChainBroken as exc:
        return ChainDecision(type=SnapshotType.FULL, reason=f"broken-chain: {exc.reason}")

    base = chain[0]
    length = len(chain)
    if _threshold_hit(length, settings.full_every_snapshots):
        return ChainDecision(type=SnapshotType.FULL, reason="full-every-snapshots")
    if _threshold_hit(length, settings.max_chain_length):
        return ChainDecision(type=SnapshotType.FULL, reason="max-chain-length")

    base_time = time_of(base)
    if settings.full_every_hours > 0:
        if base_time is None:
            return ChainDecision(type=SnapshotType.FULL, reason="full-every-hours")
        elapsed_hours = (now - base_time).total_seconds() / 3600
        if elapsed_hours >= settings.full_every_hours:
            return ChainDecision(type=SnapshotType.FULL, reason="full-every-hours")

    if base.has_archive_content and not archive_exists(base.id):
        return ChainDecision(type=SnapshotType.FULL, reason="base-archive-missing")

    return ChainDecision(
        type=SnapshotType.INCREMENTAL,
        reason="incremental",
        base_id=base.id,
        prev_id=latest.id,
        depth=length,
    )
