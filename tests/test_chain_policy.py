from datetime import timedelta

import pytest
from conftest import full, incremental, record, utc

from smartbackup.chain_policy import (
    decide_snapshot_type,
    fold_chain,
    parse_timestamp,
    snapshot_time,
    time_from_id,
    walk_chain,
)
from smartbackup.config import ChainSettings
from smartbackup.diff_service import diff_inventory
from smartbackup.errors import ChainBroken
from smartbackup.models import SnapshotType
from smartbackup.store import SnapshotIndex


NOW = utc(2024, 1, 10, 12, 0, 0)


def _index(*snapshots) -> SnapshotIndex:
    return SnapshotIndex(snapshots={snap.id: snap for snap in snapshots})


def _changed_diff():
    return diff_inventory({"docs/x": record("docs/x", "h1")}, [record("docs/x", "h2")])


def _decide(index, settings=None, *, archive_exists=lambda _id: True, now=NOW):
    return decide_snapshot_type(
        _changed_diff(),
        index,
        settings or ChainSettings(max_chain_length=10, full_every_snapshots=0, full_every_hours=0),
        now=now,
        archive_exists=archive_exists,
    )


def test_walk_chain_returns_oldest_first() -> None:
    index = _index(
        full("20240101_000000", [record("docs/x", "h1")]),
        incremental("20240102_000000", "20240101_000000", "20240101_000000", []),
        incremental("20240103_000000", "20240102_000000", "20240101_000000", [], depth=2),
    )
    chain = walk_chain(index, "20240103_000000")
    assert [snap.id for snap in chain] == ["20240101_000000", "20240102_000000", "20240103_000000"]


def test_walk_chain_detects_loop() -> None:
    index = _index(
        incremental("20240102_000000", "20240103_000000", None, []),
        incremental("20240103_000000", "20240102_000000", None, []),
    )
    with pytest.raises(ChainBroken) as excinfo:
        walk_chain(index, "20240103_000000")
    assert excinfo.value.reason == ChainBroken.LOOP


def test_walk_chain_detects_missing_ancestor() -> None:
    index = _index(incremental("20240103_000000", "20240102_000000", "20240101_000000", []))
    with pytest.raises(ChainBroken) as excinfo:
        walk_chain(index, "20240103_000000")
    assert excinfo.value.reason == ChainBroken.MISSING_ANCESTOR


def test_walk_chain_detects_base_mismatch() -> None:
    index = _index(
        full("20240101_000000", []),
        incremental("20240102_000000", "20240101_000000", "20231231_000000", []),
    )
    with pytest.raises(ChainBroken) as excinfo:
        walk_chain(index, "20240102_000000")
    assert excinfo.value.reason == ChainBroken.BASE_MISMATCH


def test_fold_chain_applies_tombstones_in_order() -> None:
    chain = [
        full("A", [record("x", "h1")]),
        incremental("B", "A", "A", [record("y", "h2")]),
        incremental("C", "B", "A", [], ["x"], depth=2),
    ]
    assert {path: rec.sha256 for path, rec in fold_chain(chain).items()} == {"y": "h2"}


def test_first_snapshot_is_full() -> None:
    decision = _decide(SnapshotIndex())
    assert decision.type is SnapshotType.FULL
    assert decision.reason == "no-previous"


def test_broken_history_self_heals_with_full() -> None:
    index = _index(incremental("20240105_000000", "20240104_000000", "20240101_000000", []))
    decision = _decide(index)
    assert decision.is_full
    assert decision.reason.startswith("broken-chain")


def test_unreadable_newest_record_forces_full() -> None:
    index = _index(full("20240101_000000", [record("docs/x", "h1")]))
    index.unreadable.append("20240102_000000")
    assert _decide(index).reason == "broken-chain"


def test_chain_reaching_max_length_forces_full() -> None:
    index = _index(
        full("20240101_000000", [record("docs/x", "h1")]),
        incremental("20240102_000000", "20240101_000000", "20240101_000000", [record("docs/y", "h")]),
        incremental("20240103_000000", "20240102_000000", "20240101_000000", [record("docs/z", "h")], depth=2),
    )
    settings = ChainSettings(max_chain_length=3, full_every_snapshots=0, full_every_hours=0)
    decision = _decide(index, settings)
    assert decision.is_full
    assert decision.reason == "max-chain-length"

    shorter = ChainSettings(max_chain_length=4, full_every_snapshots=0, full_every_hours=0)
    decision = _decide(index, shorter)
    assert decision.type is SnapshotType.INCREMENTAL
    assert decision.prev_id == "20240103_000000"
    assert decision.base_id == "20240101_000000"
    assert decision.depth == 3


def test_full_every_snapshots_threshold() -> None:
    index = _index(
        full("20240101_000000", [record("docs/x", "h1")]),
        incremental("20240102_000000", "20240101_000000", "20240101_000000", [record("docs/y", "h")]),
    )
    settings = ChainSettings(max_chain_length=0, full_every_snapshots=2, full_every_hours=0)
    assert _decide(index, settings).reason == "full-every-snapshots"


def test_full_every_hours_uses_base_creation_time() -> None:
    index = _index(full("20240101_000000", [record("docs/x", "h1")], created_at="2024-01-10T00:00:00.000Z"))
    settings = ChainSettings(max_chain_length=0, full_every_snapshots=0, full_every_hours=13)
    assert _decide(index, settings, now=NOW).type is SnapshotType.INCREMENTAL
    assert _decide(index, settings, now=NOW + timedelta(hours=1)).reason == "full-every-hours"


def test_missing_base_archive_forces_full() -> None:
    index = _index(full("20240101_000000", [record("docs/x", "h1")]))
    decision = _decide(index, archive_exists=lambda _id: False)
    assert decision.reason == "base-archive-missing"


def test_snapshot_time_falls_back_to_id_then_callback() -> None:
    assert parse_timestamp("2024-01-02T03:04:05.000Z") == utc(2024, 1, 2, 3, 4, 5)
    assert parse_timestamp("not a date") is None
    assert time_from_id("20240102_030405_01") == utc(2024, 1, 2, 3, 4, 5)

    snap = full("20240102_030405", [], created_at="garbage")
    assert snapshot_time(snap) == utc(2024, 1, 2, 3, 4, 5)

    odd = full("manual-import", [])
    assert snapshot_time(odd) is None
    assert snapshot_time(odd, lambda _id: utc(2020, 1, 1)) == utc(2020, 1, 1)
