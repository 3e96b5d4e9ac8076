import asyncio

import pytest
from conftest import PASSWORD, utc, write

from smartbackup.backup_service import check_for_changes, run_backup, run_cycle
from smartbackup.config import ChainSettings
from smartbackup.errors import ConfigInvalid, CredentialMissing
from smartbackup.models import SnapshotType
from smartbackup.restore import restore_snapshot
from smartbackup.store import BlobStore, SnapshotRepository


def _backup(config, tool, now, **kwargs):
    return asyncio.run(run_backup(config, tool=tool, password=PASSWORD, now=now, **kwargs))


def _tree(root):
    return {
        path.relative_to(root).as_posix(): path.read_text(encoding="utf-8")
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


def test_first_run_is_full_and_writes_archive_blobs_and_record(config, tool, source_dir) -> None:
    write(source_dir, "a.txt", "alpha")
    write(source_dir, "sub/.hidden", "dot")
    write(source_dir, ".git/config", "ignored")

    result = _backup(config, tool, utc(2024, 1, 1, 8, 0, 0))
    snapshot = result.snapshot
    assert snapshot is not None
    assert snapshot.id == "20240101_080000"
    assert snapshot.type is SnapshotType.FULL
    assert snapshot.base_id is None and snapshot.prev_id is None
    assert [r.path for r in snapshot.files] == ["docs/a.txt", "docs/sub/.hidden"]
    assert result.archive_path == SnapshotRepository(config).archive_path(snapshot.id)
    assert result.archive_path.exists()
    assert result.blobs_stored == 2
    assert all(BlobStore(config.blobs_dir).exists(r.sha256) for r in snapshot.files)
    assert SnapshotRepository(config).load(snapshot.id).files == snapshot.files


def test_unchanged_sources_skip_without_new_record(config, tool, source_dir) -> None:
    write(source_dir, "a.txt", "alpha")
    _backup(config, tool, utc(2024, 1, 1))
    result = _backup(config, tool, utc(2024, 1, 2))
    assert result.snapshot is None
    assert result.skipped_reason == "no-changes"
    assert SnapshotRepository(config).list_ids() == ["20240101_000000"]


def test_incremental_holds_only_added_and_modified(config, tool, source_dir) -> None:
    write(source_dir, "a.txt", "alpha")
    write(source_dir, "b.txt", "beta")
    _backup(config, tool, utc(2024, 1, 1))

    write(source_dir, "b.txt", "beta, longer now")
    write(source_dir, "c.txt", "gamma")
    result = _backup(config, tool, utc(2024, 1, 2))
    snapshot = result.snapshot
    assert snapshot.type is SnapshotType.INCREMENTAL
    assert snapshot.prev_id == "20240101_000000"
    assert snapshot.base_id == "20240101_000000"
    assert snapshot.depth == 1
    assert [r.path for r in snapshot.files] == ["docs/b.txt", "docs/c.txt"]
    assert (snapshot.stats.added, snapshot.stats.modified, snapshot.stats.removed) == (1, 1, 0)


def test_removal_only_run_records_tombstones_without_archive(config, tool, source_dir) -> None:
    write(source_dir, "a.txt", "alpha")
    gone = write(source_dir, "b.txt", "beta")
    _backup(config, tool, utc(2024, 1, 1))

    gone.unlink()
    result = _backup(config, tool, utc(2024, 1, 2))
    snapshot = result.snapshot
    assert snapshot.type is SnapshotType.INCREMENTAL
    assert snapshot.files == []
    assert snapshot.removed_files == ["docs/b.txt"]
    assert result.archive_path is None
    assert not SnapshotRepository(config).archive_path(snapshot.id).exists()
    assert SnapshotRepository(config).record_path(snapshot.id).exists()


def test_chain_at_max_length_produces_full(config, tool, source_dir) -> None:
    config.chain = ChainSettings(max_chain_length=3, full_every_snapshots=0, full_every_hours=0)
    types = []
    for day in range(1, 5):
        write(source_dir, f"f{day}.txt", "x" * day)
        types.append(_backup(config, tool, utc(2024, 1, day)).snapshot.type)
    assert types == [
        SnapshotType.FULL,
        SnapshotType.INCREMENTAL,
        SnapshotType.INCREMENTAL,
        SnapshotType.FULL,
    ]


def test_missing_base_archive_triggers_new_full(config, tool, source_dir) -> None:
    write(source_dir, "a.txt", "alpha")
    first = _backup(config, tool, utc(2024, 1, 1)).snapshot
    SnapshotRepository(config).archive_path(first.id).unlink()

    write(source_dir, "b.txt", "beta")
    result = _backup(config, tool, utc(2024, 1, 2))
    assert result.snapshot.type is SnapshotType.FULL
    assert result.decision.reason == "base-archive-missing"


def test_zero_files_never_triggers_backup(config, tool, source_dir) -> None:
    for i in range(5):
        write(source_dir, f"{i}.txt", str(i))
    _backup(config, tool, utc(2024, 1, 1))
    for path in list(source_dir.iterdir()):
        path.unlink()

    result = _backup(config, tool, utc(2024, 1, 2))
    assert result.snapshot is None
    assert result.skipped_reason == "no-files"

    diff = asyncio.run(check_for_changes(config))
    assert diff.changed is False
    assert diff.reason == "no-files"


def test_failed_archive_leaves_no_record_or_partial(config, tool, source_dir) -> None:
    write(source_dir, "a.txt", "alpha")
    tool.fail_create = True
    with pytest.raises(RuntimeError):
        _backup(config, tool, utc(2024, 1, 1))
    repository = SnapshotRepository(config)
    assert repository.list_ids() == []
    assert list(config.archives_dir.iterdir()) == []


def test_missing_password_is_fatal_for_backup(config, tool, source_dir, monkeypatch) -> None:
    monkeypatch.delenv("BACKUP_PASSWORD", raising=False)
    monkeypatch.delenv("BACKUP_PASSWORD_FILE", raising=False)
    write(source_dir, "a.txt", "alpha")
    with pytest.raises(CredentialMissing):
        asyncio.run(run_backup(config, tool=tool, now=utc(2024, 1, 1)))


def test_check_reports_changes_against_resolved_chain(config, tool, source_dir) -> None:
    write(source_dir, "a.txt", "alpha")
    write(source_dir, "b.txt", "beta")
    _backup(config, tool, utc(2024, 1, 1))
    write(source_dir, "c.txt", "gamma")
    _backup(config, tool, utc(2024, 1, 2))

    (source_dir / "a.txt").unlink()
    diff = asyncio.run(check_for_changes(config))
    assert diff.changed is True
    assert diff.removed == ["docs/a.txt"]
    assert diff.added == []


def test_restoring_latest_reproduces_source_tree(config, tool, source_dir, tmp_path) -> None:
    write(source_dir, "a.txt", "alpha")
    write(source_dir, "nested/b.txt", "beta")
    _backup(config, tool, utc(2024, 1, 1))
    write(source_dir, "nested/b.txt", "beta v2!")
    write(source_dir, "c.txt", "gamma")
    _backup(config, tool, utc(2024, 1, 2))
    (source_dir / "a.txt").unlink()
    last = _backup(config, tool, utc(2024, 1, 3)).snapshot

    dest = tmp_path / "restored"
    result = restore_snapshot(config, last.id, destination=dest, password=PASSWORD, tool=tool)
    assert _tree(dest / "docs") == _tree(source_dir)
    assert result.mismatches == []


def test_restore_handles_directory_replaced_by_file(config, tool, source_dir, tmp_path) -> None:
    write(source_dir, "x/y", "inside")
    write(source_dir, "keep.txt", "keep")
    _backup(config, tool, utc(2024, 1, 1))

    (source_dir / "x" / "y").unlink()
    (source_dir / "x").rmdir()
    write(source_dir, "x", "now a file")
    last = _backup(config, tool, utc(2024, 1, 2)).snapshot
    assert last.type is SnapshotType.INCREMENTAL
    assert last.removed_files == ["docs/x/y"]
    assert [r.path for r in last.files] == ["docs/x"]

    dest = tmp_path / "restored"
    result = restore_snapshot(config, last.id, destination=dest, password=PASSWORD, tool=tool)
    assert _tree(dest / "docs") == {"keep.txt": "keep", "x": "now a file"}
    assert result.mismatches == []


def test_restore_handles_file_replaced_by_directory(config, tool, source_dir, tmp_path) -> None:
    write(source_dir, "x", "a file")
    _backup(config, tool, utc(2024, 1, 1))

    (source_dir / "x").unlink()
    write(source_dir, "x/y", "inside")
    last = _backup(config, tool, utc(2024, 1, 2)).snapshot

    dest = tmp_path / "restored"
    restore_snapshot(config, last.id, destination=dest, password=PASSWORD, tool=tool)
    assert _tree(dest / "docs") == {"x/y": "inside"}


def test_cycle_prunes_expired_and_collects_their_blobs(config, tool, source_dir) -> None:
    config.retention_days = 1
    write(source_dir, "a.txt", "alpha")
    first = _backup(config, tool, utc(2024, 1, 1)).snapshot
    old_hash = first.files[0].sha256

    # Everything changes, so the first snapshot's content is no longer needed.
    config.chain = ChainSettings(max_chain_length=1, full_every_snapshots=0, full_every_hours=0)
    (source_dir / "a.txt").unlink()
    write(source_dir, "b.txt", "beta")
    result = asyncio.run(run_cycle(config, tool=tool, password=PASSWORD, now=utc(2024, 1, 10)))

    assert result.backup.snapshot.type is SnapshotType.FULL
    assert [report.snapshot_id for report in result.retention.pruned] == [first.id]
    assert result.gc.removed_count == 1
    assert not BlobStore(config.blobs_dir).exists(old_hash)
    assert SnapshotRepository(config).list_ids() == [result.backup.snapshot.id]


def test_sources_sharing_a_name_fail_before_anything_is_written(config, tool, tmp_path) -> None:
    write(tmp_path, "a/docs/f", "first")
    write(tmp_path, "b/docs/f", "second")
    config.sources = [tmp_path / "a" / "docs", tmp_path / "b" / "docs"]

    with pytest.raises(ConfigInvalid):
        _backup(config, tool, utc(2024, 1, 1))
    assert SnapshotRepository(config).list_ids() == []
    assert tool.created == []
    assert not config.state_db_path.exists()
