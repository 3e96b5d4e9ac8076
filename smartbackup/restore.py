from __future__ import annotations

import logging
import os
import random
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from smartbackup.archive_tool import ArchiveTool
from smartbackup.chain_policy import fold_chain, walk_chain
from smartbackup.config import BackupConfig
from smartbackup.errors import BackupError, ChainBroken, SnapshotNotFound
from smartbackup.models import FileRecord, Snapshot
from smartbackup.scanner import sha256_file
from smartbackup.store import SnapshotIndex, SnapshotRepository


logger = logging.getLogger(__name__)

DEFAULT_VERIFY_SAMPLE = 10


@dataclass(slots=True)
class RestoreLayer:
    snapshot: Snapshot
    archive: Path | None


@dataclass(slots=True)
class VerifyMismatch:
    path: str
    expected: str
    actual: str | None


@dataclass(slots=True)
class RestoreResult:
    snapshot_id: str
    destination: Path
    chain: list[str]
    overwrite: bool
    layers_applied: int = 0
    layers_skipped: int = 0
    tombstones_applied: int = 0
    restored: int = 0
    skipped: int = 0
    verified: int = 0
    mismatches: list[VerifyMismatch] = field(default_factory=list)


def build_restore_chain(index: SnapshotIndex, snapshot_id: str) -> list[Snapshot]:
    if snapshot_id not in index:
        if snapshot_id in index.unreadable:
            raise BackupError(f"Snapshot record is unreadable: {snapshot_id}")
        raise SnapshotNotFound(snapshot_id)
    return walk_chain(index, snapshot_id)


def plan_layers(repository: SnapshotRepository, chain: list[Snapshot]) -> list[RestoreLayer]:
    layers: list[RestoreLayer] = []
    for snapshot in chain:
        archive = repository.find_archive(snapshot.id)
        if archive is None and snapshot.has_archive_content:
            searched = ", ".join(str(path) for path in repository.archive_locations(snapshot.id))
            raise ChainBroken(ChainBroken.MISSING_ARCHIVE, snapshot.id, f"searched {searched}")
        layers.append(RestoreLayer(snapshot=snapshot, archive=archive))
    return layers


def _inside(root: Path, rel_path: str) -> Path | None:
    rel = PurePosixPath(rel_path.replace("\\", "/").lstrip("/"))
    if not rel.parts or ".." in rel.parts:
        return None
    return root.joinpath(*rel.parts)


def _remove_path(path: Path) -> bool:
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
            return True
        path.unlink()
        return True
    except (FileNotFoundError, NotADirectoryError):
        return False
    except OSError as exc:
        logger.warning("Could not remove tombstoned path %s: %s", path, exc)
        return False


def apply_tombstones(root: Path, removed_files: list[str]) -> int:
    applied = 0
    for rel_path in removed_files:
        target = _inside(root, rel_path)
        if target is None:
            logger.warning("Ignoring unsafe tombstone path %r", rel_path)
            continue
        if _remove_path(target):
            applied += 1
    return applied


def _has_children(inventory: dict[str, FileRecord], path: str) -> bool:
    prefix = path.rstrip("/") + "/"
    return any(key.startswith(prefix) for key in inventory)


def _clear_file_targets(root: Path, paths: list[str]) -> int:
    """Drop directories sitting where a layer is about to write a file."""
    cleared = 0
    for rel_path in paths:
        target = _inside(root, rel_path)
        if target is None or not target.is_dir() or target.is_symlink():
            continue
        shutil.rmtree(target)
        cleared += 1
    return cleared


def _merge_into(staging: Path, destination: Path, *, overwrite: bool) -> tuple[int, int]:
    restored = 0
    skipped = 0
    for dirpath, dirnames, filenames in os.walk(staging):
        dirnames.sort()
        current = Path(dirpath)
        for name in sorted(filenames):
            source = current / name
            target = destination / source.relative_to(staging)
            if target.exists() or target.is_symlink():
                if not overwrite:
                    skipped += 1
                    continue
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target)
                else:
                    target.unlink()
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(target))
            restored += 1
    return restored, skipped


def verify_restore(
    destination: Path,
    inventory: dict[str, FileRecord],
    *,
    sample_size: int = DEFAULT_VERIFY_SAMPLE,
    seed: str | None = None,
) -> tuple[int, list[VerifyMismatch]]:
    """Re-hash a sample of restored files. Mismatches are reported, never raised."""
    paths = sorted(inventory)
    if sample_size <= 0 or not paths:
        return 0, []
    if len(paths) > sample_size:
        paths = sorted(random.Random(seed).sample(paths, sample_size))

    mismatches: list[VerifyMismatch] = []
    for rel_path in paths:
        expected = inventory[rel_path].sha256
        target = _inside(destination, rel_path)
        actual: str | None = None
        if target is not None and target.is_file():
            try:
                actual = sha256_file(target)
            except OSError as exc:
                logger.warning("Could not hash %s for verification: %s", target, exc)
        if actual != expected:
            mismatches.append(VerifyMismatch(path=rel_path, expected=expected, actual=actual))
    return len(paths), mismatches


def restore_snapshot(
    config: BackupConfig,
    snapshot_id: str,
    *,
    destination: Path,
    password: str,
    tool: ArchiveTool,
    overwrite: bool = False,
    verify: bool = True,
) -> RestoreResult:
    repository = SnapshotRepository(config)
    index = repository.load_index()
    chain = build_restore_chain(index, snapshot_id)
    layers = plan_layers(repository, chain)

    destination = destination.resolve()
    destination.mkdir(parents=True, exist_ok=True)
    result = RestoreResult(
        snapshot_id=snapshot_id,
        destination=destination,
        chain=[snapshot.id for snapshot in chain],
        overwrite=overwrite,
    )
    logger.info("Restore %s: chain %s", snapshot_id, " -> ".join(result.chain))

    # Layers are replayed in a sibling staging directory; the destination only sees the merged result.
    with tempfile.TemporaryDirectory(
        prefix=f".smartbackup-restore-{snapshot_id}-", dir=destination.parent
    ) as staging_name:
        staging = Path(staging_name)
        for layer in layers:
            removed = [] if layer.snapshot.is_full else layer.snapshot.removed_files
            layer_files = {record.path: record for record in layer.snapshot.files}
            # A removed file whose path became a directory must go before the extract.
            early = [path for path in removed if _has_children(layer_files, path)]
            result.tombstones_applied += apply_tombstones(staging, early)
            # A removed directory whose path became a file.
            result.tombstones_applied += _clear_file_targets(staging, sorted(layer_files))
            if layer.archive is not None:
                tool.extract(layer.archive, staging, password, overwrite=True)
                result.layers_applied += 1
                logger.info("Restore: applied %s from %s", layer.snapshot.id, layer.archive)
            else:
                result.layers_skipped += 1
                logger.info("Restore: %s has no archive content, skipped", layer.snapshot.id)
            result.tombstones_applied += apply_tombstones(
                staging, [path for path in removed if path not in early]
            )

        result.restored, result.skipped = _merge_into(staging, destination, overwrite=overwrite)

    inventory = fold_chain(chain)
    if overwrite:
        tombstoned = {
            path
            for snapshot in chain
            if not snapshot.is_full
            for path in snapshot.removed_files
            if path not in inventory and not _has_children(inventory, path)
        }
        result.tombstones_applied += apply_tombstones(destination, sorted(tombstoned))

    if verify:
        result.verified, result.mismatches = verify_restore(
            destination,
            inventory,
            sample_size=config.verify_sample,
            seed=snapshot_id,
        )
        for mismatch in result.mismatches:
            logger.warning(
                "Verify mismatch %s: expected %s, found %s",
                mismatch.path,
                mismatch.expected,
                mismatch.actual or "missing",
            )

    logger.info(
        "Restore %s finished: %d restored, %d skipped, %d tombstone(s)",
        snapshot_id,
        result.restored,
        result.skipped,
        result.tombstones_applied,
    )
    return result
