from __future__ import annotations

import hashlib
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from smartbackup.errors import ConfigInvalid
from smartbackup.filters import PathFilter
from smartbackup.models import FileRecord

if TYPE_CHECKING:
    from rich.console import Console


DEFAULT_HASH_WORKERS = 4


@dataclass(slots=True, frozen=True)
class SourceEntry:
    abs_path: Path
    rel_path: str
    source_root: Path
    size: int
    mtime_ns: int


def sha256_file(
    path: Path,
    chunk_size: int = 1024 * 1024,
    *,
    on_chunk: Callable[[int], None] | None = None,
) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        while True:
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
            if on_chunk is not None:
                on_chunk(len(chunk))
    return digest.hexdigest()


def _walk_files(root: Path):
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames.sort()
        current = Path(dirpath)
        for name in sorted(filenames):
            yield current / name


def scan_sources(
    sources: list[Path],
    path_filter: PathFilter | None = None,
) -> list[SourceEntry]:
    path_filter = path_filter or PathFilter()
    entries: list[SourceEntry] = []
    roots: dict[str, Path] = {}

    for source in sources:
        root = source.resolve()
        if not root.is_dir():
            continue
        if root.name in roots:
            if roots[root.name] == root:
                continue
            raise ConfigInvalid(f"Sources {roots[root.name]} and {root} share the name '{root.name}'.")
        roots[root.name] = root
        for file_path in _walk_files(root):
            if file_path.is_symlink() or not file_path.is_file():
                continue
            inner = file_path.relative_to(root).as_posix()
            rel_path = f"{root.name}/{inner}"
            if not path_filter.matches(inner, rel_path):
                continue
            stat = file_path.stat()
            entries.append(
                SourceEntry(
                    abs_path=file_path,
                    rel_path=rel_path,
                    source_root=root,
                    size=stat.st_size,
                    mtime_ns=stat.st_mtime_ns,
                )
            )

    entries.sort(key=lambda entry: entry.rel_path)
    return entries


def _record_from_entry(
    entry: SourceEntry,
    cached_records: dict[str, FileRecord],
    *,
    on_hash_chunk: Callable[[int], None] | None = None,
) -> FileRecord:
    cached = cached_records.get(entry.rel_path)
    if cached is not None and cached.size == entry.size and cached.mtime_ns == entry.mtime_ns:
        sha256 = cached.sha256
    else:
        sha256 = sha256_file(entry.abs_path, on_chunk=on_hash_chunk)

    return FileRecord(
        path=entry.rel_path,
        sha256=sha256,
        size=entry.size,
        mtime_ns=entry.mtime_ns,
    )


def build_inventory(
    entries: list[SourceEntry],
    *,
    cached_records: dict[str, FileRecord] | None = None,
    workers: int = DEFAULT_HASH_WORKERS,
    console: "Console | None" = None,
) -> list[FileRecord]:
    cached_records = cached_records or {}
    if not entries:
        return []

    if console is not None:
        return _build_inventory_with_progress(entries, cached_records, workers, console)

    if workers <= 1 or len(entries) == 1:
        return [_record_from_entry(entry, cached_records) for entry in entries]

    records: dict[str, FileRecord] = {}
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="smartbackup-hash") as executor:
        futures: dict[Future[FileRecord], str] = {
            executor.submit(_record_from_entry, entry, cached_records): entry.rel_path
            for entry in entries
        }
        try:
            for future in as_completed(futures):
                records[futures[future]] = future.result()
        except Exception:
            for future in futures:
                future.cancel()
            raise

    return [records[entry.rel_path] for entry in entries]


def _build_inventory_with_progress(
    entries: list[SourceEntry],
    cached_records: dict[str, FileRecord],
    workers: int,
    console: "Console",
) -> list[FileRecord]:
    from rich.progress import (
        BarColumn,
        DownloadColumn,
        Progress,
        SpinnerColumn,
        TaskProgressColumn,
        TextColumn,
        TimeRemainingColumn,
        TransferSpeedColumn,
    )

    total_bytes = sum(entry.size for entry in entries)
    lock = threading.Lock()
    records: dict[str, FileRecord] = {}

    with Progress(
        SpinnerColumn(),
        TextColumn("[bold]Hashing"),
        BarColumn(),
        TaskProgressColumn(),
        DownloadColumn(binary_units=True),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        TextColumn("{task.fields[file_progress]}"),
        console=console,
        transient=True,
        expand=True,
    ) as progress:
        task_id = progress.add_task(
            "hash",
            total=max(total_bytes, 1),
            file_progress=f"0/{len(entries)} files",
        )
        done = 0

        def _advance(delta: int) -> None:
            with lock:
                progress.update(task_id, advance=delta)

        def _one(entry: SourceEntry) -> FileRecord:
            nonlocal done
            cached = cached_records.get(entry.rel_path)
            reuses = cached is not None and cached.size == entry.size and cached.mtime_ns == entry.mtime_ns
            record = _record_from_entry(
                entry, cached_records, on_hash_chunk=None if reuses else _advance
            )
            with lock:
                done += 1
                if reuses:
                    progress.update(task_id, advance=entry.size)
                progress.update(task_id, file_progress=f"{done}/{len(entries)} files")
            return record

        with ThreadPoolExecutor(
            max_workers=max(1, workers), thread_name_prefix="smartbackup-hash"
        ) as executor:
            for entry, record in zip(entries, executor.map(_one, entries)):
                records[entry.rel_path] = record

    return [records[entry.rel_path] for entry in entries]
