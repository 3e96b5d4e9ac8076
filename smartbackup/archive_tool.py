from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Protocol

from smartbackup.auth import mask_args
from smartbackup.errors import ArchiveToolError


logger = logging.getLogger(__name__)

SEVEN_ZIP_ENV = "SEVEN_ZIP_BIN"
WINDOWS_CANDIDATES = (
    r"C:\Program Files\7-Zip\7z.exe",
    r"C:\Program Files (x86)\7-Zip\7z.exe",
)
OUTPUT_TAIL_CHARS = 2000


@dataclass(slots=True, frozen=True)
class ArchiveEntry:
    abs_path: Path
    dest_rel_path: str


class ArchiveTool(Protocol):
    def create(self, entries: list[ArchiveEntry], archive_path: Path, password: str) -> None: ...

    def extract(
        self, archive_path: Path, dest_root: Path, password: str, *, overwrite: bool = True
    ) -> None: ...

    def test(self, archive_path: Path, password: str) -> None: ...


def seven_zip_binary() -> str:
    value = os.getenv(SEVEN_ZIP_ENV, "").strip()
    if value:
        return value
    if sys.platform == "win32":
        for candidate in WINDOWS_CANDIDATES:
            if Path(candidate).exists():
                return candidate
        return WINDOWS_CANDIDATES[0]
    return "7z"


def _safe_rel_path(value: str) -> PurePosixPath:
    rel = PurePosixPath(value.replace("\\", "/").lstrip("/"))
    if not rel.parts or any(part in {"..", "."} for part in rel.parts):
        raise ValueError(f"Unsafe archive destination path: {value!r}")
    return rel


def _link_or_copy(source: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.link(source, target)
    except OSError:
        shutil.copy2(source, target)


class SevenZipTool:
    """Runs the external 7-Zip binary. Archives always use header encryption."""

    def __init__(self, binary: str | None = None, *, compression_level: int = 9) -> None:
        self.binary = binary or seven_zip_binary()
        self.compression_level = compression_level

    def _run(self, args: list[str], *, cwd: Path | None = None) -> None:
        safe_args = mask_args(args)
        logger.debug("Running %s %s", self.binary, " ".join(safe_args))
        try:
            completed = subprocess.run(
                [self.binary, *args],
                cwd=str(cwd) if cwd is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise ArchiveToolError(f"7z binary not found: {self.binary}", args=safe_args) from exc
        except OSError as exc:
            raise ArchiveToolError(f"Failed to run 7z: {exc}", args=safe_args) from exc

        if completed.returncode != 0:
            output = (completed.stdout or "")[-OUTPUT_TAIL_CHARS:]
            if output:
                logger.error("7z output:\n%s", output)
            raise ArchiveToolError(
                f"7z exited with code {completed.returncode}",
                args=safe_args,
                returncode=completed.returncode,
            )

    def create(self, entries: list[ArchiveEntry], archive_path: Path, password: str) -> None:
        if not password:
            raise ValueError("Missing archive password")
        if not entries:
            raise ValueError("Refusing to create an empty archive")

        archive_path = archive_path.resolve()
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="smartbackup-stage-") as staging:
            staging_root = Path(staging)
            for entry in entries:
                rel = _safe_rel_path(entry.dest_rel_path)
                _link_or_copy(entry.abs_path, staging_root.joinpath(*rel.parts))

            top_level = sorted(path.name for path in staging_root.iterdir())
            self._run(
                [
                    "a",
                    "-t7z",
                    str(archive_path),
                    *top_level,
                    f"-p{password}",
                    "-mhe=on",
                    f"-mx={self.compression_level}",
                    "-y",
                ],
                cwd=staging_root,
            )

    def extract(
        self, archive_path: Path, dest_root: Path, password: str, *, overwrite: bool = True
    ) -> None:
        if not password:
            raise ValueError("Missing archive password")
        dest_root.mkdir(parents=True, exist_ok=True)
        self._run(
            [
                "x",
                str(archive_path),
                f"-p{password}",
                f"-o{dest_root}",
                "-aoa" if overwrite else "-aos",
                "-y",
            ]
        )

    def test(self, archive_path: Path, password: str) -> None:
        if not password:
            raise ValueError("Missing archive password")
        self._run(["t", str(archive_path), f"-p{password}", "-y"])
