from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from smartbackup.errors import ConfigInvalid


CONFIG_FILENAME = "config.json"
STATE_DB_FILENAME = "state.db"
DEFAULT_IGNORE = ("**/.git/**", "**/node_modules/**", "**/.cache/**")
DEFAULT_RETENTION_DAYS = 30
DEFAULT_DEBOUNCE_SECONDS = 10
DEFAULT_HASH_WORKERS = 4
DEFAULT_VERIFY_SAMPLE = 10
DEFAULT_MAX_CHAIN_LENGTH = 20
DEFAULT_FULL_EVERY_SNAPSHOTS = 10
DEFAULT_FULL_EVERY_HOURS = 168.0


@dataclass(slots=True)
class ChainSettings:
    max_chain_length: int = DEFAULT_MAX_CHAIN_LENGTH
    full_every_snapshots: int = DEFAULT_FULL_EVERY_SNAPSHOTS
    full_every_hours: float = DEFAULT_FULL_EVERY_HOURS


@dataclass(slots=True)
class BackupConfig:
    repo_path: Path
    sources: list[Path]
    restore_path: Path | None = None
    archive_store_path: Path | None = None
    ignore: tuple[str, ...] = DEFAULT_IGNORE
    retention_days: float = DEFAULT_RETENTION_DAYS
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    blob_store: bool = True
    hash_workers: int = DEFAULT_HASH_WORKERS
    verify_sample: int = DEFAULT_VERIFY_SAMPLE
    chain: ChainSettings = field(default_factory=ChainSettings)

    @property
    def snapshots_dir(self) -> Path:
        return self.repo_path / "snapshots"

    @property
    def archives_dir(self) -> Path:
        return self.repo_path / "archives"

    @property
    def blobs_dir(self) -> Path:
        return self.repo_path / "blobs"

    @property
    def logs_dir(self) -> Path:
        return self.repo_path / "logs"

    @property
    def state_db_path(self) -> Path:
        return self.repo_path / STATE_DB_FILENAME


def config_path(value: str | Path | None = None) -> Path:
    return Path(value or CONFIG_FILENAME).expanduser().resolve()


def load_config(path: str | Path | None = None) -> BackupConfig:
    path = config_path(path)
    if not path.exists():
        raise ConfigInvalid(f"Config file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ConfigInvalid(f"Config file is not valid JSON: {path} ({exc})") from exc

    if not isinstance(data, dict):
        raise ConfigInvalid(f"Config file must contain a JSON object: {path}")
    return parse_config(data, base_dir=path.parent)


def parse_config(data: dict[str, Any], *, base_dir: Path | None = None) -> BackupConfig:
    base_dir = base_dir or Path.cwd()

    repo_path = data.get("repoPath")
    sources = data.get("sources")
    if not repo_path or not isinstance(sources, list) or not sources:
        raise ConfigInvalid("Invalid config: repoPath and sources are required.")

    retention_days = _number(data, "retentionDays", DEFAULT_RETENTION_DAYS)
    if retention_days < 0:
        raise ConfigInvalid("Invalid config: retentionDays must be >= 0.")

    ignore = data.get("ignore")
    if ignore is None:
        ignore = list(DEFAULT_IGNORE)
    if not isinstance(ignore, list):
        raise ConfigInvalid("Invalid config: ignore must be a list of glob patterns.")

    raw_chain = data.get("chain") or {}
    if not isinstance(raw_chain, dict):
        raise ConfigInvalid("Invalid config: chain must be an object.")
    chain = ChainSettings(
        max_chain_length=int(_number(raw_chain, "maxChainLength", DEFAULT_MAX_CHAIN_LENGTH)),
        full_every_snapshots=int(
            _number(raw_chain, "fullEverySnapshots", DEFAULT_FULL_EVERY_SNAPSHOTS)
        ),
        full_every_hours=_number(raw_chain, "fullEveryHours", DEFAULT_FULL_EVERY_HOURS),
    )

    resolved_sources = [_resolve(base_dir, item) for item in sources]
    seen: dict[str, Path] = {}
    for source in resolved_sources:
        # Snapshot paths are prefixed with the source directory name.
        if source.name in seen:
            raise ConfigInvalid(
                f"Invalid config: sources {seen[source.name]} and {source} share the name "
                f"'{source.name}'; source directory names must be unique."
            )
        seen[source.name] = source

    return BackupConfig(
        repo_path=_resolve(base_dir, repo_path),
        sources=resolved_sources,
        restore_path=_resolve(base_dir, data["restorePath"]) if data.get("restorePath") else None,
        archive_store_path=(
            _resolve(base_dir, data["archiveStorePath"]) if data.get("archiveStorePath") else None
        ),
        ignore=tuple(str(pattern) for pattern in ignore if pattern),
        retention_days=retention_days,
        debounce_seconds=_number(data, "debounceSeconds", DEFAULT_DEBOUNCE_SECONDS),
        blob_store=bool(data.get("blobStore", True)),
        hash_workers=max(1, int(_number(data, "hashWorkers", DEFAULT_HASH_WORKERS))),
        verify_sample=max(0, int(_number(data, "verifySample", DEFAULT_VERIFY_SAMPLE))),
        chain=chain,
    )


def _number(data: dict[str, Any], key: str, default: float) -> float:
    value = data.get(key)
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigInvalid(f"Invalid config: {key} must be a number.")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigInvalid(f"Invalid config: {key} must be a number.") from exc


def _resolve(base_dir: Path, value: Any) -> Path:
    path = Path(str(value)).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path.resolve()
