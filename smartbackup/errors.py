from __future__ import annotations


class BackupError(RuntimeError):
    """Base class for failures surfaced to the CLI."""


class ConfigInvalid(BackupError):
    pass


class CredentialMissing(BackupError):
    pass


class SnapshotNotFound(BackupError):
    def __init__(self, snapshot_id: str) -> None:
        super().__init__(f"Snapshot not found: {snapshot_id}")
        self.snapshot_id = snapshot_id


class ChainBroken(BackupError):
    LOOP = "loop"
    MISSING_ANCESTOR = "missing ancestor"
    BASE_MISMATCH = "base mismatch"
    MISSING_ARCHIVE = "missing archive"

    def __init__(self, reason: str, snapshot_id: str, detail: str = "") -> None:
        message = f"Chain broken ({reason}) at snapshot {snapshot_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.reason = reason
        self.snapshot_id = snapshot_id


class ArchiveToolError(BackupError):
    def __init__(self, message: str, *, args: list[str], returncode: int | None = None) -> None:
        super().__init__(f"{message} (args: {' '.join(args)})")
        self.tool_args = args
        self.returncode = returncode


class SnapshotInUse(BackupError):
    def __init__(self, snapshot_id: str, dependents: list[str]) -> None:
        super().__init__(
            f"Snapshot {snapshot_id} is still required by: {', '.join(dependents)}"
        )
        self.snapshot_id = snapshot_id
        self.dependents = dependents
