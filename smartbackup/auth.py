from __future__ import annotations

import os
from pathlib import Path

from smartbackup.errors import CredentialMissing


PASSWORD_ENV = "BACKUP_PASSWORD"
PASSWORD_FILE_ENV = "BACKUP_PASSWORD_FILE"


def resolve_backup_password() -> str | None:
    """Resolve the archive password from the environment or a password file."""
    value = os.getenv(PASSWORD_ENV, "")
    if value:
        return value

    file_name = os.getenv(PASSWORD_FILE_ENV, "").strip()
    if file_name:
        path = Path(file_name).expanduser()
        try:
            if path.is_file():
                value = path.read_text(encoding="utf-8").strip()
                if value:
                    return value
        except OSError:
            return None

    return None


def require_backup_password() -> str:
    password = resolve_backup_password()
    if not password:
        raise CredentialMissing(
            f"{PASSWORD_ENV} is required to create or restore a backup. "
            f"Set it in the environment, in a .env file, or point {PASSWORD_FILE_ENV} at a file."
        )
    return password


def mask_args(args: list[str]) -> list[str]:
    return ["-p***" if arg.startswith("-p") else arg for arg in args]
