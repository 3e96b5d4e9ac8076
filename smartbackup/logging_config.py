from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from pythonjsonlogger.json import JsonFormatter
from rich.console import Console
from rich.logging import RichHandler


class DailyFileHandler(logging.Handler):
    """Appends each record to ``<logs_dir>/<YYYY-MM-DD>.log`` for the record's UTC day."""

    def __init__(self, logs_dir: Path) -> None:
        super().__init__()
        self.logs_dir = logs_dir
        self._day: str | None = None
        self._stream = None

    def _open_for(self, day: str):
        if self._day == day and self._stream is not None:
            return self._stream
        if self._stream is not None:
            self._stream.close()
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self._stream = (self.logs_dir / f"{day}.log").open("a", encoding="utf-8")
        self._day = day
        return self._stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            day = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%d")
            message = self.format(record)
            with self.lock:
                stream = self._open_for(day)
                stream.write(message + "\n")
                stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        with self.lock:
            if self._stream is not None:
                self._stream.close()
                self._stream = None
                self._day = None
        super().close()


def setup_logging(
    logs_dir: Path | None = None,
    *,
    level: int | str = logging.INFO,
    console: Console | None = None,
) -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=False,
    )
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(console_handler)

    if logs_dir is not None:
        file_handler = DailyFileHandler(logs_dir)
        file_handler.setFormatter(
            JsonFormatter(
                fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
                rename_fields={
                    "asctime": "timestamp",
                    "levelname": "level",
                    "name": "logger",
                },
            )
        )
        root.addHandler(file_handler)

    root.setLevel(level)
    logging.getLogger("watchdog").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
