"""Structured log buffer for batch runs.

Entries accumulate in memory while a run executes and are rendered into
the run's ``log_text`` once, at the terminal transition. Each entry is
also forwarded to the ``docked.batch.<job_type>`` logger.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass
class LogEntry:
    timestamp: datetime
    level: str
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def format(self, job_type: str, run_id: Optional[int] = None) -> str:
        run = f" [run:{run_id}]" if run_id is not None else ""
        line = (
            f"[{self.timestamp.isoformat()}] [{self.level.upper()}] [{job_type}]{run} {self.message}"
        )
        if self.metadata:
            meta = " ".join(
                f"{key}={json.dumps(value, default=str)}" for key, value in self.metadata.items()
            )
            line = f"{line} {meta}"
        return line


class BatchLogger:
    """In-memory log of one batch run."""

    def __init__(self, job_type: str, run_id: Optional[int] = None) -> None:
        self.job_type = job_type
        self.run_id = run_id
        self._entries: list[LogEntry] = []
        self._logger = logging.getLogger(f"docked.batch.{job_type}")

    def log(self, level: str, message: str, **metadata: Any) -> LogEntry:
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc),
            level=level,
            message=message,
            metadata=metadata,
        )
        self._entries.append(entry)
        self._logger.log(_LEVELS.get(level, logging.INFO), entry.format(self.job_type, self.run_id))
        return entry

    def debug(self, message: str, **metadata: Any) -> LogEntry:
        return self.log("debug", message, **metadata)

    def info(self, message: str, **metadata: Any) -> LogEntry:
        return self.log("info", message, **metadata)

    def warning(self, message: str, **metadata: Any) -> LogEntry:
        return self.log("warning", message, **metadata)

    def error(self, message: str, **metadata: Any) -> LogEntry:
        return self.log("error", message, **metadata)

    @property
    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def format(self) -> str:
        """Render every entry, one per line, for BatchRun.log_text."""
        return "\n".join(entry.format(self.job_type, self.run_id) for entry in self._entries)

    def clear(self) -> None:
        self._entries = []
