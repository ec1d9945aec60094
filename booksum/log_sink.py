"""User-facing run log. The pipeline only ever calls `append(message, severity)`."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from tqdm import tqdm

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class LogEntry:
    message: str
    severity: Severity
    timestamp: datetime = field(default_factory=datetime.now)


class MemoryLogSink:
    """Keeps every entry in order; handy for tests and for embedding the pipeline."""

    def __init__(self):
        self.entries = []

    def append(self, message, severity=Severity.INFO):
        self.entries.append(LogEntry(message, Severity(severity)))

    def messages(self, severity=None):
        return [e.message for e in self.entries if severity is None or e.severity == Severity(severity)]


class ConsoleLogSink:
    """Prints entries through tqdm so they don't break an active progress bar."""

    PREFIXES = {
        Severity.INFO: "",
        Severity.SUCCESS: "OK ",
        Severity.WARNING: "WARNING ",
        Severity.ERROR: "ERROR ",
    }

    def append(self, message, severity=Severity.INFO):
        severity = Severity(severity)
        stamp = datetime.now().strftime("%H:%M:%S")
        try:
            tqdm.write(f"[{stamp}] {self.PREFIXES[severity]}{message}")
        except OSError as e:
            # A closed stdout must not stop the run.
            logger.debug("Console log sink failed: %s", e)


def safe_append(sink, message, severity=Severity.INFO):
    """Forwards to a sink, if any. Sink failures are logged and dropped."""
    if sink is None:
        return
    try:
        sink.append(message, severity)
    except Exception:
        logger.exception("Log sink raised while appending %r", message)
