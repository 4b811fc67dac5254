"""
Event sinks for handshake diagnostics.

Every component receives its sink by injection; there is no module-level
logger. Sinks:
- TelemetryLogger: NDJSON file, one compact event per line, flushed per write
- MemoryEventSink: bounded in-memory buffer for tests and auto-test reports
- NullEventSink: discards everything

Event format:
    {"ts": float, "level": str, "component": str, "msg": str, ...fields}
"""

import json
import os
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from config import LOG_FILE, LOG_ARCHIVE_DIR, MEMORY_SINK_MAX_EVENTS

LEVELS = ("debug", "info", "success", "error")


class EventSink:
    """Base sink. Subclasses implement `record(event)`."""

    def record(self, event: Dict[str, Any]) -> None:
        raise NotImplementedError

    def log(self, level: str, component: str, message: str, **fields: Any) -> None:
        if level not in LEVELS:
            raise ValueError(f"Unknown level {level!r}")
        event = {"ts": round(time.time(), 3), "level": level,
                 "component": component, "msg": message}
        event.update(fields)
        self.record(event)

    def debug(self, component: str, message: str, **fields: Any) -> None:
        self.log("debug", component, message, **fields)

    def info(self, component: str, message: str, **fields: Any) -> None:
        self.log("info", component, message, **fields)

    def success(self, component: str, message: str, **fields: Any) -> None:
        self.log("success", component, message, **fields)

    def error(self, component: str, message: str, **fields: Any) -> None:
        self.log("error", component, message, **fields)


class NullEventSink(EventSink):
    def record(self, event: Dict[str, Any]) -> None:
        pass


class MemoryEventSink(EventSink):
    """Keeps the most recent events in memory (oldest dropped first)."""

    def __init__(self, max_events: int = MEMORY_SINK_MAX_EVENTS):
        self.events: Deque[Dict[str, Any]] = deque(maxlen=max_events)

    def record(self, event: Dict[str, Any]) -> None:
        self.events.append(event)

    def messages(self, level: Optional[str] = None, component: Optional[str] = None) -> List[str]:
        return [e["msg"] for e in self.events
                if (level is None or e["level"] == level)
                and (component is None or e["component"] == component)]

    def as_text(self) -> str:
        lines = []
        for e in self.events:
            stamp = datetime.fromtimestamp(e["ts"]).strftime("%H:%M:%S.%f")[:-3]
            lines.append(f"[{stamp}] [{e['level'].upper()}] [{e['component']}] {e['msg']}")
        return "\n".join(lines)

    def clear(self) -> None:
        self.events.clear()


class TelemetryLogger(EventSink):
    """
    NDJSON telemetry logger.

    - File: logs/session_log.jsonl (append mode, cleared on open)
    - Compact separators, flushed after every event so tail readers see it
    - Optional console echo with a [LEVEL] prefix
    """

    def __init__(self, log_path: str = LOG_FILE, echo: bool = False, min_level: str = "debug"):
        """
        Args:
            log_path: Path to NDJSON log file
            echo: Also print each event to stdout
            min_level: Events below this level are not echoed (always written)
        """
        self.log_path = Path(log_path)
        self.echo = echo
        self.min_level = min_level
        self._file_handle: Optional[Any] = None
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def open(self) -> None:
        """Open log file for appending."""
        if self.log_path.exists():
            self.log_path.unlink()
        self._file_handle = open(self.log_path, 'a')

    def close(self) -> None:
        if self._file_handle:
            self._file_handle.close()
            self._file_handle = None

    def record(self, event: Dict[str, Any]) -> None:
        if self._file_handle is None:
            self.open()

        line = json.dumps(event, separators=(',', ':'), default=str)
        self._file_handle.write(line + '\n')
        self._file_handle.flush()

        if self.echo and LEVELS.index(event["level"]) >= LEVELS.index(self.min_level):
            print(f"[{event['level'].upper()}] {event['msg']}")

    def flush(self) -> None:
        """Flush buffered writes to disk."""
        if self._file_handle:
            self._file_handle.flush()
            os.fsync(self._file_handle.fileno())

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.flush()
        self.close()


# =============================================================================
# Structured event helpers
# =============================================================================

def log_batch(sink: EventSink, batch_id: str, config_key: str, request_ids: List[str],
              pattern: str) -> None:
    """Log the start of one batch emission."""
    sink.info("batch", f"{config_key}: {len(request_ids)} participant(s), pattern {pattern}",
              event="BATCH_START", batch_id=batch_id, requests=request_ids)


def log_verification(sink: EventSink, request_id: str, match_count: int, total: int,
                     passed: bool, details: List[str]) -> None:
    """Log a verification verdict with its per-pulse details."""
    for line in details:
        sink.debug("verify", f"  {line}")
    level = "success" if passed else "error"
    sink.log(level, "verify", f"{request_id[:8]} score {match_count}/{total}, passed: {passed}",
             event="VERIFIED" if passed else "FAILED", request_id=request_id,
             match_count=match_count, passed=passed)


def log_outcome(sink: EventSink, participant_id: str, outcome: str, match_count: int,
                cause: Optional[str] = None) -> None:
    """Log the outcome of a round as seen by the participant."""
    fields = {"event": "ROUND_OUTCOME", "participant": participant_id,
              "outcome": outcome, "match_count": match_count}
    if cause:
        fields["cause"] = cause
    level = "success" if outcome == "PASSED" else "error"
    sink.log(level, "participant", f"{participant_id}: {outcome} ({match_count})", **fields)


def archive_session_logs(log_file: str = LOG_FILE,
                         archive_dir: str = LOG_ARCHIVE_DIR) -> Optional[str]:
    """
    Archive the previous run's log before starting a new one.

    Returns:
        Archive directory path if a log was archived, None otherwise.
    """
    log_path = Path(log_file)
    if not log_path.exists():
        return None

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    session_archive = Path(archive_dir) / f"session_{timestamp}"
    session_archive.mkdir(parents=True, exist_ok=True)
    log_path.rename(session_archive / log_path.name)
    return str(session_archive)
