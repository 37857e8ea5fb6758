#!/usr/bin/env python3
"""
Operations Logger for the Review/Fix Loop

Records what every run did: iterations, agent sessions, deletion decisions,
commits and how the run ended. Data is stored under the repository's git
directory (.git/review-fix-log/) so logging never dirties the working tree
the loop is fingerprinting.

Log Format: JSONL (one JSON object per line)
- Append-only for durability
- Easy to parse and analyze
"""

import datetime
import json
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from loop_config import ConfigurationError


class EventType(str, Enum):
    SESSION_START = "session_start"
    SESSION_END = "session_end"
    ITERATION_START = "iteration_start"
    REVIEW_COMPLETE = "review_complete"
    FIX_APPLIED = "fix_applied"
    NO_CHANGES = "no_changes"
    DELETIONS_ACCEPTED = "deletions_accepted"
    DELETIONS_RESTORED = "deletions_restored"
    STAGING_EMPTY = "staging_empty"
    SUMMARY_FALLBACK = "summary_fallback"
    COMMIT_SUCCESS = "commit_success"
    UNCOMMITTED_HALT = "uncommitted_halt"
    LIMIT_REACHED = "limit_reached"
    ERROR = "error"


@dataclass
class LogEvent:
    """A single log event."""
    event_type: EventType
    timestamp: str = field(default_factory=lambda: datetime.datetime.now().isoformat())
    session_id: Optional[str] = None
    iteration: Optional[int] = None
    agent_session: Optional[str] = None
    message: Optional[str] = None
    duration_seconds: Optional[float] = None
    files: Optional[List[str]] = None
    commit_hash: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d['event_type'] = self.event_type.value
        return {k: v for k, v in d.items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(',', ':'))


class OpsLogger:
    """
    Operations logger for the review/fix loop.

    Logs to <log_dir>/ops.jsonl. The current iteration is remembered so
    per-iteration events do not need to repeat it.
    """

    def __init__(
        self,
        log_dir: Path,
        session_id: Optional[str] = None,
    ):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.log_file = self.log_dir / "ops.jsonl"
        self.session_id = session_id or datetime.datetime.now().strftime("%Y%m%d_%H%M%S")

        self._current_iteration: Optional[int] = None
        self._session_start: Optional[datetime.datetime] = None
        self._iteration_start: Optional[datetime.datetime] = None

    def _write(self, event: LogEvent) -> None:
        """Append event to log file."""
        if event.session_id is None:
            event.session_id = self.session_id
        if event.iteration is None:
            event.iteration = self._current_iteration

        with open(self.log_file, 'a') as f:
            f.write(event.to_json() + '\n')

    def session_start(self, details: Optional[Dict[str, Any]] = None) -> None:
        """Log session start."""
        self._session_start = datetime.datetime.now()
        self._write(LogEvent(
            event_type=EventType.SESSION_START,
            message="Review/fix session started",
            details=details,
        ))

    def session_end(self, outcome: str, iterations: int = 0, commits: int = 0) -> None:
        """Log session end with summary."""
        duration = None
        if self._session_start:
            duration = (datetime.datetime.now() - self._session_start).total_seconds()

        self._write(LogEvent(
            event_type=EventType.SESSION_END,
            message=f"Review/fix session ended: {outcome}",
            duration_seconds=duration,
            details={
                "outcome": outcome,
                "iterations": iterations,
                "commits": commits,
            },
        ))

    def iteration_start(self, iteration: int, signature: str) -> None:
        """Log start of an iteration with the working tree fingerprint."""
        self._current_iteration = iteration
        self._iteration_start = datetime.datetime.now()
        self._write(LogEvent(
            event_type=EventType.ITERATION_START,
            details={"signature": signature},
        ))

    def review_complete(self, agent_session: str) -> None:
        self._write(LogEvent(
            event_type=EventType.REVIEW_COMPLETE,
            agent_session=agent_session,
        ))

    def fix_applied(self, agent_session: str, signature: str) -> None:
        duration = None
        if self._iteration_start:
            duration = (datetime.datetime.now() - self._iteration_start).total_seconds()
        self._write(LogEvent(
            event_type=EventType.FIX_APPLIED,
            agent_session=agent_session,
            duration_seconds=duration,
            details={"signature": signature},
        ))

    def no_changes(self) -> None:
        self._write(LogEvent(
            event_type=EventType.NO_CHANGES,
            message="Agent made no changes; converged",
        ))

    def deletions_accepted(self, files: List[str], reason: str) -> None:
        """Log deletions that were kept (auto-approve, CI or user)."""
        self._write(LogEvent(
            event_type=EventType.DELETIONS_ACCEPTED,
            files=files,
            message=reason,
        ))

    def deletions_restored(self, files: List[str]) -> None:
        """Log deletions that were vetoed and restored from HEAD."""
        self._write(LogEvent(
            event_type=EventType.DELETIONS_RESTORED,
            files=files,
        ))

    def staging_empty(self) -> None:
        self._write(LogEvent(
            event_type=EventType.STAGING_EMPTY,
            message="Changes detected but nothing staged",
        ))

    def summary_fallback(self, reason: str) -> None:
        self._write(LogEvent(
            event_type=EventType.SUMMARY_FALLBACK,
            message=reason,
        ))

    def commit_success(self, commit_hash: str, files: List[str], message: str) -> None:
        """Log successful commit."""
        self._write(LogEvent(
            event_type=EventType.COMMIT_SUCCESS,
            commit_hash=commit_hash,
            files=files,
            message=message,
        ))

    def uncommitted_halt(self) -> None:
        self._write(LogEvent(
            event_type=EventType.UNCOMMITTED_HALT,
            message="Changes left uncommitted for manual review",
        ))

    def limit_reached(self, max_loops: int) -> None:
        self._write(LogEvent(
            event_type=EventType.LIMIT_REACHED,
            message=f"Reached MAX_LOOPS={max_loops}",
        ))

    def error(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        """Log generic error."""
        self._write(LogEvent(
            event_type=EventType.ERROR,
            message=message,
            details=details,
        ))

    @classmethod
    def read_log(cls, log_file: Path) -> List[Dict[str, Any]]:
        """Read and parse a log file."""
        events = []
        if log_file.exists():
            with open(log_file, 'r') as f:
                for line in f:
                    line = line.strip()
                    if line:
                        try:
                            events.append(json.loads(line))
                        except json.JSONDecodeError:
                            pass
        return events

    @classmethod
    def get_summary(cls, log_file: Path) -> Dict[str, Any]:
        """Get summary statistics from a log file."""
        events = cls.read_log(log_file)

        summary = {
            "total_events": len(events),
            "sessions": 0,
            "iterations": 0,
            "commits": 0,
            "converged": 0,
            "limit_reached": 0,
            "uncommitted_halts": 0,
            "deletions_accepted": 0,
            "deletions_restored": 0,
            "summary_fallbacks": 0,
            "errors": 0,
        }

        for e in events:
            event_type = e.get("event_type", "")
            if event_type == "session_start":
                summary["sessions"] += 1
            elif event_type == "iteration_start":
                summary["iterations"] += 1
            elif event_type == "commit_success":
                summary["commits"] += 1
            elif event_type in ("no_changes", "staging_empty"):
                summary["converged"] += 1
            elif event_type == "limit_reached":
                summary["limit_reached"] += 1
            elif event_type == "uncommitted_halt":
                summary["uncommitted_halts"] += 1
            elif event_type == "deletions_accepted":
                summary["deletions_accepted"] += len(e.get("files", []))
            elif event_type == "deletions_restored":
                summary["deletions_restored"] += len(e.get("files", []))
            elif event_type == "summary_fallback":
                summary["summary_fallbacks"] += 1
            elif event_type == "error":
                summary["errors"] += 1

        return summary


def create_logger_from_config(
    log_dir: Optional[Path],
    git_dir: Path,
    session_id: Optional[str] = None,
) -> OpsLogger:
    """
    Create an OpsLogger, defaulting to <git-dir>/review-fix-log.

    Raises:
        ConfigurationError: if the log directory cannot be created
    """
    log_dir = log_dir or (git_dir / "review-fix-log")
    try:
        return OpsLogger(log_dir=log_dir, session_id=session_id)
    except OSError as e:
        raise ConfigurationError(f"Ops log directory '{log_dir}' cannot be created: {e}") from e


if __name__ == "__main__":
    import sys

    if len(sys.argv) > 1 and sys.argv[1] == "summary":
        log_file = Path(sys.argv[2]) if len(sys.argv) > 2 else Path(".git/review-fix-log/ops.jsonl")
        summary = OpsLogger.get_summary(log_file)
        print(json.dumps(summary, indent=2))
    else:
        print("Usage: python ops_logger.py summary [log_file]")
        print("\nThis module records what each review/fix run did.")
        print("It logs iterations, deletion decisions, commits and run outcomes.")
