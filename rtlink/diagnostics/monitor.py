"""Connection-attempt log and derived metrics."""

from __future__ import annotations

import csv
import enum
import io
import json
import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from rtlink.diagnostics.classifier import categorize
from rtlink.network.endpoint import EndpointDescriptor

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 100
CSV_FIELDS = ("id", "started_at", "kind", "status", "url", "secure", "retry_index", "duration_ms", "error")


class AttemptKind(str, enum.Enum):
    TRANSPORT = "transport"
    IDENTITY = "identity"
    MATCHMAKING = "matchmaking"


class AttemptStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class ConnectionAttempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    started_at: datetime
    kind: AttemptKind
    endpoint: Optional[EndpointDescriptor] = None
    retry_index: int = Field(default=0, ge=0)
    status: AttemptStatus = AttemptStatus.PENDING
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None


class Streak(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["success", "failure"] = "success"
    count: int = 0


class ConnectionMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_attempts: int
    successes: int
    failures: int
    average_successful_duration_ms: float
    current_streak: Streak
    error_kind_frequency: Dict[str, int]
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class ConnectionMonitor:
    """Records the lifecycle of every connection attempt.

    Only the attempt id leaves the monitor; callers report completion with it.
    Completion calls for unknown ids are logged and ignored so that a double
    completion or a completion after ``clear_logs`` never reaches the caller.
    """

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._max_entries = max_entries
        self._clock = clock
        self._logs: Deque[ConnectionAttempt] = deque(maxlen=max_entries)
        self._active: Dict[str, ConnectionAttempt] = {}

    def start_attempt(
        self,
        kind: AttemptKind | str,
        endpoint: Optional[EndpointDescriptor] = None,
        retry_index: int = 0,
    ) -> str:
        attempt = ConnectionAttempt(
            id=f"attempt_{uuid.uuid4().hex[:12]}",
            started_at=self._clock(),
            kind=AttemptKind(kind),
            endpoint=endpoint,
            retry_index=retry_index,
        )
        self._active[attempt.id] = attempt
        LOGGER.info(
            "Starting %s attempt %s url=%s retry=%s",
            attempt.kind.value,
            attempt.id,
            endpoint.url() if endpoint else None,
            retry_index,
        )
        return attempt.id

    def mark_success(self, attempt_id: str, extra: Optional[dict[str, Any]] = None) -> None:
        attempt = self._close(attempt_id, AttemptStatus.SUCCESS)
        if attempt is None:
            return
        LOGGER.info(
            "%s attempt %s succeeded in %sms retry=%s %s",
            attempt.kind.value,
            attempt.id,
            attempt.duration_ms,
            attempt.retry_index,
            extra or "",
        )

    def mark_failure(
        self,
        attempt_id: str,
        error: BaseException | str,
        extra: Optional[dict[str, Any]] = None,
    ) -> None:
        message = str(error) or type(error).__name__
        attempt = self._close(attempt_id, AttemptStatus.FAILED, error=message)
        if attempt is None:
            return
        LOGGER.error(
            "%s attempt %s failed after %sms retry=%s: %s %s",
            attempt.kind.value,
            attempt.id,
            attempt.duration_ms,
            attempt.retry_index,
            message,
            extra or "",
        )

    def mark_timeout(self, attempt_id: str, timeout_ms: int) -> None:
        attempt = self._close(
            attempt_id,
            AttemptStatus.TIMED_OUT,
            error=f"Connection timed out after {timeout_ms}ms",
            duration_ms=timeout_ms,
        )
        if attempt is None:
            return
        LOGGER.warning("%s attempt %s timed out after %sms", attempt.kind.value, attempt.id, timeout_ms)

    def _close(
        self,
        attempt_id: str,
        status: AttemptStatus,
        *,
        error: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> Optional[ConnectionAttempt]:
        pending = self._active.pop(attempt_id, None)
        if pending is None:
            LOGGER.warning("Attempt %s not found when marking %s", attempt_id, status.value)
            return None
        finished_at = self._clock()
        if duration_ms is None:
            duration_ms = max(0, int((finished_at - pending.started_at).total_seconds() * 1000))
        closed = pending.model_copy(
            update={
                "status": status,
                "finished_at": finished_at,
                "duration_ms": duration_ms,
                "error": error,
            }
        )
        self._logs.append(closed)
        return closed

    def active_attempts(self) -> list[ConnectionAttempt]:
        return list(self._active.values())

    def get_metrics(self) -> ConnectionMetrics:
        logs = list(self._logs)
        successes = [entry for entry in logs if entry.status is AttemptStatus.SUCCESS]
        failures = [entry for entry in logs if entry.status in (AttemptStatus.FAILED, AttemptStatus.TIMED_OUT)]
        durations = [entry.duration_ms for entry in successes if entry.duration_ms is not None]
        average = sum(durations) / len(durations) if durations else 0.0

        frequency: Dict[str, int] = {}
        for entry in logs:
            if entry.error:
                bucket = categorize(entry.error).value
                frequency[bucket] = frequency.get(bucket, 0) + 1

        return ConnectionMetrics(
            total_attempts=len(logs),
            successes=len(successes),
            failures=len(failures),
            average_successful_duration_ms=average,
            current_streak=self._current_streak(logs),
            error_kind_frequency=frequency,
            last_success_at=successes[-1].finished_at if successes else None,
            last_failure_at=failures[-1].finished_at if failures else None,
        )

    @staticmethod
    def _current_streak(logs: list[ConnectionAttempt]) -> Streak:
        if not logs:
            return Streak()
        kind: Literal["success", "failure"] = (
            "success" if logs[-1].status is AttemptStatus.SUCCESS else "failure"
        )
        count = 0
        for entry in reversed(logs):
            if (entry.status is AttemptStatus.SUCCESS) != (kind == "success"):
                break
            count += 1
        return Streak(kind=kind, count=count)

    def get_recent_logs(self, limit: Optional[int] = 10) -> list[ConnectionAttempt]:
        """Closed attempts, most recent first; ``None`` returns all of them."""

        newest_first = list(reversed(self._logs))
        if limit is None:
            return newest_first
        return newest_first[: max(0, limit)]

    def get_filtered_logs(
        self,
        *,
        kind: Optional[AttemptKind | str] = None,
        status: Optional[AttemptStatus | str] = None,
        since: Optional[datetime] = None,
        secure: Optional[bool] = None,
    ) -> list[ConnectionAttempt]:
        wanted_kind = AttemptKind(kind) if kind is not None else None
        wanted_status = AttemptStatus(status) if status is not None else None
        result = []
        for entry in self._logs:
            if wanted_kind is not None and entry.kind is not wanted_kind:
                continue
            if wanted_status is not None and entry.status is not wanted_status:
                continue
            if since is not None and entry.started_at < since:
                continue
            if secure is not None and (entry.endpoint is None or entry.endpoint.secure != secure):
                continue
            result.append(entry)
        return result

    def export_logs(self, format: Literal["json", "csv"] = "json") -> str:
        if format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
            writer.writerow(CSV_FIELDS)
            for entry in self._logs:
                writer.writerow(
                    [
                        entry.id,
                        entry.started_at.isoformat(),
                        entry.kind.value,
                        entry.status.value,
                        entry.endpoint.url() if entry.endpoint else "",
                        "" if entry.endpoint is None else str(entry.endpoint.secure).lower(),
                        entry.retry_index,
                        "" if entry.duration_ms is None else entry.duration_ms,
                        entry.error or "",
                    ]
                )
            return buffer.getvalue()
        if format != "json":
            raise ValueError(f"Unsupported export format: {format}")
        return json.dumps([entry.model_dump(mode="json") for entry in self._logs], indent=2)

    def clear_logs(self) -> None:
        self._logs.clear()
        self._active.clear()
        LOGGER.info("Connection logs cleared")

    def get_debug_info(self) -> dict[str, Any]:
        return {
            "timestamp": self._clock().isoformat(),
            "metrics": self.get_metrics().model_dump(mode="json"),
            "recent_logs": [entry.model_dump(mode="json") for entry in self.get_recent_logs(5)],
            "active_attempts": [entry.model_dump(mode="json") for entry in self._active.values()],
            "max_entries": self._max_entries,
        }
