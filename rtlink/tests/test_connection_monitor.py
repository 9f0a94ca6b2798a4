import json
import logging
from datetime import datetime, timedelta, timezone

from rtlink.diagnostics.monitor import AttemptKind, AttemptStatus, ConnectionAttempt, ConnectionMonitor
from rtlink.network.endpoint import EndpointDescriptor

SECURE = EndpointDescriptor(host="127.0.0.1", port="7350", secure=True)
PLAIN = EndpointDescriptor(host="127.0.0.1", port="7350", secure=False)


class _StepClock:
    def __init__(self, step_ms: int = 100) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.step = timedelta(milliseconds=step_ms)

    def __call__(self) -> datetime:
        current = self.now
        self.now += self.step
        return current


def test_totals_match_closed_entries():
    monitor = ConnectionMonitor()
    ids = [monitor.start_attempt(AttemptKind.TRANSPORT, SECURE, i) for i in range(5)]

    monitor.mark_success(ids[0])
    monitor.mark_failure(ids[1], ConnectionRefusedError("connection refused"))
    monitor.mark_timeout(ids[2], 5000)
    monitor.mark_success(ids[3])

    metrics = monitor.get_metrics()
    assert metrics.total_attempts == 4
    assert len(monitor.get_recent_logs(None)) == 4
    assert metrics.successes + metrics.failures == metrics.total_attempts
    assert metrics.failures == 2
    assert [attempt.id for attempt in monitor.active_attempts()] == [ids[4]]


def test_unknown_attempt_id_fails_soft(caplog):
    monitor = ConnectionMonitor()
    attempt_id = monitor.start_attempt("identity")
    monitor.mark_success(attempt_id)

    caplog.set_level(logging.WARNING)
    monitor.mark_failure(attempt_id, "late failure")
    monitor.mark_timeout("attempt_missing", 100)

    assert monitor.get_metrics().total_attempts == 1
    assert monitor.get_recent_logs()[0].status is AttemptStatus.SUCCESS
    assert sum("not found" in record.getMessage() for record in caplog.records) == 2


def test_marking_after_clear_is_ignored():
    monitor = ConnectionMonitor()
    attempt_id = monitor.start_attempt(AttemptKind.TRANSPORT)
    monitor.clear_logs()

    monitor.mark_success(attempt_id)

    assert monitor.get_metrics().total_attempts == 0
    assert monitor.active_attempts() == []


def test_log_is_bounded_ring_newest_first():
    monitor = ConnectionMonitor(max_entries=3)
    ids = []
    for index in range(5):
        attempt_id = monitor.start_attempt(AttemptKind.TRANSPORT, retry_index=index)
        monitor.mark_success(attempt_id)
        ids.append(attempt_id)

    recent = monitor.get_recent_logs(None)
    assert [entry.id for entry in recent] == [ids[4], ids[3], ids[2]]
    assert [entry.id for entry in monitor.get_recent_logs(2)] == [ids[4], ids[3]]
    assert monitor.get_metrics().total_attempts == 3


def test_failure_streak_and_error_frequency():
    monitor = ConnectionMonitor()
    monitor.mark_success(monitor.start_attempt(AttemptKind.TRANSPORT))
    monitor.mark_failure(monitor.start_attempt(AttemptKind.TRANSPORT), "connection refused")
    monitor.mark_failure(monitor.start_attempt(AttemptKind.TRANSPORT), "HTTP 503 Service Unavailable")
    monitor.mark_timeout(monitor.start_attempt(AttemptKind.TRANSPORT), 5000)

    metrics = monitor.get_metrics()
    assert metrics.current_streak.kind == "failure"
    assert metrics.current_streak.count == 3
    assert metrics.error_kind_frequency == {"network": 2, "server": 1}


def test_average_duration_uses_successes_only():
    monitor = ConnectionMonitor(clock=_StepClock(step_ms=100))
    first = monitor.start_attempt(AttemptKind.TRANSPORT)
    monitor.mark_success(first)
    second = monitor.start_attempt(AttemptKind.TRANSPORT)
    monitor.mark_failure(second, "refused")

    metrics = monitor.get_metrics()
    assert metrics.average_successful_duration_ms == 100
    assert metrics.last_success_at is not None
    assert metrics.last_failure_at is not None


def test_filtered_logs():
    clock = _StepClock(step_ms=1000)
    monitor = ConnectionMonitor(clock=clock)
    monitor.mark_failure(monitor.start_attempt(AttemptKind.TRANSPORT, PLAIN), "refused")
    cutoff = clock.now
    monitor.mark_success(monitor.start_attempt(AttemptKind.TRANSPORT, SECURE, 1))
    monitor.mark_success(monitor.start_attempt(AttemptKind.IDENTITY, SECURE))

    assert len(monitor.get_filtered_logs(kind="transport")) == 2
    assert len(monitor.get_filtered_logs(status=AttemptStatus.FAILED)) == 1
    assert len(monitor.get_filtered_logs(secure=True)) == 2
    assert len(monitor.get_filtered_logs(since=cutoff)) == 2
    assert len(monitor.get_filtered_logs(kind=AttemptKind.TRANSPORT, secure=False)) == 1


def test_json_export_matches_recent_logs():
    monitor = ConnectionMonitor()
    monitor.mark_success(monitor.start_attempt(AttemptKind.TRANSPORT, SECURE))
    monitor.mark_failure(monitor.start_attempt(AttemptKind.IDENTITY, PLAIN, 2), "unauthorized")

    exported = json.loads(monitor.export_logs("json"))

    assert len(exported) == len(monitor.get_recent_logs(None))
    assert all(set(entry) == set(ConnectionAttempt.model_fields) for entry in exported)
    assert ConnectionAttempt.model_validate(exported[1]).error == "unauthorized"


def test_csv_export_quotes_every_value():
    monitor = ConnectionMonitor()
    monitor.mark_failure(monitor.start_attempt(AttemptKind.TRANSPORT, PLAIN), 'refused, "again"')

    lines = monitor.export_logs("csv").splitlines()

    assert lines[0] == '"id","started_at","kind","status","url","secure","retry_index","duration_ms","error"'
    assert '"ws://127.0.0.1:7350/ws"' in lines[1]
    assert '"refused, ""again"""' in lines[1]


def test_debug_info_snapshot():
    monitor = ConnectionMonitor(max_entries=10)
    monitor.start_attempt(AttemptKind.MATCHMAKING)

    info = monitor.get_debug_info()

    assert info["max_entries"] == 10
    assert len(info["active_attempts"]) == 1
    assert info["metrics"]["total_attempts"] == 0
