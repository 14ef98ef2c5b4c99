import json
import logging
import os
import threading

import pytest

from credrotator.logger import ApplyFailure, CycleCancelled
from credrotator.rotate_core.coordinator import CoordinatorEvent, UpdateCoordinator
from credrotator.rotate_core.loader import RecordLoader
from credrotator.rotate_core.models import (
    AttemptOutcome,
    BackoffWait,
    ChangeSignal,
    CycleResult,
    Idle,
)

from conftest import FakeUpdater


def _coordinator(path, updater, clock, **kw):
    kw.setdefault("max_attempts", 3)
    kw.setdefault("retry_delay", 5)
    return UpdateCoordinator(RecordLoader(path), updater, clock=clock, **kw)


def _rewrite(path, username, password="pw"):
    path.write_text(json.dumps({"Username": username, "Password": password}), encoding="utf-8")


@pytest.mark.unit
def test_successful_update_records_last_applied(write_record, clock):
    path = write_record()
    updater = FakeUpdater([True], clock=clock)
    cycles = []
    coord = _coordinator(path, updater, clock, on_cycle_complete=cycles.append)

    coord.dispatch(ChangeSignal(observed_at=1.0))

    assert isinstance(coord.state, Idle)
    assert len(updater.calls) == 1
    assert coord.last_applied.username == "alice"
    assert cycles[0].result is CycleResult.SUCCEEDED
    assert [a.outcome for a in cycles[0].attempts] == [AttemptOutcome.SUCCESS]


@pytest.mark.unit
def test_always_failing_apply_makes_exactly_max_attempts_spaced_by_delay(write_record, clock):
    path = write_record()
    updater = FakeUpdater([False, False, False], clock=clock)
    cycles = []
    coord = _coordinator(path, updater, clock, on_cycle_complete=cycles.append)

    coord.dispatch(ChangeSignal(observed_at=1.0))
    assert len(updater.calls) == 1
    state = coord.state
    assert isinstance(state, BackoffWait)
    assert state.resume_at == 5
    assert state.attempt.attempt_number == 1

    # Not yet due: nothing happens
    clock.advance(4.9)
    coord.poll()
    assert len(updater.calls) == 1

    clock.advance(0.1)
    coord.poll()
    assert len(updater.calls) == 2

    clock.advance(5)
    coord.poll()
    assert len(updater.calls) == 3
    assert isinstance(coord.state, Idle)

    # Nothing further without a new signal
    clock.advance(60)
    coord.poll()
    assert len(updater.calls) == 3

    times = updater.call_times
    assert all(b - a >= 5 for a, b in zip(times, times[1:]))
    assert cycles[-1].result is CycleResult.FAILED
    assert [a.attempt_number for a in cycles[-1].attempts] == [1, 2, 3]
    assert isinstance(cycles[-1].error, ApplyFailure)
    assert cycles[-1].error.attempt == 3
    assert coord.last_applied is None


@pytest.mark.unit
def test_next_signal_after_terminal_failure_starts_immediately(write_record, clock):
    path = write_record()
    updater = FakeUpdater([False, True], clock=clock)
    coord = _coordinator(path, updater, clock, max_attempts=1)

    coord.dispatch(ChangeSignal(observed_at=1.0))
    assert isinstance(coord.state, Idle)
    assert len(updater.calls) == 1

    coord.dispatch(ChangeSignal(observed_at=2.0))
    assert len(updater.calls) == 2
    assert updater.call_times == [0.0, 0.0]
    assert coord.last_applied is not None


@pytest.mark.unit
def test_apply_exception_counts_as_failed_attempt(write_record, clock):
    path = write_record()
    updater = FakeUpdater([RuntimeError("target unreachable"), True], clock=clock)
    coord = _coordinator(path, updater, clock)

    coord.dispatch(ChangeSignal(observed_at=1.0))
    assert isinstance(coord.state, BackoffWait)

    clock.advance(5)
    coord.poll()
    assert isinstance(coord.state, Idle)
    assert len(updater.calls) == 2
    assert coord.last_cycle.result is CycleResult.SUCCEEDED
    assert [a.outcome for a in coord.last_cycle.attempts] == [
        AttemptOutcome.FAILURE,
        AttemptOutcome.SUCCESS,
    ]


@pytest.mark.unit
def test_malformed_record_yields_no_attempts_and_keeps_last_applied(write_record, clock):
    path = write_record()
    updater = FakeUpdater([True], clock=clock)
    coord = _coordinator(path, updater, clock)
    coord.dispatch(ChangeSignal(observed_at=1.0))
    applied = coord.last_applied
    assert applied is not None

    path.write_text("{ definitely not json", encoding="utf-8")
    coord.dispatch(ChangeSignal(observed_at=5.0))

    assert len(updater.calls) == 1
    assert coord.last_applied is applied
    assert isinstance(coord.state, Idle)


@pytest.mark.unit
def test_non_utf8_record_is_a_parse_error_not_a_crash(write_record, clock, caplog):
    path = write_record()
    updater = FakeUpdater([True], clock=clock)
    coord = _coordinator(path, updater, clock)
    coord.dispatch(ChangeSignal(observed_at=1.0))
    applied = coord.last_applied

    path.write_bytes(b'{"Username": "alice", "Password": "\xff\xfe"}')
    with caplog.at_level(logging.WARNING):
        coord.dispatch(ChangeSignal(observed_at=5.0))

    assert len(updater.calls) == 1
    assert coord.last_applied is applied
    assert isinstance(coord.state, Idle)
    assert any("Ignoring credentials change" in m and "not valid UTF-8" in m for m in caplog.messages)


@pytest.mark.unit
def test_resync_skips_record_already_applied(write_record, clock):
    path = write_record({"Username": "first_user", "Password": "one"}, mtime=1_700_000_000)
    updater = FakeUpdater([True, True], clock=clock)
    coord = _coordinator(path, updater, clock)
    coord.dispatch(CoordinatorEvent.STARTUP)
    assert len(updater.calls) == 1

    # Unchanged file: nothing to apply
    coord.dispatch(CoordinatorEvent.STARTUP)
    assert len(updater.calls) == 1
    assert isinstance(coord.state, Idle)

    # Same credentials but a newer write still counts as a change
    os.utime(path, (1_700_000_100, 1_700_000_100))
    coord.dispatch(CoordinatorEvent.STARTUP)
    assert len(updater.calls) == 2


@pytest.mark.unit
def test_resync_retries_record_whose_cycle_failed(write_record, clock):
    path = write_record()
    updater = FakeUpdater([False, True], clock=clock)
    coord = _coordinator(path, updater, clock, max_attempts=1)
    coord.dispatch(CoordinatorEvent.STARTUP)
    assert coord.last_applied is None

    coord.dispatch(CoordinatorEvent.STARTUP)
    assert len(updater.calls) == 2
    assert coord.last_applied is not None


@pytest.mark.unit
def test_absent_record_at_startup_stays_idle(tmp_path, clock):
    updater = FakeUpdater(clock=clock)
    coord = _coordinator(tmp_path / "credentials.json", updater, clock)

    coord.dispatch(CoordinatorEvent.STARTUP)

    assert isinstance(coord.state, Idle)
    assert updater.calls == []
    assert coord.last_cycle is None


@pytest.mark.unit
def test_startup_with_existing_record_applies_it(write_record, clock):
    updater = FakeUpdater([True], clock=clock)
    coord = _coordinator(write_record(), updater, clock)
    coord.dispatch(CoordinatorEvent.STARTUP)
    assert len(updater.calls) == 1


@pytest.mark.unit
def test_retries_use_cycle_record_and_pending_signal_reloads_afterwards(write_record, clock):
    path = write_record({"Username": "first_user", "Password": "one"})
    updater = FakeUpdater([False, True, True], clock=clock)
    coord = _coordinator(path, updater, clock)

    coord.dispatch(ChangeSignal(observed_at=1.0))
    assert isinstance(coord.state, BackoffWait)

    # Two newer writes while backing off: coalesced into one pending signal
    _rewrite(path, "second_user")
    coord.dispatch(ChangeSignal(observed_at=2.0))
    _rewrite(path, "third_user")
    coord.dispatch(ChangeSignal(observed_at=3.0))
    assert coord.has_pending_signal
    assert len(updater.calls) == 1

    clock.advance(5)
    coord.poll()

    # Retry used the original record, then the pending change ran once with a fresh load
    assert [r.username for r in updater.calls] == ["first_user", "first_user", "third_user"]
    assert not coord.has_pending_signal
    assert coord.last_applied.username == "third_user"
    assert isinstance(coord.state, Idle)


@pytest.mark.unit
def test_pending_signal_fires_after_terminal_failure(write_record, clock):
    path = write_record({"Username": "first_user", "Password": "one"})
    updater = FakeUpdater([False, True], clock=clock)
    coord = _coordinator(path, updater, clock, max_attempts=1)

    # Signal queued while "Updating" is simulated by dispatching from inside apply
    original_apply = updater.apply

    def apply_and_signal(record, cancel=None):
        if len(updater.calls) == 0:
            _rewrite(path, "second_user")
            coord.dispatch(ChangeSignal(observed_at=9.0))
        return original_apply(record, cancel=cancel)

    updater.apply = apply_and_signal
    coord.dispatch(ChangeSignal(observed_at=1.0))

    assert [r.username for r in updater.calls] == ["first_user", "second_user"]
    assert coord.last_applied.username == "second_user"


@pytest.mark.unit
def test_tick_does_not_start_a_cycle(write_record, clock):
    updater = FakeUpdater(clock=clock)
    coord = _coordinator(write_record(), updater, clock)
    coord.dispatch(CoordinatorEvent.TICK)
    assert updater.calls == []
    assert isinstance(coord.state, Idle)


@pytest.mark.unit
def test_tick_advances_due_backoff(write_record, clock):
    updater = FakeUpdater([False, True], clock=clock)
    coord = _coordinator(write_record(), updater, clock)
    coord.dispatch(ChangeSignal(observed_at=1.0))
    clock.advance(5)
    coord.dispatch(CoordinatorEvent.TICK)
    assert len(updater.calls) == 2


@pytest.mark.unit
def test_cancel_during_backoff_aborts_without_failure(write_record, clock):
    updater = FakeUpdater([False], clock=clock)
    cycles = []
    coord = _coordinator(write_record(), updater, clock, on_cycle_complete=cycles.append)
    coord.dispatch(ChangeSignal(observed_at=1.0))
    assert isinstance(coord.state, BackoffWait)

    coord.shutdown()
    clock.advance(5)
    coord.poll()

    assert isinstance(coord.state, Idle)
    assert len(updater.calls) == 1
    assert cycles[-1].result is CycleResult.ABORTED


@pytest.mark.unit
def test_cancel_during_apply_aborts_without_failure(write_record, clock):
    updater = FakeUpdater([CycleCancelled("interrupted")], clock=clock)
    coord = _coordinator(write_record(), updater, clock)
    coord.dispatch(ChangeSignal(observed_at=1.0))
    assert isinstance(coord.state, Idle)
    assert coord.last_cycle.result is CycleResult.ABORTED
    assert coord.last_applied is None


@pytest.mark.unit
def test_secret_never_logged(write_record, clock, caplog):
    path = write_record({"Username": "alice_admin", "Password": "TopSecretValue42"})
    updater = FakeUpdater([RuntimeError("nope"), False, False], clock=clock)
    coord = _coordinator(path, updater, clock)
    with caplog.at_level(logging.DEBUG):
        coord.dispatch(CoordinatorEvent.STARTUP)
        for _ in range(3):
            clock.advance(5)
            coord.poll()
    text = "\n".join(
        r.getMessage() + str(getattr(r, "extra_fields", "")) for r in caplog.records
    )
    assert "TopSecretValue42" not in text
    assert "alice_admin" not in text
    assert "ali********" in text
    # Masked user is part of the message text, not only the structured fields
    assert any("ali********" in r.getMessage() for r in caplog.records)


@pytest.mark.unit
def test_rejects_zero_attempts(tmp_path):
    with pytest.raises(ValueError):
        UpdateCoordinator(RecordLoader(tmp_path / "x.json"), FakeUpdater(), max_attempts=0)


@pytest.mark.service
def test_never_two_concurrent_apply_calls(write_record):
    path = write_record()
    updater = FakeUpdater([False, True] * 50)
    updater.delay = 0.005
    coord = UpdateCoordinator(RecordLoader(path), updater, max_attempts=2, retry_delay=0)

    def hammer(i):
        for j in range(10):
            if (i + j) % 3 == 0:
                coord.dispatch(CoordinatorEvent.TICK)
            else:
                coord.dispatch(ChangeSignal(observed_at=float(i * 100 + j)))

    threads = [threading.Thread(target=hammer, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert updater.calls, "expected at least one apply"
    assert updater.max_active == 1


@pytest.mark.service
def test_run_loop_drains_inbox_and_stops_promptly(write_record):
    path = write_record()
    done = threading.Event()
    updater = FakeUpdater([True])
    coord = UpdateCoordinator(
        RecordLoader(path), updater, on_cycle_complete=lambda c: done.set()
    )
    stop = threading.Event()
    worker = threading.Thread(target=coord.run, args=(stop,), daemon=True)
    worker.start()

    coord.submit(ChangeSignal(observed_at=os.stat(path).st_mtime))
    assert done.wait(5.0)

    coord.shutdown()
    worker.join(timeout=2.0)
    assert not worker.is_alive()
    assert len(updater.calls) == 1


@pytest.mark.service
def test_shutdown_interrupts_real_backoff_wait(write_record):
    path = write_record()
    updater = FakeUpdater([False])
    coord = UpdateCoordinator(RecordLoader(path), updater, max_attempts=3, retry_delay=3600)
    worker = threading.Thread(target=coord.run, daemon=True)
    worker.start()
    coord.request_startup()

    for _ in range(100):
        if isinstance(coord.state, BackoffWait):
            break
        threading.Event().wait(0.02)
    assert isinstance(coord.state, BackoffWait)

    coord.shutdown()
    worker.join(timeout=2.0)
    assert not worker.is_alive()
    assert isinstance(coord.state, Idle)
    assert coord.last_cycle.result is CycleResult.ABORTED
