import logging

import pytest

from zerotouch.errors import ReadinessTimeoutError
from zerotouch.modules.waiter import ConditionCheck


def test_never_true_returns_after_max_wait(waiter, clock):
    calls = []

    def predicate():
        calls.append(clock())
        return False

    result = waiter.wait_for(predicate, "never", max_wait=30, interval=5)

    assert result.ok is False
    assert result.elapsed == pytest.approx(30)
    assert calls == [0, 5, 10, 15, 20, 25, 30]


def test_returns_on_first_poll_after_condition_holds(waiter, clock):
    result = waiter.wait_for(lambda: clock() >= 12, "ready at 12s", max_wait=60, interval=5)

    assert result.ok
    assert result.elapsed == pytest.approx(15)


def test_last_sleep_is_shortened_to_the_deadline(waiter, clock):
    waiter.wait_for(lambda: False, "never", max_wait=12, interval=5)

    assert clock.sleeps == [5, 5, 2]
    assert clock.now == 12


def test_raising_predicate_counts_as_not_ready(waiter, clock):
    def predicate():
        if clock() < 20:
            raise ConnectionError("connection refused")
        return True

    result = waiter.wait_for(predicate, "api", max_wait=60, interval=10)

    assert result.ok
    assert result.elapsed == pytest.approx(20)


def test_persistent_error_is_attached_to_timeout(waiter):
    def predicate():
        raise ConnectionError("connection refused")

    check = ConditionCheck(predicate, "API server", max_wait=30, interval=10)
    with pytest.raises(ReadinessTimeoutError) as info:
        waiter.require(check)

    assert isinstance(info.value.last_error, ConnectionError)
    assert "connection refused" in str(info.value)
    assert info.value.elapsed == pytest.approx(30)


def test_timeout_logs_last_diagnostic_state(waiter, caplog):
    check = ConditionCheck(
        lambda: False, "daemonset kube-flannel/kube-flannel-ds",
        max_wait=20, interval=10, diagnostics=lambda: "1/3 ready",
    )
    with caplog.at_level(logging.INFO, logger="zerotouch"):
        result = waiter.wait(check)

    assert result.diagnostics == "1/3 ready"
    errors = [r.getMessage() for r in caplog.records if r.levelno == logging.ERROR]
    assert len(errors) == 1
    assert "kube-flannel-ds" in errors[0]
    assert "1/3 ready" in errors[0]


def test_success_logs_one_line(waiter, caplog):
    with caplog.at_level(logging.INFO, logger="zerotouch"):
        waiter.wait_for(lambda: True, "deployment welcome/welcome", max_wait=10)

    lines = [r.getMessage() for r in caplog.records if r.levelno >= logging.INFO]
    assert lines == ["✓ deployment welcome/welcome (0s)"]


def test_budget_clamps_waits(waiter, clock):
    with waiter.budget(10):
        result = waiter.wait_for(lambda: False, "never", max_wait=300, interval=5)

    assert result.elapsed == pytest.approx(10)
    # Outside the block the full bound applies again
    result = waiter.wait_for(lambda: False, "never", max_wait=20, interval=5)
    assert result.elapsed == pytest.approx(20)


def test_cancel_stops_waiting(waiter, clock):
    waiter.cancel()

    result = waiter.wait_for(lambda: False, "never", max_wait=600, interval=10)

    assert not result.ok
    assert clock.now == 0
