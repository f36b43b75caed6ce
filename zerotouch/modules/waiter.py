"""Poll-until-true readiness gates.

Every "wait for an external system to reach a state" in the bootstrap goes
through ``ConditionWaiter``: API server health, rollouts, daemonset ready
counts and custom conditions such as the cluster-ready ConfigMap.
"""
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, NamedTuple, Optional

from ..errors import ReadinessTimeoutError

logger = logging.getLogger("zerotouch.waiter")


@dataclass
class ConditionCheck:
    """A readiness condition, built at the call site.

    ``diagnostics`` may return a short description of the last observed state
    (e.g. ``"1/3 ready"``); it is included in the timeout report.
    """
    predicate: Callable[[], bool]
    description: str
    max_wait: float = 1200.0
    interval: float = 10.0
    diagnostics: Optional[Callable[[], Optional[str]]] = None


class WaitResult(NamedTuple):
    ok: bool
    elapsed: float
    last_error: Optional[BaseException] = None
    diagnostics: Optional[str] = None


class ConditionWaiter:
    """Blocking poll loop with a hard upper bound.

    Args:
        clock: Monotonic clock returning seconds
        sleep: Replacement for the interruptible sleep (tests pass a fake clock's sleep)
        progress_every: Seconds between "still waiting" debug lines
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
        progress_every: float = 30.0,
    ):
        self._clock = clock
        self._sleep = sleep
        self._progress_every = progress_every
        self._cancelled = threading.Event()
        self._deadline: Optional[float] = None

    def cancel(self) -> None:
        """Make any in-progress and future waits return unsatisfied."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @contextmanager
    def budget(self, seconds: Optional[float]) -> Iterator[None]:
        """Clamp every wait inside the block to ``seconds`` from now."""
        previous = self._deadline
        if seconds is not None:
            deadline = self._clock() + seconds
            self._deadline = deadline if previous is None else min(previous, deadline)
        try:
            yield
        finally:
            self._deadline = previous

    def _pause(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            self._cancelled.wait(seconds)

    def wait(self, check: ConditionCheck) -> WaitResult:
        """Poll ``check.predicate`` until it returns True or time runs out.

        A predicate that raises is treated as "not yet satisfied"; if it is
        still raising at the deadline the error is attached to the result.
        """
        start = self._clock()
        max_wait = check.max_wait
        if self._deadline is not None:
            max_wait = max(0.0, min(max_wait, self._deadline - start))

        logger.debug(f"Waiting for: {check.description} (max {max_wait:.0f}s)")

        last_error: Optional[BaseException] = None
        next_progress = self._progress_every
        elapsed = 0.0

        while True:
            try:
                if check.predicate():
                    elapsed = self._clock() - start
                    logger.info(f"✓ {check.description} ({elapsed:.0f}s)")
                    return WaitResult(True, elapsed)
                last_error = None
            except Exception as e:
                last_error = e
                logger.debug(f"Check for '{check.description}' raised: {e}")

            elapsed = self._clock() - start
            if elapsed >= max_wait or self.cancelled:
                break

            if elapsed >= next_progress:
                logger.debug(f"Still waiting... ({elapsed:.0f}/{max_wait:.0f}s)")
                next_progress += self._progress_every

            self._pause(min(check.interval, max_wait - elapsed))

        snapshot = self._snapshot(check)
        reason = "Cancelled" if self.cancelled else "Timeout"
        message = f"{reason} waiting for: {check.description} ({elapsed:.0f}s/{max_wait:.0f}s)"
        if snapshot:
            message += f"; last state: {snapshot}"
        if last_error is not None:
            message += f"; last error: {last_error}"
        logger.error(message)
        return WaitResult(False, elapsed, last_error, snapshot)

    def wait_for(
        self,
        predicate: Callable[[], bool],
        description: str,
        max_wait: float,
        interval: float = 10.0,
        diagnostics: Optional[Callable[[], Optional[str]]] = None,
    ) -> WaitResult:
        return self.wait(ConditionCheck(predicate, description, max_wait, interval, diagnostics))

    def require(self, check: ConditionCheck) -> float:
        """Like ``wait`` but raise on timeout.

        Returns:
            Seconds spent waiting

        Raises:
            ReadinessTimeoutError: If the condition never became true
        """
        result = self.wait(check)
        if not result.ok:
            raise ReadinessTimeoutError(
                check.description, result.elapsed, result.last_error, result.diagnostics
            )
        return result.elapsed

    @staticmethod
    def _snapshot(check: ConditionCheck) -> Optional[str]:
        if check.diagnostics is None:
            return None
        try:
            return check.diagnostics()
        except Exception as e:
            return f"<diagnostics unavailable: {e}>"
