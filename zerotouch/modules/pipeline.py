"""Sequential, resumable stage executor."""
import logging
import time
from typing import Callable, List, Optional, Tuple

from .models import (
    PipelineResult,
    PipelineState,
    Stage,
    StageOutcome,
    StageStatus,
)
from .retry import RetryExecutor
from .state import StateStore
from .waiter import ConditionWaiter

logger = logging.getLogger("zerotouch.pipeline")


class Pipeline:
    """Runs stages in declaration order, skipping those already marked complete.

    The first stage that raises halts the run; nothing after it is invoked and
    its marker is not written, so the next run starts again at that stage.

    Args:
        name: Label used in log lines (usually the node role)
        stages: Ordered stages; names must be unique
        store: Completion markers
        waiter: Waiter whose deadline is clamped to each stage's timeout
        retry: Executor applying each stage's retry policy
        clock: Monotonic clock used for durations
    """

    def __init__(
        self,
        name: str,
        stages: List[Stage],
        store: StateStore,
        waiter: Optional[ConditionWaiter] = None,
        retry: Optional[RetryExecutor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        seen = set()
        for stage in stages:
            if stage.name in seen:
                raise ValueError(f"Duplicate stage name: {stage.name}")
            seen.add(stage.name)

        self.name = name
        self.stages = list(stages)
        self.store = store
        self.waiter = waiter or ConditionWaiter()
        self.retry = retry or RetryExecutor()
        self.clock = clock
        self.state = PipelineState.PENDING
        self.current: Optional[str] = None

    def plan(self) -> List[Tuple[Stage, bool]]:
        """Return each stage with whether its marker already exists."""
        return [(stage, self.store.is_complete(stage.name)) for stage in self.stages]

    def run(self) -> PipelineResult:
        started = self.clock()
        outcomes: List[StageOutcome] = []
        total = len(self.stages)
        self.state = PipelineState.RUNNING

        for index, stage in enumerate(self.stages, 1):
            self.current = stage.name
            if self.store.is_complete(stage.name):
                logger.info(f"[{index}/{total}] Skipping {stage.name} (already complete)")
                outcomes.append(StageOutcome(stage.name, StageStatus.SKIPPED))
                continue

            logger.info(f"[{index}/{total}] {stage.description or stage.name}")
            stage_start = self.clock()
            try:
                with self.waiter.budget(stage.timeout):
                    self.retry.run(
                        stage.action,
                        max_attempts=stage.retry_policy.max_attempts,
                        delay=stage.retry_policy.delay,
                        description=f"Stage '{stage.name}'",
                    )
                self.store.mark_complete(stage.name)
            except Exception as e:
                duration = self.clock() - stage_start
                outcomes.append(StageOutcome(stage.name, StageStatus.FAILED, duration, str(e)))
                self.state = PipelineState.FAILED
                logger.debug(f"Stage '{stage.name}' traceback", exc_info=True)
                logger.error(f"Stage '{stage.name}' failed after {duration:.0f}s: {e}")
                return PipelineResult(
                    state=self.state,
                    outcomes=outcomes,
                    failed_stage=stage.name,
                    error=str(e),
                    duration=self.clock() - started,
                )

            duration = self.clock() - stage_start
            outcomes.append(StageOutcome(stage.name, StageStatus.COMPLETED, duration))
            logger.info(f"✓ {stage.name} complete ({duration:.0f}s)")

        self.current = None
        self.state = PipelineState.DONE
        result = PipelineResult(state=self.state, outcomes=outcomes, duration=self.clock() - started)
        ran = len(result.names(StageStatus.COMPLETED))
        skipped = len(result.names(StageStatus.SKIPPED))
        logger.info(
            f"✓ Pipeline '{self.name}' complete: {ran} stage(s) run, "
            f"{skipped} skipped in {result.duration:.0f}s"
        )
        return result
