from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from .config import DEFAULT_POLL_INTERVAL
from .loop_config import ConfigurationFile, LoopStep
from .types import Driver, HeapSnapshot

logger = logging.getLogger("deuterium.loop")

_FALSY_RESULTS = frozenset({"", "false", "0", "null", "undefined", "nan"})


def is_truthy_result(raw: Any) -> bool:
    """Interpret a serialized run_code result the way JavaScript would."""
    if raw is None:
        return False
    if isinstance(raw, str):
        return raw.strip().lower() not in _FALSY_RESULTS
    return bool(raw)


class InteractionLoopRunner:
    """Runs the configured interaction loop, one step at a time, in index order."""

    def __init__(
        self,
        config: ConfigurationFile,
        driver: Driver,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.driver = driver
        self.poll_interval = poll_interval
        self._sleep = sleep

    def wait_until_ready(self, step: LoopStep) -> int:
        """Poll the step's check until it passes. No deadline; returns the poll count."""
        polls = 0
        while True:
            polls += 1
            if is_truthy_result(self.driver.run_code(step.check_expression)):
                return polls
            self._sleep(self.poll_interval)

    def run_step(self, step: LoopStep) -> str:
        polls = self.wait_until_ready(step)
        if polls > 1:
            logger.debug("Step %d ready after %d polls", step.index, polls)
        return self.driver.run_code(step.next_expression)

    def run_cycle(self) -> str:
        """Run steps 0..N-1 once; returns the last step's raw next() result."""
        result = ""
        for step in self.config.loop:
            result = self.run_step(step)
        return result

    def run_cycle_with_snapshot(self) -> HeapSnapshot:
        """Run one cycle, then capture a heap snapshot."""
        self.run_cycle()
        return self.driver.take_heap_snapshot()


__all__ = ["InteractionLoopRunner", "is_truthy_result"]
