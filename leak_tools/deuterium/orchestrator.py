"""
Leak detection run: the phased state machine.

    init -> baseline -> analysis -> (done | rerun -> instrument -> capture -> done)

Any exception aborts the run; the caller gets a RunOutcome carrying the
original error and the phase it happened in. Nothing is retried.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager

from .config import Settings
from .errors import DeuteriumError, DriverCommunicationError, GrowthAnalysisError
from .instrumentation import InstrumentationClient
from .interception import ContentInterceptionPolicy, identity_transform
from .loop_config import parse_configuration
from .loop_runner import InteractionLoopRunner
from .types import Driver, GrowthAnalyzer, GrowthPath, Leak, Phase, Proxy, RunOutcome, RunState, StackTraces

logger = logging.getLogger("deuterium.orchestrator")


@contextmanager
def _wrap_errors(error_cls: type[DeuteriumError], what: str) -> Iterator[None]:
    """Re-raise foreign exceptions as `error_cls`, keeping the original as __cause__."""
    try:
        yield
    except DeuteriumError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise error_cls(f"{what} failed: {exc}") from exc


class LeakOrchestrator:
    """Drives one leak detection run against a proxy/driver pair.

    Single-use: the orchestrator owns the RunState of exactly one run.
    """

    def __init__(
        self,
        config_source: str,
        proxy: Proxy,
        driver: Driver,
        analyzer_factory: Callable[[], GrowthAnalyzer],
        *,
        expose_closure_state: Callable[[str], str] = identity_transform,
        settings: Settings | None = None,
    ) -> None:
        self.config_source = config_source
        self.proxy = proxy
        self.driver = driver
        self.analyzer_factory = analyzer_factory
        self.expose_closure_state = expose_closure_state
        self.settings = settings or Settings()
        self.state = RunState()
        self._started = False

    def _enter(self, phase: Phase) -> None:
        self.state.phase = phase
        logger.info("Phase: %s", phase.value)

    def run(self) -> RunOutcome:
        if self._started:
            raise RuntimeError("LeakOrchestrator.run() may only be called once")
        self._started = True
        try:
            leaks = self._run()
        except Exception as exc:  # noqa: BLE001
            failed_in = self.state.phase
            logger.error("Leak detection failed during %s: %s", failed_in.value, exc)
            self.state.phase = Phase.FAILED
            return RunOutcome.failure(exc, failed_in)
        self._enter(Phase.DONE)
        logger.info("Leak detection finished: %d leak(s)", len(leaks))
        return RunOutcome.success(leaks)

    def _run(self) -> list[Leak]:
        self._enter(Phase.INIT)
        config = parse_configuration(self.config_source)
        policy = ContentInterceptionPolicy(config, self.state, self.expose_closure_state)
        self.proxy.on_request(policy)
        self._navigate(config.url)

        runner = InteractionLoopRunner(config, self.driver, poll_interval=self.settings.poll_interval)
        growth_paths = self._collect_baseline(runner)
        if not growth_paths:
            logger.info("No growing paths found")
            return []
        logger.info("Found %d growing path(s)", len(growth_paths))

        self._enter(Phase.RERUN)
        self.state.begin_diagnosing()
        self._navigate(config.url)
        self._cycle(runner)

        self._enter(Phase.INSTRUMENT)
        client = InstrumentationClient(self.driver)
        access_strings = [p.access_string() for p in growth_paths]
        with _wrap_errors(DriverCommunicationError, "instrumentPaths"):
            client.instrument_paths(access_strings)

        self._enter(Phase.CAPTURE)
        self._cycle(runner)
        with _wrap_errors(DriverCommunicationError, "getStackTraces"):
            stacks = client.collect_stack_traces()
        return build_leaks(growth_paths, stacks)

    def _collect_baseline(self, runner: InteractionLoopRunner) -> list[GrowthPath]:
        """Capture the baseline snapshots; the analyzer does not outlive this call."""
        self._enter(Phase.BASELINE)
        with _wrap_errors(GrowthAnalysisError, "Creating growth analyzer"):
            analyzer = self.analyzer_factory()
        count = self.settings.snapshot_count
        for i in range(count):
            with _wrap_errors(DriverCommunicationError, "Interaction cycle"):
                snapshot = runner.run_cycle_with_snapshot()
            logger.info("Captured heap snapshot %d/%d", i + 1, count)
            with _wrap_errors(GrowthAnalysisError, "addSnapshot"):
                analyzer.add_snapshot(snapshot)

        self._enter(Phase.ANALYSIS)
        with _wrap_errors(GrowthAnalysisError, "getGrowthPaths"):
            return list(analyzer.get_growth_paths())

    def _navigate(self, url: str) -> None:
        logger.info("Navigating to %s", url)
        with _wrap_errors(DriverCommunicationError, f"Navigation to {url}"):
            self.driver.navigate_to(url)

    def _cycle(self, runner: InteractionLoopRunner) -> None:
        with _wrap_errors(DriverCommunicationError, "Interaction cycle"):
            runner.run_cycle()


def build_leaks(growth_paths: Sequence[GrowthPath], stacks: StackTraces) -> list[Leak]:
    """One Leak per growth path that has collected stack data, in analyzer order."""
    leaks: list[Leak] = []
    for path in growth_paths:
        by_prop = stacks.get(path.access_string())
        if by_prop is None:
            continue
        leaks.append(Leak(growth_path=path, stacks_by_property=by_prop))
    return leaks


def find_leaks(
    config_source: str,
    proxy: Proxy,
    driver: Driver,
    analyzer_factory: Callable[[], GrowthAnalyzer],
    *,
    expose_closure_state: Callable[[str], str] = identity_transform,
    settings: Settings | None = None,
) -> RunOutcome:
    """Find leaks in an application. See LeakOrchestrator."""
    return LeakOrchestrator(
        config_source,
        proxy,
        driver,
        analyzer_factory,
        expose_closure_state=expose_closure_state,
        settings=settings,
    ).run()


__all__ = ["LeakOrchestrator", "build_leaks", "find_leaks"]
