"""
Shared data types and collaborator protocols.

The orchestrator only talks to the outside world through the Proxy, Driver and
GrowthAnalyzer protocols below; the Chrome adapters in chrome.py are one
implementation of the first two.
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from .errors import DeuteriumError

# Opaque to the orchestrator; passed verbatim from driver to analyzer.
HeapSnapshot = Any

# accessString -> property name -> ordered stack frames
StackTraces = dict[str, dict[str, list[str]]]


@dataclass
class Fragment:
    """An intercepted response body."""

    contents: str
    mimetype: str
    url: str = ""


@runtime_checkable
class GrowthPath(Protocol):
    def access_string(self) -> str: ...


class GrowthAnalyzer(Protocol):
    def add_snapshot(self, snapshot: HeapSnapshot) -> None: ...

    def get_growth_paths(self) -> Sequence[GrowthPath]: ...


class Proxy(Protocol):
    def on_request(self, handler: Callable[[Fragment], Fragment]) -> None: ...


class Driver(Protocol):
    def navigate_to(self, url: str) -> None: ...

    def run_code(self, source: str) -> str: ...

    def take_heap_snapshot(self) -> HeapSnapshot: ...


class Phase(str, enum.Enum):
    INIT = "init"
    BASELINE = "baseline"
    ANALYSIS = "analysis"
    RERUN = "rerun"
    INSTRUMENT = "instrument"
    CAPTURE = "capture"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RunState:
    """Per-run mutable state shared with the interception policy (read-only there)."""

    phase: Phase = Phase.INIT
    diagnosing: bool = False

    def begin_diagnosing(self) -> None:
        if self.diagnosing:
            raise RuntimeError("diagnosing mode is already enabled for this run")
        self.diagnosing = True


@dataclass
class Leak:
    growth_path: GrowthPath
    stacks_by_property: dict[str, list[str]] = field(default_factory=dict)

    @property
    def access_string(self) -> str:
        return self.growth_path.access_string()

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.access_string,
            "stacks": {prop: list(frames) for prop, frames in self.stacks_by_property.items()},
        }


@dataclass
class RunOutcome:
    """Final result of one leak detection run: either a leak list or the error that aborted it."""

    ok: bool
    leaks: list[Leak] = field(default_factory=list)
    error: BaseException | None = None
    phase: Phase = Phase.DONE

    @classmethod
    def success(cls, leaks: list[Leak]) -> RunOutcome:
        return cls(ok=True, leaks=list(leaks), phase=Phase.DONE)

    @classmethod
    def failure(cls, error: BaseException, phase: Phase) -> RunOutcome:
        return cls(ok=False, leaks=[], error=error, phase=phase)

    def unwrap(self) -> list[Leak]:
        if not self.ok:
            if self.error is None:
                raise RuntimeError("Failed RunOutcome carries no error")
            raise self.error
        return self.leaks

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True, "leaks": [leak.to_dict() for leak in self.leaks]}
        err = self.error
        if isinstance(err, DeuteriumError):
            error: dict[str, Any] = err.to_dict()
        else:
            error = {"error": True, "kind": type(err).__name__, "reason": str(err)}
        return {"ok": False, "phase": self.phase.value, "error": error}


__all__ = [
    "Driver",
    "Fragment",
    "GrowthAnalyzer",
    "GrowthPath",
    "HeapSnapshot",
    "Leak",
    "Phase",
    "Proxy",
    "RunOutcome",
    "RunState",
    "StackTraces",
]
