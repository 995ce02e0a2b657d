"""Error taxonomy for leak detection runs.

Only ConfigValidationError is soft (logged in-page, run continues). The rest
abort the current run and surface through RunOutcome.failure().
"""

from __future__ import annotations

from typing import Any


class DeuteriumError(Exception):
    """Base error with structured context."""

    def __init__(self, reason: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.details: dict[str, Any] = dict(details or {})

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        return self.reason

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": True, "kind": self.kind, "reason": self.reason}
        if self.details:
            out["details"] = self.details
        cause = self.__cause__
        if cause is not None:
            out["cause"] = f"{type(cause).__name__}: {cause}"
        return out


class ConfigValidationError(DeuteriumError):
    """Configuration script is missing or malformed."""


class DriverCommunicationError(DeuteriumError):
    """A navigate/run-code/snapshot call failed."""


class InstrumentationProtocolError(DeuteriumError):
    """The in-page instrumentation returned something we cannot decode."""


class GrowthAnalysisError(DeuteriumError):
    """The growth analyzer failed while accumulating snapshots or extracting paths."""


__all__ = [
    "ConfigValidationError",
    "DeuteriumError",
    "DriverCommunicationError",
    "GrowthAnalysisError",
    "InstrumentationProtocolError",
]
