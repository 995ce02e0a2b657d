from __future__ import annotations

import json
from collections.abc import Sequence

from .errors import InstrumentationProtocolError
from .types import Driver, StackTraces


class InstrumentationClient:
    """Client for the in-page agent's `$$instrumentPaths` / `$$getStackTraces` protocol."""

    def __init__(self, driver: Driver) -> None:
        self.driver = driver

    def instrument_paths(self, access_strings: Sequence[str]) -> None:
        payload = json.dumps(list(access_strings))
        self.driver.run_code(f"window.$$instrumentPaths({payload})")

    def collect_stack_traces(self) -> StackTraces:
        raw = self.driver.run_code("window.$$getStackTraces()")
        return decode_stack_traces(raw)


def decode_stack_traces(raw: str) -> StackTraces:
    """Decode and shape-check the agent's serialized stack traces."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise InstrumentationProtocolError(
            "Stack trace payload is not valid JSON", details={"preview": str(raw)[:200]}
        ) from exc

    if not isinstance(data, dict):
        raise InstrumentationProtocolError(
            "Stack trace payload must be an object", details={"type": type(data).__name__}
        )

    out: StackTraces = {}
    for path, by_prop in data.items():
        if not isinstance(by_prop, dict):
            raise InstrumentationProtocolError(
                "Stack traces for a path must be an object keyed by property", details={"path": path}
            )
        props: dict[str, list[str]] = {}
        for prop, frames in by_prop.items():
            if not isinstance(frames, list) or not all(isinstance(f, str) for f in frames):
                raise InstrumentationProtocolError(
                    "Stack frames must be a list of strings", details={"path": path, "property": prop}
                )
            props[prop] = frames
        out[path] = props
    return out


__all__ = ["InstrumentationClient", "decode_stack_traces"]
