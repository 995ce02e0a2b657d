from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

from leak_tools.deuterium.types import Fragment

CONFIG_URL = "http://localhost:8000/"

ONE_STEP_CONFIG = f"""
var DeuteriumConfig = {{
  url: "{CONFIG_URL}",
  loop: [{{ check: function () {{ return true; }}, next: function () {{}} }}],
}};
"""


class StaticPath:
    def __init__(self, access: str) -> None:
        self._access = access

    def access_string(self) -> str:
        return self._access

    def __repr__(self) -> str:
        return f"StaticPath({self._access!r})"


class FakeProxy:
    def __init__(self) -> None:
        self.handlers: list[Callable[[Fragment], Fragment]] = []

    def on_request(self, handler: Callable[[Fragment], Fragment]) -> None:
        self.handlers.append(handler)


class FakeDriver:
    """Records every call; each navigation pushes one HTML and one JS fragment through the proxy."""

    def __init__(self, proxy: FakeProxy, stacks: dict[str, Any] | None = None) -> None:
        self.proxy = proxy
        self.calls: list[tuple[str, str]] = []
        self.stacks = stacks or {}
        self.intercepted: list[Fragment] = []
        self.fail_on: Callable[[str, str], bool] = lambda _kind, _arg: False
        self.snapshots = 0

    def _maybe_fail(self, kind: str, arg: str) -> None:
        if self.fail_on(kind, arg):
            raise RuntimeError(f"{kind} rejected: {arg}")

    def navigate_to(self, url: str) -> None:
        self.calls.append(("navigate", url))
        self._maybe_fail("navigate", url)
        for handler in self.proxy.handlers:
            self.intercepted.append(handler(Fragment("<html><head></head><body></body></html>", "text/html", url)))
            self.intercepted.append(handler(Fragment("var x = 1;", "text/javascript", url + "app.js")))

    def run_code(self, source: str) -> str:
        self.calls.append(("run", source))
        self._maybe_fail("run", source)
        if source.endswith(".check()"):
            return "true"
        if source.startswith("window.$$instrumentPaths("):
            return "1"
        if source == "window.$$getStackTraces()":
            return json.dumps(self.stacks)
        return "null"

    def take_heap_snapshot(self) -> dict[str, Any]:
        self.calls.append(("snapshot", ""))
        self._maybe_fail("snapshot", "")
        self.snapshots += 1
        return {"seq": self.snapshots}

    def count(self, kind: str, prefix: str = "") -> int:
        return sum(1 for k, arg in self.calls if k == kind and arg.startswith(prefix))


class FakeAnalyzer:
    def __init__(self, paths: list[str]) -> None:
        self.paths = paths
        self.snapshots: list[Any] = []
        self.extracted = False

    def add_snapshot(self, snapshot: Any) -> None:
        assert not self.extracted, "snapshot added after growth paths were extracted"
        self.snapshots.append(snapshot)

    def get_growth_paths(self) -> list[StaticPath]:
        self.extracted = True
        return [StaticPath(p) for p in self.paths]
