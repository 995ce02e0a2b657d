"""Raw CDP WebSocket connection."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from contextlib import suppress
from typing import Any

import websocket

from .config import trace_enabled
from .errors import DriverCommunicationError

logger = logging.getLogger("deuterium.cdp")

EventListener = Callable[[dict[str, Any]], None]


class CdpConnection:
    """Low-level CDP WebSocket connection.

    Event listeners run synchronously on the receiving thread and may issue
    their own `send()` calls (Fetch interception does). Responses that arrive
    for an outer command while a nested one is waiting are stashed, so nesting
    never loses a reply.
    """

    def __init__(self, ws_url: str, timeout: float = 30.0):
        try:
            self.ws = websocket.create_connection(ws_url, timeout=timeout)
        except Exception as exc:  # noqa: BLE001
            raise DriverCommunicationError(f"Cannot connect to {ws_url}: {exc}") from exc
        self.ws_url = ws_url
        self.timeout = timeout
        self._next_id = 1
        self._responses: dict[int, dict[str, Any]] = {}
        self._event_queue: list[dict[str, Any]] = []
        self._max_event_queue = 2000
        self._listeners: dict[str, list[EventListener]] = {}

    def add_listener(self, method: str, callback: EventListener) -> None:
        """Call `callback(params)` for every `method` event. Listened events are not queued."""
        self._listeners.setdefault(method, []).append(callback)

    def remove_listener(self, method: str, callback: EventListener) -> None:
        with suppress(ValueError):
            self._listeners.get(method, []).remove(callback)

    def _push_event(self, event: dict[str, Any]) -> None:
        method = event.get("method")
        params = event.get("params")
        params = params if isinstance(params, dict) else {}
        listeners = self._listeners.get(method or "")
        if listeners:
            for cb in list(listeners):
                cb(params)
            return
        self._event_queue.append(event)
        if len(self._event_queue) > self._max_event_queue:
            # Drop oldest events to avoid unbounded growth in long sessions.
            del self._event_queue[: len(self._event_queue) - self._max_event_queue]

    def pop_event(self, event_name: str) -> dict[str, Any] | None:
        """Pop the oldest queued event params for the given event name."""
        for i, ev in enumerate(self._event_queue):
            if ev.get("method") == event_name:
                self._event_queue.pop(i)
                params = ev.get("params")
                return params if isinstance(params, dict) else {}
        return None

    def clear_events(self, event_name: str) -> None:
        self._event_queue = [ev for ev in self._event_queue if ev.get("method") != event_name]

    def send(
        self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None
    ) -> dict[str, Any]:
        """Send CDP command and wait for response (`timeout` overrides the connection default)."""
        msg_id = self._next_id
        self._next_id += 1

        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params
        if trace_enabled():
            logger.info("cdp send #%d %s", msg_id, method)

        try:
            self.ws.send(json.dumps(msg))
        except Exception as exc:  # noqa: BLE001
            raise DriverCommunicationError(f"{method}: {exc}") from exc

        data = self._recv_until(msg_id, method, self.timeout if timeout is None else timeout)
        if "error" in data:
            raise DriverCommunicationError(f"{method}: {data['error']}", details={"error": data["error"]})
        return data.get("result", {})

    def _read_message(self, remaining: float) -> dict[str, Any] | None:
        """Receive one JSON message, or None on a poll timeout."""
        try:
            self.ws.settimeout(min(0.5, max(0.01, remaining)))
            raw = self.ws.recv()
        except websocket.WebSocketTimeoutException:
            return None
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, TimeoutError) or "timed out" in str(exc).lower():
                return None
            raise DriverCommunicationError(f"CDP connection failed: {exc}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _dispatch(self, data: dict[str, Any]) -> None:
        if isinstance(data.get("method"), str) and "id" not in data:
            self._push_event(data)
        elif isinstance(data.get("id"), int):
            self._responses[data["id"]] = data

    def _recv_until(self, expected_id: int, method: str, timeout: float) -> dict[str, Any]:
        """Wait for response with specific ID."""
        deadline = time.time() + timeout
        while True:
            if expected_id in self._responses:
                return self._responses.pop(expected_id)
            remaining = deadline - time.time()
            if remaining <= 0:
                raise DriverCommunicationError(f"{method}: CDP response timed out", details={"timeout": timeout})
            data = self._read_message(remaining)
            if data is not None:
                self._dispatch(data)

    def wait_for_event(self, event_name: str, timeout: float = 10.0) -> dict[str, Any] | None:
        """Wait for specific CDP event (queued events are consumed first)."""
        queued = self.pop_event(event_name)
        if queued is not None:
            return queued

        deadline = time.time() + timeout
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                return None
            data = self._read_message(remaining)
            if data is None:
                continue
            if data.get("method") == event_name and "id" not in data and event_name not in self._listeners:
                params = data.get("params")
                return params if isinstance(params, dict) else {}
            self._dispatch(data)

    def close(self) -> None:
        with suppress(Exception):
            self.ws.close()


__all__ = ["CdpConnection"]
