"""
Chrome DevTools Protocol adapters for the Driver and Proxy collaborators.

- ChromeDriver: navigate / evaluate / heap snapshot on one page target.
- CdpFetchProxy: response rewriting through the Fetch domain, on the same
  connection, so rewriting happens while navigate_to() waits for load.
"""

from __future__ import annotations

import base64
import codecs
import json
import logging
import re
from collections.abc import Callable
from typing import Any
from urllib.error import URLError
from urllib.parse import urlsplit
from urllib.request import urlopen

from .agent import AGENT_SCRIPT_SOURCE
from .errors import DriverCommunicationError
from .interception import AGENT_PATH
from .session_cdp import CdpConnection
from .types import Fragment, HeapSnapshot

logger = logging.getLogger("deuterium.chrome")

_DEFAULT_MIMETYPES = {"Document": "text/html", "Script": "text/javascript"}
# Body is re-encoded by us, so upstream length/encoding no longer apply.
_DROP_HEADERS = frozenset({"content-length", "content-encoding"})
_CHARSET_RE = re.compile(r"charset\s*=\s*[\"']?([\w.:-]+)", re.IGNORECASE)


def _http_get_json(url: str, timeout: float = 2.0) -> Any:
    """Fetch JSON from URL."""
    try:
        with urlopen(url, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (URLError, OSError, ValueError) as e:
        raise DriverCommunicationError(f"GET {url} failed: {e}") from e


def response_charset(content_type: str) -> str:
    """Codec named by a Content-Type charset parameter, UTF-8 when absent or unknown."""
    m = _CHARSET_RE.search(content_type or "")
    if m:
        try:
            return codecs.lookup(m.group(1)).name
        except LookupError:
            logger.warning("Unknown response charset %r; assuming utf-8", m.group(1))
    return "utf-8"


def _with_utf8_content_type(headers: list[dict[str, Any]], mimetype: str) -> list[dict[str, Any]]:
    base = (mimetype.split(";", 1)[0].strip() or "text/plain") + "; charset=utf-8"
    out = [h for h in headers if str(h.get("name", "")).lower() != "content-type"]
    out.append({"name": "Content-Type", "value": base})
    return out


def serialize_remote_value(value: dict[str, Any] | None) -> str:
    """Turn a Runtime.evaluate RemoteObject (returnByValue) into the driver's string result."""
    if not isinstance(value, dict):
        return "null"
    if value.get("type") == "undefined":
        return "null"
    if "value" not in value:
        # Non-serializable (e.g. functions, DOM nodes): fall back to the description.
        desc = value.get("unserializableValue") or value.get("description")
        return str(desc) if desc is not None else "null"
    raw = value["value"]
    if isinstance(raw, str):
        return raw
    return json.dumps(raw)


def open_page_connection(cdp_port: int, *, url: str = "about:blank", timeout: float = 30.0) -> CdpConnection:
    """Create a fresh page target and connect to it."""
    version = _http_get_json(f"http://127.0.0.1:{cdp_port}/json/version")
    browser_ws = version.get("webSocketDebuggerUrl") if isinstance(version, dict) else None
    if not browser_ws:
        raise DriverCommunicationError("CDP browser WebSocket URL not found")

    browser = CdpConnection(browser_ws, timeout=timeout)
    try:
        target_id = browser.send("Target.createTarget", {"url": url}).get("targetId")
    finally:
        browser.close()
    if not target_id:
        raise DriverCommunicationError("Failed to create browser tab")

    for target in _http_get_json(f"http://127.0.0.1:{cdp_port}/json/list") or []:
        if target.get("id") == target_id and target.get("webSocketDebuggerUrl"):
            return CdpConnection(target["webSocketDebuggerUrl"], timeout=timeout)
    raise DriverCommunicationError(f"No WebSocket URL for target {target_id}")


class ChromeDriver:
    """Driver backed by a single CDP page connection."""

    def __init__(self, conn: CdpConnection, *, load_timeout: float = 30.0, snapshot_timeout: float = 300.0) -> None:
        self.conn = conn
        self.load_timeout = load_timeout
        self.snapshot_timeout = snapshot_timeout
        self._enabled = False

    def _ensure_enabled(self) -> None:
        if self._enabled:
            return
        self.conn.send("Page.enable")
        self.conn.send("Runtime.enable")
        self._enabled = True

    def navigate_to(self, url: str) -> None:
        self._ensure_enabled()
        self.conn.clear_events("Page.loadEventFired")
        result = self.conn.send("Page.navigate", {"url": url})
        if result.get("errorText"):
            raise DriverCommunicationError(
                f"Navigation to {url} failed: {result['errorText']}", details={"url": url}
            )
        if self.conn.wait_for_event("Page.loadEventFired", self.load_timeout) is None:
            raise DriverCommunicationError(
                f"Timed out waiting for {url} to load", details={"url": url, "timeout": self.load_timeout}
            )

    def run_code(self, source: str) -> str:
        self._ensure_enabled()
        result = self.conn.send(
            "Runtime.evaluate",
            {"expression": source, "returnByValue": True, "awaitPromise": True},
        )
        exc = result.get("exceptionDetails")
        if exc:
            text = exc.get("exception", {}).get("description") or exc.get("text") or "exception"
            raise DriverCommunicationError(f"Page code threw: {text}", details={"source": source[:200]})
        return serialize_remote_value(result.get("result"))

    def take_heap_snapshot(self) -> HeapSnapshot:
        chunks: list[str] = []

        def on_chunk(params: dict[str, Any]) -> None:
            chunks.append(str(params.get("chunk", "")))

        self.conn.add_listener("HeapProfiler.addHeapSnapshotChunk", on_chunk)
        try:
            self.conn.send("HeapProfiler.enable")
            # All chunks are delivered before the command's response.
            self.conn.send(
                "HeapProfiler.takeHeapSnapshot", {"reportProgress": False}, timeout=self.snapshot_timeout
            )
        finally:
            self.conn.remove_listener("HeapProfiler.addHeapSnapshotChunk", on_chunk)
        try:
            return json.loads("".join(chunks))
        except ValueError as exc:
            raise DriverCommunicationError(
                "Heap snapshot is not valid JSON", details={"bytes": sum(len(c) for c in chunks)}
            ) from exc


class CdpFetchProxy:
    """Proxy that rewrites documents and scripts via Fetch.requestPaused."""

    def __init__(self, conn: CdpConnection, *, agent_source: str = AGENT_SCRIPT_SOURCE) -> None:
        self.conn = conn
        self.agent_source = agent_source
        self._handler: Callable[[Fragment], Fragment] | None = None
        self._enabled = False

    def on_request(self, handler: Callable[[Fragment], Fragment]) -> None:
        if self._handler is not None:
            raise RuntimeError("An interception handler is already registered on this proxy")
        self._handler = handler
        self.enable()

    def enable(self) -> None:
        if self._enabled:
            return
        self.conn.add_listener("Fetch.requestPaused", self._on_paused)
        self.conn.send(
            "Fetch.enable",
            {
                "patterns": [
                    {"urlPattern": f"*{AGENT_PATH}", "requestStage": "Request"},
                    {"urlPattern": "*", "resourceType": "Document", "requestStage": "Response"},
                    {"urlPattern": "*", "resourceType": "Script", "requestStage": "Response"},
                ]
            },
        )
        self._enabled = True

    def _on_paused(self, params: dict[str, Any]) -> None:
        request_id = params.get("requestId")
        url = str((params.get("request") or {}).get("url") or "")
        try:
            if urlsplit(url).path.endswith(AGENT_PATH):
                self._fulfill(
                    request_id,
                    200,
                    [{"name": "Content-Type", "value": "text/javascript; charset=utf-8"}],
                    self.agent_source.encode("utf-8"),
                )
                return
            status = params.get("responseStatusCode")
            if status is None or 300 <= int(status) < 400 or self._handler is None:
                self.conn.send("Fetch.continueRequest", {"requestId": request_id})
                return
            self._rewrite(params, url)
        except DriverCommunicationError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("Interception failed for %s; passing through", url)
            self.conn.send("Fetch.continueRequest", {"requestId": request_id})

    def _rewrite(self, params: dict[str, Any], url: str) -> None:
        request_id = params["requestId"]
        if self._handler is None:
            raise RuntimeError("No interception handler registered on this proxy")
        headers = [h for h in params.get("responseHeaders") or [] if isinstance(h, dict)]
        content_type = next((str(h.get("value", "")) for h in headers if str(h.get("name", "")).lower() == "content-type"), "")
        mimetype = content_type or _DEFAULT_MIMETYPES.get(str(params.get("resourceType")), "")
        charset = response_charset(content_type)

        body = self.conn.send("Fetch.getResponseBody", {"requestId": request_id})
        raw = body.get("body", "")
        if body.get("base64Encoded"):
            try:
                contents = base64.b64decode(raw).decode(charset)
            except UnicodeDecodeError:
                logger.warning("Body of %s is not valid %s; passing through", url, charset)
                self.conn.send("Fetch.continueRequest", {"requestId": request_id})
                return
        else:
            contents = str(raw)

        fragment = self._handler(Fragment(contents=contents, mimetype=mimetype, url=url))
        if fragment.contents == contents:
            self.conn.send("Fetch.continueRequest", {"requestId": request_id})
            return
        kept = [h for h in headers if str(h.get("name", "")).lower() not in _DROP_HEADERS]
        try:
            data = fragment.contents.encode(charset)
        except UnicodeEncodeError:
            data = fragment.contents.encode("utf-8")
            kept = _with_utf8_content_type(kept, mimetype)
        self._fulfill(request_id, int(params["responseStatusCode"]), kept, data)

    def _fulfill(self, request_id: Any, status: int, headers: list[dict[str, Any]], body: bytes) -> None:
        self.conn.send(
            "Fetch.fulfillRequest",
            {
                "requestId": request_id,
                "responseCode": status,
                "responseHeaders": headers,
                "body": base64.b64encode(body).decode("ascii"),
            },
        )


__all__ = [
    "CdpFetchProxy",
    "ChromeDriver",
    "open_page_connection",
    "response_charset",
    "serialize_remote_value",
]
