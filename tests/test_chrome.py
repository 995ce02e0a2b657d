from __future__ import annotations

import base64
import json
from typing import Any

import pytest

from leak_tools.deuterium.agent import AGENT_SCRIPT_SOURCE
from leak_tools.deuterium.chrome import CdpFetchProxy, ChromeDriver, response_charset, serialize_remote_value
from leak_tools.deuterium.errors import DriverCommunicationError
from leak_tools.deuterium.types import Fragment


class DummyConn:
    def __init__(self, replies: dict[str, Any] | None = None) -> None:
        self.replies = replies or {}
        self.calls: list[tuple[str, dict[str, Any] | None]] = []
        self.listeners: dict[str, list] = {}
        self.load_fired = True
        self.on_send: dict[str, list[tuple[str, dict[str, Any]]]] = {}
        self.timeouts: dict[str, float | None] = {}

    def add_listener(self, method, cb) -> None:
        self.listeners.setdefault(method, []).append(cb)

    def remove_listener(self, method, cb) -> None:
        self.listeners[method].remove(cb)

    def clear_events(self, _name: str) -> None:
        pass

    def emit(self, method: str, params: dict[str, Any]) -> None:
        for cb in list(self.listeners.get(method, [])):
            cb(params)

    def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        self.calls.append((method, params))
        self.timeouts[method] = timeout
        for event, payload in self.on_send.get(method, []):
            self.emit(event, payload)
        reply = self.replies.get(method, {})
        return reply(params) if callable(reply) else reply

    def wait_for_event(self, name: str, timeout: float = 10.0) -> dict | None:  # noqa: ARG002
        return {} if self.load_fired else None

    def methods(self) -> list[str]:
        return [m for m, _ in self.calls]


def test_run_code_uses_await_and_return_by_value() -> None:
    conn = DummyConn({"Runtime.evaluate": {"result": {"type": "boolean", "value": True}}})
    driver = ChromeDriver(conn)

    assert driver.run_code("DeuteriumConfig.loop[0].check()") == "true"
    params = conn.calls[-1][1] or {}
    assert params["awaitPromise"] is True
    assert params["returnByValue"] is True
    assert conn.methods()[:2] == ["Page.enable", "Runtime.enable"]


def test_run_code_exception_is_driver_error() -> None:
    conn = DummyConn(
        {"Runtime.evaluate": {"result": {"type": "object"}, "exceptionDetails": {"text": "Uncaught", "exception": {"description": "ReferenceError: DeuteriumConfig is not defined"}}}}
    )
    with pytest.raises(DriverCommunicationError, match="ReferenceError"):
        ChromeDriver(conn).run_code("DeuteriumConfig.loop[0].next()")


@pytest.mark.parametrize(
    ("remote", "expected"),
    [
        ({"type": "string", "value": '{"a":1}'}, '{"a":1}'),
        ({"type": "number", "value": 3}, "3"),
        ({"type": "object", "value": {"a": [1]}}, '{"a": [1]}'),
        ({"type": "undefined"}, "null"),
        ({"type": "object", "subtype": "null", "value": None}, "null"),
        ({"type": "number", "unserializableValue": "NaN"}, "NaN"),
        (None, "null"),
    ],
)
def test_serialize_remote_value(remote, expected) -> None:
    assert serialize_remote_value(remote) == expected


def test_navigate_waits_for_load() -> None:
    conn = DummyConn({"Page.navigate": {"frameId": "f1"}})
    ChromeDriver(conn).navigate_to("http://app/")
    assert ("Page.navigate", {"url": "http://app/"}) in conn.calls


def test_navigate_error_text_and_timeout() -> None:
    conn = DummyConn({"Page.navigate": {"errorText": "net::ERR_CONNECTION_REFUSED"}})
    with pytest.raises(DriverCommunicationError, match="ERR_CONNECTION_REFUSED"):
        ChromeDriver(conn).navigate_to("http://app/")

    conn = DummyConn({"Page.navigate": {"frameId": "f1"}})
    conn.load_fired = False
    with pytest.raises(DriverCommunicationError, match="Timed out"):
        ChromeDriver(conn, load_timeout=0.1).navigate_to("http://app/")


def test_heap_snapshot_joins_chunks() -> None:
    snapshot = {"snapshot": {"node_count": 2}, "nodes": [1, 2, 3], "strings": ["a"]}
    text = json.dumps(snapshot)
    conn = DummyConn()
    conn.on_send["HeapProfiler.takeHeapSnapshot"] = [
        ("HeapProfiler.addHeapSnapshotChunk", {"chunk": text[:10]}),
        ("HeapProfiler.addHeapSnapshotChunk", {"chunk": text[10:]}),
    ]

    assert ChromeDriver(conn).take_heap_snapshot() == snapshot
    assert conn.listeners["HeapProfiler.addHeapSnapshotChunk"] == []


def test_heap_snapshot_uses_its_own_timeout() -> None:
    conn = DummyConn()
    conn.on_send["HeapProfiler.takeHeapSnapshot"] = [("HeapProfiler.addHeapSnapshotChunk", {"chunk": "{}"})]

    ChromeDriver(conn, snapshot_timeout=600.0).take_heap_snapshot()

    assert conn.timeouts["HeapProfiler.takeHeapSnapshot"] == 600.0
    assert conn.timeouts["HeapProfiler.enable"] is None


def _paused(url: str, *, status: int | None = 200, mime: str = "text/html", resource: str = "Document") -> dict:
    params: dict[str, Any] = {"requestId": "r1", "request": {"url": url}, "resourceType": resource}
    if status is not None:
        params["responseStatusCode"] = status
        params["responseHeaders"] = [
            {"name": "Content-Type", "value": mime},
            {"name": "Content-Length", "value": "10"},
            {"name": "Cache-Control", "value": "no-store"},
        ]
    return params


def _fulfilled_body(conn: DummyConn) -> str:
    params = [p for m, p in conn.calls if m == "Fetch.fulfillRequest"][-1] or {}
    return base64.b64decode(params["body"]).decode()


def test_proxy_rewrites_documents_through_handler() -> None:
    body = base64.b64encode(b"<html><head></head></html>").decode()
    conn = DummyConn({"Fetch.getResponseBody": {"body": body, "base64Encoded": True}})
    proxy = CdpFetchProxy(conn)
    seen: list[Fragment] = []

    def handler(f: Fragment) -> Fragment:
        seen.append(Fragment(f.contents, f.mimetype, f.url))
        f.contents = f.contents.replace("<head>", "<head><script></script>")
        return f

    proxy.on_request(handler)
    assert "Fetch.enable" in conn.methods()
    conn.emit("Fetch.requestPaused", _paused("http://app/"))

    assert seen == [Fragment("<html><head></head></html>", "text/html", "http://app/")]
    assert _fulfilled_body(conn) == "<html><head><script></script></head></html>"
    fulfill = [p for m, p in conn.calls if m == "Fetch.fulfillRequest"][-1] or {}
    assert fulfill["responseCode"] == 200
    names = [h["name"] for h in fulfill["responseHeaders"]]
    assert "Content-Length" not in names
    assert "Cache-Control" in names


def test_proxy_serves_agent_script() -> None:
    conn = DummyConn()
    proxy = CdpFetchProxy(conn)
    proxy.on_request(lambda f: f)

    conn.emit("Fetch.requestPaused", _paused("http://app/deuterium_agent.js", status=None))

    assert _fulfilled_body(conn) == AGENT_SCRIPT_SOURCE
    assert "Fetch.getResponseBody" not in conn.methods()


def test_proxy_continues_redirects_and_handler_failures() -> None:
    conn = DummyConn({"Fetch.getResponseBody": {"body": "var a;", "base64Encoded": False}})
    proxy = CdpFetchProxy(conn)

    def broken(_f: Fragment) -> Fragment:
        raise ValueError("rewrite failed")

    proxy.on_request(broken)
    conn.emit("Fetch.requestPaused", _paused("http://app/old", status=302))
    conn.emit("Fetch.requestPaused", _paused("http://app/a.js", mime="text/javascript", resource="Script"))

    assert conn.methods().count("Fetch.continueRequest") == 2
    assert "Fetch.fulfillRequest" not in conn.methods()


def test_proxy_accepts_a_single_handler() -> None:
    proxy = CdpFetchProxy(DummyConn())
    proxy.on_request(lambda f: f)
    with pytest.raises(RuntimeError):
        proxy.on_request(lambda f: f)


@pytest.mark.parametrize(
    ("content_type", "expected"),
    [
        ("text/javascript; charset=ISO-8859-1", "iso8859-1"),
        ('text/html; charset="windows-1252"', "cp1252"),
        ("text/html; charset=no-such-codec", "utf-8"),
        ("text/html", "utf-8"),
        ("", "utf-8"),
    ],
)
def test_response_charset(content_type, expected) -> None:
    assert response_charset(content_type) == expected


def _latin1_script_conn() -> DummyConn:
    body = base64.b64encode("var café = 1;".encode("latin-1")).decode()
    return DummyConn({"Fetch.getResponseBody": {"body": body, "base64Encoded": True}})


def test_proxy_passes_unchanged_bodies_through() -> None:
    conn = _latin1_script_conn()
    seen: list[str] = []

    def identity(f: Fragment) -> Fragment:
        seen.append(f.contents)
        return f

    CdpFetchProxy(conn).on_request(identity)
    conn.emit("Fetch.requestPaused", _paused("http://app/a.js", mime="text/javascript; charset=iso-8859-1", resource="Script"))

    assert seen == ["var café = 1;"]
    assert "Fetch.continueRequest" in conn.methods()
    assert "Fetch.fulfillRequest" not in conn.methods()


def test_proxy_reencodes_rewritten_body_in_response_charset() -> None:
    conn = _latin1_script_conn()

    def append(f: Fragment) -> Fragment:
        return Fragment(f.contents + "\nvar déjà = 2;", f.mimetype, f.url)

    CdpFetchProxy(conn).on_request(append)
    conn.emit("Fetch.requestPaused", _paused("http://app/a.js", mime="text/javascript; charset=iso-8859-1", resource="Script"))

    fulfill = [p for m, p in conn.calls if m == "Fetch.fulfillRequest"][-1] or {}
    assert base64.b64decode(fulfill["body"]) == "var café = 1;\nvar déjà = 2;".encode("latin-1")
    content_type = [h["value"] for h in fulfill["responseHeaders"] if h["name"] == "Content-Type"]
    assert content_type == ["text/javascript; charset=iso-8859-1"]


def test_proxy_switches_to_utf8_when_charset_cannot_hold_rewrite() -> None:
    conn = _latin1_script_conn()

    def append(f: Fragment) -> Fragment:
        return Fragment(f.contents + " // ☃", f.mimetype, f.url)

    CdpFetchProxy(conn).on_request(append)
    conn.emit("Fetch.requestPaused", _paused("http://app/a.js", mime="text/javascript; charset=iso-8859-1", resource="Script"))

    fulfill = [p for m, p in conn.calls if m == "Fetch.fulfillRequest"][-1] or {}
    assert base64.b64decode(fulfill["body"]).decode("utf-8") == "var café = 1; // ☃"
    content_type = [h["value"] for h in fulfill["responseHeaders"] if h["name"].lower() == "content-type"]
    assert content_type == ["text/javascript; charset=utf-8"]


def test_proxy_passes_through_bodies_that_do_not_decode() -> None:
    body = base64.b64encode(b"var a = '\xff\xfe';").decode()
    conn = DummyConn({"Fetch.getResponseBody": {"body": body, "base64Encoded": True}})
    called: list[Fragment] = []
    CdpFetchProxy(conn).on_request(lambda f: called.append(f) or f)

    conn.emit("Fetch.requestPaused", _paused("http://app/a.js", mime="text/javascript", resource="Script"))

    assert called == []
    assert "Fetch.continueRequest" in conn.methods()
    assert "Fetch.fulfillRequest" not in conn.methods()


def test_proxy_rewrite_without_handler_is_an_error() -> None:
    proxy = CdpFetchProxy(DummyConn())
    with pytest.raises(RuntimeError, match="handler"):
        proxy._rewrite(_paused("http://app/"), "http://app/")
