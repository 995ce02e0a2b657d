from __future__ import annotations

import logging
import re
from collections.abc import Callable

from .loop_config import CONFIG_GLOBAL, ConfigurationFile
from .types import Fragment, RunState

logger = logging.getLogger("deuterium.interception")

AGENT_PATH = "/deuterium_agent.js"
AGENT_INJECT = f'<script type="text/javascript" src="{AGENT_PATH}"></script>'

HTML_MIMETYPES = frozenset({"text/html"})
JS_MIMETYPES = frozenset({"text/javascript", "application/javascript", "application/x-javascript"})

_HEAD_OPEN = re.compile(r"<head(\s[^>]*)?>", re.IGNORECASE)
_HTML_OPEN = re.compile(r"<html(\s[^>]*)?>", re.IGNORECASE)


def normalize_mimetype(raw: str) -> str:
    """'Text/HTML; charset=utf-8' -> 'text/html'."""
    return (raw or "").split(";", 1)[0].strip().lower()


def inject_into_head(html: str, snippet: str) -> str:
    """Insert `snippet` at the start of the document head, synthesizing one if needed."""
    m = _HEAD_OPEN.search(html)
    if m:
        return html[: m.end()] + snippet + html[m.end() :]
    m = _HTML_OPEN.search(html)
    if m:
        return html[: m.end()] + "<head>" + snippet + "</head>" + html[m.end() :]
    return snippet + html


def build_config_inject(config_source: str) -> str:
    # A literal "</script>" inside the config would end the tag early.
    safe_source = re.sub(r"</(script)", r"<\\/\1", config_source, flags=re.IGNORECASE)
    return (
        '\n<script type="text/javascript">'
        f"{safe_source}\n"
        f"if (!window['{CONFIG_GLOBAL}']) {{\n"
        f"  console.error('Invalid configuration file: Global {CONFIG_GLOBAL} object is not defined.');\n"
        "}\n"
        "</script>"
    )


def identity_transform(source: str) -> str:
    return source


class ContentInterceptionPolicy:
    """Rewrites intercepted responses for one run.

    HTML gets the agent and configuration scripts; JavaScript goes through the
    closure-exposure transform once the run is diagnosing. The policy reads
    `state` but never changes it.
    """

    def __init__(
        self,
        config: ConfigurationFile,
        state: RunState,
        expose_closure_state: Callable[[str], str] = identity_transform,
    ) -> None:
        self.state = state
        self._expose_closure_state = expose_closure_state
        self._head_inject = AGENT_INJECT + build_config_inject(config.source)

    def __call__(self, fragment: Fragment) -> Fragment:
        return self.transform(fragment)

    def transform(self, fragment: Fragment) -> Fragment:
        mime = normalize_mimetype(fragment.mimetype)
        if mime in HTML_MIMETYPES:
            fragment.contents = inject_into_head(fragment.contents, self._head_inject)
        elif mime in JS_MIMETYPES and self.state.diagnosing:
            logger.debug("Exposing closure state in %s", fragment.url or "<inline>")
            fragment.contents = self._expose_closure_state(fragment.contents)
        return fragment


__all__ = [
    "AGENT_INJECT",
    "AGENT_PATH",
    "ContentInterceptionPolicy",
    "build_config_inject",
    "identity_transform",
    "inject_into_head",
    "normalize_mimetype",
]
