"""Configuration script parsing.

A configuration file is a (UMD-style) script that defines the global
``DeuteriumConfig = {url, loop: [{check, next}, ...]}``. We evaluate it once in
an embedded QuickJS context to obtain a typed ConfigurationFile; the page gets
the same source injected verbatim and runs the loop functions itself.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

import quickjs

from .errors import ConfigValidationError

logger = logging.getLogger("deuterium.config")

CONFIG_GLOBAL = "DeuteriumConfig"

# UMD bundles look for one of these before falling back to a bare global.
_PRELUDE = "var window = globalThis; var self = globalThis; var global = globalThis;\n"

DEFAULT_TIME_LIMIT = 5
DEFAULT_MEMORY_LIMIT = 64 * 1024 * 1024


@dataclass(frozen=True)
class LoopStep:
    index: int

    @property
    def check_expression(self) -> str:
        return f"{CONFIG_GLOBAL}.loop[{self.index}].check()"

    @property
    def next_expression(self) -> str:
        return f"{CONFIG_GLOBAL}.loop[{self.index}].next()"


@dataclass(frozen=True)
class ConfigurationFile:
    url: str
    loop: tuple[LoopStep, ...]
    source: str

    def __len__(self) -> int:
        return len(self.loop)


def _eval(ctx: quickjs.Context, expression: str) -> object:
    try:
        return ctx.eval(expression)
    except quickjs.JSException as exc:
        raise ConfigValidationError(
            f"Configuration script failed: {exc}", details={"expression": expression}
        ) from exc


def parse_configuration(
    source: str,
    *,
    time_limit: int = DEFAULT_TIME_LIMIT,
    memory_limit: int = DEFAULT_MEMORY_LIMIT,
) -> ConfigurationFile:
    """Evaluate a configuration script and return its typed form.

    Raises ConfigValidationError when no usable url/loop can be extracted.
    Loop entries whose check/next are not functions are only warned about:
    the page may still define them lazily.
    """
    ctx = quickjs.Context()
    ctx.set_time_limit(time_limit)
    ctx.set_memory_limit(memory_limit)

    _eval(ctx, _PRELUDE + source)

    if _eval(ctx, f"typeof globalThis.{CONFIG_GLOBAL}") != "object" or _eval(ctx, f"globalThis.{CONFIG_GLOBAL} === null"):
        err = ConfigValidationError(
            f"Invalid configuration file: Global {CONFIG_GLOBAL} object is not defined."
        )
        logger.warning("%s", err)
        raise err

    url = _eval(ctx, f"{CONFIG_GLOBAL}.url")
    if not isinstance(url, str) or not url.strip():
        raise ConfigValidationError(
            f"{CONFIG_GLOBAL}.url must be a non-empty string", details={"url": repr(url)}
        )

    if not _eval(ctx, f"Array.isArray({CONFIG_GLOBAL}.loop)"):
        raise ConfigValidationError(f"{CONFIG_GLOBAL}.loop must be an array")
    count = _eval(ctx, f"{CONFIG_GLOBAL}.loop.length")
    if not isinstance(count, int) or count <= 0:
        raise ConfigValidationError(f"{CONFIG_GLOBAL}.loop must contain at least one step")

    kinds = json.loads(
        str(
            _eval(
                ctx,
                f"JSON.stringify({CONFIG_GLOBAL}.loop.map((s) => [typeof (s && s.check), typeof (s && s.next)]))",
            )
        )
    )
    for i, (check_kind, next_kind) in enumerate(kinds):
        if check_kind != "function" or next_kind != "function":
            logger.warning(
                "Configuration loop step %d: expected check/next functions, got %s/%s", i, check_kind, next_kind
            )

    steps = tuple(LoopStep(index=i) for i in range(count))
    logger.info("Parsed configuration: url=%s steps=%d", url, len(steps))
    return ConfigurationFile(url=url.strip(), loop=steps, source=source)


__all__ = ["CONFIG_GLOBAL", "ConfigurationFile", "LoopStep", "parse_configuration"]
