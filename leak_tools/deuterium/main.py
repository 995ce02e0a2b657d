"""
Command-line entry point: find leaks in a web application with Chrome.

    deuterium config.js --analyzer mypkg.growth:HeapGrowthTracker

The growth analyzer (and optionally the closure-exposure transform) are loaded
from `module:attribute` references; the report is printed as JSON on stdout.
"""

from __future__ import annotations

import argparse
import dataclasses
import importlib
import json
import logging
import sys
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from .chrome import CdpFetchProxy, ChromeDriver, open_page_connection
from .config import Settings
from .errors import DeuteriumError
from .interception import identity_transform
from .launcher import BrowserLauncher
from .orchestrator import find_leaks

logger = logging.getLogger("deuterium")


def load_object(ref: str) -> Any:
    """Resolve 'package.module:attr' to an object."""
    module_name, sep, attr = ref.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Expected 'module:attribute', got {ref!r}")
    obj: Any = importlib.import_module(module_name)
    for part in attr.split("."):
        obj = getattr(obj, part)
    return obj


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="deuterium", description="Find memory leaks in a web application.")
    parser.add_argument("config", type=Path, help="Configuration script defining DeuteriumConfig")
    parser.add_argument("--analyzer", required=True, help="Growth analyzer factory as module:attribute")
    parser.add_argument("--exposer", help="Closure-exposure transform (str -> str) as module:attribute")
    parser.add_argument("--snapshots", type=int, help="Number of baseline heap snapshots")
    parser.add_argument("--poll-interval", type=float, help="Seconds between readiness checks")
    parser.add_argument("--port", type=int, help="Chrome remote debugging port")
    parser.add_argument("--no-launch", action="store_true", help="Attach to an already running Chrome")
    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {}
    if args.snapshots is not None:
        overrides["snapshot_count"] = max(1, args.snapshots)
    if args.poll_interval is not None:
        overrides["poll_interval"] = max(0.0, args.poll_interval)
    if args.port is not None:
        overrides["cdp_port"] = args.port
    return dataclasses.replace(settings, **overrides)


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config_source = args.config.read_text(encoding="utf-8")
        analyzer_factory: Callable[[], Any] = load_object(args.analyzer)
        exposer: Callable[[str], str] = load_object(args.exposer) if args.exposer else identity_transform
    except (OSError, ValueError, ImportError, AttributeError) as exc:
        parser.error(str(exc))

    settings = apply_overrides(Settings.from_env(), args)
    launcher = BrowserLauncher(settings)
    conn = None
    try:
        if not args.no_launch:
            launcher.ensure_running()
        conn = open_page_connection(settings.cdp_port, timeout=settings.cdp_timeout)
        outcome = find_leaks(
            config_source,
            CdpFetchProxy(conn),
            ChromeDriver(conn, load_timeout=settings.load_timeout, snapshot_timeout=settings.snapshot_timeout),
            analyzer_factory,
            expose_closure_state=exposer,
            settings=settings,
        )
    except Exception as exc:  # noqa: BLE001
        logger.error("Could not start leak detection: %s", exc)
        if isinstance(exc, DeuteriumError):
            error = exc.to_dict()
        else:
            error = {"error": True, "kind": type(exc).__name__, "reason": str(exc)}
        print(json.dumps({"ok": False, "phase": "startup", "error": error}))
        return 1
    finally:
        if conn is not None:
            conn.close()
        launcher.stop()

    print(json.dumps(outcome.to_dict(), indent=2, ensure_ascii=False))
    return 0 if outcome.ok else 1


if __name__ == "__main__":
    sys.exit(main())
