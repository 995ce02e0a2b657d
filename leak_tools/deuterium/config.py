from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_SNAPSHOT_COUNT = 5
DEFAULT_POLL_INTERVAL = 1.0
# Large heaps take minutes to serialize.
DEFAULT_SNAPSHOT_TIMEOUT = 300.0

DEFAULT_BINARY_CANDIDATES: list[str] = [
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/opt/chromium/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Chromium\\Application\\chrome.exe",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/opt/google/chrome/chrome",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    # Snap builds ignore --user-data-dir in some setups.
    "/snap/bin/chromium",
]


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_int(name: str, default: int, *, min_v: int) -> int:
    try:
        value = int(os.environ.get(name, str(default)))
    except ValueError:
        value = default
    return max(min_v, value)


def _env_float(name: str, default: float, *, min_v: float) -> float:
    try:
        value = float(os.environ.get(name, str(default)))
    except ValueError:
        value = default
    return max(min_v, value)


@dataclass
class Settings:
    """Run and browser settings.

    The baseline sample count and poll interval are ordinary defaults here, not
    constants: long interaction cycles sometimes want more samples.
    """

    snapshot_count: int = DEFAULT_SNAPSHOT_COUNT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    binary_path: str = ""
    profile_path: str = ""
    cdp_port: int = 9222
    headless: bool = True
    extra_flags: list[str] = field(default_factory=list)
    cdp_timeout: float = 30.0
    load_timeout: float = 30.0
    snapshot_timeout: float = DEFAULT_SNAPSHOT_TIMEOUT

    @classmethod
    def detect_binary(cls) -> str:
        env_path = os.environ.get("DEUTERIUM_BROWSER_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        # Last resort: rely on PATH lookup
        return "google-chrome"

    @classmethod
    def from_env(cls) -> Settings:
        profile_raw = os.environ.get("DEUTERIUM_PROFILE", "")
        # Empty means the launcher creates and removes a throwaway profile.
        profile = expand_path(profile_raw) if profile_raw.strip() else ""
        flags_raw = os.environ.get("DEUTERIUM_BROWSER_FLAGS", "")
        return cls(
            snapshot_count=_env_int("DEUTERIUM_SNAPSHOT_COUNT", DEFAULT_SNAPSHOT_COUNT, min_v=1),
            poll_interval=_env_float("DEUTERIUM_POLL_INTERVAL", DEFAULT_POLL_INTERVAL, min_v=0.0),
            binary_path=cls.detect_binary(),
            profile_path=profile,
            cdp_port=_env_int("DEUTERIUM_CDP_PORT", 9222, min_v=1),
            headless=os.environ.get("DEUTERIUM_HEADLESS", "1") != "0",
            extra_flags=[flag.strip() for flag in flags_raw.split(",") if flag.strip()],
            cdp_timeout=_env_float("DEUTERIUM_CDP_TIMEOUT", 30.0, min_v=1.0),
            load_timeout=_env_float("DEUTERIUM_LOAD_TIMEOUT", 30.0, min_v=1.0),
            snapshot_timeout=_env_float("DEUTERIUM_SNAPSHOT_TIMEOUT", DEFAULT_SNAPSHOT_TIMEOUT, min_v=1.0),
        )


def trace_enabled() -> bool:
    return os.environ.get("DEUTERIUM_TRACE") == "1"


__all__ = [
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_SNAPSHOT_COUNT",
    "DEFAULT_SNAPSHOT_TIMEOUT",
    "Settings",
    "expand_path",
    "trace_enabled",
]
