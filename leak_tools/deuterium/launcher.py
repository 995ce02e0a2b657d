from __future__ import annotations

import contextlib
import logging
import socket
import subprocess
import tempfile
import time
from dataclasses import dataclass
from urllib.error import URLError
from urllib.request import urlopen

from .config import Settings, expand_path
from .errors import DriverCommunicationError

logger = logging.getLogger("deuterium.launcher")


@dataclass
class LaunchResult:
    command: list[str]
    started: bool
    message: str


class BrowserLauncher:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings.from_env()
        self.process: subprocess.Popen | None = None
        self._temp_profile: tempfile.TemporaryDirectory | None = None

    def __enter__(self) -> BrowserLauncher:
        self.ensure_running()
        return self

    def __exit__(self, *args) -> None:
        self.stop()

    def profile_dir(self) -> str:
        """Configured profile path, or a launcher-owned temporary one removed by stop()."""
        if self.settings.profile_path:
            return expand_path(self.settings.profile_path)
        if self._temp_profile is None:
            self._temp_profile = tempfile.TemporaryDirectory(prefix="deuterium-profile-", ignore_cleanup_errors=True)
        return self._temp_profile.name

    def build_launch_command(self) -> list[str]:
        flags = [
            f"--remote-debugging-port={self.settings.cdp_port}",
            f"--user-data-dir={self.profile_dir()}",
            "--remote-allow-origins=*",
            "--no-first-run",
            "--no-default-browser-check",
            # Keep heap growth attributable to the page, not to background work.
            "--disable-background-networking",
            "--disable-extensions",
        ]
        if self.settings.headless:
            flags.append("--headless=new")
        return [self.settings.binary_path, *flags, *self.settings.extra_flags]

    def _port_available(self, timeout: float = 0.2) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            try:
                return sock.connect_ex(("127.0.0.1", self.settings.cdp_port)) != 0
            except OSError:
                return False

    def cdp_ready(self, timeout: float = 0.4) -> bool:
        """Return True if the CDP HTTP endpoint responds."""
        endpoint = f"http://127.0.0.1:{self.settings.cdp_port}/json/version"
        try:
            with urlopen(endpoint, timeout=timeout) as resp:
                return resp.status == 200
        except (OSError, TimeoutError, URLError):
            return False

    def ensure_running(self, timeout: float = 10.0) -> LaunchResult:
        if self.cdp_ready():
            return LaunchResult([], False, "Chrome already listening on CDP port")
        if not self._port_available():
            raise DriverCommunicationError(
                f"Port {self.settings.cdp_port} is in use but CDP is not reachable",
                details={"port": self.settings.cdp_port},
            )

        cmd = self.build_launch_command()
        logger.info("Launching %s", cmd[0])
        try:
            self.process = subprocess.Popen(
                cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, stdin=subprocess.DEVNULL
            )
        except OSError as exc:
            raise DriverCommunicationError(f"Failed to start {cmd[0]}: {exc}") from exc

        deadline = time.time() + timeout
        while time.time() < deadline:
            if self.cdp_ready():
                return LaunchResult(cmd, True, "Chrome started with CDP")
            if self.process.poll() is not None:
                raise DriverCommunicationError(
                    f"Chrome exited during startup (code {self.process.returncode})", details={"command": cmd}
                )
            time.sleep(0.1)
        self.stop()
        raise DriverCommunicationError("Chrome did not expose CDP in time", details={"timeout": timeout})

    def stop(self, *, timeout: float = 2.0) -> bool:
        """Best-effort stop of the launcher-owned Chrome process and temporary profile."""
        proc = self.process
        self.process = None
        if proc is not None and proc.poll() is None:
            with contextlib.suppress(Exception):
                proc.terminate()
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                # Escalate to kill.
                with contextlib.suppress(Exception):
                    proc.kill()
                with contextlib.suppress(Exception):
                    proc.wait(timeout=timeout)
        if self._temp_profile is not None:
            self._temp_profile.cleanup()
            self._temp_profile = None
        return proc is not None


__all__ = ["BrowserLauncher", "LaunchResult"]
