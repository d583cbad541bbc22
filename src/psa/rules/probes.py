"""System probes and action effects.

Condition probes are read-only checks against live system state; action
effects change it. Both shell out to the usual tools (pgrep, systemctl,
modprobe, notify-send) with a timeout so a hung process cannot stall the
daemon.

Probes never raise: a probe that cannot spawn, times out, or gets an
invalid name reports False. Effects raise ActionFailure instead, so the
engine can abort the action sequence.

ShellCheck and Shell run arbitrary commands. That is intended: the
security boundary is the permissions on the rules directory and human
review before a rule is enabled, not sanitising the command.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import socket
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..errors import ActionFailure, InvalidInputError
from ..validation import (
    validate_module_name,
    validate_pattern,
    validate_safe_path,
    validate_service_name,
)

logger = logging.getLogger(__name__)

PROC_MODULES = Path("/proc/modules")


class ProbeOutcome(str, Enum):
    """Result of evaluating a condition.

    UNSUPPORTED means the condition could not be evaluated at all, which
    is not the same as evaluating to false. Rules never fire on it.
    """

    TRUE = "true"
    FALSE = "false"
    UNSUPPORTED = "unsupported"

    @classmethod
    def of(cls, value: bool | None) -> ProbeOutcome:
        if value is None:
            return cls.UNSUPPORTED
        return cls.TRUE if value else cls.FALSE

    @property
    def is_true(self) -> bool:
        return self is ProbeOutcome.TRUE


@dataclass
class ActionOutcome:
    """Result of running one action.

    An unsupported action did nothing; it does not abort the sequence but
    is reported separately from real output.
    """

    ok: bool
    output: str = ""
    unsupported: bool = False


class SystemProbes:
    """Read-only probes used by condition evaluation."""

    def __init__(self, timeout_seconds: float = 10.0):
        self.timeout_seconds = timeout_seconds

    def _run(self, argv: list[str]) -> subprocess.CompletedProcess | None:
        try:
            return subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            logger.warning("Probe %s timed out after %ss", argv[0], self.timeout_seconds)
        except OSError as e:
            logger.warning("Probe %s could not start: %s", argv[0], e)
        return None

    def process_running(self, name: str) -> bool:
        try:
            safe_name = validate_pattern(name)
        except InvalidInputError as e:
            logger.warning("Invalid process pattern '%s': %s", name, e)
            return False
        result = self._run(["pgrep", safe_name])
        return result is not None and result.returncode == 0

    def service_state(self, name: str) -> str | None:
        try:
            safe_name = validate_service_name(name)
        except InvalidInputError as e:
            logger.warning("Invalid service name '%s': %s", name, e)
            return None
        result = self._run(["systemctl", "is-active", safe_name])
        if result is None:
            return None
        return result.stdout.strip()

    def file_exists(self, path: str) -> bool:
        return Path(path).exists()

    def file_contains(self, path: str, pattern: str) -> bool:
        try:
            return pattern in Path(path).read_text(errors="replace")
        except OSError:
            return False

    def module_loaded(self, name: str) -> bool:
        try:
            content = PROC_MODULES.read_text()
        except OSError:
            return False
        return any(line.split(" ", 1)[0] == name for line in content.splitlines())

    def port_open(self, port: int, protocol: str = "tcp") -> bool | None:
        protocol = protocol.lower()
        if protocol == "tcp":
            try:
                with socket.create_connection(
                    ("127.0.0.1", port), timeout=min(self.timeout_seconds, 2.0)
                ):
                    return True
            except OSError:
                return False
        if protocol == "udp":
            if shutil.which("ss") is None:
                return None
            result = self._run(["ss", "-H", "-l", "-u", "-n", f"sport = :{port}"])
            return result is not None and bool(result.stdout.strip())
        logger.warning("Unknown protocol '%s' for port check", protocol)
        return None

    def package_installed(self, name: str) -> bool | None:
        """Query rpm or dpkg. None when no known package manager is present."""
        try:
            safe_name = validate_module_name(name)
        except InvalidInputError as e:
            logger.warning("Invalid package name '%s': %s", name, e)
            return False
        if shutil.which("rpm"):
            result = self._run(["rpm", "-q", safe_name])
            return result is not None and result.returncode == 0
        if shutil.which("dpkg-query"):
            result = self._run(["dpkg-query", "-W", "-f=${Status}", safe_name])
            return result is not None and "install ok installed" in result.stdout
        return None

    def shell_check(self, command: str) -> bool:
        result = self._run(["sh", "-c", command])
        return result is not None and result.returncode == 0


class SystemEffects:
    """Side-effecting operations behind rule actions.

    Every method returns a short output string on success and raises
    ActionFailure otherwise.
    """

    def __init__(self, timeout_seconds: float = 120.0):
        self.timeout_seconds = timeout_seconds

    async def _run(self, argv: list[str]) -> tuple[int, str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ActionFailure(f"Failed to start {argv[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise ActionFailure(
                f"{argv[0]} timed out after {self.timeout_seconds}s"
            ) from None

        return (
            proc.returncode,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )

    async def shell(self, command: str, sudo: bool = False) -> str:
        argv = ["sh", "-c", command]
        if sudo:
            argv = ["sudo", *argv]
        code, out, err = await self._run(argv)
        if code != 0:
            raise ActionFailure(f"Command failed: {err.strip()}", stderr=err, returncode=code)
        return out

    async def _systemctl(self, verb: str, name: str) -> str:
        try:
            safe_name = validate_service_name(name)
        except InvalidInputError as e:
            raise ActionFailure(f"Invalid service name '{name}': {e}") from e
        code, _, err = await self._run(["systemctl", verb, safe_name])
        if code != 0:
            raise ActionFailure(f"Failed to {verb} {safe_name}", stderr=err, returncode=code)
        return safe_name

    async def restart_service(self, name: str) -> str:
        return f"Restarted service: {await self._systemctl('restart', name)}"

    async def enable_service(self, name: str) -> str:
        return f"Enabled service: {await self._systemctl('enable', name)}"

    async def write_file(self, path: str, content: str, mode: str | None = None) -> str:
        try:
            validate_safe_path(path)
        except InvalidInputError as e:
            raise ActionFailure(f"Invalid path '{path}': {e}") from e

        def _write() -> None:
            target = Path(path)
            target.write_text(content)
            if mode:
                os.chmod(target, int(mode, 8))

        try:
            await asyncio.to_thread(_write)
        except (OSError, ValueError) as e:
            raise ActionFailure(f"Failed to write {path}: {e}") from e
        return f"Wrote {len(content)} bytes to {path}"

    async def load_module(self, name: str, options: str | None = None) -> str:
        try:
            safe_name = validate_module_name(name)
        except InvalidInputError as e:
            raise ActionFailure(f"Invalid module name '{name}': {e}") from e
        argv = ["modprobe", safe_name]
        if options:
            argv.extend(options.split())
        code, _, err = await self._run(argv)
        if code != 0:
            raise ActionFailure(f"Failed to load module {safe_name}", stderr=err, returncode=code)
        return f"Loaded module: {safe_name}"

    async def notify(self, title: str, body: str) -> str:
        """Desktop notification. Fire and forget: failures are only logged."""
        try:
            await self._run(["notify-send", title, body])
        except ActionFailure as e:
            logger.debug("notify-send unavailable: %s", e)
        return f"Notification: {title} - {body}"
