"""Shared fixtures: fake probes/effects, rule factories, temp stores."""

from __future__ import annotations

import pytest
from psa.errors import ActionFailure
from psa.rules.engine import RulesEngine
from psa.rules.models import ManualSource, Provenance, Rule
from psa.rules.store import RuleStore
from psa.solutions import Solution


class FakeProbes:
    """In-memory stand-in for SystemProbes."""

    def __init__(self) -> None:
        self.processes: set[str] = set()
        self.services: dict[str, str] = {}
        self.files: dict[str, str] = {}
        self.modules: set[str] = set()
        self.ports: set[int] = set()
        self.packages: dict[str, bool | None] = {}
        self.shell_results: dict[str, bool] = {}
        self.shell_calls: list[str] = []

    def process_running(self, name: str) -> bool:
        return name in self.processes

    def service_state(self, name: str) -> str | None:
        return self.services.get(name)

    def file_exists(self, path: str) -> bool:
        return path in self.files

    def file_contains(self, path: str, pattern: str) -> bool:
        return pattern in self.files.get(path, "")

    def module_loaded(self, name: str) -> bool:
        return name in self.modules

    def port_open(self, port: int, protocol: str = "tcp") -> bool | None:
        return port in self.ports

    def package_installed(self, name: str) -> bool | None:
        return self.packages.get(name)

    def shell_check(self, command: str) -> bool:
        self.shell_calls.append(command)
        return self.shell_results.get(command, False)


class FakeEffects:
    """Records every effect; commands listed in ``failing`` raise ActionFailure."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.failing: set[str] = set()

    async def shell(self, command: str, sudo: bool = False) -> str:
        self.calls.append(("shell", command, sudo))
        if command in self.failing:
            raise ActionFailure(f"Command failed: {command}", returncode=1)
        return f"ran {command}"

    async def restart_service(self, name: str) -> str:
        self.calls.append(("restart", name))
        return f"Restarted service: {name}"

    async def enable_service(self, name: str) -> str:
        self.calls.append(("enable", name))
        return f"Enabled service: {name}"

    async def write_file(self, path: str, content: str, mode: str | None = None) -> str:
        self.calls.append(("write", path, content, mode))
        return f"Wrote {len(content)} bytes to {path}"

    async def load_module(self, name: str, options: str | None = None) -> str:
        self.calls.append(("modprobe", name, options))
        return f"Loaded module: {name}"

    async def notify(self, title: str, body: str) -> str:
        self.calls.append(("notify", title, body))
        return f"Notification: {title} - {body}"


def make_rule(rule_id: str = "rule-test", **overrides) -> Rule:
    fields = {
        "id": rule_id,
        "name": f"Test {rule_id}",
        "provenance": Provenance(source=ManualSource(author="tester"), created_by="tester"),
    }
    fields.update(overrides)
    return Rule(**fields)


def make_solution(successes: int = 5, failures: int = 0, **overrides) -> Solution:
    fields = {
        "category": "nvidia",
        "problem": "nvidia driver not loaded",
        "solution": "akmods --force",
        "commands": ["akmods --force"],
        "tags": ["nvidia", "gpu"],
        "success_count": successes,
        "failure_count": failures,
    }
    fields.update(overrides)
    return Solution(**fields)


@pytest.fixture
def probes() -> FakeProbes:
    return FakeProbes()


@pytest.fixture
def effects() -> FakeEffects:
    return FakeEffects()


@pytest.fixture
def store(tmp_path) -> RuleStore:
    return RuleStore(tmp_path / "rules", git_versioning=False)


@pytest.fixture
def engine(store, probes, effects) -> RulesEngine:
    return RulesEngine(store, probes, effects, correlation_id="corr-test")
