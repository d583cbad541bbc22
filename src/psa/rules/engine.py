"""Rules engine: matching, execution and crystallization.

Rules are hard-coded automation learned from proven solutions. The engine
keeps an in-memory index of every rule in the store and:

    1. Finds enabled rules whose conditions all hold right now
    2. Executes a rule's actions in order, aborting on the first failure
    3. Records the outcome in the rule's stats (once per execution)
    4. Crystallizes proven solutions into new rules

Condition evaluation is fail-closed: a probe that cannot be evaluated never
makes a rule fire.

Usage:
    engine = RulesEngine(RuleStore(settings.rules_dir))
    for rule in engine.find_matching(ProblemContext()):
        result = await engine.execute(rule.id)
"""

from __future__ import annotations

import asyncio
import json
import logging
import operator
import threading
import time
import uuid
from dataclasses import dataclass, field

import yaml
from pydantic import BaseModel, Field

from .. import correlation
from ..config import PsaSettings, get_settings
from ..errors import (
    ActionFailure,
    EscalationRequested,
    InvalidInputError,
    RuleNotFoundError,
)
from ..solutions import Solution
from .models import (
    Action,
    AllOf,
    AnyOf,
    Condition,
    CrystallizedSource,
    EnableService,
    Escalate,
    FileContains,
    FileExists,
    InstallPackage,
    LoadModule,
    Log,
    MetricThreshold,
    ModuleLoaded,
    Not,
    Notify,
    PackageInstalled,
    PortOpen,
    ProcessRunning,
    Provenance,
    RestartService,
    Rule,
    RuleStats,
    ServiceState,
    Shell,
    ShellCheck,
    WriteFile,
)
from .probes import ActionOutcome, ProbeOutcome, SystemEffects, SystemProbes
from .store import RuleStore

logger = logging.getLogger(__name__)

CRYSTALLIZATION_THRESHOLD = 5
AUTO_AUTHOR = "psa-auto"

_METRIC_OPS = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}

_LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "debug": logging.DEBUG,
}


def should_crystallize(solution: Solution) -> bool:
    """A solution is proven once it has enough successes and few failures."""
    return (
        solution.success_count >= CRYSTALLIZATION_THRESHOLD
        and solution.failure_count < solution.success_count // 2
    )


def solution_confidence(solution: Solution) -> float:
    """Laplace-style confidence: successes / (successes + failures + 1)."""
    total = solution.success_count + solution.failure_count + 1
    return solution.success_count / total


@dataclass
class ProblemContext:
    """What the engine knows about the problem being matched.

    Periodic rule checks use an empty context; ``metrics`` feeds
    MetricThreshold conditions.
    """

    problem_text: str = ""
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    metrics: dict[str, float] = field(default_factory=dict)


class ExecutionResult(BaseModel):
    """Outcome of one ``execute()`` call."""

    rule_id: str
    success: bool = True
    outputs: list[str] = Field(default_factory=list)
    error: str | None = None
    duration_ms: float = 0.0
    escalated: bool = False
    unsupported: list[str] = Field(default_factory=list)


class RulesEngine:
    """In-memory rule index backed by a RuleStore.

    ``probes`` must provide the SystemProbes methods and ``effects`` the
    SystemEffects coroutines; tests pass fakes.
    """

    def __init__(
        self,
        store: RuleStore,
        probes: SystemProbes | None = None,
        effects: SystemEffects | None = None,
        correlation_id: str | None = None,
    ):
        self.store = store
        self.probes = probes or SystemProbes()
        self.effects = effects or SystemEffects()
        self.log = correlation.bind(logger, correlation_id)

        self._index_lock = threading.Lock()
        self._rule_locks: dict[str, asyncio.Lock] = {}
        self._rules: list[Rule] = store.load_all()

    @classmethod
    def from_settings(
        cls, settings: PsaSettings | None = None, correlation_id: str | None = None
    ) -> RulesEngine:
        settings = settings or get_settings()
        return cls(
            RuleStore(settings.rules_dir, git_versioning=settings.git_versioning),
            SystemProbes(settings.probe_timeout_seconds),
            SystemEffects(settings.action_timeout_seconds),
            correlation_id=correlation_id,
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def list(self) -> list[Rule]:
        with self._index_lock:
            return list(self._rules)

    def get(self, rule_id: str) -> Rule:
        with self._index_lock:
            for rule in self._rules:
                if rule.id == rule_id:
                    return rule
        raise RuleNotFoundError(rule_id)

    def find_by_tag(self, tag: str) -> list[Rule]:
        return [r for r in self.list() if tag in r.tags]

    def get_provenance(self, rule_id: str) -> Provenance:
        return self.get(rule_id).provenance

    def export_provenance(self, rule_id: str, fmt: str = "yaml") -> str:
        """Provenance as a human-readable audit document."""
        rule = self.get(rule_id)
        doc = {
            "rule_id": rule.id,
            "name": rule.name,
            "version": rule.version,
            "enabled": rule.enabled,
            "provenance": rule.provenance.model_dump(mode="json"),
        }
        if fmt == "yaml":
            return yaml.safe_dump(doc, default_flow_style=False, sort_keys=False)
        if fmt == "json":
            return json.dumps(doc, indent=2)
        raise InvalidInputError(f"Unknown export format: {fmt}", value=fmt)

    def __len__(self) -> int:
        return len(self._rules)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def find_matching(self, context: ProblemContext) -> list[Rule]:
        """Enabled rules whose conditions all hold, most specific first."""
        matching = [
            rule
            for rule in self.list()
            if rule.enabled
            and all(self.evaluate_condition(c, context).is_true for c in rule.when)
        ]
        # stable: equal condition counts keep discovery order
        matching.sort(key=lambda r: len(r.when), reverse=True)
        return matching

    def evaluate_condition(self, condition: Condition, context: ProblemContext) -> ProbeOutcome:
        p = self.probes

        if isinstance(condition, ProcessRunning):
            return ProbeOutcome.of(p.process_running(condition.name))
        if isinstance(condition, ServiceState):
            state = p.service_state(condition.name)
            return ProbeOutcome.of(
                state is not None and state.strip().lower() == condition.state.strip().lower()
            )
        if isinstance(condition, FileExists):
            return ProbeOutcome.of(p.file_exists(condition.path))
        if isinstance(condition, FileContains):
            return ProbeOutcome.of(p.file_contains(condition.path, condition.pattern))
        if isinstance(condition, ModuleLoaded):
            return ProbeOutcome.of(p.module_loaded(condition.name))
        if isinstance(condition, PortOpen):
            return ProbeOutcome.of(p.port_open(condition.port, condition.protocol))
        if isinstance(condition, PackageInstalled):
            return ProbeOutcome.of(p.package_installed(condition.name))
        if isinstance(condition, ShellCheck):
            return ProbeOutcome.of(p.shell_check(condition.command))
        if isinstance(condition, MetricThreshold):
            return self._evaluate_metric(condition, context)
        if isinstance(condition, AllOf):
            return ProbeOutcome.of(
                all(self.evaluate_condition(c, context).is_true for c in condition.conditions)
            )
        if isinstance(condition, AnyOf):
            return ProbeOutcome.of(
                any(self.evaluate_condition(c, context).is_true for c in condition.conditions)
            )
        if isinstance(condition, Not):
            inner = self.evaluate_condition(condition.condition, context)
            if inner is ProbeOutcome.UNSUPPORTED:
                return inner
            return ProbeOutcome.of(not inner.is_true)

        self.log.warning("Unsupported condition type: %s", type(condition).__name__)
        return ProbeOutcome.UNSUPPORTED

    @staticmethod
    def _evaluate_metric(condition: MetricThreshold, context: ProblemContext) -> ProbeOutcome:
        compare = _METRIC_OPS.get(condition.op)
        value = context.metrics.get(condition.metric)
        if compare is None or value is None:
            return ProbeOutcome.UNSUPPORTED
        return ProbeOutcome.of(compare(value, condition.value))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, rule_id: str) -> ExecutionResult:
        """Run a rule's actions in order and record the outcome.

        Raises:
            RuleNotFoundError: unknown ``rule_id``.
            StoreError: the updated stats could not be written.
        """
        rule = self.get(rule_id)
        lock = self._rule_locks.setdefault(rule_id, asyncio.Lock())

        async with lock:
            result = ExecutionResult(rule_id=rule_id)
            start = time.perf_counter()

            for action in rule.then:
                try:
                    outcome = await self._execute_action(action)
                except EscalationRequested as e:
                    result.success = False
                    result.escalated = True
                    result.error = str(e)
                    break
                except ActionFailure as e:
                    result.success = False
                    result.error = str(e)
                    break
                if outcome.unsupported:
                    result.unsupported.append(action.type)
                result.outputs.append(outcome.output)

            result.duration_ms = (time.perf_counter() - start) * 1000
            rule.stats.record(
                success=result.success,
                escalated=result.escalated,
                duration_ms=result.duration_ms,
            )
            self.store.save(rule)

        if result.success:
            self.log.info("Rule %s succeeded in %.1fms", rule_id, result.duration_ms)
        elif result.escalated:
            self.log.info("Rule %s escalated: %s", rule_id, result.error)
        else:
            self.log.warning("Rule %s failed: %s", rule_id, result.error)
        return result

    async def _execute_action(self, action: Action) -> ActionOutcome:
        fx = self.effects

        if isinstance(action, Shell):
            return ActionOutcome(True, await fx.shell(action.command, action.sudo))
        if isinstance(action, RestartService):
            return ActionOutcome(True, await fx.restart_service(action.name))
        if isinstance(action, EnableService):
            return ActionOutcome(True, await fx.enable_service(action.name))
        if isinstance(action, WriteFile):
            return ActionOutcome(True, await fx.write_file(action.path, action.content, action.mode))
        if isinstance(action, LoadModule):
            return ActionOutcome(True, await fx.load_module(action.name, action.options))
        if isinstance(action, Notify):
            return ActionOutcome(True, await fx.notify(action.title, action.body))
        if isinstance(action, Log):
            self.log.log(_LOG_LEVELS.get(action.level, logging.INFO), "%s", action.message)
            return ActionOutcome(True, f"[{action.level}] {action.message}")
        if isinstance(action, Escalate):
            raise EscalationRequested(action.reason)
        if isinstance(action, InstallPackage):
            self.log.warning("InstallPackage is not supported, skipping %s", action.name)
            return ActionOutcome(True, f"Action not supported: install {action.name}", unsupported=True)

        raise ActionFailure(f"Unknown action type: {type(action).__name__}")

    # ------------------------------------------------------------------
    # Creation and edits
    # ------------------------------------------------------------------

    def _insert(self, rule: Rule, message: str) -> None:
        with self._index_lock:
            if any(r.id == rule.id for r in self._rules):
                raise InvalidInputError(f"Rule already exists: {rule.id}", value=rule.id)
            self.store.save(rule, message=message)
            self._rules.append(rule)

    def crystallize(
        self,
        solution: Solution,
        conditions: list[Condition],
        actions: list[Action],
    ) -> str:
        """Promote a proven solution into a persisted rule. Returns the rule id.

        Raises:
            InvalidInputError: the solution is not proven yet.
        """
        if not should_crystallize(solution):
            raise InvalidInputError(
                f"Solution {solution.id} is not proven "
                f"({solution.success_count} successes, {solution.failure_count} failures)",
                value=solution.id,
            )
        confidence = solution_confidence(solution)
        provenance = Provenance(
            source=CrystallizedSource(solution_id=solution.id, confidence=confidence),
            original_problem=solution.problem,
            solution_id=solution.id,
            created_by=AUTO_AUTHOR,
        )
        provenance.record_decision(
            "Crystallized from proven solution",
            reason=(
                f"Solution proven with {solution.success_count} successes, "
                f"{solution.failure_count} failures"
            ),
            confidence_after=confidence,
        )
        provenance.record_version(
            "1.0.0", AUTO_AUTHOR, "Initial crystallization", "Created from solution"
        )

        rule = Rule(
            id=f"rule-{uuid.uuid4()}",
            name=f"Auto: {solution.problem}",
            when=list(conditions),
            then=list(actions),
            provenance=provenance,
            stats=RuleStats(),
            tags=list(solution.tags),
        )
        self._insert(rule, f"Crystallize rule: {rule.name}")
        self.log.info("Crystallized new rule: %s", rule.id)
        return rule.id

    def add_rule(self, rule: Rule, author: str = "manual") -> str:
        """Persist a hand-written rule."""
        if not rule.provenance.history:
            rule.provenance.record_version(rule.version, author, "Initial version", "Created manually")
        self._insert(rule, f"Add rule: {rule.name}")
        self.log.info("Added rule %s by %s", rule.id, author)
        return rule.id

    def update_rule(
        self,
        rule_id: str,
        *,
        when: list[Condition] | None = None,
        then: list[Action] | None = None,
        author: str,
        message: str,
        part: str = "minor",
    ) -> Rule:
        """Replace conditions and/or actions and commit a new version."""
        rule = self.get(rule_id)
        changes = []
        if when is not None:
            changes.append(f"conditions {len(rule.when)} -> {len(when)}")
            rule.when = list(when)
        if then is not None:
            changes.append(f"actions {len(rule.then)} -> {len(then)}")
            rule.then = list(then)

        entry = rule.commit_version(
            author=author, message=message, diff_summary=", ".join(changes), part=part
        )
        self.store.save(rule, message=f"Update rule {rule.name} to {entry.version}: {message}")
        self.log.info("Updated rule %s to %s", rule_id, entry.version)
        return rule

    def set_enabled(self, rule_id: str, enabled: bool, *, author: str, reason: str) -> Rule:
        rule = self.get(rule_id)
        if rule.enabled == enabled:
            return rule

        verb = "Enabled" if enabled else "Disabled"
        rule.enabled = enabled
        rule.provenance.record_decision(f"{verb} rule", reason=reason)
        rule.commit_version(author=author, message=f"{verb}: {reason}", part="patch")
        self.store.save(rule, message=f"{verb[:-1]} rule: {rule.name}")
        self.log.info("%s rule %s: %s", verb, rule_id, reason)
        return rule

    # ------------------------------------------------------------------
    # Crystallization helpers
    # ------------------------------------------------------------------

    def find_crystallization_candidates(self, solutions: list[Solution]) -> list[Solution]:
        """Proven solutions that no rule has been crystallized from yet."""
        crystallized = {r.provenance.solution_id for r in self.list()}
        return [s for s in solutions if should_crystallize(s) and s.id not in crystallized]

    @staticmethod
    def actions_from_solution(solution: Solution) -> list[Action]:
        """Default actions for a solution: its commands, or a log line."""
        if solution.commands:
            return [Shell(command=c) for c in solution.commands]
        return [Log(level="info", message=solution.solution)]


