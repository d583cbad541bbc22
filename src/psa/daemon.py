"""PSA daemon: the single control loop.

Everything that touches the rule set goes through one asyncio.Queue and is
handled one event at a time:

    - commands submitted by callers (status, health check, query, ...)
    - the periodic health-check tick
    - the periodic rule-application tick

Blocking condition probes run in a worker thread, but the loop awaits them
before taking the next event, so no two events ever mutate rule stats or
the health cache at the same time.

Usage:
    daemon = Daemon.from_settings()
    task = asyncio.create_task(daemon.run())
    report = await daemon.submit(HealthCheck())
    daemon.request_shutdown()
    await task
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from . import correlation
from .config import PsaSettings, get_settings
from .errors import DaemonStoppedError, NotFoundError, StoreError
from .reasoning import ReasoningEngine
from .rules.engine import ProblemContext, RulesEngine
from .rules.lifecycle import (
    Degrading,
    LifecycleManager,
    NeedsReview,
    PossiblyObsolete,
    ToleranceConfig,
)
from .rules.models import utc_now
from .rules.probes import SystemEffects
from .solutions import InMemorySolutionStore, SolutionStore

logger = logging.getLogger(__name__)

AiFallback = Callable[[str], Awaitable[str | None]]

RULE_MATCH_CONFIDENCE = 0.9
PENDING_AI_CONFIDENCE = 0.5


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class NotifyConfig(BaseModel):
    errors_only: bool = True
    desktop: bool = True
    log: bool = True
    min_severity: str = "warn"  # error, warn, info


class DaemonConfig(BaseModel):
    health_check_interval: int = Field(default=60, gt=0)
    rule_check_interval: int = Field(default=300, gt=0)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)

    @classmethod
    def from_settings(cls, settings: PsaSettings | None = None) -> DaemonConfig:
        settings = settings or get_settings()
        return cls(
            health_check_interval=settings.health_check_interval,
            rule_check_interval=settings.rule_check_interval,
            notify=NotifyConfig(
                errors_only=settings.notify_errors_only,
                desktop=settings.notify_desktop,
                log=settings.notify_log,
                min_severity=settings.notify_min_severity,
            ),
        )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Status:
    pass


@dataclass(frozen=True)
class HealthCheck:
    pass


@dataclass(frozen=True)
class Query:
    problem: str


@dataclass(frozen=True)
class ListRules:
    pass


@dataclass(frozen=True)
class GetProvenance:
    rule_id: str


@dataclass(frozen=True)
class Pause:
    pass


@dataclass(frozen=True)
class Resume:
    pass


@dataclass(frozen=True)
class Shutdown:
    pass


@dataclass(frozen=True)
class _HealthTick:
    pass


@dataclass(frozen=True)
class _RuleTick:
    pass


Command = Status | HealthCheck | Query | ListRules | GetProvenance | Pause | Resume | Shutdown


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class HealthLevel(str, Enum):
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"


class HealthIssue(BaseModel):
    severity: HealthLevel
    category: str
    message: str
    suggestion: str | None = None


class HealthReport(BaseModel):
    overall: HealthLevel = HealthLevel.GOOD
    issues: list[HealthIssue] = Field(default_factory=list)
    timestamp: str = Field(default_factory=utc_now)


class QueryResult(BaseModel):
    answer: str
    confidence: float
    source: str  # rules, reasoning, ai, pending-ai
    applied_rule: str | None = None


class RuleSummary(BaseModel):
    id: str
    name: str
    version: str
    enabled: bool
    success_rate: float


class DaemonStatus(BaseModel):
    running: bool
    paused: bool
    uptime_secs: int
    rules_count: int
    last_health_check: str | None = None
    issues_detected: int = 0
    issues_resolved: int = 0


# ---------------------------------------------------------------------------
# Daemon
# ---------------------------------------------------------------------------


class Daemon:
    """Serialized event loop over the rules engine and lifecycle manager."""

    def __init__(
        self,
        engine: RulesEngine,
        lifecycle: LifecycleManager,
        *,
        reasoning: ReasoningEngine | None = None,
        solutions: SolutionStore | None = None,
        config: DaemonConfig | None = None,
        ai_fallback: AiFallback | None = None,
        notifier: SystemEffects | None = None,
        correlation_id: str | None = None,
    ):
        self.engine = engine
        self.lifecycle = lifecycle
        self.reasoning = reasoning
        self.solutions = solutions
        self.config = config or DaemonConfig()
        self.ai_fallback = ai_fallback
        self.notifier = notifier or engine.effects
        self.log = correlation.bind(logger, correlation_id)

        self._queue: asyncio.Queue[tuple[Any, asyncio.Future | None]] = asyncio.Queue()
        self._tickers: list[asyncio.Task] = []
        self._pending_ticks: set[type] = set()
        self._running = False
        self._stopped = False
        self._paused = False
        self._started_at = time.monotonic()
        self._last_health_check: str | None = None
        self._issues_detected = 0
        self._issues_resolved = 0

    @classmethod
    def from_settings(
        cls,
        settings: PsaSettings | None = None,
        correlation_id: str | None = None,
        ai_fallback: AiFallback | None = None,
    ) -> Daemon:
        settings = settings or get_settings()
        engine = RulesEngine.from_settings(settings, correlation_id=correlation_id)
        lifecycle = LifecycleManager(
            ToleranceConfig.from_settings(settings), correlation_id=correlation_id
        )
        lifecycle.load_proposals(settings.proposals_path)
        reasoning = (
            ReasoningEngine.from_yaml(settings.knowledge_path)
            if settings.knowledge_path.exists()
            else ReasoningEngine()
        )
        return cls(
            engine,
            lifecycle,
            reasoning=reasoning,
            solutions=InMemorySolutionStore(),
            config=DaemonConfig.from_settings(settings),
            ai_fallback=ai_fallback,
            correlation_id=correlation_id,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def run(self) -> None:
        """Process events until a Shutdown command is handled."""
        if self._stopped:
            raise DaemonStoppedError("Daemon already stopped")
        self._running = True
        self._started_at = time.monotonic()
        self._tickers = [
            asyncio.create_task(self._tick(self.config.health_check_interval, _HealthTick())),
            asyncio.create_task(self._tick(self.config.rule_check_interval, _RuleTick())),
        ]
        self.log.info(
            "Daemon started (health every %ds, rules every %ds)",
            self.config.health_check_interval,
            self.config.rule_check_interval,
        )

        try:
            while True:
                event, future = await self._queue.get()
                self._pending_ticks.discard(type(event))
                try:
                    response = await self._handle(event)
                except StoreError as e:
                    if future is not None and not future.done():
                        future.set_exception(e)
                    raise
                except Exception as e:
                    if future is None:
                        self.log.exception("Error handling %s", type(event).__name__)
                    elif not future.done():
                        future.set_exception(e)
                else:
                    if future is not None and not future.done():
                        future.set_result(response)
                if isinstance(event, Shutdown):
                    break
        finally:
            self._stop_tickers()
            self._running = False
            self._stopped = True
            self._drain()
            self.log.info("Daemon stopped")

    def request_shutdown(self) -> None:
        """Stop periodic ticks and queue a Shutdown behind pending events."""
        if self._stopped:
            return
        self._stop_tickers()
        self._queue.put_nowait((Shutdown(), None))

    async def submit(self, command: Command) -> Any:
        """Queue a command and wait for its response."""
        if self._stopped:
            raise DaemonStoppedError("Daemon is not accepting commands")
        future = asyncio.get_running_loop().create_future()
        await self._queue.put((command, future))
        return await future

    async def _tick(self, interval: int, event: Any) -> None:
        while True:
            await asyncio.sleep(interval)
            self._enqueue_tick(event)

    def _enqueue_tick(self, event: Any) -> bool:
        """Queue a tick unless one of the same kind is still waiting."""
        kind = type(event)
        if kind in self._pending_ticks:
            self.log.debug("%s still pending, skipping", kind.__name__)
            return False
        self._pending_ticks.add(kind)
        self._queue.put_nowait((event, None))
        return True

    def _stop_tickers(self) -> None:
        for task in self._tickers:
            task.cancel()
        self._tickers = []

    def _drain(self) -> None:
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            if future is not None and not future.done():
                future.set_exception(DaemonStoppedError("Daemon stopped before handling command"))

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _handle(self, event: Any) -> Any:
        if isinstance(event, _HealthTick):
            if not self._paused:
                report = await self.health_check()
                if report.overall is not HealthLevel.GOOD:
                    await self._notify(report)
            return None
        if isinstance(event, _RuleTick):
            if not self._paused:
                await self.apply_rules()
            return None

        if isinstance(event, Status):
            return self.status()
        if isinstance(event, HealthCheck):
            return await self.health_check()
        if isinstance(event, Query):
            return await self.query(event.problem)
        if isinstance(event, ListRules):
            return self.list_rules()
        if isinstance(event, GetProvenance):
            try:
                return self.engine.export_provenance(event.rule_id)
            except NotFoundError:
                return None
        if isinstance(event, Pause):
            self._paused = True
            self.log.info("Monitoring paused")
            return None
        if isinstance(event, Resume):
            self._paused = False
            self.log.info("Monitoring resumed")
            return None
        if isinstance(event, Shutdown):
            self._stop_tickers()
            self.log.info("Shutdown requested")
            return None
        raise TypeError(f"Unknown daemon command: {event!r}")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def status(self) -> DaemonStatus:
        return DaemonStatus(
            running=self._running,
            paused=self._paused,
            uptime_secs=int(time.monotonic() - self._started_at),
            rules_count=len(self.engine),
            last_health_check=self._last_health_check,
            issues_detected=self._issues_detected,
            issues_resolved=self._issues_resolved,
        )

    def list_rules(self) -> list[RuleSummary]:
        return [
            RuleSummary(
                id=r.id,
                name=r.name,
                version=r.version,
                enabled=r.enabled,
                success_rate=r.stats.success_rate,
            )
            for r in self.engine.list()
        ]

    async def health_check(self) -> HealthReport:
        """Assess every rule, including CVE and condition-validity checks."""
        issues: list[HealthIssue] = []
        for rule in self.engine.list():
            health = await asyncio.to_thread(self.lifecycle.review_rule, rule, self.engine.probes)
            if isinstance(health, NeedsReview):
                issues.append(
                    HealthIssue(
                        severity=HealthLevel.CRITICAL,
                        category="rules",
                        message=f"Rule '{rule.name}' needs review: {health.reason}",
                        suggestion=f"psa rules show {rule.id}",
                    )
                )
            elif isinstance(health, Degrading):
                issues.append(
                    HealthIssue(
                        severity=HealthLevel.WARNING,
                        category="rules",
                        message=f"Rule '{rule.name}' is degrading ({health.current_rate:.0%} success)",
                    )
                )
            elif isinstance(health, PossiblyObsolete):
                issues.append(
                    HealthIssue(
                        severity=HealthLevel.WARNING,
                        category="obsolescence",
                        message=f"Rule '{rule.name}' may be obsolete: {health.reason}",
                        suggestion="Consider retiring the rule",
                    )
                )

        if any(i.severity is HealthLevel.CRITICAL for i in issues):
            overall = HealthLevel.CRITICAL
        elif issues:
            overall = HealthLevel.WARNING
        else:
            overall = HealthLevel.GOOD

        report = HealthReport(overall=overall, issues=issues)
        self._last_health_check = report.timestamp
        self._issues_detected += len(issues)
        self.log.info("Health check: %s (%d issues)", overall.value, len(issues))
        return report

    async def apply_rules(self) -> int:
        """Execute every matching rule. Returns how many succeeded."""
        matching = await asyncio.to_thread(self.engine.find_matching, ProblemContext())
        resolved = 0
        for rule in matching:
            try:
                result = await self.engine.execute(rule.id)
            except NotFoundError as e:
                self.log.error("Rule %s execution error: %s", rule.id, e)
                continue

            if result.success:
                resolved += 1
            self.lifecycle.assess_health(rule)

            solution_id = rule.provenance.solution_id
            if solution_id and self.solutions is not None:
                self.solutions.record_outcome(solution_id, result.success)

        self._issues_resolved += resolved
        if matching:
            self.log.info("Applied %d rules, %d succeeded", len(matching), resolved)
        return resolved

    async def query(self, problem: str) -> QueryResult:
        """Rules first, then learned facts, then AI."""
        context = ProblemContext(problem_text=problem)
        matching = await asyncio.to_thread(self.engine.find_matching, context)
        if matching:
            rule = matching[0]
            actions = ", ".join(a.type for a in rule.then)
            return QueryResult(
                answer=f"Matched rule: {rule.name}\n\nActions: {actions}",
                confidence=RULE_MATCH_CONFIDENCE,
                source="rules",
                applied_rule=rule.id,
            )

        if self.reasoning is not None:
            found = self.reasoning.solutions_for(problem)
            if found:
                text, confidence = found[0]
                return QueryResult(answer=text, confidence=confidence, source="reasoning")

        if self.ai_fallback is not None:
            answer = await self.ai_fallback(problem)
            if answer:
                return QueryResult(answer=answer, confidence=PENDING_AI_CONFIDENCE, source="ai")

        return QueryResult(
            answer=f"No matching rule found for: {problem}. Would query AI for solution.",
            confidence=PENDING_AI_CONFIDENCE,
            source="pending-ai",
        )

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _should_notify(self, level: HealthLevel) -> bool:
        notify = self.config.notify
        if level is HealthLevel.GOOD:
            return False
        if notify.errors_only or notify.min_severity == "error":
            return level is HealthLevel.CRITICAL
        return True

    async def _notify(self, report: HealthReport) -> None:
        if not report.issues or not self._should_notify(report.overall):
            return

        if report.overall is HealthLevel.CRITICAL:
            title = "PSA: Critical Issues Detected"
        else:
            title = "PSA: Warnings Detected"
        body = "\n".join(f"- {i.message}" for i in report.issues)

        if self.config.notify.desktop:
            await self.notifier.notify(title, body)
        if self.config.notify.log:
            self.log.warning("%s: %s", title, body.replace("\n", "; "))
