"""Tests for the daemon control loop."""

import asyncio

import pytest
from psa.config import PsaSettings
from psa.daemon import (
    Daemon,
    DaemonConfig,
    GetProvenance,
    HealthCheck,
    HealthLevel,
    ListRules,
    NotifyConfig,
    Pause,
    Query,
    Resume,
    Shutdown,
    Status,
    _HealthTick,
    _RuleTick,
)
from psa.errors import DaemonStoppedError, StoreError
from psa.reasoning import ReasoningEngine
from psa.rules.lifecycle import LifecycleManager, Probationary
from psa.rules.models import ProcessRunning, RestartService, RuleStats, Shell
from psa.solutions import InMemorySolutionStore

from conftest import make_rule, make_solution

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _config(**notify) -> DaemonConfig:
    return DaemonConfig(
        health_check_interval=3600,
        rule_check_interval=3600,
        notify=NotifyConfig(**notify),
    )


@pytest.fixture
def daemon(engine, effects) -> Daemon:
    return Daemon(
        engine,
        LifecycleManager(correlation_id="corr-test"),
        reasoning=ReasoningEngine(),
        solutions=InMemorySolutionStore(),
        config=_config(),
        notifier=effects,
        correlation_id="corr-test",
    )


async def _stop(daemon: Daemon, task: asyncio.Task) -> None:
    await daemon.submit(Shutdown())
    await task


def _needs_review_stats() -> RuleStats:
    return RuleStats(applied_count=20, success_count=10, failure_count=8)


def _degrading_stats() -> RuleStats:
    return RuleStats(applied_count=20, success_count=14, failure_count=2, escalation_count=4)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestDaemonConfig:
    def test_defaults(self):
        config = DaemonConfig()
        assert config.health_check_interval == 60
        assert config.rule_check_interval == 300
        assert config.notify.errors_only is True

    def test_from_settings(self, tmp_path):
        settings = PsaSettings(
            data_dir=tmp_path, health_check_interval=5, notify_errors_only=False
        )
        config = DaemonConfig.from_settings(settings)
        assert config.health_check_interval == 5
        assert config.notify.errors_only is False


# ---------------------------------------------------------------------------
# Command loop
# ---------------------------------------------------------------------------


class TestCommandLoop:
    @pytest.mark.asyncio
    async def test_status_and_list(self, daemon, engine):
        engine.add_rule(make_rule("rule-a"))
        task = asyncio.create_task(daemon.run())

        status = await daemon.submit(Status())
        assert status.running is True
        assert status.paused is False
        assert status.rules_count == 1

        (summary,) = await daemon.submit(ListRules())
        assert (summary.id, summary.version, summary.enabled) == ("rule-a", "1.0.0", True)
        assert summary.success_rate == 0.0

        await _stop(daemon, task)
        assert daemon.is_running is False

    @pytest.mark.asyncio
    async def test_get_provenance(self, daemon, engine):
        engine.add_rule(make_rule("rule-a"))
        task = asyncio.create_task(daemon.run())

        text = await daemon.submit(GetProvenance("rule-a"))
        assert "rule_id: rule-a" in text
        assert await daemon.submit(GetProvenance("rule-missing")) is None

        await _stop(daemon, task)

    @pytest.mark.asyncio
    async def test_pause_skips_ticks(self, daemon, engine, probes, effects):
        probes.processes.add("sshd")
        engine.add_rule(make_rule("rule-a", when=[ProcessRunning(name="sshd")], then=[Shell(command="fix")]))
        task = asyncio.create_task(daemon.run())

        await daemon.submit(Pause())
        assert (await daemon.submit(Status())).paused is True
        await daemon._handle(_RuleTick())
        assert effects.calls == []

        await daemon.submit(Resume())
        await daemon._handle(_RuleTick())
        assert effects.calls == [("shell", "fix", False)]

        await _stop(daemon, task)

    @pytest.mark.asyncio
    async def test_submit_after_shutdown(self, daemon):
        task = asyncio.create_task(daemon.run())
        assert await daemon.submit(Shutdown()) is None
        await task
        with pytest.raises(DaemonStoppedError):
            await daemon.submit(Status())
        with pytest.raises(DaemonStoppedError):
            await daemon.run()

    @pytest.mark.asyncio
    async def test_request_shutdown(self, daemon):
        task = asyncio.create_task(daemon.run())
        await daemon.submit(Status())
        daemon.request_shutdown()
        await asyncio.wait_for(task, timeout=5)
        assert daemon.is_running is False

    def test_ticks_coalesce_while_pending(self, daemon):
        assert daemon._enqueue_tick(_HealthTick()) is True
        assert daemon._enqueue_tick(_HealthTick()) is False
        assert daemon._enqueue_tick(_RuleTick()) is True
        assert daemon._enqueue_tick(_RuleTick()) is False
        assert daemon._queue.qsize() == 2

    @pytest.mark.asyncio
    async def test_handled_tick_can_be_queued_again(self, daemon):
        daemon._enqueue_tick(_HealthTick())
        task = asyncio.create_task(daemon.run())
        # commands queue behind the tick, so the tick has been taken by now
        await daemon.submit(Status())
        assert daemon._enqueue_tick(_HealthTick()) is True
        await _stop(daemon, task)

    @pytest.mark.asyncio
    async def test_store_error_is_fatal(self, daemon, engine, probes, monkeypatch):
        probes.processes.add("sshd")
        engine.add_rule(make_rule("rule-a", when=[ProcessRunning(name="sshd")]))

        def broken_save(rule, message=None):
            raise StoreError("disk full", engine.store.rules_dir)

        monkeypatch.setattr(engine.store, "save", broken_save)
        daemon._queue.put_nowait((_RuleTick(), None))
        with pytest.raises(StoreError):
            await daemon.run()
        assert daemon.is_running is False


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQuery:
    @pytest.mark.asyncio
    async def test_rule_match_wins(self, daemon, engine, probes):
        probes.processes.add("sshd")
        engine.add_rule(
            make_rule(
                "rule-a",
                when=[ProcessRunning(name="sshd")],
                then=[Shell(command="fix"), RestartService(name="sshd")],
            )
        )
        result = await daemon.query("ssh is broken")
        assert result.source == "rules"
        assert result.confidence == 0.9
        assert result.applied_rule == "rule-a"
        assert result.answer == "Matched rule: Test rule-a\n\nActions: Shell, RestartService"

    @pytest.mark.asyncio
    async def test_reasoning_fallback(self, daemon):
        daemon.reasoning.learn_solution(make_solution(successes=9, problem="wifi drops"))
        result = await daemon.query("wifi drops")
        assert result.source == "reasoning"
        assert result.answer == "akmods --force"
        assert result.confidence == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_ai_fallback(self, daemon):
        async def ask_ai(problem):
            return f"try rebooting ({problem})"

        daemon.ai_fallback = ask_ai
        result = await daemon.query("printer on fire")
        assert result.source == "ai"
        assert result.answer == "try rebooting (printer on fire)"
        assert result.confidence == 0.5

    @pytest.mark.asyncio
    async def test_pending_ai(self, daemon):
        task = asyncio.create_task(daemon.run())
        result = await daemon.submit(Query("printer on fire"))
        assert result.source == "pending-ai"
        assert "printer on fire" in result.answer
        await _stop(daemon, task)


# ---------------------------------------------------------------------------
# Health checks and rule application
# ---------------------------------------------------------------------------


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_all_good(self, daemon, engine):
        engine.add_rule(make_rule("rule-a"))
        report = await daemon.health_check()
        assert report.overall is HealthLevel.GOOD
        assert report.issues == []
        assert daemon.status().last_health_check == report.timestamp

    @pytest.mark.asyncio
    async def test_needs_review_is_critical(self, daemon, engine):
        engine.add_rule(make_rule("rule-a", stats=_needs_review_stats()))
        engine.add_rule(make_rule("rule-b", stats=_degrading_stats()))
        task = asyncio.create_task(daemon.run())

        report = await daemon.submit(HealthCheck())
        assert report.overall is HealthLevel.CRITICAL
        assert [i.severity for i in report.issues] == [HealthLevel.CRITICAL, HealthLevel.WARNING]
        assert report.issues[0].suggestion == "psa rules show rule-a"
        assert (await daemon.submit(Status())).issues_detected == 2

        await _stop(daemon, task)

    @pytest.mark.asyncio
    async def test_critical_tick_notifies(self, daemon, engine, effects):
        engine.add_rule(make_rule("rule-a", stats=_needs_review_stats()))
        await daemon._handle(_HealthTick())
        ((kind, title, body),) = effects.calls
        assert kind == "notify"
        assert title == "PSA: Critical Issues Detected"
        assert "needs review" in body

    @pytest.mark.asyncio
    async def test_warning_not_notified_when_errors_only(self, daemon, engine, effects):
        engine.add_rule(make_rule("rule-a", stats=_degrading_stats()))
        await daemon._handle(_HealthTick())
        assert effects.calls == []

    @pytest.mark.asyncio
    async def test_warning_notified_when_enabled(self, daemon, engine, effects):
        daemon.config = _config(errors_only=False)
        engine.add_rule(make_rule("rule-a", stats=_degrading_stats()))
        await daemon._handle(_HealthTick())
        assert [c[1] for c in effects.calls] == ["PSA: Warnings Detected"]

    def test_should_notify(self, daemon):
        assert daemon._should_notify(HealthLevel.GOOD) is False
        assert daemon._should_notify(HealthLevel.WARNING) is False
        assert daemon._should_notify(HealthLevel.CRITICAL) is True
        daemon.config = _config(errors_only=False, min_severity="warn")
        assert daemon._should_notify(HealthLevel.WARNING) is True
        daemon.config = _config(errors_only=False, min_severity="error")
        assert daemon._should_notify(HealthLevel.WARNING) is False


class TestApplyRules:
    @pytest.mark.asyncio
    async def test_outcomes_reported_to_solution(self, daemon, engine, probes, effects):
        solution = make_solution()
        daemon.solutions.store_solution(solution)
        rule_id = engine.crystallize(solution, [ProcessRunning(name="sshd")], [Shell(command="fix")])
        probes.processes.add("sshd")

        assert await daemon.apply_rules() == 1
        assert solution.success_count == 6
        assert daemon.lifecycle.health_cache[rule_id] == Probationary(applications=1, required=10)
        assert daemon.status().issues_resolved == 1

    @pytest.mark.asyncio
    async def test_failed_rule_counts_as_failure(self, daemon, engine, probes, effects):
        solution = make_solution()
        daemon.solutions.store_solution(solution)
        engine.crystallize(solution, [], [Shell(command="broken")])
        effects.failing.add("broken")

        assert await daemon.apply_rules() == 0
        assert solution.failure_count == 1

    @pytest.mark.asyncio
    async def test_nothing_matches(self, daemon, engine):
        engine.add_rule(make_rule("rule-a", when=[ProcessRunning(name="sshd")]))
        assert await daemon.apply_rules() == 0
