"""Tests for settings and the psa command line."""

import json
import logging
import sys

import pytest
from psa import __main__ as cli
from psa import correlation
from psa.config import PsaSettings, get_settings
from psa.reasoning import ReasoningEngine
from psa.rules import RulesEngine

from conftest import make_rule


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("PSA_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("PSA_GIT_VERSIONING", "false")
    monkeypatch.setattr(correlation, "_correlation_id", None)
    monkeypatch.setattr(cli, "configure_logging", lambda level="INFO": None)
    get_settings.cache_clear()
    yield tmp_path
    get_settings.cache_clear()


def _run(monkeypatch, *argv) -> int:
    monkeypatch.setattr(sys, "argv", ["psa", *argv])
    try:
        cli.main()
    except SystemExit as e:
        return e.code
    return 0


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestSettings:
    def test_rules_dir_defaults_under_data_dir(self, tmp_path):
        settings = PsaSettings(data_dir=tmp_path)
        assert settings.rules_dir == tmp_path / "rules"
        assert settings.proposals_path == tmp_path / "proposals.yaml"
        assert settings.knowledge_path == tmp_path / "knowledge.yaml"

    def test_env_prefix(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PSA_RULES_DIR", str(tmp_path / "custom"))
        monkeypatch.setenv("PSA_MIN_SAMPLES", "25")
        settings = PsaSettings(data_dir=tmp_path)
        assert settings.rules_dir == tmp_path / "custom"
        assert settings.min_samples == 25

    def test_defaults(self, tmp_path):
        settings = PsaSettings(data_dir=tmp_path)
        assert settings.min_success_rate == 0.8
        assert settings.variance_threshold == 0.05
        assert settings.rate_window_secs == 604800
        assert settings.probe_timeout_seconds == 10.0


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCli:
    def test_no_command_prints_help(self, data_dir, monkeypatch, capsys):
        assert _run(monkeypatch) == 1
        assert "usage: psa" in capsys.readouterr().out

    def test_rules_list_empty(self, data_dir, monkeypatch, capsys):
        assert _run(monkeypatch, "rules", "list") == 0
        assert "No rules yet." in capsys.readouterr().out

    def test_rules_list_and_show(self, data_dir, monkeypatch, capsys):
        engine = RulesEngine.from_settings(get_settings())
        engine.add_rule(make_rule("rule-a"))

        assert _run(monkeypatch, "rules", "list") == 0
        out = capsys.readouterr().out
        assert "rule-a" in out
        assert "1 rules" in out

        assert _run(monkeypatch, "rules", "show", "rule-a", "--format", "json") == 0
        doc = json.loads(capsys.readouterr().out)
        assert doc["rule_id"] == "rule-a"

    def test_rules_show_missing(self, data_dir, monkeypatch, capsys):
        assert _run(monkeypatch, "rules", "show", "rule-missing") == 1
        assert "Rule not found: rule-missing" in capsys.readouterr().err

    def test_rules_health(self, data_dir, monkeypatch, capsys):
        RulesEngine.from_settings(get_settings()).add_rule(make_rule("rule-a"))
        assert _run(monkeypatch, "rules", "health") == 0
        out = capsys.readouterr().out
        assert "Probationary" in out
        assert "Total: 1" in out

    def test_learn_writes_knowledge(self, data_dir, monkeypatch, capsys):
        code = _run(
            monkeypatch,
            "learn",
            "nvidia",
            "akmods --force",
            "--problem",
            "nvidia driver",
            "--command",
            "akmods --force",
        )
        assert code == 0
        assert "Learned: nvidia driver -> akmods --force" in capsys.readouterr().out

        engine = ReasoningEngine.from_yaml(data_dir / "knowledge.yaml")
        assert engine.solutions_for("nvidia driver") == [("akmods --force", 0.5)]

    def test_learn_without_commands(self, data_dir, monkeypatch, capsys):
        assert _run(monkeypatch, "learn", "wifi", "iw reg set US") == 0
        assert "Learned: wifi -> iw reg set US" in capsys.readouterr().out
        engine = ReasoningEngine.from_yaml(data_dir / "knowledge.yaml")
        assert engine.solutions_for("wifi") == [("iw reg set US", 0.5)]

    def test_repeated_command_option(self, data_dir, monkeypatch):
        code = _run(
            monkeypatch, "learn", "gpu", "reload", "--command", "akmods", "--command", "dracut -f"
        )
        assert code == 0
        assert (data_dir / "knowledge.yaml").exists()

    def test_correlation_id_from_settings(self, data_dir, monkeypatch):
        monkeypatch.setenv("PSA_CORRELATION_ID", "corr-handover")
        get_settings.cache_clear()
        _run(monkeypatch, "rules", "list")
        assert correlation.get() == "corr-handover"


class TestConfigureLogging:
    def test_installs_correlation_handler(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            cli.configure_logging("debug")
            (handler,) = root.handlers
            assert root.level == logging.DEBUG
            assert "%(correlation_id)s" in handler.formatter._fmt
            assert any(isinstance(f, correlation.CorrelationFilter) for f in handler.filters)
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)
