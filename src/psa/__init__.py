"""PSA: Personal Sysadmin core.

Turns observed problem/solution pairs into deterministic, auditable
automation rules, and answers problems from learned facts when no rule
matches.

Usage:
    from psa import Daemon, HealthCheck

    daemon = Daemon.from_settings()
    task = asyncio.create_task(daemon.run())
    report = await daemon.submit(HealthCheck())
"""

from .config import PsaSettings, get_settings
from .daemon import Daemon, DaemonConfig, HealthCheck, HealthReport, Query, QueryResult
from .errors import PsaError
from .reasoning import ReasoningEngine
from .rules import LifecycleManager, Rule, RulesEngine, RuleStore

__version__ = "0.1.0"

__all__ = [
    "PsaSettings",
    "get_settings",
    "PsaError",
    "Daemon",
    "DaemonConfig",
    "HealthCheck",
    "HealthReport",
    "Query",
    "QueryResult",
    "ReasoningEngine",
    "Rule",
    "RuleStore",
    "RulesEngine",
    "LifecycleManager",
]
