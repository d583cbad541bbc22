"""CLI entry point for PSA.

Usage:
    # Run the daemon until SIGINT/SIGTERM
    psa daemon

    # Inspect rules
    psa rules list
    psa rules show rule-3f2a... --format json
    psa rules health

    # Teach a solution to the reasoning engine
    psa learn nvidia "akmods --force" --problem "nvidia driver"
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from . import correlation
from .config import PsaSettings, get_settings
from .errors import NotFoundError, PsaError

LOG_FORMAT = "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install one stderr handler that prints the correlation ID."""
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(correlation.CorrelationFilter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())


def _cmd_daemon(args: argparse.Namespace, settings: PsaSettings) -> None:
    """Run the daemon in the foreground."""
    from .daemon import Daemon

    async def _run() -> None:
        daemon = Daemon.from_settings(settings, correlation_id=correlation.get())
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, daemon.request_shutdown)
        try:
            await daemon.run()
        finally:
            daemon.lifecycle.save_proposals(settings.proposals_path)

    asyncio.run(_run())


def _cmd_rules_list(args: argparse.Namespace, settings: PsaSettings) -> None:
    from .rules import RulesEngine

    engine = RulesEngine.from_settings(settings, correlation_id=correlation.get())
    rules = engine.list()
    if not rules:
        print("No rules yet.")
        return

    for rule in rules:
        state = "on " if rule.enabled else "off"
        print(
            f"  {rule.id:<42} {rule.version:<8} {state} "
            f"{rule.stats.success_rate:>5.0%}  {rule.name}"
        )
    print(f"\n{len(rules)} rules")


def _cmd_rules_show(args: argparse.Namespace, settings: PsaSettings) -> None:
    from .rules import RulesEngine

    engine = RulesEngine.from_settings(settings, correlation_id=correlation.get())
    try:
        print(engine.export_provenance(args.rule_id, fmt=args.format))
    except NotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _cmd_rules_health(args: argparse.Namespace, settings: PsaSettings) -> None:
    from .rules import LifecycleManager, RulesEngine, ToleranceConfig

    engine = RulesEngine.from_settings(settings, correlation_id=correlation.get())
    lifecycle = LifecycleManager(ToleranceConfig.from_settings(settings))
    lifecycle.load_proposals(settings.proposals_path)

    for rule in engine.list():
        health = lifecycle.review_rule(rule, engine.probes)
        detail = health.model_dump(exclude={"status"})
        extra = f"  {detail}" if detail else ""
        print(f"  {rule.id:<42} {health.status:<16}{extra}")

    report = lifecycle.generate_report()
    print()
    print(
        f"Total: {report.total_rules}  healthy: {report.healthy}  "
        f"probationary: {report.probationary}  degrading: {report.degrading}  "
        f"needs review: {report.needs_review}  obsolete: {report.possibly_obsolete}"
    )
    print(f"Pending proposals: {report.pending_proposals}")


def _cmd_learn(args: argparse.Namespace, settings: PsaSettings) -> None:
    from .reasoning import ReasoningEngine
    from .solutions import InMemorySolutionStore, learn

    path = settings.knowledge_path
    engine = ReasoningEngine.from_yaml(path) if path.exists() else ReasoningEngine()

    solution = learn(
        InMemorySolutionStore(),
        args.category,
        args.solution,
        problem=args.problem or "",
        commands=args.commands or [],
    )
    engine.learn_solution(solution)
    path.parent.mkdir(parents=True, exist_ok=True)
    engine.to_yaml(path)
    print(f"Learned: {solution.problem} -> {solution.solution}")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="psa",
        description="Personal Sysadmin: self-learning rules for your machine",
    )
    parser.add_argument("--log-level", help="Override PSA_LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # daemon
    subparsers.add_parser("daemon", help="Run the monitoring daemon")

    # rules
    rules_parser = subparsers.add_parser("rules", help="Inspect crystallized rules")
    rules_sub = rules_parser.add_subparsers(dest="rules_command")
    rules_sub.add_parser("list", help="List all rules")
    show_parser = rules_sub.add_parser("show", help="Show a rule's provenance")
    show_parser.add_argument("rule_id")
    show_parser.add_argument(
        "--format",
        choices=["yaml", "json"],
        default="yaml",
        help="Output format (default: yaml)",
    )
    rules_sub.add_parser("health", help="Assess the health of every rule")

    # learn
    learn_parser = subparsers.add_parser("learn", help="Teach a solution")
    learn_parser.add_argument("category", help="Problem category, e.g. nvidia")
    learn_parser.add_argument("solution", help="What fixed it")
    learn_parser.add_argument("--problem", help="Problem description (default: category)")
    learn_parser.add_argument(
        "--command",
        dest="commands",
        action="append",
        help="Command that applies the fix (repeatable)",
    )

    args = parser.parse_args()

    settings = get_settings()
    configure_logging(args.log_level or settings.log_level)
    correlation.init(settings.correlation_id)

    handlers = {
        ("daemon", None): _cmd_daemon,
        ("rules", "list"): _cmd_rules_list,
        ("rules", "show"): _cmd_rules_show,
        ("rules", "health"): _cmd_rules_health,
        ("learn", None): _cmd_learn,
    }
    handler = handlers.get((args.command, getattr(args, "rules_command", None)))
    if handler is None:
        parser.print_help()
        sys.exit(1)

    try:
        handler(args, settings)
    except PsaError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
