"""Rule persistence layer.

One YAML file per rule id under the rules directory:

    ~/.local/share/psa/rules/
        .git/
        README.md
        rule-3f2a....yaml
        rule-9c41....yaml

The directory is a git repository. Creations and edits are committed with
a message; stats-only saves (after every execution) are written to disk
without a commit so the history stays readable.

Usage:
    store = RuleStore(settings.rules_dir)
    rules = store.load_all()
    store.save(rule, message="Crystallize rule: Auto: nvidia driver")
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

from pydantic import ValidationError
from yaml import YAMLError

from ..errors import InvalidInputError, StoreError
from .models import Rule

logger = logging.getLogger(__name__)

RULE_SUFFIX = ".yaml"
README = "# PSA Rules Store\n\nThis directory contains crystallized rules.\n"
GIT_IDENTITY = ["-c", "user.name=psa", "-c", "user.email=psa@localhost"]


class RuleStore:
    """Versioned directory of rule files."""

    def __init__(self, rules_dir: Path | str, *, git_versioning: bool = True):
        self.rules_dir = Path(rules_dir)
        self.git_versioning = git_versioning
        self._initialized = False

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def ensure(self) -> None:
        """Create the directory and, when versioning, the git repository."""
        if self._initialized:
            return
        try:
            self.rules_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Cannot create rules directory: {e}", path=self.rules_dir) from e

        if self.git_versioning and not (self.rules_dir / ".git").exists():
            self._git("init")
            try:
                (self.rules_dir / "README.md").write_text(README)
            except OSError as e:
                raise StoreError(f"Cannot write README: {e}", path=self.rules_dir) from e
            self._git("add", ".")
            self._git("commit", "-m", "Initialize rules store")
            logger.info("Initialized git repository for rules at %s", self.rules_dir)

        self._initialized = True

    def _git(self, *args: str) -> bool:
        """Run a git command in the rules directory. Failures are logged."""
        try:
            result = subprocess.run(
                ["git", *GIT_IDENTITY, *args],
                cwd=self.rules_dir,
                capture_output=True,
                text=True,
                timeout=30,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("git %s failed: %s", args[0], e)
            return False
        if result.returncode != 0:
            logger.warning("git %s exited %d: %s", args[0], result.returncode, result.stderr.strip())
            return False
        return True

    # ------------------------------------------------------------------
    # Read / write
    # ------------------------------------------------------------------

    def path_for(self, rule_id: str) -> Path:
        if not rule_id or "/" in rule_id or "\\" in rule_id or rule_id.startswith("."):
            raise InvalidInputError(f"Invalid rule id: {rule_id!r}", value=rule_id)
        return self.rules_dir / f"{rule_id}{RULE_SUFFIX}"

    def load_all(self) -> list[Rule]:
        """Load every rule file, sorted by file name.

        Files that do not parse are skipped with a warning.
        """
        self.ensure()
        try:
            paths = sorted(self.rules_dir.glob(f"*{RULE_SUFFIX}"))
        except OSError as e:
            raise StoreError(f"Cannot list rules directory: {e}", path=self.rules_dir) from e

        rules: list[Rule] = []
        for path in paths:
            try:
                text = path.read_text()
            except OSError as e:
                raise StoreError(f"Cannot read rule file: {e}", path=path) from e
            try:
                rules.append(Rule.from_yaml(text))
            except (YAMLError, ValidationError, TypeError) as e:
                logger.warning("Skipping unparseable rule file %s: %s", path.name, e)

        logger.info("Loaded %d rules from %s", len(rules), self.rules_dir)
        return rules

    def save(self, rule: Rule, message: str | None = None) -> Path:
        """Write a rule file; commit it when ``message`` is given."""
        self.ensure()
        path = self.path_for(rule.id)
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            tmp.write_text(rule.to_yaml())
            os.replace(tmp, path)
        except OSError as e:
            raise StoreError(f"Cannot write rule file: {e}", path=path) from e

        if message and self.git_versioning:
            if self._git("add", path.name):
                self._git("commit", "-m", message)
        return path
