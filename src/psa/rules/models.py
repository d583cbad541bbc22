"""Pydantic models for crystallized rules.

These models are the single source of truth for the persisted rule format:
each rule is dumped with ``model_dump(mode="json")`` into one YAML file and
read back with ``model_validate``. Conditions and actions are tagged by a
``type`` field, rule sources by a ``kind`` field.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Literal, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> str:
    """RFC 3339 timestamp for provenance and stats."""
    return datetime.now(UTC).isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp, assuming UTC when no offset is given."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def bump_version(version: str, part: str = "minor") -> str:
    """Bump a semantic version string.

    Example:
        bump_version("1.2.3", "patch")  # "1.2.4"
        bump_version("1.2.3", "major")  # "2.0.0"
    """
    pieces = (version.split(".") + ["0", "0", "0"])[:3]
    try:
        major, minor, patch = (int(p) for p in pieces)
    except ValueError:
        raise ValueError(f"Not a semantic version: {version!r}") from None

    if part == "major":
        return f"{major + 1}.0.0"
    if part == "minor":
        return f"{major}.{minor + 1}.0"
    if part == "patch":
        return f"{major}.{minor}.{patch + 1}"
    raise ValueError(f"Unknown version part: {part!r}")


class _Variant(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


class ProcessRunning(_Variant):
    type: Literal["ProcessRunning"] = "ProcessRunning"
    name: str


class ServiceState(_Variant):
    type: Literal["ServiceState"] = "ServiceState"
    name: str
    state: str


class FileExists(_Variant):
    type: Literal["FileExists"] = "FileExists"
    path: str


class FileContains(_Variant):
    type: Literal["FileContains"] = "FileContains"
    path: str
    pattern: str


class MetricThreshold(_Variant):
    type: Literal["MetricThreshold"] = "MetricThreshold"
    metric: str
    op: str
    value: float


class PortOpen(_Variant):
    type: Literal["PortOpen"] = "PortOpen"
    port: int = Field(ge=0, le=65535)
    protocol: str = "tcp"


class PackageInstalled(_Variant):
    type: Literal["PackageInstalled"] = "PackageInstalled"
    name: str


class ModuleLoaded(_Variant):
    type: Literal["ModuleLoaded"] = "ModuleLoaded"
    name: str


class ShellCheck(_Variant):
    """Custom shell command; exit status 0 means true."""

    type: Literal["ShellCheck"] = "ShellCheck"
    command: str


class AllOf(_Variant):
    type: Literal["All"] = "All"
    conditions: list[Condition]


class AnyOf(_Variant):
    type: Literal["Any"] = "Any"
    conditions: list[Condition]


class Not(_Variant):
    type: Literal["Not"] = "Not"
    condition: Condition


Condition = Annotated[
    Union[
        ProcessRunning,
        ServiceState,
        FileExists,
        FileContains,
        MetricThreshold,
        PortOpen,
        PackageInstalled,
        ModuleLoaded,
        ShellCheck,
        AllOf,
        AnyOf,
        Not,
    ],
    Field(discriminator="type"),
]

AllOf.model_rebuild()
AnyOf.model_rebuild()
Not.model_rebuild()


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class Shell(_Variant):
    type: Literal["Shell"] = "Shell"
    command: str
    sudo: bool = False


class RestartService(_Variant):
    type: Literal["RestartService"] = "RestartService"
    name: str


class EnableService(_Variant):
    type: Literal["EnableService"] = "EnableService"
    name: str


class WriteFile(_Variant):
    type: Literal["WriteFile"] = "WriteFile"
    path: str
    content: str
    mode: str | None = None  # octal string, e.g. "0644"


class LoadModule(_Variant):
    type: Literal["LoadModule"] = "LoadModule"
    name: str
    options: str | None = None


class InstallPackage(_Variant):
    type: Literal["InstallPackage"] = "InstallPackage"
    name: str


class Log(_Variant):
    type: Literal["Log"] = "Log"
    level: str = "info"
    message: str


class Notify(_Variant):
    type: Literal["Notify"] = "Notify"
    title: str
    body: str


class Escalate(_Variant):
    """The rule cannot proceed; defer to AI."""

    type: Literal["Escalate"] = "Escalate"
    reason: str


Action = Annotated[
    Union[
        Shell,
        RestartService,
        EnableService,
        WriteFile,
        LoadModule,
        InstallPackage,
        Log,
        Notify,
        Escalate,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Provenance
# ---------------------------------------------------------------------------


class CrystallizedSource(_Variant):
    """Learned from solving a problem."""

    kind: Literal["Crystallized"] = "Crystallized"
    solution_id: str
    confidence: float


class ForumSource(_Variant):
    kind: Literal["Forum"] = "Forum"
    url: str
    thread_title: str


class MeshSource(_Variant):
    kind: Literal["Mesh"] = "Mesh"
    peer_id: str
    peer_name: str = ""


class ManualSource(_Variant):
    kind: Literal["Manual"] = "Manual"
    author: str


class ImportSource(_Variant):
    kind: Literal["Import"] = "Import"
    source: str


RuleSource = Annotated[
    Union[CrystallizedSource, ForumSource, MeshSource, ManualSource, ImportSource],
    Field(discriminator="kind"),
]


class DecisionStep(_Variant):
    timestamp: str = Field(default_factory=utc_now)
    description: str
    confidence_before: float
    confidence_after: float
    reason: str


class RuleVersion(_Variant):
    version: str
    timestamp: str = Field(default_factory=utc_now)
    author: str
    message: str
    diff_summary: str = ""


class Provenance(BaseModel):
    """Full audit trail of a rule. Entries are appended, never rewritten."""

    source: RuleSource
    original_problem: str = ""
    solution_id: str | None = None
    created_at: str = Field(default_factory=utc_now)
    created_by: str
    decision_path: list[DecisionStep] = Field(default_factory=list)
    history: list[RuleVersion] = Field(default_factory=list)

    def record_decision(
        self,
        description: str,
        reason: str,
        confidence_before: float = 0.0,
        confidence_after: float = 0.0,
    ) -> DecisionStep:
        step = DecisionStep(
            description=description,
            reason=reason,
            confidence_before=confidence_before,
            confidence_after=confidence_after,
        )
        self.decision_path.append(step)
        return step

    def record_version(
        self, version: str, author: str, message: str, diff_summary: str = ""
    ) -> RuleVersion:
        entry = RuleVersion(
            version=version, author=author, message=message, diff_summary=diff_summary
        )
        self.history.append(entry)
        return entry


class RuleStats(BaseModel):
    applied_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    escalation_count: int = 0
    last_applied: str | None = None
    average_duration_ms: float | None = None

    @property
    def success_rate(self) -> float:
        if self.applied_count == 0:
            return 0.0
        return self.success_count / self.applied_count

    def record(self, *, success: bool, escalated: bool, duration_ms: float) -> None:
        """Fold one execution into the counters and rolling average."""
        self.applied_count += 1
        if escalated:
            self.escalation_count += 1
        elif success:
            self.success_count += 1
        else:
            self.failure_count += 1
        self.last_applied = utc_now()

        if self.average_duration_ms is None:
            self.average_duration_ms = duration_ms
        else:
            self.average_duration_ms += (
                duration_ms - self.average_duration_ms
            ) / self.applied_count


# ---------------------------------------------------------------------------
# Rule
# ---------------------------------------------------------------------------


class Rule(BaseModel):
    """A crystallized rule: simple, deterministic, inspectable."""

    id: str = Field(frozen=True)
    name: str
    version: str = "1.0.0"
    when: list[Condition] = Field(default_factory=list)
    then: list[Action] = Field(default_factory=list)
    provenance: Provenance
    stats: RuleStats = Field(default_factory=RuleStats)
    enabled: bool = True
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def _unique_tags(cls, tags: list[str]) -> list[str]:
        return list(dict.fromkeys(tags))

    def commit_version(
        self, *, author: str, message: str, diff_summary: str = "", part: str = "minor"
    ) -> RuleVersion:
        """Move to the next version, appending the history entry first."""
        new_version = bump_version(self.version, part)
        entry = self.provenance.record_version(new_version, author, message, diff_summary)
        self.version = new_version
        return entry

    def to_yaml(self) -> str:
        return yaml.safe_dump(
            self.model_dump(mode="json"),
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )

    @classmethod
    def from_yaml(cls, text: str) -> Rule:
        return cls.model_validate(yaml.safe_load(text))
