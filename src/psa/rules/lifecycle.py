"""Rule lifecycle: health, tolerance, proposals and obsolescence.

Rules are judged on their own statistics. The manager:
    - Assesses rule health with a fixed decision ladder
    - Suppresses rule edits that are within tolerance of the current rule
    - Gathers evidence for proposed rules before they can be crystallized
    - Tracks CVEs and flags rules whose reason to exist has been fixed
    - Retires rules (disable, never delete, so provenance survives)

Health is derived data. The cache here is an optimization over RuleStats;
every entry can be recomputed from the rule.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections import Counter
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Literal, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .. import correlation
from ..config import PsaSettings, get_settings
from ..errors import InvalidInputError, ProposalNotFoundError
from ..solutions import Solution
from .models import Action, Condition, FileExists, Rule, parse_timestamp, utc_now

if TYPE_CHECKING:
    from .engine import RulesEngine
    from .probes import SystemProbes

logger = logging.getLogger(__name__)

REQUIRED_EVIDENCE = 5
FAILURE_RATE_REVIEW = 0.3
OBSOLETE_WINDOWS = 4


class ToleranceConfig(BaseModel):
    """Thresholds for health assessment and update suppression."""

    min_success_rate: float = 0.8
    min_samples: int = 10
    variance_threshold: float = 0.05
    failure_review_threshold: int = 3
    rate_window_secs: int = 604800

    @classmethod
    def from_settings(cls, settings: PsaSettings | None = None) -> ToleranceConfig:
        settings = settings or get_settings()
        return cls(
            min_success_rate=settings.min_success_rate,
            min_samples=settings.min_samples,
            variance_threshold=settings.variance_threshold,
            failure_review_threshold=settings.failure_review_threshold,
            rate_window_secs=settings.rate_window_secs,
        )


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class Probationary(_Frozen):
    status: Literal["Probationary"] = "Probationary"
    applications: int
    required: int


class Healthy(_Frozen):
    status: Literal["Healthy"] = "Healthy"


class Degrading(_Frozen):
    status: Literal["Degrading"] = "Degrading"
    current_rate: float
    trend: float


class NeedsReview(_Frozen):
    status: Literal["NeedsReview"] = "NeedsReview"
    reason: str


class PossiblyObsolete(_Frozen):
    status: Literal["PossiblyObsolete"] = "PossiblyObsolete"
    reason: str


class Obsolete(_Frozen):
    status: Literal["Obsolete"] = "Obsolete"
    reason: str
    retired_at: str


RuleHealth = Annotated[
    Union[Probationary, Healthy, Degrading, NeedsReview, PossiblyObsolete, Obsolete],
    Field(discriminator="status"),
]


# ---------------------------------------------------------------------------
# Obsolescence
# ---------------------------------------------------------------------------


class CveFixed(_Frozen):
    kind: Literal["CveFixed"] = "CveFixed"
    cve_id: str
    fixed_version: str

    def describe(self) -> str:
        return f"CVE {self.cve_id} fixed in {self.fixed_version}"


class PackageUpdated(_Frozen):
    kind: Literal["PackageUpdated"] = "PackageUpdated"
    package: str
    old_version: str
    new_version: str

    def describe(self) -> str:
        return f"{self.package} updated from {self.old_version} to {self.new_version}"


class ConditionInvalid(_Frozen):
    kind: Literal["ConditionInvalid"] = "ConditionInvalid"
    condition: str

    def describe(self) -> str:
        return self.condition


class Superseded(_Frozen):
    kind: Literal["Superseded"] = "Superseded"
    new_rule_id: str

    def describe(self) -> str:
        return f"Superseded by {self.new_rule_id}"


class ManualDeprecation(_Frozen):
    kind: Literal["ManualDeprecation"] = "ManualDeprecation"
    reason: str
    by: str

    def describe(self) -> str:
        return f"Deprecated by {self.by}: {self.reason}"


class NoRecentActivity(_Frozen):
    kind: Literal["NoRecentActivity"] = "NoRecentActivity"
    last_applied: str

    def describe(self) -> str:
        return f"No applications since {self.last_applied}"


ObsolescenceReason = Annotated[
    Union[
        CveFixed,
        PackageUpdated,
        ConditionInvalid,
        Superseded,
        ManualDeprecation,
        NoRecentActivity,
    ],
    Field(discriminator="kind"),
]


class CveStatus(BaseModel):
    id: str
    affected_packages: list[str] = Field(default_factory=list)
    fixed_in: str | None = None
    patched_locally: bool = False
    related_rule_ids: list[str] = Field(default_factory=list)

    @property
    def is_fixed(self) -> bool:
        return self.fixed_in is not None or self.patched_locally


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------


class Success(_Frozen):
    outcome: Literal["Success"] = "Success"


class Failure(_Frozen):
    outcome: Literal["Failure"] = "Failure"
    error: str


class Partial(_Frozen):
    outcome: Literal["Partial"] = "Partial"
    details: str


EvidenceOutcome = Annotated[Union[Success, Failure, Partial], Field(discriminator="outcome")]


class ProposalEvidence(BaseModel):
    timestamp: str = Field(default_factory=utc_now)
    source: str
    outcome: EvidenceOutcome
    context: dict[str, str] = Field(default_factory=dict)


class Gathering(_Frozen):
    state: Literal["Gathering"] = "Gathering"
    count: int
    required: int


class PendingReview(_Frozen):
    state: Literal["PendingReview"] = "PendingReview"


class Approved(_Frozen):
    state: Literal["Approved"] = "Approved"
    by: str


class Rejected(_Frozen):
    state: Literal["Rejected"] = "Rejected"
    reason: str


class Crystallized(_Frozen):
    state: Literal["Crystallized"] = "Crystallized"
    rule_id: str


ProposalStatus = Annotated[
    Union[Gathering, PendingReview, Approved, Rejected, Crystallized],
    Field(discriminator="state"),
]


class RuleProposal(BaseModel):
    """A candidate rule collecting evidence before crystallization."""

    id: str = Field(default_factory=lambda: f"proposal-{uuid.uuid4()}")
    problem_pattern: str
    suggested_conditions: list[Condition] = Field(default_factory=list)
    suggested_actions: list[Action] = Field(default_factory=list)
    evidence: list[ProposalEvidence] = Field(default_factory=list)
    confidence: float = 0.0
    status: ProposalStatus = Field(
        default_factory=lambda: Gathering(count=1, required=REQUIRED_EVIDENCE)
    )
    created_at: str = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return isinstance(self.status, (Rejected, Crystallized))

    def recompute_confidence(self) -> float:
        if not self.evidence:
            self.confidence = 0.0
        else:
            successes = sum(1 for e in self.evidence if isinstance(e.outcome, Success))
            self.confidence = successes / len(self.evidence)
        return self.confidence


class LifecycleReport(BaseModel):
    timestamp: str = Field(default_factory=utc_now)
    total_rules: int = 0
    healthy: int = 0
    probationary: int = 0
    degrading: int = 0
    needs_review: int = 0
    possibly_obsolete: int = 0
    pending_proposals: int = 0
    tracked_cves: int = 0


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


def _element_key(element: BaseModel) -> str:
    return json.dumps(element.model_dump(mode="json"), sort_keys=True)


def _list_difference(existing: list[BaseModel], proposed: list[BaseModel]) -> int:
    """Elements missing from or added to ``existing``, whichever is larger."""
    before = Counter(_element_key(e) for e in existing)
    after = Counter(_element_key(e) for e in proposed)
    missing = sum((before - after).values())
    extra = sum((after - before).values())
    return max(missing, extra)


class LifecycleManager:
    """Health cache, proposal registry and CVE registry for the rule set."""

    def __init__(
        self,
        tolerance: ToleranceConfig | None = None,
        correlation_id: str | None = None,
    ):
        self.tolerance = tolerance or ToleranceConfig()
        self.log = correlation.bind(logger, correlation_id)
        self.proposals: dict[str, RuleProposal] = {}
        self.health_cache: dict[str, RuleHealth] = {}
        self.known_cves: dict[str, CveStatus] = {}
        self._last_rate: dict[str, float] = {}

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def assess_health(self, rule: Rule, now: datetime | None = None) -> RuleHealth:
        """Classify a rule from its stats. First matching step wins."""
        health = self._assess(rule, now or datetime.now(UTC))
        self.health_cache[rule.id] = health
        return health

    def _assess(self, rule: Rule, now: datetime) -> RuleHealth:
        stats = rule.stats
        tol = self.tolerance

        cached = self.health_cache.get(rule.id)
        if not rule.enabled and isinstance(cached, Obsolete):
            return cached

        if stats.applied_count < tol.min_samples:
            return Probationary(applications=stats.applied_count, required=tol.min_samples)

        success_rate = stats.success_count / stats.applied_count
        previous_rate = self._last_rate.get(rule.id)
        self._last_rate[rule.id] = success_rate

        if (
            stats.failure_count >= tol.failure_review_threshold
            and stats.failure_count / stats.applied_count > FAILURE_RATE_REVIEW
        ):
            return NeedsReview(
                reason=(
                    f"High failure rate: {stats.failure_count} failures "
                    f"out of {stats.applied_count} applications"
                )
            )

        if stats.escalation_count > stats.success_count // 2:
            return NeedsReview(reason=f"High escalation rate: {stats.escalation_count} escalations")

        if stats.last_applied:
            try:
                age = now - parse_timestamp(stats.last_applied)
            except ValueError:
                self.log.warning("Rule %s has unparseable last_applied %r", rule.id, stats.last_applied)
            else:
                if age.total_seconds() > tol.rate_window_secs * OBSOLETE_WINDOWS:
                    return PossiblyObsolete(reason=f"No applications in {age.days} days")

        if success_rate < tol.min_success_rate:
            trend = 0.0 if previous_rate is None else success_rate - previous_rate
            return Degrading(current_rate=success_rate, trend=trend)

        return Healthy()

    def review_rule(self, rule: Rule, probes: SystemProbes | None = None) -> RuleHealth:
        """Health plus CVE and condition checks, as used by periodic health checks.

        An obsolescence finding overrides a Healthy/Degrading/Probationary
        result with PossiblyObsolete.
        """
        health = self.assess_health(rule)
        if isinstance(health, (NeedsReview, PossiblyObsolete, Obsolete)):
            return health

        reason = self.check_cve_obsolescence(rule) or self.check_condition_validity(rule, probes)
        if reason is not None:
            health = PossiblyObsolete(reason=reason.describe())
            self.health_cache[rule.id] = health
        return health

    def rules_needing_attention(self) -> list[tuple[str, RuleHealth]]:
        flagged = [
            (rule_id, health)
            for rule_id, health in self.health_cache.items()
            if not isinstance(health, (Healthy, Probationary))
        ]
        return sorted(flagged, key=lambda item: item[0])

    # ------------------------------------------------------------------
    # Tolerance
    # ------------------------------------------------------------------

    def within_tolerance(
        self,
        existing: Rule,
        proposed_conditions: list[Condition],
        proposed_actions: list[Action],
    ) -> bool:
        """True when the proposal is too close to the rule to justify an edit."""
        total_diff = _list_difference(existing.when, proposed_conditions) + _list_difference(
            existing.then, proposed_actions
        )
        total_elements = len(existing.when) + len(existing.then)
        if total_elements == 0:
            return total_diff == 0
        return total_diff / total_elements <= self.tolerance.variance_threshold

    def review_update(
        self,
        engine: RulesEngine,
        rule_id: str,
        conditions: list[Condition],
        actions: list[Action],
        author: str,
    ) -> bool:
        """Apply a proposed edit only if it is outside tolerance."""
        rule = engine.get(rule_id)
        if self.within_tolerance(rule, conditions, actions):
            self.log.info("Update to %s is within tolerance, keeping %s", rule_id, rule.version)
            return False
        engine.update_rule(
            rule_id,
            when=conditions,
            then=actions,
            author=author,
            message="Proposed update outside tolerance",
        )
        return True

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    def propose_rule(
        self,
        problem_pattern: str,
        conditions: list[Condition],
        actions: list[Action],
        initial_evidence: ProposalEvidence,
    ) -> str:
        proposal = RuleProposal(
            problem_pattern=problem_pattern,
            suggested_conditions=list(conditions),
            suggested_actions=list(actions),
            evidence=[initial_evidence],
        )
        proposal.recompute_confidence()
        self.proposals[proposal.id] = proposal
        self.log.info("New rule proposal created: %s for '%s'", proposal.id, problem_pattern)
        return proposal.id

    def get_proposal(self, proposal_id: str) -> RuleProposal:
        proposal = self.proposals.get(proposal_id)
        if proposal is None:
            raise ProposalNotFoundError(proposal_id)
        return proposal

    def add_evidence(self, proposal_id: str, evidence: ProposalEvidence) -> RuleProposal:
        proposal = self.get_proposal(proposal_id)
        proposal.evidence.append(evidence)
        proposal.recompute_confidence()

        status = proposal.status
        if isinstance(status, Gathering):
            count = status.count + 1
            if count >= status.required:
                proposal.status = PendingReview()
                self.log.info(
                    "Proposal %s ready for review (confidence: %.1f%%)",
                    proposal_id,
                    proposal.confidence * 100,
                )
            else:
                proposal.status = Gathering(count=count, required=status.required)
        return proposal

    def approve_proposal(self, proposal_id: str, by: str) -> RuleProposal:
        proposal = self.get_proposal(proposal_id)
        if not isinstance(proposal.status, (Gathering, PendingReview)):
            raise InvalidInputError(
                f"Proposal {proposal_id} cannot be approved in state {proposal.status.state}",
                value=proposal_id,
            )
        proposal.status = Approved(by=by)
        self.log.info("Proposal %s approved by %s", proposal_id, by)
        return proposal

    def reject_proposal(self, proposal_id: str, reason: str) -> RuleProposal:
        proposal = self.get_proposal(proposal_id)
        if proposal.is_terminal:
            raise InvalidInputError(
                f"Proposal {proposal_id} is already {proposal.status.state}",
                value=proposal_id,
            )
        proposal.status = Rejected(reason=reason)
        self.log.info("Proposal %s rejected: %s", proposal_id, reason)
        return proposal

    def crystallize_proposal(
        self, proposal_id: str, engine: RulesEngine, solution: Solution
    ) -> str:
        """Turn an approved proposal into a rule. Returns the new rule id."""
        proposal = self.get_proposal(proposal_id)
        if not isinstance(proposal.status, Approved):
            raise InvalidInputError(
                f"Proposal {proposal_id} must be approved first (is {proposal.status.state})",
                value=proposal_id,
            )
        rule_id = engine.crystallize(
            solution, proposal.suggested_conditions, proposal.suggested_actions
        )
        proposal.status = Crystallized(rule_id=rule_id)
        return rule_id

    def pending_proposals(self) -> list[RuleProposal]:
        return [p for p in self.proposals.values() if isinstance(p.status, PendingReview)]

    def save_proposals(self, path: Path | str) -> None:
        data = [p.model_dump(mode="json") for p in self.proposals.values()]
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))

    def load_proposals(self, path: Path | str) -> int:
        """Merge proposals from a YAML file. Returns how many were loaded."""
        path = Path(path)
        if not path.exists():
            return 0
        items = yaml.safe_load(path.read_text()) or []
        for item in items:
            proposal = RuleProposal.model_validate(item)
            self.proposals[proposal.id] = proposal
        return len(items)

    # ------------------------------------------------------------------
    # CVEs and obsolescence
    # ------------------------------------------------------------------

    def register_cve(self, cve_id: str, affected_packages: list[str] | None = None) -> CveStatus:
        status = CveStatus(id=cve_id, affected_packages=affected_packages or [])
        self.known_cves[cve_id] = status
        self.log.info("Registered CVE: %s", cve_id)
        return status

    def link_rule_to_cve(self, cve_id: str, rule_id: str) -> bool:
        status = self.known_cves.get(cve_id)
        if status is None:
            self.log.warning("Cannot link %s to unknown CVE %s", rule_id, cve_id)
            return False
        if rule_id not in status.related_rule_ids:
            status.related_rule_ids.append(rule_id)
        return True

    def mark_cve_fixed(
        self, cve_id: str, fixed_version: str | None = None, local_patch: bool = False
    ) -> list[str]:
        """Record a fix and flag linked rules. Returns the flagged rule ids."""
        status = self.known_cves.get(cve_id)
        if status is None:
            self.log.warning("Cannot mark unknown CVE %s as fixed", cve_id)
            return []

        status.fixed_in = fixed_version
        status.patched_locally = local_patch
        self.log.info(
            "CVE %s marked as fixed%s", cve_id, " (local patch)" if local_patch else " (upstream)"
        )
        for rule_id in status.related_rule_ids:
            self.health_cache[rule_id] = PossiblyObsolete(reason=f"CVE {cve_id} has been fixed")
        return list(status.related_rule_ids)

    def check_cve_obsolescence(self, rule: Rule) -> CveFixed | None:
        """A fixed CVE named in the rule's problem text, or linked to the rule."""
        problem = rule.provenance.original_problem
        for cve_id, status in self.known_cves.items():
            if not status.is_fixed:
                continue
            if cve_id in problem or rule.id in status.related_rule_ids:
                return CveFixed(cve_id=cve_id, fixed_version=status.fixed_in or "local patch")
        return None

    def check_condition_validity(
        self, rule: Rule, probes: SystemProbes | None = None
    ) -> ConditionInvalid | None:
        """Advisory: a FileExists target that is gone may mean the problem is gone."""
        for condition in rule.when:
            if not isinstance(condition, FileExists):
                continue
            exists = probes.file_exists(condition.path) if probes else Path(condition.path).exists()
            if not exists:
                return ConditionInvalid(condition=f"File no longer exists: {condition.path}")
        return None

    def retire_rule(
        self, engine: RulesEngine, rule_id: str, reason: ObsolescenceReason, by: str
    ) -> Obsolete:
        """Disable a rule and mark it Obsolete. The rule file is kept."""
        text = reason.describe()
        engine.set_enabled(rule_id, False, author=by, reason=f"Retired: {text}")
        health = Obsolete(reason=text, retired_at=utc_now())
        self.health_cache[rule_id] = health
        self.log.info("Retired rule %s: %s", rule_id, text)
        return health

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def generate_report(self) -> LifecycleReport:
        counts = Counter(type(h) for h in self.health_cache.values())
        return LifecycleReport(
            total_rules=len(self.health_cache),
            healthy=counts[Healthy],
            probationary=counts[Probationary],
            degrading=counts[Degrading],
            needs_review=counts[NeedsReview],
            possibly_obsolete=counts[PossiblyObsolete] + counts[Obsolete],
            pending_proposals=len(self.pending_proposals()),
            tracked_cves=len(self.known_cves),
        )
