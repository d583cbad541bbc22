"""
rules - Crystallized Rules and their Lifecycle

Hard-coded, inspectable automation learned from proven solutions:
- Rule, condition and action models (YAML persisted, git versioned)
- The rules engine: matching, execution, crystallization
- The lifecycle manager: health, tolerance, proposals, obsolescence

Example:
    from psa.rules import ProblemContext, RuleStore, RulesEngine

    engine = RulesEngine(RuleStore("~/.local/share/psa/rules"))
    for rule in engine.find_matching(ProblemContext()):
        result = await engine.execute(rule.id)
"""

from .engine import (
    CRYSTALLIZATION_THRESHOLD,
    ExecutionResult,
    ProblemContext,
    RulesEngine,
    should_crystallize,
)
from .lifecycle import (
    LifecycleManager,
    LifecycleReport,
    ProposalEvidence,
    RuleHealth,
    RuleProposal,
    ToleranceConfig,
)
from .models import Action, Condition, Provenance, Rule, RuleStats
from .probes import ActionOutcome, ProbeOutcome, SystemEffects, SystemProbes
from .store import RuleStore

__all__ = [
    # Models
    "Rule",
    "RuleStats",
    "Provenance",
    "Condition",
    "Action",
    # Store
    "RuleStore",
    # Engine
    "RulesEngine",
    "ProblemContext",
    "ExecutionResult",
    "should_crystallize",
    "CRYSTALLIZATION_THRESHOLD",
    # Probes
    "SystemProbes",
    "SystemEffects",
    "ProbeOutcome",
    "ActionOutcome",
    # Lifecycle
    "LifecycleManager",
    "ToleranceConfig",
    "RuleHealth",
    "RuleProposal",
    "ProposalEvidence",
    "LifecycleReport",
]
