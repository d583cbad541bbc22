"""
reasoning/engine.py - Clause Store with Confidence Propagation

The reasoning engine keeps an ordered, append-only list of clauses (facts
and rules), each with a confidence in [0, 1], and answers goals by
unification.

Proof strategy:
    For every clause whose head unifies with the goal, a fact yields an
    answer with the clause confidence. A rule proves its body left-to-right,
    taking only the best answer for each sub-goal (greedy, no backtracking
    into alternative sub-goal answers). The answer confidence is the clause
    confidence times the product of the sub-goal confidences.

    Answers from all matching clauses are returned sorted by confidence,
    highest first, ties kept in store order.

This is what the daemon consults for learned problem→solution facts when
no hard rule matches, before falling back to AI.
"""
from __future__ import annotations

import itertools
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TYPE_CHECKING

import yaml

from .terms import Atom, Compound, Term, Var, dict_to_term, term_to_dict
from .unification import Substitution, substitute, unify

if TYPE_CHECKING:
    from ..solutions import Solution

logger = logging.getLogger(__name__)

SOLVES = "solves"


@dataclass
class Clause:
    """Horn clause with confidence: head :- body.

    If body is empty the clause is a fact.
    """
    head: Term
    body: list[Term] = field(default_factory=list)
    confidence: float = 1.0

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be within [0, 1], got {self.confidence}")

    @property
    def is_fact(self) -> bool:
        return not self.body

    def variables(self) -> set[str]:
        result = set(self.head.variables())
        for t in self.body:
            result.update(t.variables())
        return result

    def rename_variables(self, suffix: str) -> Clause:
        """Copy with variables renamed apart from the caller's."""
        renaming: Substitution = {v: Var(f"{v}{suffix}") for v in self.variables()}
        return Clause(
            substitute(self.head, renaming),
            [substitute(t, renaming) for t in self.body],
            self.confidence,
        )

    def __repr__(self) -> str:
        if self.is_fact:
            return f"{self.head}. [{self.confidence:.2f}]"
        body_str = ", ".join(repr(t) for t in self.body)
        return f"{self.head} :- {body_str}. [{self.confidence:.2f}]"


@dataclass
class Answer:
    """One solution to a query."""
    substitution: Substitution
    confidence: float

    def resolve(self, term: Term) -> Term:
        """Apply the answer bindings to a term (typically the query goal)."""
        return substitute(term, self.substitution)

    def binding(self, name: str) -> Term | None:
        """Fully resolved value of a query variable, if bound."""
        if name not in self.substitution:
            return None
        return substitute(Var(name), self.substitution)


class ReasoningEngine:
    """Ordered clause store queried by unification.

    Example:
        engine = ReasoningEngine()
        engine.add_fact(Compound("solves", "nvidia_driver", "modprobe nvidia"), 0.9)
        engine.add_fact(Compound("solves", "nvidia_driver", "akmods --force"), 0.95)

        for answer in engine.query(Compound("solves", "nvidia_driver", Var("S"))):
            print(answer.binding("S"), answer.confidence)
    """

    def __init__(self, max_depth: int = 64):
        self._clauses: list[Clause] = []
        self.max_depth = max_depth
        self._fresh = itertools.count(1)

    def add_fact(self, head: Term, confidence: float = 1.0) -> None:
        """Add a fact to the knowledge base."""
        self._clauses.append(Clause(head, [], confidence))

    def add_rule(self, head: Term, body: list[Term], confidence: float = 1.0) -> None:
        """Add a rule to the knowledge base."""
        self._clauses.append(Clause(head, list(body), confidence))

    def query(self, goal: Term) -> list[Answer]:
        """Query the knowledge base for solutions, best first."""
        return self._query(goal, 0)

    def _query(self, goal: Term, depth: int) -> list[Answer]:
        if depth > self.max_depth:
            logger.debug("Depth limit %d reached for goal %s", self.max_depth, goal)
            return []

        results: list[Answer] = []
        for clause in self._clauses:
            if clause.variables():
                clause = clause.rename_variables(f"_{next(self._fresh)}")

            theta = unify(goal, clause.head, {})
            if theta is None:
                continue

            if clause.is_fact:
                results.append(Answer(theta, clause.confidence))
                continue

            proved = self._prove_body(clause.body, theta, depth)
            if proved is not None:
                final_theta, body_confidence = proved
                results.append(Answer(final_theta, clause.confidence * body_confidence))

        # sorted() is stable: equal confidences keep store order
        return sorted(results, key=lambda a: a.confidence, reverse=True)

    def prove_body(self, body: list[Term], theta: Substitution) -> tuple[Substitution, float] | None:
        """Prove all goals in a body under ``theta``.

        Returns the extended substitution and the product of sub-goal
        confidences, or None if any sub-goal has no answer.
        """
        return self._prove_body(body, theta, 0)

    def _prove_body(
        self, body: list[Term], theta: Substitution, depth: int
    ) -> tuple[Substitution, float] | None:
        current = dict(theta)
        total_confidence = 1.0

        for goal in body:
            resolved = substitute(goal, current)
            answers = self._query(resolved, depth + 1)
            if not answers:
                return None
            best = answers[0]
            current.update(best.substitution)
            total_confidence *= best.confidence

        return current, total_confidence

    # -------------------------------------------------------------------------
    # Learned solutions
    # -------------------------------------------------------------------------

    def learn_solution(self, solution: Solution) -> None:
        """Record ``solves(problem, solution_text)`` for a stored solution."""
        total = solution.success_count + solution.failure_count + 1
        confidence = solution.success_count / total
        self.add_fact(
            Compound(SOLVES, problem_key(solution.problem), solution.solution),
            confidence,
        )
        logger.debug("Learned solution %s (confidence %.2f)", solution.id, confidence)

    def solutions_for(self, problem: str) -> list[tuple[str, float]]:
        """Solution texts for a free-text problem, best first."""
        goal = Compound(SOLVES, problem_key(problem), Var("Solution"))
        found = []
        for answer in self.query(goal):
            value = answer.binding("Solution")
            if isinstance(value, Atom):
                found.append((value.value, answer.confidence))
        return found

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._clauses)

    def __iter__(self):
        return iter(self._clauses)

    @property
    def fact_count(self) -> int:
        return sum(1 for c in self._clauses if c.is_fact)

    @property
    def rule_count(self) -> int:
        return sum(1 for c in self._clauses if not c.is_fact)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Export clauses in store order."""
        return {
            "clauses": [
                {
                    "head": term_to_dict(c.head),
                    "body": [term_to_dict(t) for t in c.body],
                    "confidence": c.confidence,
                }
                for c in self._clauses
            ]
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReasoningEngine:
        engine = cls()
        for item in data.get("clauses", []):
            engine._clauses.append(
                Clause(
                    dict_to_term(item["head"]),
                    [dict_to_term(t) for t in item.get("body", [])],
                    item.get("confidence", 1.0),
                )
            )
        return engine

    def to_yaml(self, path: str | Path) -> None:
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    @classmethod
    def from_yaml(cls, path: str | Path) -> ReasoningEngine:
        with open(path) as f:
            return cls.from_dict(yaml.safe_load(f) or {})


def problem_key(text: str) -> Atom:
    """Normalise free problem text into an atom, e.g. "NVIDIA driver!" -> nvidia_driver."""
    key = re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")
    return Atom(key)
