"""
reasoning - Relational Reasoning over Learned Facts

miniKanren-flavoured logic programming for problem→solution knowledge.

This module implements:
- Term algebra (atoms, variables, compounds, lists)
- Unification with variable resolution (walk)
- A clause store with confidence propagation
- Greedy, single-answer-per-subgoal proofs

Example:
    from psa.reasoning import Compound, ReasoningEngine, Var

    engine = ReasoningEngine()
    engine.add_fact(Compound("solves", "nvidia_driver", "modprobe nvidia"), 0.9)
    engine.add_fact(Compound("solves", "nvidia_driver", "akmods --force"), 0.95)

    answers = engine.query(Compound("solves", "nvidia_driver", Var("Solution")))
    answers[0].binding("Solution")  # "akmods --force"
"""

from .engine import Answer, Clause, ReasoningEngine, problem_key
from .terms import Atom, Compound, Term, TermList, Var, atom, compound, term_list, var
from .unification import Substitution, occurs_in, substitute, unify, walk

__all__ = [
    # Terms
    "Term",
    "Atom",
    "Var",
    "Compound",
    "TermList",
    "atom",
    "var",
    "compound",
    "term_list",
    # Unification
    "Substitution",
    "unify",
    "walk",
    "substitute",
    "occurs_in",
    # Engine
    "Clause",
    "Answer",
    "ReasoningEngine",
    "problem_key",
]
