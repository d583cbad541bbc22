"""
reasoning/unification.py - Unification Algorithm

Substitution-based unification for first-order terms. Unification finds a
substitution that makes two terms structurally identical.

Key operations:
- walk(t, θ): Resolve a variable through chained bindings
- unify(t1, t2, θ): Extend θ so that t1θ = t2θ, or None
- substitute(t, θ): Apply substitution to every variable inside a term

No occurs-check is performed by default: binding X to f(X) is accepted and
builds a cyclic structure. Pass ``occurs_check=True`` to reject such
bindings instead.
"""
from __future__ import annotations

from .terms import Atom, Compound, Term, TermList, Var

# Type alias for substitution
Substitution = dict[str, Term]


def walk(term: Term, theta: Substitution) -> Term:
    """Resolve a variable through the substitution.

    Only the outermost term is resolved; arguments of compounds are left as
    they are.
    """
    while isinstance(term, Var) and term.name in theta:
        term = theta[term.name]
    return term


def unify(
    t1: Term,
    t2: Term,
    theta: Substitution | None = None,
    *,
    occurs_check: bool = False,
) -> Substitution | None:
    """Unify two terms under an existing substitution.

    None of the arguments is mutated; on success a new substitution is
    returned.

    Args:
        t1: First term
        t2: Second term
        theta: Current substitution (default: empty)
        occurs_check: Reject bindings of a variable to a term containing it

    Returns:
        Extended substitution, or None if unification fails

    Example:
        goal = Compound("solves", Atom("nvidia_driver"), Var("S"))
        fact = Compound("solves", Atom("nvidia_driver"), Atom("akmods --force"))
        unify(goal, fact)
        # {"S": Atom("akmods --force")}
    """
    if theta is None:
        theta = {}

    t1 = walk(t1, theta)
    t2 = walk(t2, theta)

    if isinstance(t1, Var) and isinstance(t2, Var) and t1.name == t2.name:
        return dict(theta)

    if isinstance(t1, Var):
        return _bind(t1, t2, theta, occurs_check)
    if isinstance(t2, Var):
        return _bind(t2, t1, theta, occurs_check)

    if isinstance(t1, Atom) and isinstance(t2, Atom):
        return dict(theta) if t1.value == t2.value else None

    if isinstance(t1, Compound) and isinstance(t2, Compound):
        if t1.functor != t2.functor or t1.arity != t2.arity:
            return None
        return _unify_sequence(t1.args, t2.args, theta, occurs_check)

    if isinstance(t1, TermList) and isinstance(t2, TermList):
        if len(t1) != len(t2):
            return None
        return _unify_sequence(t1.items, t2.items, theta, occurs_check)

    # Incompatible types
    return None


def _unify_sequence(
    left: tuple[Term, ...],
    right: tuple[Term, ...],
    theta: Substitution,
    occurs_check: bool,
) -> Substitution | None:
    """Unify pairwise left-to-right, stopping at the first failure."""
    current: Substitution | None = dict(theta)
    for a, b in zip(left, right):
        current = unify(a, b, current, occurs_check=occurs_check)
        if current is None:
            return None
    return current


def _bind(var: Var, term: Term, theta: Substitution, occurs_check: bool) -> Substitution | None:
    if occurs_check and occurs_in(var, term, theta):
        return None
    new_theta = dict(theta)
    new_theta[var.name] = term
    return new_theta


def occurs_in(var: Var, term: Term, theta: Substitution) -> bool:
    """Check if variable occurs in term (would create X = f(X))."""
    term = walk(term, theta)

    if isinstance(term, Var):
        return term.name == var.name
    if isinstance(term, Compound):
        return any(occurs_in(var, arg, theta) for arg in term.args)
    if isinstance(term, TermList):
        return any(occurs_in(var, item, theta) for item in term.items)
    return False


def substitute(term: Term, theta: Substitution, _seen: frozenset[str] = frozenset()) -> Term:
    """Apply substitution to term.

    Replaces all variables in term with their bindings. A variable already
    being expanded is left in place, so cyclic bindings terminate.
    """
    if isinstance(term, Var):
        if term.name in theta and term.name not in _seen:
            return substitute(theta[term.name], theta, _seen | {term.name})
        return term

    if isinstance(term, Compound):
        return Compound(term.functor, *(substitute(a, theta, _seen) for a in term.args))

    if isinstance(term, TermList):
        return TermList(*(substitute(i, theta, _seen) for i in term.items))

    return term
