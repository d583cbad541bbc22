"""
reasoning/terms.py - Term Algebra for Relational Reasoning

Implements the term structures the reasoning engine unifies over:
- Atom: Ground constants (e.g., "nvidia_driver", "modprobe nvidia")
- Var: Logical variables (e.g., Solution, X)
- Compound: Relation with functor and ordered arguments
- TermList: Ordered sequence of terms

Terms are immutable and compared structurally, never by identity.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Union


class TermBase(ABC):
    """Base class for all term types."""

    @abstractmethod
    def is_ground(self) -> bool:
        """Return True if term contains no variables."""

    @abstractmethod
    def variables(self) -> set[str]:
        """Return set of variable names in term."""


@dataclass(frozen=True)
class Var(TermBase):
    """Logical variable.

    Variables are placeholders that can be unified with any term.
    By convention, variable names start with uppercase (X, Solution).
    """
    name: str

    def is_ground(self) -> bool:
        return False

    def variables(self) -> set[str]:
        return {self.name}

    def __repr__(self) -> str:
        return f"?{self.name}"


@dataclass(frozen=True)
class Atom(TermBase):
    """Ground constant (atom).

    Example:
        problem = Atom("nvidia_driver")
        fix = Atom("akmods --force")
    """
    value: str

    def is_ground(self) -> bool:
        return True

    def variables(self) -> set[str]:
        return set()

    def __repr__(self) -> str:
        return f'"{self.value}"'


@dataclass(frozen=True)
class Compound(TermBase):
    """Compound term with functor and arguments.

    Example:
        # solves(nvidia_driver, Solution)
        goal = Compound("solves", Atom("nvidia_driver"), Var("Solution"))

        # Plain strings are converted to Atoms
        fact = Compound("solves", "nvidia_driver", "modprobe nvidia")
    """
    functor: str
    args: tuple[Term, ...] = field(default_factory=tuple)

    def __init__(self, functor: str, *args: Term | str):
        object.__setattr__(self, "functor", functor)
        object.__setattr__(self, "args", _coerce(args))

    @property
    def arity(self) -> int:
        """Number of arguments."""
        return len(self.args)

    def is_ground(self) -> bool:
        return all(arg.is_ground() for arg in self.args)

    def variables(self) -> set[str]:
        result: set[str] = set()
        for arg in self.args:
            result.update(arg.variables())
        return result

    def __repr__(self) -> str:
        if not self.args:
            return self.functor
        args_str = ", ".join(repr(arg) for arg in self.args)
        return f"{self.functor}({args_str})"


@dataclass(frozen=True)
class TermList(TermBase):
    """Ordered list of terms.

    Lists unify element-wise with lists of the same length.
    """
    items: tuple[Term, ...] = field(default_factory=tuple)

    def __init__(self, *items: Term | str):
        object.__setattr__(self, "items", _coerce(items))

    def __len__(self) -> int:
        return len(self.items)

    def is_ground(self) -> bool:
        return all(item.is_ground() for item in self.items)

    def variables(self) -> set[str]:
        result: set[str] = set()
        for item in self.items:
            result.update(item.variables())
        return result

    def __repr__(self) -> str:
        return "[" + ", ".join(repr(item) for item in self.items) + "]"


# Type alias for any term
Term = Union[Atom, Var, Compound, TermList]


def _coerce(values) -> tuple[Term, ...]:
    """Convert raw strings to Atoms."""
    processed = []
    for value in values:
        if isinstance(value, (Atom, Var, Compound, TermList)):
            processed.append(value)
        elif isinstance(value, str):
            processed.append(Atom(value))
        else:
            raise TypeError(f"Cannot use {type(value).__name__} as a term")
    return tuple(processed)


# Convenience constructors
def atom(value: str) -> Atom:
    return Atom(value)


def var(name: str) -> Var:
    return Var(name)


def compound(functor: str, *args: Term | str) -> Compound:
    return Compound(functor, *args)


def term_list(*items: Term | str) -> TermList:
    return TermList(*items)


# -------------------------------------------------------------------------
# Serialization
# -------------------------------------------------------------------------

def term_to_dict(term: Term) -> dict:
    """Convert term to dictionary."""
    if isinstance(term, Var):
        return {"type": "var", "name": term.name}
    elif isinstance(term, Atom):
        return {"type": "atom", "value": term.value}
    elif isinstance(term, Compound):
        return {
            "type": "compound",
            "functor": term.functor,
            "args": [term_to_dict(arg) for arg in term.args],
        }
    elif isinstance(term, TermList):
        return {"type": "list", "items": [term_to_dict(i) for i in term.items]}
    raise ValueError(f"Unknown term type: {type(term)}")


def dict_to_term(data: dict) -> Term:
    """Convert dictionary to term."""
    t = data["type"]
    if t == "var":
        return Var(data["name"])
    elif t == "atom":
        return Atom(data["value"])
    elif t == "compound":
        return Compound(data["functor"], *(dict_to_term(a) for a in data.get("args", [])))
    elif t == "list":
        return TermList(*(dict_to_term(i) for i in data.get("items", [])))
    raise ValueError(f"Unknown term type: {t}")
