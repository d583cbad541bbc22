"""Solution store interface.

The rules engine reads solutions to decide what to crystallize and reports
rule outcomes back against the solution a rule came from. Storage itself
lives elsewhere; only the interface and an in-memory implementation are
kept here:

    - SolutionStore         abstract interface
    - InMemorySolutionStore ephemeral, for dev/testing
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class SolutionSource(str, Enum):
    """Where a solution was learned."""

    LOCAL = "local"
    MESH = "mesh"
    FORUM = "forum"
    MANUAL = "manual"


def _now() -> datetime:
    return datetime.now(UTC)


class Solution(BaseModel):
    """A problem/solution pair in the knowledge base."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    category: str
    problem: str = ""
    solution: str
    commands: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    source: SolutionSource = SolutionSource.LOCAL
    source_ref: str | None = None  # peer id or forum URL
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------


class SolutionStore(ABC):
    """Abstract solution store interface."""

    @abstractmethod
    def store_solution(self, solution: Solution) -> str: ...

    @abstractmethod
    def find_by_category(self, category: str) -> list[Solution]: ...

    @abstractmethod
    def search(self, query: str) -> list[Solution]: ...

    @abstractmethod
    def find_related(self, problem: str, depth: int = 1) -> list[Solution]: ...

    @abstractmethod
    def record_outcome(self, solution_id: str, success: bool) -> bool: ...


# ---------------------------------------------------------------------------
# In-memory implementation (dev/testing)
# ---------------------------------------------------------------------------


class InMemorySolutionStore(SolutionStore):
    """Ephemeral in-memory solution store."""

    def __init__(self) -> None:
        self._data: dict[str, Solution] = {}

    def store_solution(self, solution: Solution) -> str:
        logger.debug("Storing solution: %s", solution.id)
        self._data[solution.id] = solution
        return solution.id

    def get(self, solution_id: str) -> Solution | None:
        return self._data.get(solution_id)

    def all(self) -> list[Solution]:
        return list(self._data.values())

    def find_by_category(self, category: str) -> list[Solution]:
        return [s for s in self._data.values() if s.category == category]

    def search(self, query: str) -> list[Solution]:
        needle = query.lower()
        return [
            s
            for s in self._data.values()
            if needle in s.problem.lower() or needle in s.solution.lower()
        ]

    def find_related(self, problem: str, depth: int = 1) -> list[Solution]:
        """Solutions sharing a tag with solutions for ``problem``.

        ``depth`` controls how many tag hops are followed.
        """
        found = {s.id: s for s in self.search(problem)}
        frontier = list(found.values())
        for _ in range(max(depth, 0)):
            tags = {t for s in frontier for t in s.tags}
            frontier = [
                s for s in self._data.values() if s.id not in found and tags & set(s.tags)
            ]
            if not frontier:
                break
            found.update((s.id, s) for s in frontier)
        return list(found.values())

    def record_outcome(self, solution_id: str, success: bool) -> bool:
        solution = self._data.get(solution_id)
        if solution is None:
            return False
        if success:
            solution.success_count += 1
        else:
            solution.failure_count += 1
        solution.updated_at = _now()
        logger.debug("Recorded outcome for %s: %s", solution_id, success)
        return True


def learn(
    store: SolutionStore,
    category: str,
    text: str,
    *,
    problem: str = "",
    commands: list[str] | None = None,
) -> Solution:
    """Store a manually supplied solution and return it.

    The author vouches for it, so it starts with one recorded success.
    """
    solution = Solution(
        category=category,
        problem=problem or category,
        solution=text,
        commands=commands or [],
        tags=[category],
        success_count=1,
        source=SolutionSource.MANUAL,
    )
    store.store_solution(solution)
    logger.info("Learned solution %s in category %s", solution.id, category)
    return solution
