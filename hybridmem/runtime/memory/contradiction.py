"""
Contradiction Handling - Detect and arbitrate conflicting facts

WHAT: Negation-pattern contradiction test, CONTRADICTS edges, pairwise resolution
WHERE: hybridmem/runtime/memory/contradiction.py
WHO: Orchestrator after storing a fact; resolve_contradictions on demand
TIME: One k-NN search plus one graph read per new fact

Detection is deliberately narrow. Two statements contradict when one matches
a positive copula/modal pattern ("is X", "are X", "can X", "will X") and the
other matches its negated form ("is not X", "cannot X", ...). Only facts
that are already semantically close (similarity >= threshold) are compared,
which keeps unrelated sentences with the same verb apart.

Resolution never deletes anything: it reports which statement to prefer,
by confidence first and recency second.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ...errors import IndexUnavailableError
from .graph_store import GraphStore
from .models import Edge, EdgeType, FactNode
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)

# case-sensitive and unanchored: "Is" never matches, "thesis on" matches "is on"
NEGATION_PATTERNS: Tuple[Tuple[re.Pattern[str], re.Pattern[str]], ...] = (
    (re.compile(r"is\s+(\w+)"), re.compile(r"is\s+not\s+(\w+)")),
    (re.compile(r"are\s+(\w+)"), re.compile(r"are\s+not\s+(\w+)")),
    (re.compile(r"can\s+(\w+)"), re.compile(r"cannot\s+(\w+)")),
    (re.compile(r"will\s+(\w+)"), re.compile(r"will\s+not\s+(\w+)")),
)

MANUAL_REVIEW = "Unable to resolve automatically - manual review needed"


def are_contradictory(first: str, second: str) -> bool:
    """True when one statement asserts a pattern the other negates."""
    for positive, negative in NEGATION_PATTERNS:
        first_pos = positive.search(first) is not None
        first_neg = negative.search(first) is not None
        second_pos = positive.search(second) is not None
        second_neg = negative.search(second) is not None
        if (first_pos and second_neg) or (first_neg and second_pos):
            return True
    return False


@dataclass(slots=True)
class ContradictionResolution:
    first: FactNode
    second: FactNode
    preferred_id: Optional[str]
    resolution: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "first": self.first.id,
            "second": self.second.id,
            "preferred": self.preferred_id,
            "resolution": self.resolution,
        }


def resolve_pair(first: FactNode, second: FactNode) -> ContradictionResolution:
    if first.confidence > second.confidence:
        return ContradictionResolution(
            first,
            second,
            first.id,
            f"Prefer statement 1 due to higher confidence ({first.confidence:.2f} vs {second.confidence:.2f})",
        )
    if second.confidence > first.confidence:
        return ContradictionResolution(
            first,
            second,
            second.id,
            f"Prefer statement 2 due to higher confidence ({second.confidence:.2f} vs {first.confidence:.2f})",
        )
    if first.updated_at > second.updated_at:
        return ContradictionResolution(first, second, first.id, "Prefer statement 1 as more recent")
    if second.updated_at > first.updated_at:
        return ContradictionResolution(first, second, second.id, "Prefer statement 2 as more recent")
    return ContradictionResolution(first, second, None, MANUAL_REVIEW)


class ContradictionDetector:
    def __init__(
        self,
        store: GraphStore,
        index: VectorIndex,
        *,
        similarity: float = 0.7,
        candidates: int = 20,
    ) -> None:
        self.store = store
        self.index = index
        self.similarity = similarity
        self.candidates = candidates

    async def detect(self, fact: FactNode) -> List[Edge]:
        """Link ``fact`` to close, contradicting facts with CONTRADICTS edges.

        Returns the edges created; existing CONTRADICTS links are not duplicated.
        """
        vector = fact.embedding
        if vector is None:
            vector = self.index.get_vector(fact.id)
        if vector is None:
            logger.debug(f"Fact {fact.id} has no embedding; skipping contradiction check")
            return []
        try:
            hits = await self.index.search(vector, self.candidates, self.similarity, exclude=[fact.id])
        except IndexUnavailableError as exc:
            logger.warning(f"Contradiction check skipped for {fact.id}: {exc.message}")
            return []
        neighbours = await self.store.get_many([payload for payload, _ in hits], touch=False)
        created: List[Edge] = []
        for other in neighbours:
            if not isinstance(other, FactNode) or other.id == fact.id:
                continue
            if not are_contradictory(fact.statement, other.statement):
                continue
            if await self.store.has_edge(fact.id, other.id, EdgeType.CONTRADICTS):
                continue
            edge = await self.store.create_edge(
                fact.id,
                other.id,
                EdgeType.CONTRADICTS,
                metadata={"detected_by": "negation_pattern"},
            )
            logger.info(f"Contradiction detected between {fact.id} and {other.id}")
            created.append(edge)
        return created

    async def resolve(self, limit: int = 50) -> List[ContradictionResolution]:
        pairs = await self.store.contradiction_pairs(limit=limit)
        return [resolve_pair(first, second) for first, second in pairs]


__all__ = [
    "NEGATION_PATTERNS",
    "MANUAL_REVIEW",
    "are_contradictory",
    "resolve_pair",
    "ContradictionResolution",
    "ContradictionDetector",
]
