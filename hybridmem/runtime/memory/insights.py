"""
Insight Generation - Derive pattern nodes from connected facts and events

WHAT: Finds chains of three fact/event nodes and records an Insight about them
WHERE: hybridmem/runtime/memory/insights.py
WHO: Orchestrator (generate_insights, and after storing facts/events/entities)
TIME: One candidate query plus one write per new insight

A candidate is a path first - middle - last where all three are facts or
events. Three events read as a sequence, three facts as a shared principle;
mixed triples are skipped. Each insight links back to its sources with
``derived_from`` edges and remembers the source set in
``metadata.pattern_key`` so the same triple is never summarised twice.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

from .graph_store import GraphStore
from .models import (
    EdgeType,
    EventNode,
    FactNode,
    InsightNode,
    NodeType,
    node_text,
    supporting_key,
)

logger = logging.getLogger(__name__)

INSIGHT_SOURCE_TYPES = (NodeType.FACT, NodeType.EVENT)
TRIGGER_TYPES = (NodeType.FACT, NodeType.EVENT, NodeType.ENTITY)


def synthesize(nodes: Sequence[Any]) -> Optional[str]:
    """Describe the pattern formed by ``nodes``, or None when there is none."""
    if all(isinstance(n, EventNode) for n in nodes):
        ordered = sorted(nodes, key=lambda n: n.timestamp)
        return "Sequence of events detected: " + " → ".join(n.description for n in ordered)
    if all(isinstance(n, FactNode) for n in nodes):
        return "Related facts suggest a pattern or principle connecting these concepts: " + "; ".join(
            n.statement for n in nodes
        )
    return None


class InsightGenerator:
    def __init__(
        self,
        store: GraphStore,
        *,
        min_relationships: int = 2,
        limit: int = 20,
    ) -> None:
        self.store = store
        self.min_relationships = min_relationships
        self.limit = limit

    async def generate(self) -> List[InsightNode]:
        candidates = await self.store.insight_candidates(INSIGHT_SOURCE_TYPES, limit=self.limit * 5)
        known = await self.store.insight_keys()
        created: List[InsightNode] = []
        for candidate in candidates:
            if len(created) >= self.limit:
                break
            nodes = candidate["nodes"]
            if len(candidate["edges"]) < self.min_relationships:
                continue
            key = supporting_key(n.id for n in nodes)
            if key in known:
                continue
            text = synthesize(nodes)
            if text is None:
                continue
            insight = await self._record(nodes, text, key)
            known.add(key)
            created.append(insight)
        if created:
            logger.info(f"Generated {len(created)} insight(s)")
        return created

    async def generate_for(self, node: Any) -> List[InsightNode]:
        """Run generation only when ``node`` sits in a neighbourhood of 3+ related nodes."""
        if NodeType(node.node_type) not in TRIGGER_TYPES:
            return []
        related = await self.store.find_related(node.id, depth=2)
        if len(related.nodes) < 3:
            return []
        return await self.generate()

    async def _record(self, nodes: Sequence[Any], text: str, key: str) -> InsightNode:
        kinds = ", ".join(n.node_type for n in nodes)
        insight = InsightNode(
            insight=text,
            reasoning=f"Pattern detected between {kinds}",
            supporting_nodes=[n.id for n in nodes],
            actionable=True,
            impact="medium",
            importance=0.7,
            confidence=0.8,
            metadata={"pattern_key": key, "sources": [node_text(n) for n in nodes]},
        )
        insight = await self.store.create(insight)
        for source in nodes:
            await self.store.create_edge(insight.id, source.id, EdgeType.DERIVED_FROM)
        return insight


__all__ = ["InsightGenerator", "synthesize", "INSIGHT_SOURCE_TYPES", "TRIGGER_TYPES"]
