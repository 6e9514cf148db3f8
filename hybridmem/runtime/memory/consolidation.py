"""
Memory Consolidation Engine - Promote, merge, prune and decay memories

WHAT: Background maintenance over memory nodes
WHERE: hybridmem/runtime/memory/consolidation.py - maintenance layer
WHO: Orchestrator (consolidate/decay operations and the periodic loop)
TIME: O(n) graph reads plus O(n²·d) similarity for the merge pass

One consolidation pass:
1. Merges near-duplicate memories of the same memory type
2. Promotes short-term memories reinforced at least ``threshold`` times
   (and re-runs the merge over long-term memories if anything moved)
3. Deletes stale working-memory items (idle and unimportant)

Decay is a separate pass: idle short-term and working memories lose
``decay_rate`` of their importance and confidence, at most once per
decay interval. Long-term memories never decay.

Both passes only promote, update or delete whole nodes, so they can run
while store/search traffic continues. A pass with nothing left to do is a
no-op; running consolidate twice in a row changes nothing the second time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import numpy as np

from ...errors import MemoryEngineError, NotFoundError
from .cancellation import CancellationToken
from .graph_store import GraphStore
from .models import MemoryNode, MemoryType, utc_now
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)

PROMOTION_BOOST = 1.5
MERGEABLE_TYPES = (
    MemoryType.SHORT_TERM,
    MemoryType.LONG_TERM,
    MemoryType.EPISODIC,
    MemoryType.SEMANTIC,
    MemoryType.PROCEDURAL,
)
DECAYING_TYPES = (MemoryType.SHORT_TERM, MemoryType.WORKING)


@dataclass
class ConsolidationConfig:
    """Configuration for memory consolidation."""

    threshold: int = 5  # reinforcements needed for promotion
    merge_similarity: float = 0.95
    stale_after_s: float = 3600.0
    stale_importance: float = 0.3
    decay_interval_s: float = 3600.0
    interval_s: float = 300.0
    batch_size: int = 100


@dataclass
class ConsolidationReport:
    promoted: List[str] = field(default_factory=list)
    merged: List[Tuple[str, str]] = field(default_factory=list)  # (survivor, duplicate)
    pruned: List[str] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def changed(self) -> bool:
        return bool(self.promoted or self.merged or self.pruned)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "promoted": list(self.promoted),
            "merged": [list(pair) for pair in self.merged],
            "pruned": list(self.pruned),
            "duration_ms": self.duration_ms,
        }


class ConsolidationEngine:
    """
    Runs consolidation and decay passes against the graph store.

    Passes are serialised with a lock so overlapping triggers (the periodic
    loop and a manual call) see each other's results.
    """

    def __init__(
        self,
        store: GraphStore,
        index: Optional[VectorIndex] = None,
        config: Optional[ConsolidationConfig] = None,
        *,
        on_delete: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> None:
        self.store = store
        self.index = index
        self.config = config or ConsolidationConfig()
        self._on_delete = on_delete
        self._lock = asyncio.Lock()
        self.last_run: Optional[float] = None
        self.runs = 0

    async def consolidate(self, cancel: Optional[CancellationToken] = None) -> ConsolidationReport:
        async with self._lock:
            started = time.perf_counter()
            report = ConsolidationReport()
            report.merged = await self._merge_duplicates(cancel, MERGEABLE_TYPES)
            report.promoted = await self._promote_reinforced(cancel)
            if report.promoted:
                # promoted nodes may now duplicate existing long-term memories
                report.merged += await self._merge_duplicates(cancel, (MemoryType.LONG_TERM,))
            report.pruned = await self._prune_stale_working(cancel)
            report.duration_ms = (time.perf_counter() - started) * 1000.0
            self.last_run = time.time()
            self.runs += 1
        if report.changed:
            logger.info(
                f"Consolidation promoted={len(report.promoted)} merged={len(report.merged)} "
                f"pruned={len(report.pruned)} in {report.duration_ms:.1f}ms"
            )
        return report

    async def decay(self) -> List[Any]:
        async with self._lock:
            decayed = await self.store.decay(
                older_than_s=self.config.decay_interval_s,
                memory_types=DECAYING_TYPES,
            )
        if decayed:
            logger.info(f"Decayed {len(decayed)} idle memories")
        return decayed

    # ------------------ passes ------------------
    async def _promote_reinforced(self, cancel: Optional[CancellationToken]) -> List[str]:
        candidates = await self.store.memory_nodes(
            memory_types=[MemoryType.SHORT_TERM],
            min_reinforcement=self.config.threshold,
        )
        promoted = []
        for node in candidates:
            if cancel is not None:
                cancel.raise_if_cancelled("consolidation")
            try:
                await self.store.update(
                    node.id,
                    {
                        "memory_type": MemoryType.LONG_TERM,
                        "importance": min(1.0, node.importance * PROMOTION_BOOST),
                        "promoted_at": utc_now(),
                    },
                )
            except NotFoundError:
                # deleted concurrently
                continue
            promoted.append(node.id)
        return promoted

    def _vectors_for(self, nodes: List[MemoryNode]) -> Tuple[List[MemoryNode], Optional[np.ndarray]]:
        kept: List[MemoryNode] = []
        rows: List[np.ndarray] = []
        for node in nodes:
            vector = self.index.get_vector(node.id) if self.index is not None else None
            if vector is None and node.embedding is not None:
                vector = np.asarray(node.embedding, dtype=np.float32)
            if vector is None:
                continue
            norm = float(np.linalg.norm(vector))
            if norm == 0.0:
                continue
            kept.append(node)
            rows.append(vector / norm)
        if not rows:
            return kept, None
        return kept, np.vstack(rows)

    async def _merge_duplicates(
        self,
        cancel: Optional[CancellationToken],
        memory_types: Tuple[MemoryType, ...],
    ) -> List[Tuple[str, str]]:
        nodes = await self.store.memory_nodes(memory_types=memory_types)
        by_type: Dict[MemoryType, List[MemoryNode]] = {}
        for node in nodes:
            by_type.setdefault(node.memory_type, []).append(node)
        merged: List[Tuple[str, str]] = []
        for group in by_type.values():
            group.sort(key=lambda n: (-n.importance, n.created_at))
            kept, matrix = self._vectors_for(group)
            if matrix is None or len(kept) < 2:
                continue
            absorbed: set[int] = set()
            for i in range(len(kept)):
                if i in absorbed:
                    continue
                if i and i % self.config.batch_size == 0:
                    await asyncio.sleep(0)
                if cancel is not None:
                    cancel.raise_if_cancelled("consolidation")
                sims = matrix[i + 1 :] @ matrix[i]
                duplicates = [i + 1 + int(j) for j in np.nonzero(sims >= self.config.merge_similarity)[0]]
                duplicates = [j for j in duplicates if j not in absorbed]
                if not duplicates:
                    continue
                survivor = kept[i]
                victims = [kept[j] for j in duplicates]
                if await self._merge(survivor, victims):
                    absorbed.update(duplicates)
                    merged.extend((survivor.id, v.id) for v in victims)
        return merged

    async def _merge(self, survivor: MemoryNode, victims: List[MemoryNode]) -> bool:
        merged_from = list(survivor.metadata.get("merged_from", []))
        merged_from.extend(v.id for v in victims)
        try:
            await self.store.update(
                survivor.id,
                {
                    "importance": max([survivor.importance, *(v.importance for v in victims)]),
                    "reinforcement_count": survivor.reinforcement_count + sum(v.reinforcement_count for v in victims),
                    "access_count": survivor.access_count + sum(v.access_count for v in victims),
                    "metadata": {**survivor.metadata, "merged_from": merged_from},
                },
            )
        except NotFoundError:
            return False
        for victim in victims:
            await self._delete(victim.id)
        return True

    async def _prune_stale_working(self, cancel: Optional[CancellationToken]) -> List[str]:
        stale = await self.store.stale_working(
            older_than_s=self.config.stale_after_s,
            max_importance=self.config.stale_importance,
        )
        pruned = []
        for node_id in stale:
            if cancel is not None:
                cancel.raise_if_cancelled("consolidation")
            if await self._delete(node_id):
                pruned.append(node_id)
        return pruned

    async def _delete(self, node_id: str) -> bool:
        try:
            await self.store.delete(node_id)
        except NotFoundError:
            return False
        if self._on_delete is not None:
            await self._on_delete(node_id)
        return True


class ConsolidationScheduler:
    """Runs ``task`` every ``interval_s`` seconds until stopped."""

    def __init__(self, task: Callable[[CancellationToken], Awaitable[Any]], interval_s: float) -> None:
        self.task = task
        self.interval_s = interval_s
        self._token: Optional[CancellationToken] = None
        self._runner: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    def start(self) -> None:
        if self.running:
            return
        self._token = CancellationToken()
        self._runner = asyncio.create_task(self._loop(self._token), name="hybridmem-consolidation")

    async def stop(self) -> None:
        if self._token is not None:
            self._token.cancel()
        if self._runner is not None:
            await self._runner
        self._runner = None
        self._token = None

    async def _loop(self, token: CancellationToken) -> None:
        while not await token.wait(self.interval_s):
            try:
                await self.task(token)
            except MemoryEngineError as exc:
                if token.cancelled:
                    break
                logger.error(f"Scheduled consolidation failed: {exc.message}")
            except Exception:
                logger.exception("Scheduled consolidation crashed; retrying next interval")


__all__ = [
    "ConsolidationConfig",
    "ConsolidationReport",
    "ConsolidationEngine",
    "ConsolidationScheduler",
    "MERGEABLE_TYPES",
    "DECAYING_TYPES",
]
