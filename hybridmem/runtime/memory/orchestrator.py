"""
Memory Orchestrator - Central coordination point for the hybrid engine

WHAT: Public facade combining graph store, vector index and working memory
WHERE: hybridmem/runtime/memory/orchestrator.py - top of the runtime stack
WHO: Applications and agents storing, searching and maintaining memories
TIME: store ≈ one graph write + one embedding; search = slowest of its legs

Operations return ``Result`` envelopes: expected failures (validation, missing
nodes, backing store errors) come back as ``Result.failure`` instead of being
raised. Search runs its legs (keyword graph search, vector similarity,
working memory, optional time range) concurrently and returns whatever
succeeded; a failing leg is logged and listed in ``stats["failed_sources"]``.
A fired ``SearchOptions.cancel`` token fails the whole search as ``cancelled``.

Ranking:
    score = 0.3·importance + 0.2·confidence + 0.2·recency
          + 0.1·min(access_count / 100, 1) + 0.2·[type in {fact, insight, memory}]
where recency falls linearly from 1 to 0 over 30 days since creation.

Events emitted to listeners registered with ``on`` and to telemetry:
node:created, node:updated, node:deleted, edge:created, memory:consolidated,
memory:decayed, contradiction:detected, insight:generated.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ...config import MemoryEngineConfig
from ...database.local.memory_client import LocalGraphClient
from ...embedders.base import EmbedderBase
from ...errors import (
    EmbeddingFailedError,
    IndexUnavailableError,
    MemoryEngineError,
    MissingDependencyError,
    OperationCancelledError,
    ReferentialIntegrityError,
    Result,
    ValidationError,
)
from .cancellation import CancellationToken
from .consolidation import ConsolidationConfig, ConsolidationEngine, ConsolidationReport, ConsolidationScheduler
from .contradiction import ContradictionDetector, ContradictionResolution
from .graph_store import GraphStore
from .insights import TRIGGER_TYPES, InsightGenerator
from .models import (
    Edge,
    EdgeType,
    FactNode,
    GraphQueryResult,
    InsightNode,
    MemoryType,
    NodeType,
    build_node,
    infer_node_type,
    node_text,
    utc_now,
)
from .snapshot import export_snapshot, import_snapshot
from .telemetry import NoOpTelemetryClient, TelemetryClient
from .vector_index import VectorIndex
from .working_memory import WorkingMemory

logger = logging.getLogger(__name__)

EVENTS = (
    "node:created",
    "node:updated",
    "node:deleted",
    "edge:created",
    "memory:consolidated",
    "memory:decayed",
    "contradiction:detected",
    "insight:generated",
)

RANK_PREFERRED_TYPES = {NodeType.FACT, NodeType.INSIGHT, NodeType.MEMORY}
RECENCY_WINDOW_S = 86400 * 30

Listener = Callable[[str, Dict[str, Any]], Any]


def recency_fraction(node: Any, now: Optional[float] = None) -> float:
    """Linear 1 -> 0 over 30 days since ``created_at``, not ``accessed_at``.

    Reads are counted by the ``access_count`` term instead, so a search never
    refreshes the recency of its own hits.
    """
    now = time.time() if now is None else now
    return max(0.0, 1.0 - (now - node.created_at.timestamp()) / RECENCY_WINDOW_S)


def rank_score(node: Any, now: Optional[float] = None) -> float:
    score = 0.3 * node.importance + 0.2 * node.confidence + 0.2 * recency_fraction(node, now)
    score += 0.1 * min(node.access_count / 100.0, 1.0)
    if node.node_type in RANK_PREFERRED_TYPES:
        score += 0.2
    return score


@dataclass(slots=True)
class StoreOptions:
    node_type: Optional[NodeType] = None
    memory_type: MemoryType = MemoryType.SHORT_TERM
    metadata: Dict[str, Any] = field(default_factory=dict)
    embedding: Optional[List[float]] = None
    importance: Optional[float] = None
    confidence: Optional[float] = None
    priority: float = 0.5
    session_id: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict)  # variant-specific extras


@dataclass(slots=True)
class SearchOptions:
    limit: int = 10
    node_types: Optional[List[NodeType]] = None
    min_confidence: float = 0.0
    min_importance: float = 0.0
    semantic_threshold: float = 0.5
    include_graph: bool = True
    include_vector: bool = True
    include_working: bool = True
    time_range: Optional[Tuple[datetime, datetime]] = None
    session_id: Optional[str] = None  # working-memory session to search, default session when None
    cancel: Optional[CancellationToken] = None  # checked between vector batches


class MemoryOrchestrator:
    """Facade coordinating storage, retrieval and maintenance of memories."""

    def __init__(
        self,
        *,
        config: Optional[MemoryEngineConfig] = None,
        client: Any = None,
        store: Optional[GraphStore] = None,
        index: Optional[VectorIndex] = None,
        embedder: Optional[EmbedderBase] = None,
        working: Optional[WorkingMemory] = None,
        telemetry: Optional[TelemetryClient] = None,
    ) -> None:
        cfg = config or MemoryEngineConfig()
        self._config = cfg
        self._embedder = embedder

        dimension = cfg.vector_dimension
        if index is not None:
            dimension = index.dimension
        elif embedder is not None and embedder.dimension != dimension:
            logger.info(f"Using embedder dimension {embedder.dimension} instead of configured {dimension}")
            dimension = embedder.dimension

        self._store = store or GraphStore(client if client is not None else LocalGraphClient(), dimension=dimension)
        if index is None:
            index = VectorIndex(
                dimension,
                metric=cfg.vector_metric,
                backend=cfg.vector_backend,
                batch_size=cfg.search_batch_size,
            )
        self._index = index
        self._working = working or WorkingMemory(
            self._store,
            session_id=cfg.default_session_id,
            max_items=cfg.working_memory_max_items,
            eviction_ratio=cfg.working_memory_eviction_ratio,
            on_delete=self._on_node_removed,
        )
        self._consolidation = ConsolidationEngine(
            self._store,
            self._index,
            ConsolidationConfig(
                threshold=cfg.consolidation_threshold,
                merge_similarity=cfg.merge_similarity,
                stale_after_s=cfg.stale_working_memory_s,
                stale_importance=cfg.stale_working_importance,
                decay_interval_s=cfg.decay_interval_s,
                interval_s=cfg.consolidation_interval_s,
                batch_size=cfg.search_batch_size,
            ),
            on_delete=self._on_node_removed,
        )
        self._contradictions = ContradictionDetector(
            self._store,
            self._index,
            similarity=cfg.contradiction_similarity,
            candidates=cfg.contradiction_candidates,
        )
        self._insights = InsightGenerator(
            self._store,
            min_relationships=cfg.insight_min_relationships,
            limit=cfg.insight_limit,
        )
        self._scheduler = ConsolidationScheduler(self._scheduled_maintenance, cfg.consolidation_interval_s)
        self._telemetry = telemetry or NoOpTelemetryClient()
        self._listeners: Dict[str, List[Listener]] = {}
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()

    # ------------------ accessors ---------------
    @property
    def config(self) -> MemoryEngineConfig:
        return self._config

    @property
    def graph(self) -> GraphStore:
        return self._store

    @property
    def index(self) -> VectorIndex:
        return self._index

    @property
    def working(self) -> WorkingMemory:
        return self._working

    @property
    def telemetry(self) -> TelemetryClient:
        return self._telemetry

    # ------------------ lifecycle ---------------
    async def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._schema_lock:
            if not self._schema_ready:
                await self._store.ensure_schema()
                self._schema_ready = True

    async def start(self) -> None:
        """Create the schema, load persisted embeddings and start periodic consolidation."""
        await self._ensure_schema()
        loaded = await self._load_embeddings()
        logger.info(f"Memory engine started with {loaded} indexed vectors")
        if self._config.enable_auto_consolidation:
            self._scheduler.start()

    async def stop(self) -> None:
        await self._scheduler.stop()

    async def close(self) -> None:
        await self.stop()
        self._store.close()

    async def __aenter__(self) -> "MemoryOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, exc_tb) -> None:
        await self.stop()

    async def _scheduled_maintenance(self, token: CancellationToken) -> None:
        await self.decay()
        if not token.cancelled:
            await self._consolidate(token)

    async def _load_embeddings(self) -> int:
        count = 0
        for node_id, embedding in await self._store.embedded_nodes():
            try:
                await self._index.add(node_id, embedding)
            except ValidationError as exc:
                logger.warning(f"Skipping stored embedding for {node_id}: {exc.message}")
                continue
            count += 1
            if count % self._config.search_batch_size == 0:
                await asyncio.sleep(0)
        return count

    # ------------------ events ------------------
    def on(self, event: str, callback: Listener) -> Callable[[], None]:
        """Register ``callback(event, payload)``; returns a function that unregisters it."""
        if event not in EVENTS and event != "*":
            raise ValidationError(f"Unknown event {event!r}")
        self._listeners.setdefault(event, []).append(callback)

        def unsubscribe() -> None:
            listeners = self._listeners.get(event, [])
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    async def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        self._telemetry.emit_event(event, payload)
        for callback in [*self._listeners.get(event, []), *self._listeners.get("*", [])]:
            try:
                outcome = callback(event, payload)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(f"Listener for {event} failed")

    async def _on_node_removed(self, node_id: str) -> None:
        await self._index.remove(node_id)
        await self._emit("node:deleted", {"id": node_id})

    # ------------------ plumbing ----------------
    async def _guard(self, span: str, operation: Callable[[], Awaitable[Any]], **attributes: Any) -> Result[Any]:
        with self._telemetry.span(span, attributes=attributes) as s:
            try:
                await self._ensure_schema()
                value = await operation()
            except MemoryEngineError as exc:
                s.set_attribute("success", False)
                s.set_attribute("error", exc.kind)
                logger.warning(f"{span} failed ({exc.kind}): {exc.message}")
                return Result.failure(exc)
            return Result.success(value)

    async def _embed(self, text: str, *, query: bool = False) -> Optional[List[float]]:
        if self._embedder is None:
            return None
        fn = self._embedder.embed_query if query else self._embedder.embed
        try:
            vector = await asyncio.to_thread(fn, text)
        except MemoryEngineError:
            raise
        except Exception as exc:
            raise EmbeddingFailedError(f"Embedding provider failed: {exc}") from exc
        if len(vector) != self._index.dimension:
            raise EmbeddingFailedError(
                f"Embedding provider returned {len(vector)} dimensions, expected {self._index.dimension}"
            )
        return list(vector)

    async def _attach_embedding(self, node: Any, provided: Optional[List[float]] = None) -> Any:
        """Persist and index an embedding for ``node``; failures leave the node unembedded."""
        try:
            vector = provided if provided is not None else await self._embed(node_text(node))
        except (EmbeddingFailedError, MissingDependencyError) as exc:
            logger.warning(f"Node {node.id} stored without embedding: {exc.message}")
            return node
        if vector is None:
            return node
        try:
            node = await self._store.update(node.id, {"embedding": vector})
            await self._index.add(node.id, vector)
        except (IndexUnavailableError, ValidationError) as exc:
            logger.warning(f"Node {node.id} not indexed: {exc.message}")
        return node

    # ------------------ store -------------------
    async def store(self, content: str, options: Optional[StoreOptions] = None) -> Result[Any]:
        opts = options or StoreOptions()
        return await self._guard("memory.store", lambda: self._store_impl(content, opts))

    async def _store_impl(self, content: str, opts: StoreOptions) -> Any:
        if not content or not content.strip():
            raise ValidationError("content must not be empty")
        if opts.embedding is not None and len(opts.embedding) != self._index.dimension:
            raise ValidationError(
                f"Embedding has {len(opts.embedding)} dimensions, expected {self._index.dimension}"
            )
        if opts.memory_type == MemoryType.WORKING:
            node = await self._working.add(
                content,
                opts.priority,
                importance=opts.importance,
                metadata=opts.metadata,
                session_id=opts.session_id,
            )
        else:
            node_type = NodeType(opts.node_type) if opts.node_type else infer_node_type(content)
            extras = dict(opts.fields)
            if node_type == NodeType.MEMORY:
                extras.setdefault("session_id", opts.session_id)
            node = build_node(
                content,
                node_type,
                memory_type=opts.memory_type,
                metadata=opts.metadata,
                importance=opts.importance,
                confidence=opts.confidence,
                **extras,
            )
            node = await self._store.create(node)
        await self._emit("node:created", {"id": node.id, "node_type": node.node_type})

        node = await self._attach_embedding(node, opts.embedding)

        if isinstance(node, FactNode) and self._config.contradiction_detection:
            await self._detect_contradictions(node)
        if self._config.insight_generation and NodeType(node.node_type) in TRIGGER_TYPES:
            for insight in await self._insights.generate_for(node):
                await self._publish_insight(insight)
        return node

    # ------------------ search ------------------
    async def search(self, query: str, options: Optional[SearchOptions] = None) -> Result[GraphQueryResult]:
        opts = options or SearchOptions()
        return await self._guard("memory.search", lambda: self._search_impl(query, opts), limit=opts.limit)

    async def _vector_leg(self, query: str, opts: SearchOptions) -> GraphQueryResult:
        vector = await self._embed(query, query=True)
        if vector is None:
            return GraphQueryResult()
        hits = await self._index.search(vector, opts.limit * 2, opts.semantic_threshold, cancel=opts.cancel)
        ids = [payload for payload, _ in hits]
        nodes = await self._store.get_many(ids, touch=True)
        found = {n.id for n in nodes}
        for stale in [i for i in ids if i not in found]:
            # indexed but gone from the graph
            await self._index.remove(stale)
        return GraphQueryResult(nodes=nodes, stats={"similarities": {p: s for p, s in hits if p in found}})

    async def _temporal_leg(self, opts: SearchOptions) -> GraphQueryResult:
        start, end = opts.time_range  # type: ignore[misc]
        nodes = await self._store.nodes_in_time_range(start, end, node_types=opts.node_types, limit=opts.limit * 2)
        nodes = await self._store.get_many([n.id for n in nodes], touch=True)
        return GraphQueryResult(nodes=nodes)

    async def _search_impl(self, query: str, opts: SearchOptions) -> GraphQueryResult:
        if opts.limit <= 0:
            raise ValidationError("limit must be positive")
        if opts.cancel is not None:
            opts.cancel.raise_if_cancelled("search")
        started = time.perf_counter()
        legs: Dict[str, Awaitable[GraphQueryResult]] = {}
        if opts.include_graph:
            legs["graph"] = self._store.text_search(
                query,
                node_types=opts.node_types,
                min_confidence=opts.min_confidence,
                min_importance=opts.min_importance,
                limit=opts.limit * 2,
            )
        if opts.include_vector and self._embedder is not None:
            legs["vector"] = self._vector_leg(query, opts)
        if opts.include_working:
            legs["working"] = self._working.retrieve(query, limit=opts.limit, session_id=opts.session_id)
        if opts.time_range is not None:
            legs["temporal"] = self._temporal_leg(opts)

        outcomes = await asyncio.gather(*legs.values(), return_exceptions=True)
        nodes: Dict[str, Any] = {}
        edges: Dict[str, Edge] = {}
        sources: Dict[str, int] = {}
        failed: List[str] = []
        for name, outcome in zip(legs, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                if isinstance(outcome, OperationCancelledError):
                    raise outcome
                if isinstance(outcome, MemoryEngineError):
                    logger.warning(f"Search leg {name} failed ({outcome.kind}): {outcome.message}")
                else:
                    logger.error(f"Search leg {name} failed: {outcome!r}")
                failed.append(name)
                continue
            sources[name] = len(outcome.nodes)
            for node in outcome.nodes:
                nodes[node.id] = node
            for edge in outcome.edges:
                edges[edge.id] = edge

        allowed = {NodeType(t) for t in opts.node_types} if opts.node_types else None
        candidates = [
            n
            for n in nodes.values()
            if (allowed is None or NodeType(n.node_type) in allowed)
            and n.confidence >= opts.min_confidence
            and n.importance >= opts.min_importance
        ]
        now = time.time()
        ranked = sorted(candidates, key=lambda n: rank_score(n, now), reverse=True)[: opts.limit]
        kept = {n.id for n in ranked}
        kept_edges = [e for e in edges.values() if e.source in kept or e.target in kept]
        return GraphQueryResult(
            nodes=ranked,
            edges=kept_edges,
            stats={
                "query_time_ms": (time.perf_counter() - started) * 1000.0,
                "total_nodes": len(ranked),
                "total_edges": len(kept_edges),
                "sources": sources,
                "failed_sources": failed,
            },
        )

    # ------------------ node operations ---------
    async def get(self, node_id: str) -> Result[Any]:
        return await self._guard("memory.get", lambda: self._store.get(node_id))

    async def update(self, node_id: str, partial: Dict[str, Any]) -> Result[Any]:
        async def run() -> Any:
            node = await self._store.update(node_id, partial)
            if "embedding" in partial and partial["embedding"] is not None:
                await self._index.add(node.id, partial["embedding"])
            await self._emit("node:updated", {"id": node.id, "fields": sorted(partial)})
            return node

        return await self._guard("memory.update", run)

    async def forget(self, node_id: str) -> Result[bool]:
        async def run() -> bool:
            await self._store.delete(node_id)
            await self._on_node_removed(node_id)
            return True

        return await self._guard("memory.forget", run)

    async def reinforce(self, node_id: str, amount: float = 0.1) -> Result[Any]:
        async def run() -> Any:
            node = await self._store.reinforce(node_id, amount)
            await self._emit("node:updated", {"id": node.id, "fields": ["importance", "reinforcement_count"]})
            return node

        return await self._guard("memory.reinforce", run)

    async def promote(self, node_id: str) -> Result[Any]:
        async def run() -> Any:
            node = await self._working.promote(node_id)
            await self._emit("node:updated", {"id": node.id, "fields": ["memory_type", "importance"]})
            return node

        return await self._guard("memory.promote", run)

    async def relate(
        self,
        source: str,
        target: str,
        edge_type: EdgeType,
        *,
        weight: float = 1.0,
        metadata: Optional[Dict[str, Any]] = None,
        bidirectional: bool = False,
    ) -> Result[Edge]:
        async def run() -> Edge:
            edge = await self._store.create_edge(
                source,
                target,
                edge_type,
                weight=weight,
                metadata=metadata,
                bidirectional=bidirectional,
            )
            await self._emit(
                "edge:created",
                {"id": edge.id, "edge_type": edge.edge_type.value, "source": source, "target": target},
            )
            return edge

        return await self._guard("memory.relate", run)

    async def find_related(self, node_id: str, depth: int = 2) -> Result[GraphQueryResult]:
        return await self._guard("memory.find_related", lambda: self._store.find_related(node_id, depth))

    # ------------------ contradictions ----------
    async def _detect_contradictions(self, fact: FactNode) -> List[Edge]:
        edges = await self._contradictions.detect(fact)
        for edge in edges:
            await self._emit("edge:created", {"id": edge.id, "edge_type": edge.edge_type.value})
            await self._emit("contradiction:detected", {"first": edge.source, "second": edge.target})
        return edges

    async def detect_contradictions(self, fact_id: str) -> Result[List[Edge]]:
        async def run() -> List[Edge]:
            fact = await self._store.get(fact_id, touch=False)
            if not isinstance(fact, FactNode):
                raise ValidationError(f"{fact_id} is a {fact.node_type} node, not a fact")
            return await self._detect_contradictions(fact)

        return await self._guard("memory.detect_contradictions", run)

    async def resolve_contradictions(self, limit: int = 50) -> Result[List[ContradictionResolution]]:
        return await self._guard("memory.resolve_contradictions", lambda: self._contradictions.resolve(limit))

    # ------------------ insights ----------------
    async def _publish_insight(self, insight: InsightNode) -> InsightNode:
        insight = await self._attach_embedding(insight)
        await self._emit("node:created", {"id": insight.id, "node_type": insight.node_type})
        await self._emit("insight:generated", {"id": insight.id, "supporting_nodes": list(insight.supporting_nodes)})
        return insight

    async def generate_insights(self) -> Result[List[InsightNode]]:
        async def run() -> List[InsightNode]:
            return [await self._publish_insight(i) for i in await self._insights.generate()]

        return await self._guard("memory.generate_insights", run)

    # ------------------ maintenance -------------
    async def consolidate(self) -> Result[ConsolidationReport]:
        return await self._consolidate(None)

    async def _consolidate(self, cancel: Optional[CancellationToken]) -> Result[ConsolidationReport]:
        async def run() -> ConsolidationReport:
            report = await self._consolidation.consolidate(cancel)
            if report.changed:
                await self._emit("memory:consolidated", report.as_dict())
            return report

        return await self._guard("memory.consolidate", run)

    async def decay(self) -> Result[List[Any]]:
        async def run() -> List[Any]:
            decayed = await self._consolidation.decay()
            if decayed:
                await self._emit("memory:decayed", {"ids": [n.id for n in decayed]})
            return decayed

        return await self._guard("memory.decay", run)

    async def rebuild_index(self) -> Result[int]:
        async def run() -> int:
            await self._index.clear()
            await self._load_embeddings()
            return await self._index.rebuild()

        return await self._guard("memory.rebuild_index", run)

    # ------------------ snapshots ---------------
    async def export(self, fmt: str = "json", *, include_embeddings: bool = True) -> Result[str]:
        async def run() -> str:
            nodes = await self._store.all_nodes()
            edges = await self._store.all_edges()
            return export_snapshot(nodes, edges, fmt, include_embeddings=include_embeddings)

        return await self._guard("memory.export", run, format=fmt)

    async def import_(self, data: Any, fmt: str = "json") -> Result[Dict[str, int]]:
        """Load a snapshot; existing ids are replaced, edges to unknown nodes are skipped."""

        async def run() -> Dict[str, int]:
            nodes, edges = import_snapshot(data, fmt)
            indexed = 0
            for node in nodes:
                await self._store.create(node, overwrite=True)
                if node.embedding is not None:
                    try:
                        await self._index.add(node.id, node.embedding)
                        indexed += 1
                    except (IndexUnavailableError, ValidationError) as exc:
                        logger.warning(f"Imported node {node.id} not indexed: {exc.message}")
            imported_edges = 0
            skipped = 0
            for edge in edges:
                try:
                    await self._store.put_edge(edge, overwrite=True)
                except ReferentialIntegrityError as exc:
                    logger.warning(f"Skipping imported edge {edge.id}: {exc.message}")
                    skipped += 1
                    continue
                imported_edges += 1
            logger.info(f"Imported {len(nodes)} nodes and {imported_edges} edges ({skipped} skipped)")
            return {"nodes": len(nodes), "edges": imported_edges, "skipped_edges": skipped, "indexed": indexed}

        return await self._guard("memory.import", run, format=fmt)

    # ------------------ stats -------------------
    async def get_stats(self) -> Result[Dict[str, Any]]:
        async def run() -> Dict[str, Any]:
            graph = await self._store.stats()
            vector = self._index.stats()
            working = await self._working.stats()
            return {
                "graph": graph,
                "vector": vector,
                "working_memory": working,
                "overall": {
                    "total_memories": graph["total_nodes"],
                    "total_relationships": graph["total_edges"],
                    "indexed_vectors": vector["total_vectors"],
                    "memory_usage_bytes": vector["memory_bytes"],
                    "consolidation_runs": self._consolidation.runs,
                    "last_consolidation": self._consolidation.last_run,
                    "auto_consolidation": self._scheduler.running,
                    "timestamp": utc_now().isoformat(),
                },
            }

        return await self._guard("memory.stats", run)


__all__ = [
    "MemoryOrchestrator",
    "StoreOptions",
    "SearchOptions",
    "rank_score",
    "recency_fraction",
    "EVENTS",
]
