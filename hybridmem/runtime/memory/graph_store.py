"""
Graph Store - Typed node/edge persistence and graph queries

WHAT: Async CRUD for nodes and edges plus traversal, keyword and temporal queries
WHERE: hybridmem/runtime/memory/graph_store.py - sits on a backing client
WHO: WorkingMemory, ConsolidationEngine, ContradictionDetector, orchestrator
TIME: One backing round trip per call (two for edge creation)

Collections:
- memory_nodes (document): every node variant, discriminated by node_type
- memory_edges (edge): typed relationships, ``_from``/``_to`` into memory_nodes

Reads through ``get`` and the query helpers bump ``accessed_at`` and
``access_count``; every mutation bumps ``updated_at``. Edges are only created
when both endpoints exist, and deleting a node removes its incident edges
first, so no edge ever dangles.

Notes:
- The backing client is blocking; calls run via ``asyncio.to_thread``
- Client failures that are not already engine errors become BackingStoreError
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ...database import queries as q
from ...database.arango.memory_client import CollectionDefinition
from ...errors import (
    BackingStoreError,
    MemoryEngineError,
    NotFoundError,
    ReferentialIntegrityError,
    ValidationError,
)
from .models import (
    NODE_CLASSES,
    BaseNode,
    Edge,
    EdgeType,
    EventNode,
    GraphQueryResult,
    MemoryType,
    NodeType,
    node_from_arango_doc,
    utc_now,
)

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"\w+")
IMMUTABLE_FIELDS = {"id", "node_type", "created_at"}


def _iso(ts: datetime) -> str:
    return ts.isoformat().replace("+00:00", "Z")


class GraphStore:
    """Async graph persistence over an Arango-style client."""

    NODES: str = "memory_nodes"
    EDGES: str = "memory_edges"

    def __init__(
        self,
        client: Any,
        *,
        nodes_collection: Optional[str] = None,
        edges_collection: Optional[str] = None,
        dimension: Optional[int] = None,
        related_limit: int = 50,
    ) -> None:
        self.client = client
        self.nodes_collection = nodes_collection or self.NODES
        self.edges_collection = edges_collection or self.EDGES
        self.dimension = dimension
        self.related_limit = related_limit

    # ------------------ plumbing ----------------
    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except MemoryEngineError:
            raise
        except Exception as exc:
            raise BackingStoreError(f"Backing store call {getattr(fn, '__name__', fn)} failed: {exc}") from exc

    async def _run(self, aql: str, **params: Any) -> List[Any]:
        bind_vars = q.collection_binds(aql, nodes=self.nodes_collection, edges=self.edges_collection)
        bind_vars.update(params)
        return await self._call(self.client.execute_query, aql, bind_vars)

    def _vertex_handle(self, node_id: str) -> str:
        return f"{self.nodes_collection}/{node_id}"

    def _check_embedding(self, embedding: Optional[Sequence[float]]) -> None:
        if embedding is None or self.dimension is None:
            return
        if len(embedding) != self.dimension:
            raise ValidationError(
                f"Embedding has {len(embedding)} dimensions, expected {self.dimension}",
                details={"expected": self.dimension, "actual": len(embedding)},
            )

    @staticmethod
    def _now() -> Tuple[datetime, str, float]:
        now = utc_now()
        return now, _iso(now), now.timestamp()

    # ------------------ schema ------------------
    async def ensure_schema(self) -> None:
        """Create required collections and indexes if missing (idempotent)."""
        definitions = [
            CollectionDefinition(
                name=self.nodes_collection,
                type="document",
                indexes=[
                    {"type": "persistent", "fields": ["node_type", "importance"], "unique": False, "sparse": False},
                    {"type": "persistent", "fields": ["memory_type", "session_id"], "unique": False, "sparse": True},
                    {"type": "persistent", "fields": ["accessed_at_unix"], "unique": False, "sparse": False},
                    {"type": "persistent", "fields": ["created_at_unix"], "unique": False, "sparse": False},
                ],
            ),
            CollectionDefinition(
                name=self.edges_collection,
                type="edge",
                indexes=[
                    {"type": "persistent", "fields": ["edge_type"], "unique": False, "sparse": False},
                    {"type": "persistent", "fields": ["source"], "unique": False, "sparse": False},
                    {"type": "persistent", "fields": ["target"], "unique": False, "sparse": False},
                ],
            ),
        ]
        await self._call(self.client.create_collections, definitions)

    # ------------------ nodes -------------------
    async def create(self, node: BaseNode, *, overwrite: bool = False) -> Any:
        self._check_embedding(node.embedding)
        doc = node.to_arango_doc()
        stored = await self._call(
            self.client.insert_document,
            self.nodes_collection,
            doc,
            overwrite_mode="replace" if overwrite else None,
        )
        logger.debug(f"Created {node.node_type} node {node.id}")
        return node_from_arango_doc(stored or doc)

    async def get(self, node_id: str, *, touch: bool = True) -> Any:
        if touch:
            now, iso, unix = self._now()
            rows = await self._run(q.TOUCH_NODES, ids=[node_id], now=iso, now_unix=unix)
            doc = rows[0] if rows else None
        else:
            doc = await self._call(self.client.get_document, self.nodes_collection, node_id)
        if doc is None:
            raise NotFoundError(f"Node {node_id} not found", details={"id": node_id})
        return node_from_arango_doc(doc)

    async def get_many(self, node_ids: Iterable[str], *, touch: bool = True) -> List[Any]:
        """Fetch nodes in ``node_ids`` order, silently skipping ids that no longer exist."""
        ids = list(dict.fromkeys(node_ids))
        if not ids:
            return []
        if touch:
            now, iso, unix = self._now()
            rows = await self._run(q.TOUCH_NODES, ids=ids, now=iso, now_unix=unix)
        else:
            rows = await self._run(q.NODES_BY_IDS, ids=ids)
        by_id = {row["_key"]: row for row in rows}
        return [node_from_arango_doc(by_id[i]) for i in ids if i in by_id]

    async def exists(self, node_id: str) -> bool:
        doc = await self._call(self.client.get_document, self.nodes_collection, node_id)
        return doc is not None

    async def update(self, node_id: str, partial: Dict[str, Any]) -> Any:
        """Apply ``partial`` to a node; only the given fields (plus updated_at) are written."""
        bad = IMMUTABLE_FIELDS & set(partial)
        if bad:
            raise ValidationError(f"Cannot update immutable field(s): {', '.join(sorted(bad))}")
        current = await self.get(node_id, touch=False)
        unknown = set(partial) - set(type(current).model_fields)
        if unknown:
            raise ValidationError(
                f"Unknown field(s) for {current.node_type} node: {', '.join(sorted(unknown))}",
                details={"id": node_id},
            )
        if "embedding" in partial:
            self._check_embedding(partial["embedding"])
        data = current.model_dump()
        data.update(partial)
        data["updated_at"] = utc_now()
        try:
            updated = type(current).model_validate(data)
        except Exception as exc:
            raise ValidationError(f"Invalid update for node {node_id}: {exc}", details={"id": node_id}) from exc
        written = set(partial) | {"updated_at"}
        doc = updated.to_arango_doc()
        patch = {
            key: value
            for key, value in doc.items()
            if key in written or key == "text" or (key.endswith("_unix") and key[: -len("_unix")] in written)
        }
        stored = await self._call(self.client.update_document, self.nodes_collection, node_id, patch)
        if stored is None:
            raise NotFoundError(f"Node {node_id} not found", details={"id": node_id})
        return node_from_arango_doc(stored)

    async def delete(self, node_id: str) -> None:
        if not await self.exists(node_id):
            raise NotFoundError(f"Node {node_id} not found", details={"id": node_id})
        removed = await self._run(q.DELETE_EDGES_FOR_NODE, id=node_id)
        await self._call(self.client.delete_document, self.nodes_collection, node_id)
        logger.debug(f"Deleted node {node_id} and {len(removed)} incident edge(s)")

    async def reinforce(self, node_id: str, amount: float = 0.1) -> Any:
        """Raise importance by ``amount`` (capped at 1) and count the reinforcement."""
        node = await self.get(node_id, touch=True)
        partial: Dict[str, Any] = {"importance": min(1.0, node.importance + amount)}
        if "reinforcement_count" in type(node).model_fields:
            partial["reinforcement_count"] = node.reinforcement_count + 1
        return await self.update(node_id, partial)

    # ------------------ edges -------------------
    async def put_edge(self, edge: Edge, *, overwrite: bool = False) -> Edge:
        missing = [nid for nid in (edge.source, edge.target) if not await self.exists(nid)]
        if missing:
            raise ReferentialIntegrityError(
                f"Edge {edge.edge_type.value} references missing node(s): {', '.join(missing)}",
                details={"source": edge.source, "target": edge.target, "missing": missing},
            )
        stored = await self._call(
            self.client.insert_document,
            self.edges_collection,
            edge.to_arango_doc(self.nodes_collection),
            overwrite_mode="replace" if overwrite else None,
        )
        return Edge.from_arango_doc(stored) if stored else edge

    async def create_edge(
        self,
        source: str,
        target: str,
        edge_type: EdgeType,
        *,
        weight: float = 1.0,
        metadata: Optional[Dict[str, Any]] = None,
        bidirectional: bool = False,
    ) -> Edge:
        edge = Edge(
            edge_type=EdgeType(edge_type),
            source=source,
            target=target,
            weight=weight,
            metadata=dict(metadata or {}),
            bidirectional=bidirectional,
        )
        created = await self.put_edge(edge)
        if bidirectional and source != target:
            twin = Edge(
                edge_type=edge.edge_type,
                source=target,
                target=source,
                weight=weight,
                metadata={**edge.metadata, "twin_of": edge.id},
                bidirectional=True,
            )
            await self.put_edge(twin)
        return created

    async def get_edges(self, node_ids: Iterable[str]) -> List[Edge]:
        ids = list(node_ids)
        if not ids:
            return []
        rows = await self._run(q.EDGES_FOR_NODES, ids=ids)
        return [Edge.from_arango_doc(row) for row in rows]

    async def has_edge(self, first: str, second: str, edge_type: EdgeType) -> bool:
        """True when an edge of ``edge_type`` joins the two nodes in either direction."""
        for edge in await self.get_edges([first]):
            if edge.edge_type == edge_type and {edge.source, edge.target} == {first, second}:
                return True
        return False

    # ------------------ queries -----------------
    async def query(self, pattern: str, params: Optional[Dict[str, Any]] = None) -> List[Any]:
        """Run a raw AQL query; node documents in the result count as reads."""
        bind_vars = q.collection_binds(pattern, nodes=self.nodes_collection, edges=self.edges_collection)
        bind_vars.update(params or {})
        rows = await self._call(self.client.execute_query, pattern, bind_vars)
        node_ids = [r["_key"] for r in rows if isinstance(r, dict) and "_key" in r and "node_type" in r]
        if node_ids:
            now, iso, unix = self._now()
            await self._run(q.TOUCH_NODES, ids=node_ids, now=iso, now_unix=unix)
        return rows

    async def _result_from_rows(
        self,
        started: float,
        rows: List[Dict[str, Any]],
        *,
        depth: int = 0,
    ) -> GraphQueryResult:
        nodes: Dict[str, Any] = {}
        edges: Dict[str, Edge] = {}
        for row in rows:
            vertex = row.get("vertex")
            if vertex is not None:
                nodes[vertex["_key"]] = node_from_arango_doc(vertex)
            edge = row.get("edge")
            if edge is not None:
                edges[edge["_key"]] = Edge.from_arango_doc(edge)
        if nodes:
            # traversal results are reads too
            touched = await self.get_many(list(nodes), touch=True)
            nodes.update({n.id: n for n in touched})
        return GraphQueryResult(
            nodes=list(nodes.values()),
            edges=list(edges.values()),
            stats={
                "query_time_ms": (time.perf_counter() - started) * 1000.0,
                "total_nodes": len(nodes),
                "total_edges": len(edges),
                "traversal_depth": depth,
            },
        )

    async def find_related(self, node_id: str, depth: int = 2) -> GraphQueryResult:
        """Nodes reachable within ``depth`` hops in either direction, and the edges used."""
        if depth < 1:
            raise ValidationError("depth must be >= 1")
        started = time.perf_counter()
        if not await self.exists(node_id):
            raise NotFoundError(f"Node {node_id} not found", details={"id": node_id})
        rows = await self._run(
            q.FIND_RELATED,
            start=self._vertex_handle(node_id),
            depth=depth,
            limit=self.related_limit,
        )
        return await self._result_from_rows(started, rows, depth=depth)

    async def find_path(self, start_id: str, end_id: str, max_depth: int = 5) -> GraphQueryResult:
        started = time.perf_counter()
        rows = await self._run(q.FIND_PATH, start=self._vertex_handle(start_id), end=self._vertex_handle(end_id))
        if len(rows) - 1 > max_depth:
            rows = []
        return await self._result_from_rows(started, rows, depth=max(len(rows) - 1, 0))

    async def find_by_type(self, node_type: NodeType, limit: int = 100) -> List[Any]:
        rows = await self._run(q.FIND_BY_TYPE, node_type=NodeType(node_type).value, limit=limit)
        return [node_from_arango_doc(row) for row in rows]

    async def text_search(
        self,
        text: str,
        *,
        node_types: Optional[Sequence[NodeType]] = None,
        min_confidence: float = 0.0,
        min_importance: float = 0.0,
        limit: int = 10,
        include_neighbours: bool = True,
    ) -> GraphQueryResult:
        """Keyword match: every query token must appear in the node text."""
        started = time.perf_counter()
        tokens = [t.lower() for t in _TOKEN.findall(text)]
        if not tokens:
            return GraphQueryResult(stats={"query_time_ms": 0.0, "total_nodes": 0, "total_edges": 0})
        rows = await self._run(
            q.TEXT_SEARCH,
            tokens=tokens,
            node_types=[NodeType(t).value for t in node_types] if node_types else None,
            min_confidence=min_confidence,
            min_importance=min_importance,
            limit=limit,
        )
        ids = [row["_key"] for row in rows]
        nodes = await self.get_many(ids, touch=True)
        edges: List[Edge] = []
        if include_neighbours and ids:
            edges = await self.get_edges(ids)
        return GraphQueryResult(
            nodes=nodes,
            edges=edges,
            stats={
                "query_time_ms": (time.perf_counter() - started) * 1000.0,
                "total_nodes": len(nodes),
                "total_edges": len(edges),
            },
        )

    async def memory_nodes(
        self,
        *,
        memory_types: Optional[Sequence[MemoryType]] = None,
        session_id: Optional[str] = None,
        min_reinforcement: int = 0,
    ) -> List[Any]:
        rows = await self._run(
            q.MEMORY_NODES,
            memory_types=[MemoryType(t).value for t in memory_types] if memory_types else None,
            session_id=session_id,
            min_reinforcement=min_reinforcement,
        )
        return [node_from_arango_doc(row) for row in rows]

    async def nodes_in_time_range(
        self,
        start: datetime,
        end: datetime,
        *,
        node_types: Optional[Sequence[NodeType]] = None,
        limit: int = 100,
    ) -> List[Any]:
        """Nodes whose event timestamp (or creation time) falls inside [start, end]."""
        rows = await self._run(
            q.NODES_IN_TIME_RANGE,
            start=start.timestamp(),
            end=end.timestamp(),
            node_types=[NodeType(t).value for t in node_types] if node_types else None,
            limit=limit,
        )
        return [node_from_arango_doc(row) for row in rows]

    async def create_temporal_chain(self, event_ids: Sequence[str]) -> List[Edge]:
        """Link events in timestamp order with ``temporal_next`` edges and their ``temporal_prev`` twins."""
        if len(set(event_ids)) < 2:
            raise ValidationError("A temporal chain needs at least two events")
        events = await self.get_many(event_ids, touch=False)
        if len(events) != len(set(event_ids)):
            found = {e.id for e in events}
            missing = [i for i in event_ids if i not in found]
            raise NotFoundError(f"Event(s) not found: {', '.join(missing)}", details={"missing": missing})
        not_events = [e.id for e in events if not isinstance(e, EventNode)]
        if not_events:
            raise ValidationError(f"Temporal chains only link event nodes: {', '.join(not_events)}")
        ordered = sorted(events, key=lambda e: e.timestamp)
        edges = []
        for earlier, later in zip(ordered, ordered[1:]):
            meta = {"time_gap_s": (later.timestamp - earlier.timestamp).total_seconds()}
            edges.append(await self.create_edge(earlier.id, later.id, EdgeType.TEMPORAL_NEXT, metadata=meta))
            edges.append(await self.create_edge(later.id, earlier.id, EdgeType.TEMPORAL_PREV, metadata=meta))
        return edges

    async def find_sequence(self, start_id: str, *, direction: str = "forward", max_depth: int = 50) -> List[Any]:
        """Events reachable along ``temporal_next`` (forward) or ``temporal_prev`` (backward) edges."""
        if direction not in {"forward", "backward"}:
            raise ValidationError(f"Unknown direction: {direction}")
        edge_type = EdgeType.TEMPORAL_NEXT if direction == "forward" else EdgeType.TEMPORAL_PREV
        rows = await self._run(
            q.FIND_SEQUENCE,
            start=self._vertex_handle(start_id),
            edge_type=edge_type.value,
            max_depth=max_depth,
        )
        return [node_from_arango_doc(row) for row in rows]

    # ------------------ maintenance -------------
    async def decay(self, *, older_than_s: float, memory_types: Sequence[MemoryType]) -> List[Any]:
        """Multiply importance/confidence by (1 - decay_rate) on idle memories, once per interval."""
        now, iso, unix = self._now()
        rows = await self._run(
            q.DECAY_MEMORIES,
            memory_types=[MemoryType(t).value for t in memory_types],
            cutoff=unix - older_than_s,
            now=iso,
            now_unix=unix,
        )
        return [node_from_arango_doc(row) for row in rows]

    async def stale_working(self, *, older_than_s: float, max_importance: float) -> List[str]:
        return await self._run(
            q.STALE_WORKING,
            cutoff=time.time() - older_than_s,
            max_importance=max_importance,
        )

    async def contradiction_pairs(self, limit: int = 50) -> List[Tuple[Any, Any]]:
        rows = await self._run(q.CONTRADICTION_PAIRS, limit=limit)
        pairs = []
        seen = set()
        for row in rows:
            first = node_from_arango_doc(row["first"])
            second = node_from_arango_doc(row["second"])
            key = frozenset((first.id, second.id))
            if key in seen:
                continue
            seen.add(key)
            pairs.append((first, second))
        return pairs

    async def insight_candidates(self, node_types: Sequence[NodeType], limit: int = 20) -> List[Dict[str, Any]]:
        rows = await self._run(
            q.INSIGHT_CANDIDATES,
            node_types=[NodeType(t).value for t in node_types],
            limit=limit,
        )
        return [
            {
                "nodes": [node_from_arango_doc(row[k]) for k in ("first", "middle", "last")],
                "edges": [Edge.from_arango_doc(e) for e in row["edges"]],
            }
            for row in rows
        ]

    async def insight_keys(self) -> set:
        return set(await self._run(q.INSIGHT_KEYS))

    async def embedded_nodes(self) -> List[Tuple[str, List[float]]]:
        rows = await self._run(q.EMBEDDED_NODES)
        return [(row["id"], row["embedding"]) for row in rows]

    async def all_nodes(self) -> List[Any]:
        return [node_from_arango_doc(row) for row in await self._run(q.ALL_NODES)]

    async def all_edges(self) -> List[Edge]:
        return [Edge.from_arango_doc(row) for row in await self._run(q.ALL_EDGES)]

    async def stats(self) -> Dict[str, Any]:
        rows = await self._run(q.GRAPH_STATS)
        raw = rows[0] if rows else {}
        node_types = {row["type"]: row["count"] for row in raw.get("node_types", [])}
        total_nodes = raw.get("total_nodes", 0)
        total_edges = raw.get("total_edges", 0)
        # directed graph: each edge adds one connection to both endpoints
        possible = total_nodes * (total_nodes - 1)
        return {
            "total_nodes": total_nodes,
            "total_edges": total_edges,
            "avg_node_connections": 2 * total_edges / total_nodes if total_nodes else 0.0,
            "graph_density": total_edges / possible if possible else 0.0,
            "node_types": {t.value: node_types.get(t.value, 0) for t in NODE_CLASSES},
            "edge_types": {row["type"]: row["count"] for row in raw.get("edge_types", [])},
            "avg_importance": raw.get("avg_importance") or 0.0,
            "avg_confidence": raw.get("avg_confidence") or 0.0,
        }

    def close(self) -> None:
        self.client.close()


__all__ = ["GraphStore", "IMMUTABLE_FIELDS"]
