"""
Local Graph Client - In-process stand-in for ArangoDB

WHAT: ID-indexed document/edge tables with the ArangoMemoryClient method surface
WHERE: hybridmem/database/local/memory_client.py - below GraphStore
WHO: Tests, single-process deployments, anything without an ArangoDB server
TIME: All operations are in-memory; traversals are O(V + E)

Documents live in plain dict tables keyed by ``_key``; edges reference nodes
by key (``source``/``target``) rather than by object, so deleting a node never
leaves dangling references behind. ``execute_query`` understands exactly the
AQL templates in ``hybridmem.database.queries`` and runs the equivalent
Python; any other query raises BackingStoreError.

Notes:
- A single lock serialises mutations; reads copy documents out
- Returned documents are deep copies, callers cannot mutate the tables
- With ``record_queries`` the last ``max_recorded`` (aql, bind_vars) pairs are
  kept in ``queries`` for inspection
"""

from __future__ import annotations

import copy
import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from ...errors import BackingStoreError
from .. import queries as q
from ..arango.memory_client import CollectionDefinition

logger = logging.getLogger(__name__)

Doc = Dict[str, Any]


class LocalGraphClient:
    """Arena-style graph tables living in the current process."""

    def __init__(self, *, record_queries: bool = False, max_recorded: int = 1000) -> None:
        self._tables: Dict[str, Dict[str, Doc]] = {}
        self._edge_tables: set[str] = set()
        self._lock = threading.RLock()
        self.record_queries = record_queries
        self.queries: Deque[Tuple[str, Dict[str, Any]]] = deque(maxlen=max_recorded)
        self._handlers: Dict[str, Callable[[Dict[str, Any]], List[Any]]] = {
            q.TOUCH_NODES: self._touch_nodes,
            q.NODES_BY_IDS: self._nodes_by_ids,
            q.FIND_BY_TYPE: self._find_by_type,
            q.TEXT_SEARCH: self._text_search,
            q.EDGES_FOR_NODES: self._edges_for_nodes,
            q.DELETE_EDGES_FOR_NODE: self._delete_edges_for_node,
            q.FIND_RELATED: self._find_related,
            q.FIND_PATH: self._find_path,
            q.FIND_SEQUENCE: self._find_sequence,
            q.NODES_IN_TIME_RANGE: self._nodes_in_time_range,
            q.MEMORY_NODES: self._memory_nodes,
            q.STALE_WORKING: self._stale_working,
            q.DECAY_MEMORIES: self._decay_memories,
            q.CONTRADICTION_PAIRS: self._contradiction_pairs,
            q.INSIGHT_CANDIDATES: self._insight_candidates,
            q.INSIGHT_KEYS: self._insight_keys,
            q.EMBEDDED_NODES: self._embedded_nodes,
            q.ALL_NODES: self._all_nodes,
            q.ALL_EDGES: self._all_edges,
            q.GRAPH_STATS: self._graph_stats,
        }

    # ------------------ schema ------------------
    def create_collections(self, definitions: Iterable[CollectionDefinition]) -> None:
        with self._lock:
            for definition in definitions:
                self._tables.setdefault(definition.name, {})
                if definition.type == "edge":
                    self._edge_tables.add(definition.name)
                logger.debug(f"Local {definition.type} collection {definition.name} ready")

    def _table(self, name: str) -> Dict[str, Doc]:
        table = self._tables.get(name)
        if table is None:
            raise BackingStoreError(f"Collection {name!r} does not exist")
        return table

    # ------------------ documents ---------------
    def insert_document(self, collection: str, document: Doc, *, overwrite_mode: Optional[str] = None) -> Doc:
        key = document.get("_key")
        if not key:
            raise BackingStoreError("Documents must carry a _key")
        with self._lock:
            table = self._table(collection)
            if collection in self._edge_tables and not (document.get("_from") and document.get("_to")):
                raise BackingStoreError(f"Edge documents in {collection} need _from and _to")
            if key in table and overwrite_mode not in {"replace", "update"}:
                raise BackingStoreError(f"Unique constraint violated for {collection}/{key}")
            if key in table and overwrite_mode == "update":
                table[key].update(copy.deepcopy(document))
            else:
                table[key] = copy.deepcopy(document)
            return copy.deepcopy(table[key])

    def bulk_insert(self, collection: str, documents: Iterable[Doc]) -> int:
        count = 0
        for doc in documents:
            self.insert_document(collection, doc, overwrite_mode="replace")
            count += 1
        return count

    def get_document(self, collection: str, key: str) -> Optional[Doc]:
        with self._lock:
            doc = self._table(collection).get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def update_document(self, collection: str, key: str, patch: Doc) -> Optional[Doc]:
        with self._lock:
            table = self._table(collection)
            doc = table.get(key)
            if doc is None:
                return None
            doc.update(copy.deepcopy({k: v for k, v in patch.items() if k != "_key"}))
            return copy.deepcopy(doc)

    def delete_document(self, collection: str, key: str) -> bool:
        with self._lock:
            return self._table(collection).pop(key, None) is not None

    def close(self) -> None:
        return None

    # ------------------ queries -----------------
    def execute_query(self, aql: str, bind_vars: Optional[Dict[str, Any]] = None, **_: Any) -> List[Any]:
        handler = self._handlers.get(aql)
        if handler is None:
            raise BackingStoreError(
                "LocalGraphClient only executes the built-in query templates",
                details={"aql": aql.strip()[:200]},
            )
        params = dict(bind_vars or {})
        if self.record_queries:
            self.queries.append((aql, params))
        with self._lock:
            return copy.deepcopy(handler(params))

    # helpers
    def _nodes(self, params: Dict[str, Any]) -> Dict[str, Doc]:
        return self._table(params["@nodes"])

    def _edges(self, params: Dict[str, Any]) -> Dict[str, Doc]:
        return self._table(params["@edges"])

    def _vertex(self, handle: str) -> Tuple[Dict[str, Doc], str]:
        """Resolve a ``collection/key`` handle into its table and key."""
        collection, sep, key = handle.partition("/")
        if not sep:
            raise BackingStoreError(f"Invalid document handle {handle!r}")
        return self._table(collection), key

    def _adjacency(self, params: Dict[str, Any], *, outbound_only: bool = False) -> Dict[str, List[Tuple[str, Doc]]]:
        adjacency: Dict[str, List[Tuple[str, Doc]]] = {}
        for edge in self._edges(params).values():
            adjacency.setdefault(edge["source"], []).append((edge["target"], edge))
            if not outbound_only:
                adjacency.setdefault(edge["target"], []).append((edge["source"], edge))
        return adjacency

    # handlers
    def _touch_nodes(self, params: Dict[str, Any]) -> List[Doc]:
        nodes = self._nodes(params)
        touched = []
        for key in params["ids"]:
            doc = nodes.get(key)
            if doc is None:
                continue
            doc["accessed_at"] = params["now"]
            doc["accessed_at_unix"] = params["now_unix"]
            doc["access_count"] = int(doc.get("access_count", 0)) + 1
            touched.append(doc)
        return touched

    def _nodes_by_ids(self, params: Dict[str, Any]) -> List[Doc]:
        nodes = self._nodes(params)
        return [nodes[key] for key in params["ids"] if key in nodes]

    def _find_by_type(self, params: Dict[str, Any]) -> List[Doc]:
        rows = [d for d in self._nodes(params).values() if d.get("node_type") == params["node_type"]]
        rows.sort(key=lambda d: (d.get("importance", 0.0), d.get("created_at_unix", 0.0)), reverse=True)
        return rows[: params["limit"]]

    def _text_search(self, params: Dict[str, Any]) -> List[Doc]:
        node_types = params.get("node_types")
        tokens = params["tokens"]
        rows = []
        for doc in self._nodes(params).values():
            if node_types is not None and doc.get("node_type") not in node_types:
                continue
            if doc.get("confidence", 0.0) < params["min_confidence"]:
                continue
            if doc.get("importance", 0.0) < params["min_importance"]:
                continue
            text = doc.get("text", "")
            if all(token in text for token in tokens):
                rows.append(doc)
        rows.sort(key=lambda d: (d.get("importance", 0.0), d.get("accessed_at_unix", 0.0)), reverse=True)
        return rows[: params["limit"]]

    def _edges_for_nodes(self, params: Dict[str, Any]) -> List[Doc]:
        ids = set(params["ids"])
        return [e for e in self._edges(params).values() if e["source"] in ids or e["target"] in ids]

    def _delete_edges_for_node(self, params: Dict[str, Any]) -> List[str]:
        edges = self._edges(params)
        doomed = [k for k, e in edges.items() if e["source"] == params["id"] or e["target"] == params["id"]]
        for key in doomed:
            del edges[key]
        return doomed

    def _find_related(self, params: Dict[str, Any]) -> List[Doc]:
        nodes, start = self._vertex(params["start"])
        adjacency = self._adjacency(params)
        visited = {start}
        frontier = deque([(start, 0)])
        rows: List[Doc] = []
        while frontier and len(rows) < params["limit"]:
            current, depth = frontier.popleft()
            if depth >= params["depth"]:
                continue
            for neighbour, edge in adjacency.get(current, []):
                if neighbour in visited or neighbour not in nodes:
                    continue
                visited.add(neighbour)
                rows.append({"vertex": nodes[neighbour], "edge": edge})
                frontier.append((neighbour, depth + 1))
                if len(rows) >= params["limit"]:
                    break
        return rows

    def _find_path(self, params: Dict[str, Any]) -> List[Doc]:
        nodes, start = self._vertex(params["start"])
        _, end = self._vertex(params["end"])
        if start not in nodes or end not in nodes:
            return []
        adjacency = self._adjacency(params)
        previous: Dict[str, Tuple[Optional[str], Optional[Doc]]] = {start: (None, None)}
        frontier = deque([start])
        while frontier:
            current = frontier.popleft()
            if current == end:
                break
            for neighbour, edge in adjacency.get(current, []):
                if neighbour not in previous:
                    previous[neighbour] = (current, edge)
                    frontier.append(neighbour)
        if end not in previous:
            return []
        path: List[Doc] = []
        cursor: Optional[str] = end
        while cursor is not None:
            parent, edge = previous[cursor]
            path.append({"vertex": nodes[cursor], "edge": edge})
            cursor = parent
        path.reverse()
        return path

    def _find_sequence(self, params: Dict[str, Any]) -> List[Doc]:
        nodes, start = self._vertex(params["start"])
        adjacency = self._adjacency(params, outbound_only=True)
        rows: List[Doc] = []
        seen = {start}
        frontier = deque([(start, 0)])
        while frontier:
            current, depth = frontier.popleft()
            if depth >= params["max_depth"]:
                continue
            for neighbour, edge in adjacency.get(current, []):
                if edge.get("edge_type") != params["edge_type"] or neighbour in seen or neighbour not in nodes:
                    continue
                seen.add(neighbour)
                rows.append(nodes[neighbour])
                frontier.append((neighbour, depth + 1))
        return rows

    def _nodes_in_time_range(self, params: Dict[str, Any]) -> List[Doc]:
        node_types = params.get("node_types")
        rows = []
        for doc in self._nodes(params).values():
            ts = doc.get("timestamp_unix", doc.get("created_at_unix", 0.0))
            if not params["start"] <= ts <= params["end"]:
                continue
            if node_types is not None and doc.get("node_type") not in node_types:
                continue
            rows.append((ts, doc))
        rows.sort(key=lambda pair: pair[0], reverse=True)
        return [doc for _, doc in rows[: params["limit"]]]

    def _memory_nodes(self, params: Dict[str, Any]) -> List[Doc]:
        memory_types = params.get("memory_types")
        session_id = params.get("session_id")
        return [
            d
            for d in self._nodes(params).values()
            if d.get("node_type") == "memory"
            and (memory_types is None or d.get("memory_type") in memory_types)
            and (session_id is None or d.get("session_id") == session_id)
            and d.get("reinforcement_count", 0) >= params["min_reinforcement"]
        ]

    def _stale_working(self, params: Dict[str, Any]) -> List[str]:
        return [
            key
            for key, d in self._nodes(params).items()
            if d.get("node_type") == "memory"
            and d.get("memory_type") == "working"
            and d.get("accessed_at_unix", 0.0) < params["cutoff"]
            and d.get("importance", 0.0) < params["max_importance"]
        ]

    def _decay_memories(self, params: Dict[str, Any]) -> List[Doc]:
        decayed = []
        for doc in self._nodes(params).values():
            if doc.get("node_type") != "memory" or doc.get("memory_type") not in params["memory_types"]:
                continue
            if doc.get("accessed_at_unix", 0.0) >= params["cutoff"]:
                continue
            last = doc.get("decayed_at_unix")
            if last is not None and last >= params["cutoff"]:
                continue
            factor = 1.0 - float(doc.get("decay_rate", 0.1))
            doc["importance"] = doc.get("importance", 0.0) * factor
            doc["confidence"] = doc.get("confidence", 0.0) * factor
            doc["decayed_at"] = params["now"]
            doc["decayed_at_unix"] = params["now_unix"]
            doc["updated_at"] = params["now"]
            doc["updated_at_unix"] = params["now_unix"]
            decayed.append(doc)
        return decayed

    def _contradiction_pairs(self, params: Dict[str, Any]) -> List[Doc]:
        nodes = self._nodes(params)
        rows = []
        for edge in self._edges(params).values():
            if edge.get("edge_type") != "contradicts":
                continue
            first = nodes.get(edge["source"])
            second = nodes.get(edge["target"])
            if first is None or second is None:
                continue
            if first.get("node_type") != "fact" or second.get("node_type") != "fact":
                continue
            rows.append({"first": first, "second": second})
            if len(rows) >= params["limit"]:
                break
        return rows

    def _insight_candidates(self, params: Dict[str, Any]) -> List[Doc]:
        nodes = self._nodes(params)
        node_types = set(params["node_types"])
        adjacency = self._adjacency(params)
        rows: List[Doc] = []
        for key, middle in nodes.items():
            if middle.get("node_type") not in node_types:
                continue
            links = adjacency.get(key, [])
            for other1, edge1 in links:
                for other3, edge3 in links:
                    if not other1 < other3:
                        continue
                    first = nodes.get(other1)
                    last = nodes.get(other3)
                    if first is None or last is None:
                        continue
                    if first.get("node_type") not in node_types or last.get("node_type") not in node_types:
                        continue
                    direct = [e for n, e in adjacency.get(other1, []) if n == other3]
                    rows.append({"first": first, "middle": middle, "last": last, "edges": [edge1, edge3, *direct]})
                    if len(rows) >= params["limit"]:
                        return rows
        return rows

    def _insight_keys(self, params: Dict[str, Any]) -> List[str]:
        return [
            d["metadata"]["pattern_key"]
            for d in self._nodes(params).values()
            if d.get("node_type") == "insight" and (d.get("metadata") or {}).get("pattern_key") is not None
        ]

    def _embedded_nodes(self, params: Dict[str, Any]) -> List[Doc]:
        return [
            {"id": key, "embedding": d["embedding"]}
            for key, d in self._nodes(params).items()
            if d.get("embedding") is not None
        ]

    def _all_nodes(self, params: Dict[str, Any]) -> List[Doc]:
        return sorted(self._nodes(params).values(), key=lambda d: d.get("created_at_unix", 0.0))

    def _all_edges(self, params: Dict[str, Any]) -> List[Doc]:
        return sorted(self._edges(params).values(), key=lambda e: e.get("created_at_unix", 0.0))

    def _graph_stats(self, params: Dict[str, Any]) -> List[Doc]:
        nodes = list(self._nodes(params).values())
        edges = list(self._edges(params).values())
        node_types: Dict[str, int] = {}
        for doc in nodes:
            node_types[doc.get("node_type")] = node_types.get(doc.get("node_type"), 0) + 1
        edge_types: Dict[str, int] = {}
        for edge in edges:
            edge_types[edge.get("edge_type")] = edge_types.get(edge.get("edge_type"), 0) + 1
        total = len(nodes)
        return [
            {
                "node_types": [{"type": t, "count": c} for t, c in node_types.items()],
                "edge_types": [{"type": t, "count": c} for t, c in edge_types.items()],
                "total_nodes": total,
                "total_edges": len(edges),
                "avg_importance": sum(d.get("importance", 0.0) for d in nodes) / total if total else 0,
                "avg_confidence": sum(d.get("confidence", 0.0) for d in nodes) / total if total else 0,
            }
        ]


__all__ = ["LocalGraphClient"]
