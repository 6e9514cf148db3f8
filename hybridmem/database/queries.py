"""
AQL Templates - Named queries issued by the graph store

WHAT: Every graph-level query the engine runs, as fixed AQL text with bind vars
WHERE: hybridmem/database/queries.py - shared by GraphStore and LocalGraphClient
WHO: GraphStore (issues them), LocalGraphClient (interprets them in-process)
TIME: n/a

Collections are always bound as ``@@nodes`` / ``@@edges`` so the same text
runs against any database. The in-process client recognises these exact
strings and executes the equivalent Python; anything else is passed to
ArangoDB untouched.
"""

from __future__ import annotations

TOUCH_NODES = """
FOR n IN @@nodes
  FILTER n._key IN @ids
  UPDATE n WITH {
    accessed_at: @now,
    accessed_at_unix: @now_unix,
    access_count: n.access_count + 1
  } IN @@nodes
  RETURN NEW
"""

NODES_BY_IDS = """
FOR n IN @@nodes
  FILTER n._key IN @ids
  RETURN n
"""

FIND_BY_TYPE = """
FOR n IN @@nodes
  FILTER n.node_type == @node_type
  SORT n.importance DESC, n.created_at_unix DESC
  LIMIT @limit
  RETURN n
"""

TEXT_SEARCH = """
FOR n IN @@nodes
  FILTER @node_types == null OR n.node_type IN @node_types
  FILTER n.confidence >= @min_confidence AND n.importance >= @min_importance
  FILTER LENGTH(FOR t IN @tokens FILTER CONTAINS(n.text, t) RETURN 1) == LENGTH(@tokens)
  SORT n.importance DESC, n.accessed_at_unix DESC
  LIMIT @limit
  RETURN n
"""

EDGES_FOR_NODES = """
FOR e IN @@edges
  FILTER e.source IN @ids OR e.target IN @ids
  RETURN e
"""

DELETE_EDGES_FOR_NODE = """
FOR e IN @@edges
  FILTER e.source == @id OR e.target == @id
  REMOVE e IN @@edges
  RETURN OLD._key
"""

FIND_RELATED = """
FOR v, e IN 1..@depth ANY @start @@edges
  OPTIONS {order: "bfs", uniqueVertices: "global"}
  LIMIT @limit
  RETURN {vertex: v, edge: e}
"""

FIND_PATH = """
FOR v, e IN ANY SHORTEST_PATH @start TO @end @@edges
  RETURN {vertex: v, edge: e}
"""

FIND_SEQUENCE = """
FOR v, e, p IN 1..@max_depth OUTBOUND @start @@edges
  OPTIONS {order: "bfs", uniqueVertices: "path"}
  FILTER p.edges[*].edge_type ALL == @edge_type
  RETURN v
"""

NODES_IN_TIME_RANGE = """
FOR n IN @@nodes
  LET ts = NOT_NULL(n.timestamp_unix, n.created_at_unix)
  FILTER ts >= @start AND ts <= @end
  FILTER @node_types == null OR n.node_type IN @node_types
  SORT ts DESC
  LIMIT @limit
  RETURN n
"""

MEMORY_NODES = """
FOR n IN @@nodes
  FILTER n.node_type == "memory"
  FILTER @memory_types == null OR n.memory_type IN @memory_types
  FILTER @session_id == null OR n.session_id == @session_id
  FILTER n.reinforcement_count >= @min_reinforcement
  RETURN n
"""

STALE_WORKING = """
FOR n IN @@nodes
  FILTER n.node_type == "memory" AND n.memory_type == "working"
  FILTER n.accessed_at_unix < @cutoff AND n.importance < @max_importance
  RETURN n._key
"""

DECAY_MEMORIES = """
FOR n IN @@nodes
  FILTER n.node_type == "memory" AND n.memory_type IN @memory_types
  FILTER n.accessed_at_unix < @cutoff
  FILTER n.decayed_at_unix == null OR n.decayed_at_unix < @cutoff
  LET factor = 1 - n.decay_rate
  UPDATE n WITH {
    importance: n.importance * factor,
    confidence: n.confidence * factor,
    decayed_at: @now,
    decayed_at_unix: @now_unix,
    updated_at: @now,
    updated_at_unix: @now_unix
  } IN @@nodes
  RETURN NEW
"""

CONTRADICTION_PAIRS = """
FOR e IN @@edges
  FILTER e.edge_type == "contradicts"
  FOR a IN @@nodes
    FILTER a._key == e.source AND a.node_type == "fact"
    FOR b IN @@nodes
      FILTER b._key == e.target AND b.node_type == "fact"
      LIMIT @limit
      RETURN {first: a, second: b}
"""

INSIGHT_CANDIDATES = """
FOR middle IN @@nodes
  FILTER middle.node_type IN @node_types
  LET links = (
    FOR e IN @@edges
      FILTER e.source == middle._key OR e.target == middle._key
      RETURN {other: e.source == middle._key ? e.target : e.source, edge: e}
  )
  FOR l1 IN links
    FOR l3 IN links
      FILTER l1.other < l3.other
      LET first = FIRST(FOR x IN @@nodes FILTER x._key == l1.other AND x.node_type IN @node_types RETURN x)
      LET last = FIRST(FOR x IN @@nodes FILTER x._key == l3.other AND x.node_type IN @node_types RETURN x)
      FILTER first != null AND last != null
      LET direct = (
        FOR e IN @@edges
          FILTER (e.source == first._key AND e.target == last._key)
              OR (e.source == last._key AND e.target == first._key)
          RETURN e
      )
      LIMIT @limit
      RETURN {first: first, middle: middle, last: last, edges: APPEND([l1.edge, l3.edge], direct)}
"""

INSIGHT_KEYS = """
FOR n IN @@nodes
  FILTER n.node_type == "insight" AND n.metadata.pattern_key != null
  RETURN n.metadata.pattern_key
"""

EMBEDDED_NODES = """
FOR n IN @@nodes
  FILTER n.embedding != null
  RETURN {id: n._key, embedding: n.embedding}
"""

ALL_NODES = """
FOR n IN @@nodes
  SORT n.created_at_unix
  RETURN n
"""

ALL_EDGES = """
FOR e IN @@edges
  SORT e.created_at_unix
  RETURN e
"""

GRAPH_STATS = """
LET node_types = (FOR n IN @@nodes COLLECT t = n.node_type WITH COUNT INTO c RETURN {type: t, count: c})
LET edge_types = (FOR e IN @@edges COLLECT t = e.edge_type WITH COUNT INTO c RETURN {type: t, count: c})
LET totals = FIRST(
  FOR n IN @@nodes
    COLLECT AGGREGATE total = COUNT(1), importance = AVERAGE(n.importance), confidence = AVERAGE(n.confidence)
    RETURN {total: total, importance: importance, confidence: confidence}
)
RETURN {
  node_types: node_types,
  edge_types: edge_types,
  total_nodes: totals == null ? 0 : totals.total,
  total_edges: LENGTH(@@edges),
  avg_importance: totals == null ? 0 : totals.importance,
  avg_confidence: totals == null ? 0 : totals.confidence
}
"""

TEMPLATES = (
    TOUCH_NODES,
    NODES_BY_IDS,
    FIND_BY_TYPE,
    TEXT_SEARCH,
    EDGES_FOR_NODES,
    DELETE_EDGES_FOR_NODE,
    FIND_RELATED,
    FIND_PATH,
    FIND_SEQUENCE,
    NODES_IN_TIME_RANGE,
    MEMORY_NODES,
    STALE_WORKING,
    DECAY_MEMORIES,
    CONTRADICTION_PAIRS,
    INSIGHT_CANDIDATES,
    INSIGHT_KEYS,
    EMBEDDED_NODES,
    ALL_NODES,
    ALL_EDGES,
    GRAPH_STATS,
)


def collection_binds(aql: str, *, nodes: str, edges: str) -> dict:
    """Collection bind parameters actually referenced by ``aql``."""
    binds = {}
    if "@@nodes" in aql:
        binds["@nodes"] = nodes
    if "@@edges" in aql:
        binds["@edges"] = edges
    return binds


__all__ = [
    "TOUCH_NODES",
    "NODES_BY_IDS",
    "FIND_BY_TYPE",
    "TEXT_SEARCH",
    "EDGES_FOR_NODES",
    "DELETE_EDGES_FOR_NODE",
    "FIND_RELATED",
    "FIND_PATH",
    "FIND_SEQUENCE",
    "NODES_IN_TIME_RANGE",
    "MEMORY_NODES",
    "STALE_WORKING",
    "DECAY_MEMORIES",
    "CONTRADICTION_PAIRS",
    "INSIGHT_CANDIDATES",
    "INSIGHT_KEYS",
    "EMBEDDED_NODES",
    "ALL_NODES",
    "ALL_EDGES",
    "GRAPH_STATS",
    "TEMPLATES",
    "collection_binds",
]
