import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from hybridmem.database.local.memory_client import LocalGraphClient
from hybridmem.errors import BackingStoreError, NotFoundError, ReferentialIntegrityError, ValidationError
from hybridmem.runtime.memory.graph_store import GraphStore
from hybridmem.runtime.memory.models import (
    ConceptNode,
    EdgeType,
    EventNode,
    FactNode,
    MemoryNode,
    MemoryType,
    NodeType,
)


def _store(**kwargs) -> GraphStore:
    store = GraphStore(LocalGraphClient(), **kwargs)
    asyncio.run(store.ensure_schema())
    return store


class ExplodingClient(LocalGraphClient):
    def execute_query(self, aql, bind_vars=None, **_):  # type: ignore[override]
        raise RuntimeError("connection reset")


def test_get_counts_accesses_and_missing_nodes_raise():
    store = _store()

    async def scenario():
        fact = await store.create(FactNode(statement="Refunds take 14 days"))
        first = await store.get(fact.id)
        second = await store.get(fact.id)
        untouched = await store.get(fact.id, touch=False)
        with pytest.raises(NotFoundError):
            await store.get("missing")
        return fact, first, second, untouched

    fact, first, second, untouched = asyncio.run(scenario())
    assert fact.access_count == 0
    assert first.access_count == 1
    assert second.access_count == 2
    assert untouched.access_count == 2
    assert second.accessed_at >= fact.accessed_at


def test_update_writes_fields_and_bumps_updated_at():
    store = _store()

    async def scenario():
        fact = await store.create(FactNode(statement="Refunds take 14 days", importance=0.4))
        updated = await store.update(fact.id, {"importance": 1.4, "verified": True})
        stored = await store.get(fact.id, touch=False)
        return fact, updated, stored

    fact, updated, stored = asyncio.run(scenario())
    assert updated.importance == 1.0
    assert stored.verified is True
    assert stored.updated_at >= fact.updated_at
    assert stored.statement == "Refunds take 14 days"


def test_update_rejects_immutable_and_unknown_fields():
    store = _store()

    async def scenario():
        fact = await store.create(FactNode(statement="x is y"))
        with pytest.raises(ValidationError):
            await store.update(fact.id, {"node_type": "event"})
        with pytest.raises(ValidationError):
            await store.update(fact.id, {"colour": "blue"})
        with pytest.raises(NotFoundError):
            await store.update("missing", {"importance": 0.3})

    asyncio.run(scenario())


def test_embedding_dimension_is_checked():
    store = _store(dimension=3)

    async def scenario():
        with pytest.raises(ValidationError):
            await store.create(FactNode(statement="x", embedding=[0.1, 0.2]))
        node = await store.create(FactNode(statement="x", embedding=[0.1, 0.2, 0.3]))
        with pytest.raises(ValidationError):
            await store.update(node.id, {"embedding": [1.0]})

    asyncio.run(scenario())


def test_edges_require_both_endpoints():
    store = _store()

    async def scenario():
        a = await store.create(ConceptNode(name="refund"))
        with pytest.raises(ReferentialIntegrityError):
            await store.create_edge(a.id, "ghost", EdgeType.RELATES_TO)
        return await store.get_edges([a.id])

    assert asyncio.run(scenario()) == []


def test_delete_removes_incident_edges():
    store = _store()

    async def scenario():
        a = await store.create(ConceptNode(name="refund"))
        b = await store.create(ConceptNode(name="policy"))
        c = await store.create(ConceptNode(name="customer"))
        await store.create_edge(a.id, b.id, EdgeType.RELATES_TO)
        await store.create_edge(c.id, a.id, EdgeType.MENTIONS)
        await store.create_edge(b.id, c.id, EdgeType.RELATES_TO)
        await store.delete(a.id)
        with pytest.raises(NotFoundError):
            await store.delete(a.id)
        return a, await store.all_edges()

    a, edges = asyncio.run(scenario())
    assert len(edges) == 1
    assert all(a.id not in (e.source, e.target) for e in edges)


def test_bidirectional_edge_creates_twin():
    store = _store()

    async def scenario():
        a = await store.create(ConceptNode(name="a"))
        b = await store.create(ConceptNode(name="b"))
        edge = await store.create_edge(a.id, b.id, EdgeType.SIMILAR_TO, bidirectional=True)
        return a, b, edge, await store.all_edges()

    a, b, edge, edges = asyncio.run(scenario())
    assert len(edges) == 2
    twin = next(e for e in edges if e.id != edge.id)
    assert (twin.source, twin.target) == (b.id, a.id)
    assert twin.metadata["twin_of"] == edge.id


def test_find_related_respects_depth():
    store = _store()

    async def scenario():
        a = await store.create(ConceptNode(name="a"))
        b = await store.create(ConceptNode(name="b"))
        c = await store.create(ConceptNode(name="c"))
        d = await store.create(ConceptNode(name="d"))
        await store.create_edge(a.id, b.id, EdgeType.RELATES_TO)
        await store.create_edge(c.id, b.id, EdgeType.RELATES_TO)
        await store.create_edge(c.id, d.id, EdgeType.RELATES_TO)
        one = await store.find_related(a.id, depth=1)
        two = await store.find_related(a.id, depth=2)
        with pytest.raises(ValidationError):
            await store.find_related(a.id, depth=0)
        return (a, b, c, d), one, two

    (a, b, c, d), one, two = asyncio.run(scenario())
    assert {n.id for n in one.nodes} == {b.id}
    assert {n.id for n in two.nodes} == {b.id, c.id}
    assert len(two.edges) == 2
    assert two.stats["traversal_depth"] == 2


def test_find_path_returns_shortest_route():
    store = _store()

    async def scenario():
        a = await store.create(ConceptNode(name="a"))
        b = await store.create(ConceptNode(name="b"))
        c = await store.create(ConceptNode(name="c"))
        await store.create_edge(a.id, b.id, EdgeType.RELATES_TO)
        await store.create_edge(b.id, c.id, EdgeType.RELATES_TO)
        path = await store.find_path(a.id, c.id)
        too_long = await store.find_path(a.id, c.id, max_depth=1)
        return (a, b, c), path, too_long

    (a, b, c), path, too_long = asyncio.run(scenario())
    assert [n.id for n in path.nodes] == [a.id, b.id, c.id]
    assert len(path.edges) == 2
    assert too_long.nodes == []


def test_text_search_requires_every_token():
    store = _store()

    async def scenario():
        hit = await store.create(FactNode(statement="Refund policy allows 30 days"))
        await store.create(FactNode(statement="Shipping policy is 5 days"))
        await store.create(ConceptNode(name="refund"))
        result = await store.text_search("refund POLICY")
        typed = await store.text_search("refund", node_types=[NodeType.CONCEPT])
        return hit, result, typed

    hit, result, typed = asyncio.run(scenario())
    assert [n.id for n in result.nodes] == [hit.id]
    assert result.nodes[0].access_count == 1
    assert [n.node_type for n in typed.nodes] == ["concept"]


def test_temporal_chain_and_sequence():
    store = _store()
    base = datetime(2024, 3, 1, tzinfo=timezone.utc)

    async def scenario():
        late = await store.create(EventNode(description="deploy done", timestamp=base + timedelta(hours=2)))
        early = await store.create(EventNode(description="deploy started", timestamp=base))
        middle = await store.create(EventNode(description="tests passed", timestamp=base + timedelta(hours=1)))
        edges = await store.create_temporal_chain([late.id, early.id, middle.id])
        forward = await store.find_sequence(early.id)
        backward = await store.find_sequence(late.id, direction="backward")
        return (early, middle, late), edges, forward, backward

    (early, middle, late), edges, forward, backward = asyncio.run(scenario())
    assert [(e.edge_type, e.source, e.target) for e in edges] == [
        (EdgeType.TEMPORAL_NEXT, early.id, middle.id),
        (EdgeType.TEMPORAL_PREV, middle.id, early.id),
        (EdgeType.TEMPORAL_NEXT, middle.id, late.id),
        (EdgeType.TEMPORAL_PREV, late.id, middle.id),
    ]
    assert edges[0].metadata["time_gap_s"] == 3600.0
    assert [n.id for n in forward] == [middle.id, late.id]
    assert [n.id for n in backward] == [middle.id, early.id]


def test_temporal_chain_rejects_non_events():
    store = _store()

    async def scenario():
        event = await store.create(EventNode(description="started"))
        fact = await store.create(FactNode(statement="x is y"))
        with pytest.raises(ValidationError):
            await store.create_temporal_chain([event.id, fact.id])
        with pytest.raises(NotFoundError):
            await store.create_temporal_chain([event.id, "missing"])
        with pytest.raises(ValidationError):
            await store.create_temporal_chain([event.id])

    asyncio.run(scenario())


def test_nodes_in_time_range_prefers_event_timestamp():
    store = _store()
    base = datetime(2023, 6, 1, tzinfo=timezone.utc)

    async def scenario():
        inside = await store.create(EventNode(description="launch", timestamp=base))
        await store.create(EventNode(description="later", timestamp=base + timedelta(days=30)))
        return inside, await store.nodes_in_time_range(base - timedelta(days=1), base + timedelta(days=1))

    inside, nodes = asyncio.run(scenario())
    assert [n.id for n in nodes] == [inside.id]


def test_decay_skips_long_term_and_runs_once_per_interval():
    store = _store()
    idle = datetime.now(timezone.utc) - timedelta(hours=2)

    async def scenario():
        short = await store.create(
            MemoryNode(content="short", memory_type=MemoryType.SHORT_TERM, accessed_at=idle, importance=0.5)
        )
        long = await store.create(
            MemoryNode(content="long", memory_type=MemoryType.LONG_TERM, accessed_at=idle, importance=0.5)
        )
        types = [MemoryType.SHORT_TERM, MemoryType.WORKING]
        first = await store.decay(older_than_s=3600, memory_types=types)
        second = await store.decay(older_than_s=3600, memory_types=types)
        return short, long, first, second, await store.get(long.id, touch=False)

    short, long, first, second, long_after = asyncio.run(scenario())
    assert [n.id for n in first] == [short.id]
    assert first[0].importance == pytest.approx(0.45)
    assert first[0].confidence == pytest.approx(0.9)
    assert first[0].decayed_at is not None
    assert second == []
    assert long_after.importance == 0.5


def test_reinforce_caps_importance():
    store = _store()

    async def scenario():
        memory = await store.create(MemoryNode(content="x", importance=0.95))
        return await store.reinforce(memory.id, 0.1)

    reinforced = asyncio.run(scenario())
    assert reinforced.importance == 1.0
    assert reinforced.reinforcement_count == 1


def test_stats_count_types():
    store = _store()

    async def scenario():
        a = await store.create(FactNode(statement="a is b"))
        b = await store.create(ConceptNode(name="b"))
        await store.create_edge(a.id, b.id, EdgeType.MENTIONS)
        return await store.stats()

    stats = asyncio.run(scenario())
    assert stats["total_nodes"] == 2
    assert stats["total_edges"] == 1
    assert stats["node_types"]["fact"] == 1
    assert stats["node_types"]["event"] == 0
    assert stats["edge_types"] == {"mentions": 1}
    assert stats["avg_node_connections"] == pytest.approx(1.0)
    assert stats["graph_density"] == pytest.approx(0.5)


def test_client_failures_become_backing_store_errors():
    store = GraphStore(ExplodingClient())
    asyncio.run(store.ensure_schema())
    with pytest.raises(BackingStoreError):
        asyncio.run(store.find_by_type(NodeType.FACT))


def test_stats_on_an_empty_graph():
    stats = asyncio.run(_store().stats())
    assert stats["total_nodes"] == 0
    assert stats["avg_node_connections"] == 0.0
    assert stats["graph_density"] == 0.0
