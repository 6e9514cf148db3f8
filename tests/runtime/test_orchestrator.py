import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from hybridmem import MemoryEngineConfig, MemoryOrchestrator, SearchOptions, StoreOptions, ValidationError
from hybridmem.database import queries as q
from hybridmem.database.local.memory_client import LocalGraphClient
from hybridmem.embedders.base import EmbedderBase, EmbeddingConfig
from hybridmem.runtime.memory.cancellation import CancellationToken
from hybridmem.runtime.memory.models import EdgeType, FactNode, MemoryType, NodeType
from hybridmem.runtime.memory.orchestrator import rank_score, recency_fraction
from hybridmem.runtime.memory.telemetry import RecordingTelemetryClient

REFUND = "Refund policy allows returns within 30 days"
SHIPPING = "Shipping takes 5 days"
OFFICE = "Office closes at six"


class ScriptedEmbedder(EmbedderBase):
    def __init__(self, vectors=None) -> None:
        super().__init__(EmbeddingConfig(provider="scripted", dimension=4))
        self.vectors = dict(vectors or {})
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        return self.vectors.get(text, [0.0, 0.0, 0.0, 1.0])


class BrokenEmbedder(EmbedderBase):
    def __init__(self, dimension: int = 4) -> None:
        super().__init__(EmbeddingConfig(provider="broken", dimension=4))
        self.returned_dimension = dimension

    def embed(self, text):
        if self.returned_dimension == 4:
            raise RuntimeError("model server unreachable")
        return [0.1] * self.returned_dimension


class FlakyClient(LocalGraphClient):
    """Fails keyword search while everything else works."""

    def execute_query(self, aql, bind_vars=None, **kwargs):  # type: ignore[override]
        if aql == q.TEXT_SEARCH:
            raise RuntimeError("search backend timed out")
        return super().execute_query(aql, bind_vars, **kwargs)


def _orchestrator(client=None, embedder=None, **overrides):
    values = {"vector_dimension": 4, "enable_auto_consolidation": False}
    values.update(overrides)
    telemetry = RecordingTelemetryClient()
    orchestrator = MemoryOrchestrator(
        config=MemoryEngineConfig(**values),
        client=client,
        embedder=embedder if embedder is not None else ScriptedEmbedder({REFUND: [0.9, 0.1, 0.0, 0.0], "refund policy": [1.0, 0.0, 0.0, 0.0]}),
        telemetry=telemetry,
    )
    return orchestrator, telemetry


async def _seed(orchestrator):
    refund = (await orchestrator.store(REFUND, StoreOptions(node_type=NodeType.FACT))).unwrap()
    await orchestrator.store(SHIPPING, StoreOptions(node_type=NodeType.FACT))
    await orchestrator.store(OFFICE, StoreOptions(node_type=NodeType.CONCEPT))
    return refund


def test_hybrid_search_returns_best_match_first():
    orchestrator, telemetry = _orchestrator()

    async def scenario():
        refund = await _seed(orchestrator)
        result = await orchestrator.search("refund policy", SearchOptions(limit=1))
        return refund, result

    refund, result = asyncio.run(scenario())
    assert result.ok
    assert [n.id for n in result.value.nodes] == [refund.id]
    stats = result.value.stats
    assert stats["sources"]["graph"] == 1
    assert stats["sources"]["vector"] == 1
    assert stats["failed_sources"] == []
    assert "memory.search" in telemetry.span_names()


def test_search_survives_a_failing_graph_leg():
    orchestrator, _ = _orchestrator(client=FlakyClient())

    async def scenario():
        refund = await _seed(orchestrator)
        return refund, await orchestrator.search("refund policy", SearchOptions(limit=1))

    refund, result = asyncio.run(scenario())
    assert result.ok
    assert [n.id for n in result.value.nodes] == [refund.id]
    assert result.value.stats["failed_sources"] == ["graph"]
    assert "graph" not in result.value.stats["sources"]


def test_search_degrades_when_vector_index_is_unavailable():
    orchestrator, _ = _orchestrator()

    async def scenario():
        refund = await _seed(orchestrator)
        orchestrator.index.mark_unavailable("rebuilding")
        late = (await orchestrator.store("Refund policy exceptions need approval", StoreOptions(node_type=NodeType.FACT))).unwrap()
        return refund, late, await orchestrator.search("refund policy")

    refund, late, result = asyncio.run(scenario())
    assert result.ok
    assert {n.id for n in result.value.nodes} == {refund.id, late.id}
    assert result.value.stats["failed_sources"] == ["vector"]
    # stored even though it could not be indexed
    assert late.embedding is not None
    assert late.id not in orchestrator.index


def test_working_memory_and_time_range_legs():
    orchestrator, _ = _orchestrator()
    launch = datetime(2024, 4, 1, tzinfo=timezone.utc)

    async def scenario():
        note = (await orchestrator.store("ask about refund policy", StoreOptions(memory_type=MemoryType.WORKING))).unwrap()
        event = (
            await orchestrator.store("product launch", StoreOptions(node_type=NodeType.EVENT, fields={"timestamp": launch}))
        ).unwrap()
        by_words = await orchestrator.search("refund policy", SearchOptions(include_vector=False, include_graph=False))
        by_time = await orchestrator.search(
            "nothing matches this",
            SearchOptions(
                time_range=(launch - timedelta(days=1), launch + timedelta(days=1)),
                include_vector=False,
                include_working=False,
            ),
        )
        return note, event, by_words, by_time

    note, event, by_words, by_time = asyncio.run(scenario())
    assert [n.id for n in by_words.value.nodes] == [note.id]
    assert by_words.value.stats["sources"] == {"working": 1}
    assert [n.id for n in by_time.value.nodes] == [event.id]
    assert by_time.value.stats["sources"]["temporal"] == 1


def test_search_filters_by_type_and_thresholds():
    orchestrator, _ = _orchestrator(embedder=ScriptedEmbedder())

    async def scenario():
        await orchestrator.store("refund window", StoreOptions(node_type=NodeType.CONCEPT, importance=0.9))
        fact = (
            await orchestrator.store("refund window is 30 days", StoreOptions(node_type=NodeType.FACT, importance=0.6))
        ).unwrap()
        await orchestrator.store("refund window was 14 days", StoreOptions(node_type=NodeType.FACT, importance=0.1))
        return fact, await orchestrator.search(
            "refund window",
            SearchOptions(node_types=[NodeType.FACT], min_importance=0.5, include_vector=False),
        )

    fact, result = asyncio.run(scenario())
    assert [n.id for n in result.value.nodes] == [fact.id]


def test_embedding_failures_do_not_fail_store():
    for embedder in (BrokenEmbedder(), BrokenEmbedder(dimension=7)):
        orchestrator, _ = _orchestrator(embedder=embedder)
        result = asyncio.run(orchestrator.store("The printer is offline", StoreOptions(node_type=NodeType.FACT)))
        assert result.ok
        assert result.value.embedding is None
        assert len(orchestrator.index) == 0


def test_expected_failures_come_back_as_results():
    orchestrator, telemetry = _orchestrator()

    async def scenario():
        fact = (await orchestrator.store("Water is wet", StoreOptions(node_type=NodeType.FACT))).unwrap()
        return [
            await orchestrator.store("   "),
            await orchestrator.store("x", StoreOptions(embedding=[1.0, 2.0])),
            await orchestrator.search("water", SearchOptions(limit=0)),
            await orchestrator.get("missing"),
            await orchestrator.update(fact.id, {"created_at": datetime.now(timezone.utc)}),
            await orchestrator.relate(fact.id, "missing", EdgeType.SUPPORTS),
            await orchestrator.forget("missing"),
            await orchestrator.export("csv"),
        ]

    results = asyncio.run(scenario())
    assert [r.ok for r in results] == [False] * 8
    assert [r.error.kind for r in results] == [
        "validation",
        "validation",
        "validation",
        "not_found",
        "validation",
        "referential_integrity",
        "not_found",
        "validation",
    ]
    failed = [attrs for name, attrs in telemetry.spans if attrs.get("success") is False]
    assert len(failed) == 8
    assert failed[0]["error"] == "validation"


def test_result_unwrap_raises_the_engine_error():
    orchestrator, _ = _orchestrator()
    result = asyncio.run(orchestrator.store(""))
    with pytest.raises(ValidationError):
        result.unwrap()


def test_listeners_receive_events_and_failures_are_isolated():
    orchestrator, _ = _orchestrator()
    seen = []
    everything = []

    def explode(event, payload):
        raise RuntimeError("listener bug")

    async def record_async(event, payload):
        everything.append(event)

    async def scenario():
        orchestrator.on("node:created", explode)
        unsubscribe = orchestrator.on("node:created", lambda event, payload: seen.append(payload["id"]))
        orchestrator.on("*", record_async)
        first = (await orchestrator.store("alpha", StoreOptions(node_type=NodeType.CONCEPT))).unwrap()
        unsubscribe()
        await orchestrator.store("beta", StoreOptions(node_type=NodeType.CONCEPT))
        await orchestrator.forget(first.id)
        return first

    first = asyncio.run(scenario())
    assert seen == [first.id]
    assert everything == ["node:created", "node:created", "node:deleted"]
    with pytest.raises(ValidationError):
        orchestrator.on("node:exploded", explode)


def test_forget_removes_vectors_and_stale_index_entries_are_dropped():
    orchestrator, _ = _orchestrator()

    async def scenario():
        refund = await _seed(orchestrator)
        assert refund.id in orchestrator.index
        await orchestrator.forget(refund.id)
        forgotten = refund.id in orchestrator.index

        again = (await orchestrator.store(REFUND, StoreOptions(node_type=NodeType.FACT))).unwrap()
        # deleted behind the orchestrator's back
        await orchestrator.graph.delete(again.id)
        result = await orchestrator.search("refund policy", SearchOptions(include_graph=False))
        return forgotten, again, result

    forgotten, again, result = asyncio.run(scenario())
    assert forgotten is False
    assert result.value.nodes == []
    assert again.id not in orchestrator.index


def test_update_reindexes_embeddings_and_rebuild_reloads_from_graph():
    orchestrator, _ = _orchestrator(embedder=ScriptedEmbedder())

    async def scenario():
        fact = (await orchestrator.store("Cats are mammals", StoreOptions(node_type=NodeType.FACT))).unwrap()
        await orchestrator.update(fact.id, {"embedding": [0.0, 1.0, 0.0, 0.0]})
        moved = await orchestrator.index.search([0.0, 1.0, 0.0, 0.0], k=1, threshold=0.9)
        rebuilt = (await orchestrator.rebuild_index()).unwrap()
        return fact, moved, rebuilt

    fact, moved, rebuilt = asyncio.run(scenario())
    assert moved[0][0] == fact.id
    assert rebuilt == 1


def test_start_loads_persisted_embeddings():
    client = LocalGraphClient()
    first, _ = _orchestrator(client=client)
    asyncio.run(_seed(first))

    second, _ = _orchestrator(client=client)
    asyncio.run(second.start())
    asyncio.run(second.stop())
    assert len(second.index) == 3


def test_stats_cover_every_subsystem():
    orchestrator, _ = _orchestrator()

    async def scenario():
        refund = await _seed(orchestrator)
        await orchestrator.store("remember the refund", StoreOptions(memory_type=MemoryType.WORKING))
        concept = (await orchestrator.store("returns", StoreOptions(node_type=NodeType.CONCEPT))).unwrap()
        await orchestrator.relate(concept.id, refund.id, EdgeType.RELATES_TO)
        return (await orchestrator.get_stats()).unwrap()

    stats = asyncio.run(scenario())
    assert set(stats) == {"graph", "vector", "working_memory", "overall"}
    assert stats["graph"]["total_nodes"] == 5
    assert stats["graph"]["node_types"]["memory"] == 1
    assert stats["graph"]["edge_types"] == {"relates_to": 1}
    assert stats["vector"]["total_vectors"] == 5
    assert stats["working_memory"]["total_items"] == 1
    assert stats["overall"]["total_memories"] == 5
    assert stats["overall"]["total_relationships"] == 1
    assert stats["overall"]["auto_consolidation"] is False


def test_rank_score_prefers_important_recent_facts():
    now = datetime.now(timezone.utc)
    fact = FactNode(statement="x", importance=1.0, confidence=1.0, created_at=now)
    old = FactNode(statement="y", importance=1.0, confidence=1.0, created_at=now - timedelta(days=45))
    assert rank_score(fact, now.timestamp()) == pytest.approx(0.9)
    assert rank_score(old, now.timestamp()) == pytest.approx(0.7)
    touched = FactNode(statement="z", created_at=now - timedelta(days=45), accessed_at=now)
    assert recency_fraction(touched, now.timestamp()) == 0.0


def test_search_forwards_its_cancellation_token():
    orchestrator, _ = _orchestrator()
    seen = []
    search = orchestrator.index.search

    async def spy(*args, **kwargs):
        seen.append(kwargs.get("cancel"))
        return await search(*args, **kwargs)

    live = CancellationToken()
    stopped = CancellationToken()
    stopped.cancel()

    async def scenario():
        await _seed(orchestrator)
        orchestrator.index.search = spy
        ok = await orchestrator.search("refund policy", SearchOptions(cancel=live))
        cancelled = await orchestrator.search("refund policy", SearchOptions(cancel=stopped))
        return ok, cancelled

    ok, cancelled = asyncio.run(scenario())
    assert ok.ok
    assert seen == [live]
    assert not cancelled.ok
    assert cancelled.error.kind == "cancelled"


def test_concurrent_working_stores_keep_their_sessions():
    orchestrator, _ = _orchestrator()
    default_session = orchestrator.working.session_id

    async def scenario():
        alpha, beta = await asyncio.gather(
            orchestrator.store("alpha note", StoreOptions(memory_type=MemoryType.WORKING, session_id="A")),
            orchestrator.store("beta note", StoreOptions(memory_type=MemoryType.WORKING, session_id="B")),
        )
        in_a = await orchestrator.search("note", SearchOptions(session_id="A", include_graph=False, include_vector=False))
        in_b = await orchestrator.search("note", SearchOptions(session_id="B", include_graph=False, include_vector=False))
        return alpha.unwrap(), beta.unwrap(), in_a.unwrap(), in_b.unwrap()

    alpha, beta, in_a, in_b = asyncio.run(scenario())
    assert alpha.session_id == "A"
    assert beta.session_id == "B"
    assert [n.id for n in in_a.nodes] == [alpha.id]
    assert [n.id for n in in_b.nodes] == [beta.id]
    assert orchestrator.working.session_id == default_session
