import pytest

from hybridmem.database import queries as q
from hybridmem.database.arango.memory_client import CollectionDefinition
from hybridmem.database.local.memory_client import LocalGraphClient
from hybridmem.errors import BackingStoreError


def _client(**kwargs) -> LocalGraphClient:
    client = LocalGraphClient(**kwargs)
    client.create_collections(
        [
            CollectionDefinition(name="memory_nodes", type="document"),
            CollectionDefinition(name="memory_edges", type="edge"),
        ]
    )
    return client


def test_unknown_query_is_rejected():
    client = _client()
    with pytest.raises(BackingStoreError):
        client.execute_query("FOR d IN memory_nodes RETURN d", {})


def test_duplicate_key_requires_overwrite_mode():
    client = _client()
    client.insert_document("memory_nodes", {"_key": "a", "value": 1})
    with pytest.raises(BackingStoreError):
        client.insert_document("memory_nodes", {"_key": "a", "value": 2})

    stored = client.insert_document("memory_nodes", {"_key": "a", "value": 3}, overwrite_mode="replace")
    assert stored["value"] == 3


def test_edge_documents_need_endpoints():
    client = _client()
    with pytest.raises(BackingStoreError):
        client.insert_document("memory_edges", {"_key": "e", "source": "a", "target": "b"})


def test_returned_documents_are_copies():
    client = _client()
    client.insert_document("memory_nodes", {"_key": "a", "tags": ["x"]})
    doc = client.get_document("memory_nodes", "a")
    doc["tags"].append("mutated")
    assert client.get_document("memory_nodes", "a")["tags"] == ["x"]


def test_missing_collection_raises():
    client = LocalGraphClient()
    with pytest.raises(BackingStoreError):
        client.get_document("memory_nodes", "a")


def test_queries_are_recorded_with_bind_vars():
    client = _client(record_queries=True)
    binds = q.collection_binds(q.ALL_NODES, nodes="memory_nodes", edges="memory_edges")
    assert binds == {"@nodes": "memory_nodes"}
    assert client.execute_query(q.ALL_NODES, binds) == []
    assert list(client.queries) == [(q.ALL_NODES, binds)]


def test_query_recording_is_off_by_default_and_bounded():
    binds = q.collection_binds(q.ALL_NODES, nodes="memory_nodes", edges="memory_edges")
    quiet = _client()
    for _ in range(5):
        quiet.execute_query(q.ALL_NODES, binds)
    assert len(quiet.queries) == 0

    bounded = _client(record_queries=True, max_recorded=3)
    for _ in range(10):
        bounded.execute_query(q.ALL_NODES, binds)
    assert len(bounded.queries) == 3
