import pytest
from arango.exceptions import ArangoClientError

from hybridmem.database.arango.memory_client import (
    ArangoMemoryClient,
    ArangoMemoryClientConfig,
    CollectionDefinition,
    resolve_memory_config,
)
from hybridmem.errors import BackingStoreError


class DummyCollection:
    def __init__(self, name: str, edge: bool = False) -> None:
        self.name = name
        self.edge = edge
        self.indexes = []
        self.docs = {}

    def add_index(self, data):
        self.indexes.append(data)

    def insert(self, document, *, return_new=False, overwrite_mode=None):
        self.docs[document["_key"]] = dict(document)
        return {"_key": document["_key"], "new": dict(document)}

    def get(self, key):
        return self.docs.get(key)

    def update(self, document, *, merge=True, keep_none=True, return_new=False):
        current = self.docs[document["_key"]]
        current.update(document)
        return {"new": dict(current)}

    def delete(self, key, *, ignore_missing=False):
        return self.docs.pop(key, None) is not None


class DummyAQL:
    def __init__(self) -> None:
        self.calls = []
        self.fail = False

    def execute(self, aql, *, bind_vars=None, batch_size=None):
        if self.fail:
            raise ArangoClientError("boom")
        self.calls.append((aql, bind_vars, batch_size))
        return iter([{"_key": "a"}, {"_key": "b"}])


class DummyDB:
    def __init__(self) -> None:
        self.collections = {}
        self.aql = DummyAQL()

    def has_collection(self, name):
        return name in self.collections

    def create_collection(self, name, edge=False):
        self.collections[name] = DummyCollection(name, edge)
        return self.collections[name]

    def collection(self, name):
        return self.collections[name]


class DummyArangoClient:
    def __init__(self) -> None:
        self.database = DummyDB()
        self.db_calls = []
        self.closed = False

    def db(self, name, username=None, password=None, verify=True):
        self.db_calls.append((name, username, verify))
        return self.database

    def close(self):
        self.closed = True


def _client():
    driver = DummyArangoClient()
    config = ArangoMemoryClientConfig(database="memories", username="root", password="pw")
    return ArangoMemoryClient(config, client=driver), driver


def test_create_collections_sets_edge_flag_and_indexes():
    client, driver = _client()
    client.create_collections(
        [
            CollectionDefinition(name="memory_nodes", type="document", indexes=[{"type": "persistent", "fields": ["node_type"]}]),
            CollectionDefinition(name="memory_edges", type="edge"),
        ]
    )
    db = driver.database
    assert driver.db_calls == [("memories", "root", True)]
    assert db.collections["memory_edges"].edge is True
    assert db.collections["memory_nodes"].edge is False
    assert db.collections["memory_nodes"].indexes == [{"type": "persistent", "fields": ["node_type"]}]

    # second call reuses collections
    client.create_collections([CollectionDefinition(name="memory_edges", type="edge")])
    assert len(db.collections) == 2


def test_document_round_trip_through_driver():
    client, driver = _client()
    client.create_collections([CollectionDefinition(name="memory_nodes", type="document")])

    stored = client.insert_document("memory_nodes", {"_key": "n1", "importance": 0.4})
    assert stored["importance"] == 0.4
    updated = client.update_document("memory_nodes", "n1", {"importance": 0.9})
    assert updated["importance"] == 0.9
    assert client.get_document("memory_nodes", "n1")["importance"] == 0.9
    assert client.delete_document("memory_nodes", "n1") is True
    assert client.get_document("memory_nodes", "n1") is None


def test_execute_query_returns_list_and_wraps_errors():
    client, driver = _client()
    rows = client.execute_query("RETURN 1", {"@nodes": "memory_nodes"}, batch_size=50)
    assert rows == [{"_key": "a"}, {"_key": "b"}]
    assert driver.database.aql.calls == [("RETURN 1", {"@nodes": "memory_nodes"}, 50)]

    driver.database.aql.fail = True
    with pytest.raises(BackingStoreError):
        client.execute_query("RETURN 1")


def test_close_closes_driver():
    client, driver = _client()
    client.close()
    assert driver.closed is True


def test_resolve_memory_config_reads_environment(monkeypatch):
    monkeypatch.setenv("ARANGO_URL", "http://arango:8529")
    monkeypatch.setenv("ARANGO_DB_NAME", "agent_memory")
    monkeypatch.setenv("ARANGO_USERNAME", "svc")
    monkeypatch.setenv("ARANGO_PASSWORD", "secret")

    cfg = resolve_memory_config(request_timeout=5.0)
    assert cfg.url == "http://arango:8529"
    assert cfg.database == "agent_memory"
    assert cfg.username == "svc"
    assert cfg.password == "secret"
    assert cfg.request_timeout == 5.0

    assert resolve_memory_config(database="other").database == "other"
