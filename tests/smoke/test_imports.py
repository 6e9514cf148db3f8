def test_import_public_api():
    from hybridmem import MemoryOrchestrator, Result, SearchOptions, StoreOptions  # noqa: F401


def test_import_graph_clients():
    from hybridmem.database.arango.memory_client import (  # noqa: F401
        ArangoMemoryClient,
        resolve_memory_config,
    )
    from hybridmem.database.local.memory_client import LocalGraphClient  # noqa: F401


def test_import_runtime_memory():
    from hybridmem.runtime.memory import (  # noqa: F401
        ConsolidationEngine,
        ContradictionDetector,
        GraphStore,
        InsightGenerator,
        VectorIndex,
        WorkingMemory,
    )


def test_import_embedders():
    from hybridmem.embedders import HashingEmbedder, create_embedder  # noqa: F401
