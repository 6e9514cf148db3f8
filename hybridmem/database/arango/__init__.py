"""ArangoDB backing client."""

from .memory_client import (
    ArangoMemoryClient,
    ArangoMemoryClientConfig,
    CollectionDefinition,
    resolve_memory_config,
)

__all__ = [
    "ArangoMemoryClient",
    "ArangoMemoryClientConfig",
    "CollectionDefinition",
    "resolve_memory_config",
]
