"""Backing graph clients (ArangoDB and in-process) plus the AQL they run."""

from .arango.memory_client import (
    ArangoMemoryClient,
    ArangoMemoryClientConfig,
    CollectionDefinition,
    resolve_memory_config,
)
from .local.memory_client import LocalGraphClient

__all__ = [
    "ArangoMemoryClient",
    "ArangoMemoryClientConfig",
    "CollectionDefinition",
    "LocalGraphClient",
    "resolve_memory_config",
]
