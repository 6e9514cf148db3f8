"""
Arango Memory Client - python-arango adapter for graph persistence

WHAT: Thin document/AQL client over a single ArangoDB database
WHERE: hybridmem/database/arango/memory_client.py - below GraphStore
WHO: GraphStore issuing CRUD calls and AQL templates
TIME: Network bound; every call is blocking and runs off the event loop

The client exposes the small method surface GraphStore relies on
(``create_collections``, ``insert_document``, ``get_document``,
``update_document``, ``delete_document``, ``execute_query``, ``close``).
LocalGraphClient implements the same surface in-process.

Notes:
- Missing documents come back as ``None``/``False``, never as exceptions
- Other driver errors are re-raised as BackingStoreError
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Literal, Optional

from arango import ArangoClient
from arango.exceptions import ArangoError, DocumentDeleteError, DocumentUpdateError

from ...errors import BackingStoreError

logger = logging.getLogger(__name__)

DOCUMENT_NOT_FOUND = 1202


@dataclass(slots=True)
class ArangoMemoryClientConfig:
    url: str = "http://localhost:8529"
    database: str = "hybridmem"
    username: str = "root"
    password: str = ""
    request_timeout: float = 30.0
    verify: bool = True


@dataclass(slots=True)
class CollectionDefinition:
    name: str
    type: Literal["document", "edge"] = "document"
    indexes: List[Dict[str, Any]] = field(default_factory=list)


def resolve_memory_config(*, database: Optional[str] = None, **overrides: Any) -> ArangoMemoryClientConfig:
    """Resolve connection settings from ARANGO_* environment variables."""
    cfg = ArangoMemoryClientConfig(
        url=os.environ.get("ARANGO_URL", "http://localhost:8529"),
        database=database or os.environ.get("ARANGO_DB_NAME", "hybridmem"),
        username=os.environ.get("ARANGO_USERNAME", "root"),
        password=os.environ.get("ARANGO_PASSWORD", ""),
    )
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


class ArangoMemoryClient:
    """Blocking ArangoDB client used by the graph store."""

    def __init__(self, config: ArangoMemoryClientConfig, *, client: Any = None) -> None:
        self.config = config
        self._client = client or ArangoClient(hosts=config.url, request_timeout=config.request_timeout)
        try:
            self._db = self._client.db(
                config.database,
                username=config.username,
                password=config.password,
                verify=config.verify,
            )
        except ArangoError as exc:
            raise BackingStoreError(
                f"Unable to connect to ArangoDB database {config.database!r}",
                details={"url": config.url},
            ) from exc

    # ------------------ schema ------------------
    def create_collections(self, definitions: Iterable[CollectionDefinition]) -> None:
        try:
            for definition in definitions:
                if self._db.has_collection(definition.name):
                    collection = self._db.collection(definition.name)
                else:
                    logger.info(f"Creating {definition.type} collection {definition.name}")
                    collection = self._db.create_collection(definition.name, edge=definition.type == "edge")
                for index in definition.indexes:
                    collection.add_index(dict(index))
        except ArangoError as exc:
            raise BackingStoreError(f"Schema setup failed: {exc}") from exc

    # ------------------ documents ---------------
    def insert_document(
        self,
        collection: str,
        document: Dict[str, Any],
        *,
        overwrite_mode: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            result = self._db.collection(collection).insert(
                document,
                return_new=True,
                overwrite_mode=overwrite_mode,
            )
        except ArangoError as exc:
            raise BackingStoreError(f"Insert into {collection} failed: {exc}") from exc
        return result["new"]

    def bulk_insert(self, collection: str, documents: Iterable[Dict[str, Any]]) -> int:
        docs = list(documents)
        if not docs:
            return 0
        try:
            results = self._db.collection(collection).insert_many(docs, overwrite_mode="replace")
        except ArangoError as exc:
            raise BackingStoreError(f"Bulk insert into {collection} failed: {exc}") from exc
        return sum(1 for r in results if not isinstance(r, ArangoError))

    def get_document(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        try:
            return self._db.collection(collection).get(key)
        except ArangoError as exc:
            raise BackingStoreError(f"Read from {collection} failed: {exc}") from exc

    def update_document(self, collection: str, key: str, patch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            result = self._db.collection(collection).update(
                {**patch, "_key": key},
                merge=True,
                keep_none=True,
                return_new=True,
            )
        except DocumentUpdateError as exc:
            if exc.error_code == DOCUMENT_NOT_FOUND:
                return None
            raise BackingStoreError(f"Update in {collection} failed: {exc}") from exc
        except ArangoError as exc:
            raise BackingStoreError(f"Update in {collection} failed: {exc}") from exc
        return result["new"]

    def delete_document(self, collection: str, key: str) -> bool:
        try:
            return bool(self._db.collection(collection).delete(key, ignore_missing=True))
        except DocumentDeleteError as exc:
            if exc.error_code == DOCUMENT_NOT_FOUND:
                return False
            raise BackingStoreError(f"Delete from {collection} failed: {exc}") from exc
        except ArangoError as exc:
            raise BackingStoreError(f"Delete from {collection} failed: {exc}") from exc

    # ------------------ queries -----------------
    def execute_query(
        self,
        aql: str,
        bind_vars: Optional[Dict[str, Any]] = None,
        *,
        batch_size: Optional[int] = None,
    ) -> List[Any]:
        try:
            cursor = self._db.aql.execute(aql, bind_vars=dict(bind_vars or {}), batch_size=batch_size)
            return list(cursor)
        except ArangoError as exc:
            raise BackingStoreError(f"AQL query failed: {exc}", details={"aql": aql.strip()[:200]}) from exc

    def close(self) -> None:
        close = getattr(self._client, "close", None)
        if callable(close):
            close()


__all__ = [
    "ArangoMemoryClient",
    "ArangoMemoryClientConfig",
    "CollectionDefinition",
    "resolve_memory_config",
]
