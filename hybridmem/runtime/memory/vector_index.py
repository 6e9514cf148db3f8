"""
Vector Index - Nearest-neighbour search over node embeddings

WHAT: Id -> vector map with exact (numpy) or approximate (hnswlib) k-NN search
WHERE: hybridmem/runtime/memory/vector_index.py - in-process, beside GraphStore
WHO: Orchestrator (vector search leg), ContradictionDetector, ConsolidationEngine
TIME: flat search O(n·d) in batches of ``batch_size``; hnsw search ~O(log n)

The index only ever sees (id, vector, payload). It never reaches into the
graph: callers register ids and resolve them back to nodes themselves.

Backends:
- flat: brute force over a numpy matrix, scanned in batches with a
  cooperative yield (and cancellation check) between batches
- hnsw: hnswlib graph; removals are ``mark_deleted`` and compacted by
  ``rebuild``

Similarity:
- cosine: vectors are L2-normalised on insert; similarity = dot product
- euclidean: similarity = 1 / (1 + distance)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ...errors import IndexUnavailableError, MissingDependencyError, ValidationError
from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

METRICS = ("cosine", "euclidean")
BACKENDS = ("flat", "hnsw")


def _normalize(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=-1, keepdims=True)
    norms = np.where(norms == 0.0, 1.0, norms)
    return vectors / norms


class _FlatBackend:
    """Exact search over a lazily rebuilt matrix."""

    def __init__(self) -> None:
        self._ids: List[str] = []
        self._matrix: Optional[np.ndarray] = None
        self._dirty = True

    def mark_dirty(self) -> None:
        self._dirty = True

    def snapshot(self, vectors: Dict[str, np.ndarray], dimension: int) -> Tuple[List[str], np.ndarray]:
        if self._dirty or self._matrix is None:
            self._ids = list(vectors)
            if self._ids:
                self._matrix = np.vstack([vectors[i] for i in self._ids]).astype(np.float32)
            else:
                self._matrix = np.empty((0, dimension), dtype=np.float32)
            self._dirty = False
        return self._ids, self._matrix


class _HnswBackend:
    """hnswlib index keyed by integer labels."""

    def __init__(self, dimension: int, metric: str, *, max_elements: int, ef_construction: int, M: int, ef: int) -> None:
        try:
            import hnswlib
        except ImportError as exc:
            raise MissingDependencyError(
                "The hnsw vector backend requires hnswlib. Install with `pip install hybridmem[hnsw]`."
            ) from exc
        self._lib = hnswlib
        self.dimension = dimension
        self.space = "cosine" if metric == "cosine" else "l2"
        self.max_elements = max_elements
        self.ef_construction = ef_construction
        self.M = M
        self.ef = ef
        self.deleted = 0
        self._index: Any = None
        self._id_to_label: Dict[str, int] = {}
        self._label_to_id: Dict[int, str] = {}
        self._next_label = 0
        self.reset(max_elements)

    def reset(self, capacity: int) -> None:
        self._index = self._lib.Index(space=self.space, dim=self.dimension)
        self._index.init_index(max_elements=max(capacity, 1), ef_construction=self.ef_construction, M=self.M)
        self._index.set_ef(self.ef)
        self._id_to_label.clear()
        self._label_to_id.clear()
        self._next_label = 0
        self.deleted = 0

    @property
    def live(self) -> int:
        return len(self._id_to_label)

    def add(self, item_id: str, vector: np.ndarray) -> None:
        if item_id in self._id_to_label:
            self.remove(item_id)
        if self._next_label >= self._index.get_max_elements():
            self._index.resize_index(max(self._index.get_max_elements() * 2, self._next_label + 1))
        label = self._next_label
        self._next_label += 1
        self._index.add_items(vector.reshape(1, -1), [label])
        self._id_to_label[item_id] = label
        self._label_to_id[label] = item_id

    def remove(self, item_id: str) -> bool:
        label = self._id_to_label.pop(item_id, None)
        if label is None:
            return False
        self._label_to_id.pop(label, None)
        self._index.mark_deleted(label)
        self.deleted += 1
        return True

    def search(self, query: np.ndarray, k: int) -> List[Tuple[str, float]]:
        k = min(k, self.live)
        if k <= 0:
            return []
        self._index.set_ef(max(self.ef, k))
        labels, distances = self._index.knn_query(query.reshape(1, -1), k=k)
        results = []
        for label, distance in zip(labels[0], distances[0]):
            item_id = self._label_to_id.get(int(label))
            if item_id is None:
                continue
            if self.space == "cosine":
                similarity = 1.0 - float(distance)
            else:
                # hnswlib reports squared L2
                similarity = 1.0 / (1.0 + float(np.sqrt(max(distance, 0.0))))
            results.append((item_id, similarity))
        return results


class VectorIndex:
    """Embedding index with a pluggable search backend."""

    def __init__(
        self,
        dimension: int,
        *,
        metric: str = "cosine",
        backend: str = "flat",
        batch_size: int = 100,
        max_elements: int = 10_000,
        ef_construction: int = 200,
        M: int = 16,
        ef: int = 50,
    ) -> None:
        if dimension <= 0:
            raise ValidationError("dimension must be positive")
        if metric not in METRICS:
            raise ValidationError(f"Unsupported metric {metric!r}; expected one of {METRICS}")
        if backend not in BACKENDS:
            raise ValidationError(f"Unsupported backend {backend!r}; expected one of {BACKENDS}")
        self.dimension = dimension
        self.metric = metric
        self.backend_name = backend
        self.batch_size = batch_size
        self._vectors: Dict[str, np.ndarray] = {}
        self._payloads: Dict[str, Any] = {}
        self._flat = _FlatBackend()
        self._hnsw: Optional[_HnswBackend] = None
        if backend == "hnsw":
            self._hnsw = _HnswBackend(
                dimension,
                metric,
                max_elements=max_elements,
                ef_construction=ef_construction,
                M=M,
                ef=ef,
            )
        self._available = True
        self._unavailable_reason: Optional[str] = None
        self._searches = 0
        self._last_search_ms = 0.0

    # ------------------ state -------------------
    @property
    def available(self) -> bool:
        return self._available

    def mark_unavailable(self, reason: str) -> None:
        logger.warning(f"Vector index marked unavailable: {reason}")
        self._available = False
        self._unavailable_reason = reason

    def _require_available(self) -> None:
        if not self._available:
            raise IndexUnavailableError(
                f"Vector index unavailable: {self._unavailable_reason}",
                details={"reason": self._unavailable_reason},
            )

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._vectors

    def _prepare(self, vector: Sequence[float]) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32).ravel()
        if arr.shape[0] != self.dimension:
            raise ValidationError(
                f"Vector has {arr.shape[0]} dimensions, expected {self.dimension}",
                details={"expected": self.dimension, "actual": int(arr.shape[0])},
            )
        if not np.all(np.isfinite(arr)):
            raise ValidationError("Vector contains NaN or infinite values")
        if self.metric == "cosine":
            arr = _normalize(arr)
        return arr

    def get_vector(self, item_id: str) -> Optional[np.ndarray]:
        vector = self._vectors.get(item_id)
        return None if vector is None else vector.copy()

    def get_payload(self, item_id: str) -> Any:
        return self._payloads.get(item_id)

    # ------------------ mutation ----------------
    async def add(self, item_id: str, vector: Sequence[float], payload: Any = None) -> None:
        """Insert or replace ``item_id``; payload defaults to the id itself."""
        self._require_available()
        arr = self._prepare(vector)
        self._vectors[item_id] = arr
        self._payloads[item_id] = item_id if payload is None else payload
        self._flat.mark_dirty()
        if self._hnsw is not None:
            try:
                self._hnsw.add(item_id, arr)
            except RuntimeError as exc:
                self.mark_unavailable(f"hnsw insert failed: {exc}")
                raise IndexUnavailableError(f"hnsw insert failed for {item_id}") from exc

    async def remove(self, item_id: str) -> bool:
        if item_id not in self._vectors:
            return False
        del self._vectors[item_id]
        self._payloads.pop(item_id, None)
        self._flat.mark_dirty()
        if self._hnsw is not None:
            self._hnsw.remove(item_id)
        return True

    async def clear(self) -> None:
        self._vectors.clear()
        self._payloads.clear()
        self._flat.mark_dirty()
        if self._hnsw is not None:
            self._hnsw.reset(self._hnsw.max_elements)

    async def rebuild(self) -> int:
        """Recreate the backend from the stored vectors, dropping tombstones."""
        self._flat.mark_dirty()
        if self._hnsw is not None:
            capacity = max(self._hnsw.max_elements, len(self._vectors) * 2)
            self._hnsw.reset(capacity)
            for count, (item_id, vector) in enumerate(self._vectors.items(), start=1):
                self._hnsw.add(item_id, vector)
                if count % self.batch_size == 0:
                    await asyncio.sleep(0)
        self._available = True
        self._unavailable_reason = None
        logger.info(f"Vector index rebuilt with {len(self._vectors)} vectors ({self.backend_name})")
        return len(self._vectors)

    # ------------------ search ------------------
    async def search(
        self,
        query: Sequence[float],
        k: int = 10,
        threshold: float = 0.0,
        *,
        exclude: Optional[Sequence[str]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> List[Tuple[Any, float]]:
        """Top-``k`` (payload, similarity) pairs with similarity >= ``threshold``, best first."""
        self._require_available()
        if k <= 0 or not self._vectors:
            return []
        started = time.perf_counter()
        q = self._prepare(query)
        skip = set(exclude or ())
        if self._hnsw is not None:
            hits = self._hnsw.search(q, k + len(skip))
        else:
            hits = await self._flat_search(q, threshold, cancel)
        ranked = sorted(
            ((item_id, sim) for item_id, sim in hits if sim >= threshold and item_id not in skip),
            key=lambda pair: pair[1],
            reverse=True,
        )[:k]
        self._searches += 1
        self._last_search_ms = (time.perf_counter() - started) * 1000.0
        return [(self._payloads[item_id], sim) for item_id, sim in ranked if item_id in self._payloads]

    async def _flat_search(
        self,
        query: np.ndarray,
        threshold: float,
        cancel: Optional[CancellationToken],
    ) -> List[Tuple[str, float]]:
        ids, matrix = self._flat.snapshot(self._vectors, self.dimension)
        hits: List[Tuple[str, float]] = []
        for start in range(0, len(ids), self.batch_size):
            if cancel is not None:
                cancel.raise_if_cancelled("vector search")
            block = matrix[start : start + self.batch_size]
            if self.metric == "cosine":
                sims = block @ query
            else:
                sims = 1.0 / (1.0 + np.linalg.norm(block - query, axis=1))
            for offset in np.nonzero(sims >= threshold)[0]:
                hits.append((ids[start + int(offset)], float(sims[offset])))
            if start + self.batch_size < len(ids):
                await asyncio.sleep(0)
        return hits

    async def find_similar(
        self,
        item_id: str,
        k: int = 10,
        threshold: float = 0.0,
    ) -> List[Tuple[Any, float]]:
        """Neighbours of an already indexed item, excluding the item itself."""
        vector = self._vectors.get(item_id)
        if vector is None:
            return []
        return await self.search(vector, k, threshold, exclude=[item_id])

    def stats(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "backend": self.backend_name,
            "metric": self.metric,
            "dimension": self.dimension,
            "total_vectors": len(self._vectors),
            "available": self._available,
            "searches": self._searches,
            "last_search_ms": self._last_search_ms,
            "memory_bytes": sum(v.nbytes for v in self._vectors.values()),
        }
        if self._hnsw is not None:
            data["deleted"] = self._hnsw.deleted
        return data


__all__ = ["VectorIndex", "METRICS", "BACKENDS"]
