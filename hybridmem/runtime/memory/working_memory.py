"""
Working Memory - Bounded, session-scoped scratchpad with attention

WHAT: Capacity-limited set of working memory nodes per session
WHERE: hybridmem/runtime/memory/working_memory.py - on top of GraphStore
WHO: Orchestrator (store with memory_type=working), agents managing focus
TIME: One or two graph round trips per operation

Items are ordinary memory nodes with ``memory_type=working`` and the
session's id. Before an add would exceed ``max_items`` the lowest-scored
unfocused items are evicted (importance, then priority, then least recently
accessed). Focused items are never evicted. ``promote`` moves an item to
long-term memory and it stops counting against capacity.

One instance serves every session: operations take an explicit
``session_id`` and fall back to the default ``session_id`` when given none.
Focus sets are kept per session.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from ...errors import NotFoundError, ValidationError
from .graph_store import GraphStore
from .models import GraphQueryResult, MemoryNode, MemoryType, utc_now

logger = logging.getLogger(__name__)

WORKING_TAG = "working"
FOCUS_BOOST = 0.2
FOCUS_CEILING = 0.8
PROMOTION_BOOST = 1.5


class WorkingMemory:
    def __init__(
        self,
        store: GraphStore,
        *,
        session_id: Optional[str] = None,
        max_items: int = 20,
        eviction_ratio: float = 0.2,
        on_delete: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> None:
        if max_items <= 0:
            raise ValidationError("max_items must be positive")
        self.store = store
        self.max_items = max_items
        self.eviction_ratio = eviction_ratio
        self._session_id = session_id or str(uuid.uuid4())
        self._focus: Dict[str, Set[str]] = {}
        self._add_locks: Dict[str, asyncio.Lock] = {}
        self._on_delete = on_delete

    @property
    def session_id(self) -> str:
        """Session used when an operation is not given one."""
        return self._session_id

    def use_session(self, session_id: str) -> None:
        self._session_id = session_id

    def _session(self, session_id: Optional[str]) -> str:
        return session_id or self._session_id

    def _focused(self, session: str) -> Set[str]:
        return self._focus.setdefault(session, set())

    async def _items(self, session: str) -> List[MemoryNode]:
        return await self.store.memory_nodes(memory_types=[MemoryType.WORKING], session_id=session)

    async def _working_item(self, item_id: str, session: str) -> MemoryNode:
        node = await self.store.get(item_id, touch=False)
        if (
            not isinstance(node, MemoryNode)
            or node.memory_type != MemoryType.WORKING
            or node.session_id != session
        ):
            raise NotFoundError(f"{item_id} is not in working memory for session {session}")
        return node

    async def _delete(self, item_id: str) -> None:
        await self.store.delete(item_id)
        if self._on_delete is not None:
            await self._on_delete(item_id)

    async def _evict_if_needed(self, session: str) -> List[str]:
        items = await self._items(session)
        if len(items) < self.max_items:
            return []
        quota = math.ceil(self.max_items * self.eviction_ratio)
        focus = self._focused(session)
        candidates = [i for i in items if not i.focused and i.id not in focus]
        candidates.sort(key=lambda i: (i.importance, i.priority, i.accessed_at))
        evicted = []
        for item in candidates[:quota]:
            await self._delete(item.id)
            evicted.append(item.id)
        if evicted:
            logger.info(f"Evicted {len(evicted)} working memory item(s) from session {session}")
        return evicted

    async def add(
        self,
        content: str,
        priority: float = 0.5,
        *,
        importance: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
        embedding: Optional[List[float]] = None,
        session_id: Optional[str] = None,
    ) -> MemoryNode:
        session = self._session(session_id)
        # eviction and insert must not interleave with another add to the same session
        async with self._add_locks.setdefault(session, asyncio.Lock()):
            await self._evict_if_needed(session)
            node = MemoryNode(
                content=content,
                memory_type=MemoryType.WORKING,
                session_id=session,
                priority=priority,
                importance=priority if importance is None else importance,
                tags=[WORKING_TAG],
                metadata=dict(metadata or {}),
                embedding=embedding,
            )
            return await self.store.create(node)

    async def get_context(self, limit: Optional[int] = None, *, session_id: Optional[str] = None) -> List[MemoryNode]:
        """Items ordered focused first, then by priority, then most recently accessed."""
        session = self._session(session_id)
        focus = self._focused(session)
        items = await self._items(session)
        items.sort(
            key=lambda i: (i.focused or i.id in focus, i.priority, i.accessed_at),
            reverse=True,
        )
        selected = items if limit is None else items[:limit]
        # reading the context counts as an access
        touched = {n.id: n for n in await self.store.get_many([i.id for i in selected], touch=True)}
        return [touched.get(i.id, i) for i in selected]

    async def focus(self, item_ids: Iterable[str], *, session_id: Optional[str] = None) -> List[MemoryNode]:
        """Replace the focus set; newly focused priorities rise by 0.2 below 0.8, else become 1.0."""
        session = self._session(session_id)
        focus = self._focused(session)
        targets = list(dict.fromkeys(item_ids))
        for item in await self._items(session):
            if item.id not in targets and (item.focused or item.id in focus):
                await self.store.update(item.id, {"focused": False})
        focus.clear()
        focused = []
        for item_id in targets:
            node = await self._working_item(item_id, session)
            priority = node.priority + FOCUS_BOOST if node.priority < FOCUS_CEILING else 1.0
            focus.add(item_id)
            focused.append(await self.store.update(item_id, {"focused": True, "priority": min(priority, 1.0)}))
        return focused

    async def unfocus(self, item_ids: Iterable[str], *, session_id: Optional[str] = None) -> None:
        focus = self._focused(self._session(session_id))
        for item_id in item_ids:
            focus.discard(item_id)
            await self.store.update(item_id, {"focused": False})

    async def reinforce(self, item_id: str, amount: float = 0.1, *, session_id: Optional[str] = None) -> MemoryNode:
        node = await self._working_item(item_id, self._session(session_id))
        return await self.store.update(
            item_id,
            {
                "importance": min(1.0, node.importance + amount),
                "priority": min(1.0, node.priority + amount),
                "reinforcement_count": node.reinforcement_count + 1,
                "accessed_at": utc_now(),
                "access_count": node.access_count + 1,
            },
        )

    async def promote(self, item_id: str, *, session_id: Optional[str] = None) -> MemoryNode:
        """Move an item to long-term memory. Promoting a long-term node is a no-op.

        Without ``session_id`` the item is promoted from whichever session owns it.
        """
        node = await self.store.get(item_id, touch=False)
        if not isinstance(node, MemoryNode):
            raise ValidationError(f"Only memory nodes can be promoted, {item_id} is a {node.node_type}")
        if node.memory_type == MemoryType.LONG_TERM:
            return node
        if node.memory_type not in (MemoryType.WORKING, MemoryType.SHORT_TERM):
            raise ValidationError(f"Cannot promote {node.memory_type.value} memory {item_id}")
        if node.memory_type == MemoryType.WORKING:
            if session_id is not None and node.session_id != session_id:
                raise NotFoundError(f"{item_id} is not in working memory for session {session_id}")
            if node.session_id is not None:
                self._focused(node.session_id).discard(item_id)
        promoted = await self.store.update(
            item_id,
            {
                "memory_type": MemoryType.LONG_TERM,
                "importance": min(1.0, node.importance * PROMOTION_BOOST),
                "promoted_at": utc_now(),
                "focused": False,
                "tags": [t for t in node.tags if t != WORKING_TAG],
            },
        )
        logger.info(f"Promoted memory {item_id} to long-term")
        return promoted

    async def get_attention(self, *, session_id: Optional[str] = None) -> Dict[str, float]:
        """Normalised attention weights: priority x importance, doubled when focused."""
        session = self._session(session_id)
        focus = self._focused(session)
        weights = {
            i.id: i.priority * i.importance * (2.0 if (i.focused or i.id in focus) else 1.0)
            for i in await self._items(session)
        }
        total = sum(weights.values())
        if total <= 0:
            return {item_id: 0.0 for item_id in weights}
        return {item_id: w / total for item_id, w in weights.items()}

    async def retrieve(self, query: str, limit: int = 10, *, session_id: Optional[str] = None) -> GraphQueryResult:
        """Substring match over one session's items."""
        started = time.perf_counter()
        needle = query.lower().strip()
        items = [i for i in await self._items(self._session(session_id)) if needle and needle in i.content.lower()]
        items.sort(key=lambda i: (i.priority, i.importance), reverse=True)
        items = await self.store.get_many([i.id for i in items[:limit]], touch=True)
        return GraphQueryResult(
            nodes=items,
            edges=[],
            stats={
                "query_time_ms": (time.perf_counter() - started) * 1000.0,
                "total_nodes": len(items),
                "total_edges": 0,
            },
        )

    async def update(self, item_id: str, partial: Dict[str, Any], *, session_id: Optional[str] = None) -> MemoryNode:
        await self._working_item(item_id, self._session(session_id))
        return await self.store.update(item_id, partial)

    async def forget(self, item_id: str, *, session_id: Optional[str] = None) -> None:
        session = self._session(session_id)
        await self._working_item(item_id, session)
        self._focused(session).discard(item_id)
        await self._delete(item_id)

    async def clear(self, *, session_id: Optional[str] = None) -> int:
        session = self._session(session_id)
        items = await self._items(session)
        for item in items:
            await self._delete(item.id)
        self._focus.pop(session, None)
        return len(items)

    async def stats(self, *, session_id: Optional[str] = None) -> Dict[str, Any]:
        session = self._session(session_id)
        focus = self._focused(session)
        items = await self._items(session)
        count = len(items)
        return {
            "session_id": session,
            "total_items": count,
            "capacity": self.max_items,
            "utilization": count / self.max_items,
            "focused_items": sum(1 for i in items if i.focused or i.id in focus),
            "avg_priority": sum(i.priority for i in items) / count if count else 0.0,
            "avg_importance": sum(i.importance for i in items) / count if count else 0.0,
        }


__all__ = ["WorkingMemory", "WORKING_TAG"]
