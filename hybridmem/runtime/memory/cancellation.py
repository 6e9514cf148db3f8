"""Cooperative cancellation for long-running scans and background loops."""

from __future__ import annotations

import asyncio
from typing import Optional

from ...errors import OperationCancelledError


class CancellationToken:
    """Flag checked between batches; ``wait`` doubles as an interruptible sleep."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self, what: str = "operation") -> None:
        if self._event.is_set():
            raise OperationCancelledError(f"{what} cancelled")

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


__all__ = ["CancellationToken"]
