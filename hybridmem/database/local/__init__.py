"""In-process backing client."""

from .memory_client import LocalGraphClient

__all__ = ["LocalGraphClient"]
