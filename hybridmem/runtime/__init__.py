"""Runtime subsystems."""

__all__ = ["memory"]
