"""HTTP endpoints for the messenger."""

__all__ = []
