"""Router exports for FastAPI composition."""

from . import entries, health, webhooks

__all__ = ["entries", "health", "webhooks"]
