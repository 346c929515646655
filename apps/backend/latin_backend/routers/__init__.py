"""Router package exports."""

from . import ai, config, health, review, sessions, vocabulary

__all__ = [
    "ai",
    "config",
    "health",
    "review",
    "sessions",
    "vocabulary",
]
