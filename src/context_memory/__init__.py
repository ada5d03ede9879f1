"""
Context memory engine.

Two halves:
- ``context_memory.context``: token-budgeted selection of context entries
  for a model prompt
- ``context_memory.memory``: conversation history with compression into
  summaries, plus long-term memories mined from past sessions

``create_app`` wires every component into one ``MemoryApp``.
"""

from .app import MemoryApp, create_app
from .config import CompressionConfig, ContextConfig, MemoryConfig, ScorerConfig
from .errors import (
    ContextMemoryError,
    NotInitializedError,
    PersistenceError,
    RemoteCallError,
    ValidationError,
)

__version__ = "0.1.0"

__all__ = [
    "CompressionConfig",
    "ContextConfig",
    "ContextMemoryError",
    "MemoryApp",
    "MemoryConfig",
    "NotInitializedError",
    "PersistenceError",
    "RemoteCallError",
    "ScorerConfig",
    "ValidationError",
    "create_app",
]
