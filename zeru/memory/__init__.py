"""Memory module: tenant- and user-scoped facts with vector search.

Public API: MemoryStore + schema types from schemas.py.
"""

from zeru.memory.embeddings import EmbeddingClientCache, EmbeddingProvider, EmbeddingUnavailableError
from zeru.memory.schemas import (
    MemoryCategory,
    MemoryDetail,
    MemoryInput,
    MemoryScope,
    MemoryUpdate,
)
from zeru.memory.store import MemoryNotFoundError, MemoryStore

__all__ = [
    "MemoryStore",
    "MemoryNotFoundError",
    # Embeddings
    "EmbeddingClientCache",
    "EmbeddingProvider",
    "EmbeddingUnavailableError",
    # Type aliases
    "MemoryCategory",
    "MemoryScope",
    # DTOs
    "MemoryDetail",
    "MemoryInput",
    "MemoryUpdate",
]
