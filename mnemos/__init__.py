"""
mnemos — Agent memory with provenance, reconsolidation and a self-schema.

One SQLite + WAL database holds the memories, their append-only history,
the lability windows opened by recall, and the agent's model of itself.
"""

__version__ = "0.1.0"

from mnemos.types import (
    Memory,
    MemoryLink,
    ProvenanceEntry,
    ReconsolidationEvent,
    RetrievalContext,
    episodic,
    procedural,
    semantic,
)
from mnemos.errors import MnemosError
from mnemos.store import MemoryStore, SCHEMA_VERSION
from mnemos.config import EngineConfig, load_config
from mnemos.retrieval import QueryCriteria
from mnemos.engine import MemoryEngine

__all__ = [
    "__version__",
    "Memory",
    "MemoryLink",
    "ProvenanceEntry",
    "ReconsolidationEvent",
    "RetrievalContext",
    "episodic",
    "procedural",
    "semantic",
    "MnemosError",
    "MemoryStore",
    "SCHEMA_VERSION",
    "EngineConfig",
    "load_config",
    "QueryCriteria",
    "MemoryEngine",
]
