"""
Error Taxonomy

Every engine failure derives from MnemosError and names the invariant it
protects, so user-facing messages read ``[invariant] message`` rather
than a stack trace.

    MnemosError
    ├── ValidationError (ValueError)      malformed / out-of-range fields
    │   ├── SchemaViolation               variant field missing or unknown type
    │   ├── MissingEvidence               self-schema element without memory backing
    │   ├── WeakeningNotAllowed           weakening while allow_weakening is off
    │   ├── IntegrityError                snapshot checksum mismatch
    │   └── ConfigError                   configuration out of range
    ├── InvalidIdentifier (ValueError)    id cannot be decoded
    ├── InvalidQuery (ValueError)         malformed retrieval criteria
    ├── ReconsolidationError              lability window protocol violations
    │   ├── NoActiveLabilityWindow
    │   └── WindowAlreadyOpen
    ├── MemoryNotFound (LookupError)
    ├── SchemaNotInitialized (LookupError)  no self-schema stored yet
    └── StorageFailure                    persistence I/O error (never retried here)
"""

from __future__ import annotations

from typing import Optional


class MnemosError(Exception):
    """Base class for all engine errors."""

    invariant: str = "engine"

    def __init__(self, message: str, invariant: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if invariant is not None:
            self.invariant = invariant

    def __str__(self) -> str:
        return f"[{self.invariant}] {self.message}"


class ValidationError(MnemosError, ValueError):
    """Malformed or out-of-range entity fields."""

    invariant = "validation"


class SchemaViolation(ValidationError):
    """A value is inconsistent with its ``type`` discriminant."""

    invariant = "schema"


class MissingEvidence(ValidationError):
    """A self-schema element does not cite any memory."""

    invariant = "evidence-required"


class WeakeningNotAllowed(ValidationError):
    """An update lowers importance or confidence while weakening is disabled."""

    invariant = "allow-weakening"


class IntegrityError(ValidationError):
    """Snapshot contents do not match their recorded checksum."""

    invariant = "snapshot-checksum"


class ConfigError(ValidationError):
    """Configuration values are out of range."""

    invariant = "config"


class InvalidIdentifier(MnemosError, ValueError):
    """An id string cannot be decoded."""

    invariant = "identifier-format"


class InvalidQuery(MnemosError, ValueError):
    """Retrieval criteria are malformed."""

    invariant = "query-criteria"


class ReconsolidationError(MnemosError):
    """Lability window protocol violation."""

    invariant = "lability-window"


class NoActiveLabilityWindow(ReconsolidationError):
    """Mutation attempted on a memory with no open window."""

    invariant = "mutation-requires-open-window"


class WindowAlreadyOpen(ReconsolidationError):
    """A second window was requested for an already labile memory."""

    invariant = "single-open-window"


class MemoryNotFound(MnemosError, LookupError):
    """No memory with the given id exists (not even as a tombstone)."""

    invariant = "memory-exists"


class StorageFailure(MnemosError):
    """The persistence layer failed. Callers decide whether to retry."""

    invariant = "storage"


class SchemaNotInitialized(MnemosError, LookupError):
    """No self-schema has been stored for this agent yet."""

    invariant = "self-schema-initialized"
