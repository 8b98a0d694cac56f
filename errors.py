"""
Typed errors raised by the provisioning engine.

Each error carries a stable ``kind`` string and a ``retryable`` flag so the
HTTP layer (or any other caller) can tell a caller mistake from a provider
outage without parsing messages.
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base class for every error the engine raises on purpose."""

    kind = "internal"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "kind": self.kind,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(EngineError):
    """Malformed input (label, port, server type). Not retryable."""

    kind = "validation"


class CredentialError(EngineError):
    """Missing or rejected DNS-provider credentials. Caller must reconfigure."""

    kind = "credential"


class ExternalTransientError(EngineError):
    """Network failure or timeout talking to an external system."""

    kind = "external_transient"
    retryable = True


class ExternalPermanentError(EngineError):
    """An external system rejected the request for a non-transient reason."""

    kind = "external_permanent"


class DNSRecordAbsentError(ExternalPermanentError):
    """The DNS provider reports that the record to delete does not exist."""

    kind = "dns_record_absent"


class NotFoundError(EngineError):
    """Referenced record id is unknown."""

    kind = "not_found"


class ConflictError(EngineError):
    """Operation is not valid for the record's current state."""

    kind = "conflict"


class StorageError(EngineError):
    """Local persistence failure (IO, serialization)."""

    kind = "storage"
