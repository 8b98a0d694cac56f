"""
Engine service for certroute.
Owns the registrar, certificate lifecycle manager and host probe for the
lifetime of the process.
"""

from .engine_service import (
    EngineService,
    get_engine_service,
    initialize_engine_service,
    cleanup_engine_service,
    set_engine_service,
)

__all__ = [
    "EngineService",
    "get_engine_service",
    "initialize_engine_service",
    "cleanup_engine_service",
    "set_engine_service",
]
