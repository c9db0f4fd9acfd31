"""Protocol definitions, step scheduling and the assignment state machine."""

from protocol_core.config import CoreConfig
from protocol_core.errors import (
    ConcurrencyConflictError,
    InvalidStateError,
    InvalidTriggerError,
    NotFoundError,
    ProtocolError,
    StoreUnavailableError,
    ValidationError,
)
from protocol_core.scheduler import compute_fire_time

__all__ = [
    "ConcurrencyConflictError",
    "CoreConfig",
    "InvalidStateError",
    "InvalidTriggerError",
    "NotFoundError",
    "ProtocolError",
    "StoreUnavailableError",
    "ValidationError",
    "compute_fire_time",
]
