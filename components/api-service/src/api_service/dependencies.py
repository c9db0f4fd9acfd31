"""FastAPI dependencies for shared resources."""

from __future__ import annotations

from fastapi import Header
from protocol_core.config import CoreConfig

from .storage import Storage, get_engine


def get_storage() -> Storage:
    """Provide a storage instance for request handlers."""
    return Storage(get_engine())


def get_core_config() -> CoreConfig:
    """Provide scheduling configuration read from the environment."""
    return CoreConfig.from_env()


def get_operator_id(
    x_operator_id: str | None = Header(default=None, alias="X-Operator-ID"),
) -> str | None:
    """Extract the acting operator's ID from request headers."""
    return x_operator_id
