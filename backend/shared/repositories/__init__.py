"""Shared repository layer for the cohost backend."""

from .kv_store import KeyValueRepository
from .token import TokenRepository

__all__ = [
    "KeyValueRepository",
    "TokenRepository",
]
