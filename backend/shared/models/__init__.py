"""Shared data models for the cohost backend."""

from .token import Token

__all__ = [
    "Token",
]
