"""Shared data models for the Spectre bot."""

from .account import Account, TokenGrant, normalize_username

__all__ = [
    "Account",
    "TokenGrant",
    "normalize_username",
]
