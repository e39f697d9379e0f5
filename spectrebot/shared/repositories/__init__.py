"""Shared repository layer for the Spectre bot."""

from .account import AccountRepository, AccountStore

__all__ = [
    "AccountRepository",
    "AccountStore",
]
