"""Core modules for the Spectre bot: config, logging and the session lifecycle."""

from .config import BROADCASTER_SCOPES, Settings, get_settings
from .errors import ConnectFailed, RefreshFailed, SessionError, StoreError, ValidationFailed
from .logging import setup_logging

__all__ = [
    # Settings
    "get_settings",
    "Settings",
    "BROADCASTER_SCOPES",
    # Setup functions
    "setup_logging",
    # Errors
    "SessionError",
    "RefreshFailed",
    "ValidationFailed",
    "ConnectFailed",
    "StoreError",
]
