"""Spectre stats chat bot for Twitch."""

__version__ = "1.0.0"
