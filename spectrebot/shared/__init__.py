"""Shared persistence layer for the Spectre bot."""
