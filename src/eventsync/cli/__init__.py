"""Command-line interface for eventsync."""

from .main import cli

__all__ = ["cli"]
