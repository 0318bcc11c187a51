"""
Long-running process: component wiring and the HTTP surface.
"""

from .app import create_app
from .runtime import EventSyncService, configure_logging, log_event

__all__ = ["EventSyncService", "configure_logging", "create_app", "log_event"]
