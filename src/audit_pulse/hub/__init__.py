"""
Development notification hub.

A small FastAPI websocket server that plays the audit backend's role for
local runs and demos.
"""

from .server import NotificationHub, notification_hub

__all__ = [
    "NotificationHub",
    "notification_hub",
]
