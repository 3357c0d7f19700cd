"""
HTTP and websocket surface of the notification service.

This package provides a FastAPI application that exposes:
- The pull API for a user's notifications
- A websocket endpoint for live pushes
- A health check with the consumer supervisor states
"""

from api.main import app, create_app

__all__ = ["app", "create_app"]
