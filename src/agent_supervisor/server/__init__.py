"""HTTP/websocket surface for observing the supervisor."""

from .api import create_app

__all__ = ["create_app"]
