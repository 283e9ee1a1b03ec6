"""HTTP and WebSocket surface for the record store and broadcast hub."""

from .app import create_app

__all__ = ["create_app"]
