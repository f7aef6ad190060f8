"""ASGI application served by every worker process."""

from .app import create_app

__all__ = ["create_app"]
