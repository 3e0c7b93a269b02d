"""HTTP API for positionflow."""

from .app import create_app

__all__ = ["create_app"]
