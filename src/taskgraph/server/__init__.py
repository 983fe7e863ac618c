"""HTTP surface for the task graph."""

from .api import create_app

__all__ = ["create_app"]
