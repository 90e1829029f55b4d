"""HTTP surface."""

from nexus.api.app import create_app

__all__ = ["create_app"]
