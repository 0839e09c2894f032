"""kubephase HTTP API.

Exposes:
    create_app -- FastAPI application factory.
"""

from kubephase.api.app import create_app

__all__ = ["create_app"]
