"""
KEYWARD REST API.

FastAPI glue over the authentication core.
"""
from .main import app, create_app

__all__ = ["app", "create_app"]
