"""
asgi.py -- Application assembly for the Shepherd identity service.

Keeps the server entry point separate from api/main.py so deployment tooling
has one stable import path.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
