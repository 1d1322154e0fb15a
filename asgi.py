"""
asgi.py -- Application assembly for the watchlist auth service.

Run with:  uvicorn asgi:app --reload

api/main.py builds the app; this module is the stable import path that process
managers and container entrypoints point at.
"""

from api.main import app

__all__ = ["app"]
