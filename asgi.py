"""
asgi.py -- Application assembly for SimpleAuth.

The server entry point. api/main.py owns the FastAPI app; this module is the
stable import path deployment tooling points at, so the app can later be
mounted under a host application without changing the process manager config.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
