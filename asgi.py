"""
asgi.py -- ASGI entry point for Storegate.

Kept separate from api/main.py so process managers have one stable import
path while the application module stays free to grow.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
