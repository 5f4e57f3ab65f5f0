"""
asgi.py -- Application assembly for Community Poll Hub.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
