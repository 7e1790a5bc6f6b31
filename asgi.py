"""
asgi.py -- Application entry point for the Qualibrite security API.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
