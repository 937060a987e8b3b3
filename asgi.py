"""
asgi.py -- ASGI entry point for authcore.

Run with:  uvicorn asgi:app --reload
           uvicorn asgi:app --host 0.0.0.0 --port 8000   (behind a TLS proxy)
"""

from api.main import app

__all__ = ["app"]
