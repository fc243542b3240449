"""
asgi.py -- ASGI entry point for Keyhold.

Run with:  uvicorn asgi:app --reload

The login page behind LOGIN_URL is served by a separate front end; this
process only exposes the JSON API and the OAuth endpoints.
"""

from api.main import app

__all__ = ["app"]
