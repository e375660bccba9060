"""
asgi.py -- ASGI entry point for Gatehouse.

Run with:  uvicorn asgi:app --reload

Embedding applications import `app` from here and include their own auth
routers; the guards in auth/dependencies.py find the AuthService on
app.state once the lifespan has run.
"""

from api.main import app

__all__ = ["app"]
