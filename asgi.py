"""
asgi.py -- Application assembly for CrossAuth.

The ASGI server imports the app from here, never from api/main.py directly,
so deployment configuration names one stable module path.

Run with:  uvicorn asgi:app --reload
           python main.py serve
"""

from api.main import app

__all__ = ["app"]
