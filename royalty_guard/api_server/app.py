"""
FastAPI/ASGI application entrypoint.

Run with: uvicorn royalty_guard.api_server.app:app --host 0.0.0.0 --port 8000
"""

from royalty_guard.api_server.server import app

__all__ = ["app"]
