"""
FastAPI task tracker package.

Exposes the application factory and the default app instance so ASGI servers
can be pointed at `task_api:app`.
"""

from .main import app, create_app  # noqa: F401
