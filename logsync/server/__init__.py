"""HTTP endpoints for log channels and repository replication.

Serves the line-based log protocol and the replication queries using
FastAPI. Run with uvicorn (``python -m logsync serve``).
"""

from .app import create_app

__all__ = ["create_app"]
