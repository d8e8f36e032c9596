"""HTTP (Starlette/uvicorn) surface for a gateway's inbound role."""

from .app import JSONResponse, create_app, serve, status_for

__all__ = ["create_app", "serve", "status_for", "JSONResponse"]
