"""
VPS Billing - API Module

FastAPI server hosting the embedded billing scheduler and the read-only
status and billing history endpoints.
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
