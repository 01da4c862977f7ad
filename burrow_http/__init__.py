"""HTTP binding for the Burrow sessions service."""

from .app import create_sessions_http_app

__all__ = ["create_sessions_http_app"]
