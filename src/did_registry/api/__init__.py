"""HTTP binding."""

from did_registry.api.app import create_app, serve

__all__ = ["create_app", "serve"]
