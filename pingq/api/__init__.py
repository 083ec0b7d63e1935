"""HTTP surface for the notification pipeline."""

from pingq.api.app import create_app, main

__all__ = ["create_app", "main"]
