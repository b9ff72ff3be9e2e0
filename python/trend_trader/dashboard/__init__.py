"""Trend Trader diagnostics dashboard."""

from .api import create_app, serve_dashboard

__all__ = ["create_app", "serve_dashboard"]
