"""
API Routers
===========

HTTP endpoints served alongside the relay WebSocket.
"""

from .relay import router as relay_router

__all__ = ["relay_router"]
