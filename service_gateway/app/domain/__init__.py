"""
Domain utilities for the Gateway Service.

Holds the per-request middleware that ties the rate limiter and the token
service together in front of the route handlers.
"""

from .gateway_middleware import GatewayMiddleware

__all__ = [
    "GatewayMiddleware",
]
