"""
Rate limiting package for the Gateway.

Holds the window-based limiter engine, its counter stores (in-memory and
Redis) and the scope/tier policy models.
"""
