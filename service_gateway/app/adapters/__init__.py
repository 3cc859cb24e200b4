"""
Adapters package for the Gateway Service.

- identity_client: credential and OAuth checks against the identity service
- authorized_client: caller-side helper that refreshes once on 401

Errors are mapped to shared error types; keep adapters thin.
"""

from .authorized_client import AuthorizedClient, CallResult
from .identity_client import IdentityProvider, IdentityServiceClient

__all__ = [
    "AuthorizedClient",
    "CallResult",
    "IdentityProvider",
    "IdentityServiceClient",
]
