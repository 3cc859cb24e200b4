"""
Rate limit key resolution.
"""

import hashlib
from typing import Optional

from fastapi import Request

from .policies import KeyStrategy, ScopePolicy


def get_client_address(request: Request, trust_proxy_headers: bool = False) -> str:
    """Extract the caller address; proxy headers only count behind a trusted proxy."""
    if trust_proxy_headers:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()

    return request.client.host if request.client else "unknown"


def resolve_key(request: Request, policy: ScopePolicy, subject_id: Optional[str] = None,
                trust_proxy_headers: bool = False) -> str:
    """Derive the key a request is counted under within its scope."""
    if policy.key_strategy == KeyStrategy.API_KEY:
        api_key = request.headers.get("X-API-Key")
        if api_key:
            digest = hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:32]
            return f"apikey:{digest}"

    if policy.key_strategy == KeyStrategy.AUTO and subject_id:
        return f"sub:{subject_id}"

    return f"ip:{get_client_address(request, trust_proxy_headers)}"
