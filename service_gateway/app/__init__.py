"""
Access Gateway service package.

The gateway fronts client requests, enforcing:
- Authentication: short-lived access tokens, rotated refresh tokens
- Revocation: refresh-token records in a shared revocation store
- Rate limiting: fixed/sliding windows per scope, tier and key

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.tokens: Token service, revocation stores and the expiry sweeper.
- app.ratelimit: Limiter engine, counter stores and scope policies.
- app.adapters: HTTP clients (identity service, refresh-aware caller).
- app.domain: Per-request gateway middleware.
"""
