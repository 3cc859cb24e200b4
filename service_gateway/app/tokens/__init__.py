"""
Session token package for the Gateway.

Issues, verifies, rotates and revokes access/refresh token pairs. Refresh
tokens are backed by a revocation store; access tokens are self-contained.
"""
