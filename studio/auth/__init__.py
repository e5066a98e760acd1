"""
Authentication for the Studio web app.

Design goals:
- Provider-agnostic (GitHub OAuth and generic OIDC behind one handshake interface).
- Server-side sessions; the cookie only carries a signed session id.
- Explicit handshake state: pending -> authenticated | failed.
"""
