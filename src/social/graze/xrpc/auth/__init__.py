"""
Session Managers

This package holds the three mutually exclusive authentication strategies a
client can run under. Each strategy owns the current Session (if any) and the
HTTP client lease used for calls made under that identity.

Key Components:
- base.py: SessionManager interface, leasing and disposal
- unauthenticated.py: No credentials; refresh is a no-op
- password.py: com.atproto.server.createSession / refreshSession
- oauth.py: OAuth 2.0 authorization code flow with PKCE, PAR and DPoP
- jwt.py: DPoP proofs, client assertions and PKCE helpers

Lifecycle:
1. The client facade constructs a manager for the chosen strategy
2. The manager authenticates and installs a Session, notifying the facade
3. Calls lease the manager's transport for their whole duration
4. Replacing the manager disposes the old one once its leases drain
"""
