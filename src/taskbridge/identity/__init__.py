"""
Identity layer.

Components:
- tokens.py: ordered bearer-token verification strategies (key set, shared secret)
- linking.py: federated subject -> internal User (link by subject, then email)
- resolver.py: credential material -> AuthenticatedPrincipal
- sessions.py: local password accounts and server-side sessions
"""
