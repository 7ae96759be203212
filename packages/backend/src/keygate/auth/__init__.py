"""Authentication primitives.

Learn: Two halves:
1. Proving identity → WebAuthn ceremonies (webauthn.py verifies the
   authenticator's responses with py_webauthn)
2. Carrying identity → short-lived JWT session tokens (jwt.py)

dependencies.py turns an Authorization header into a CurrentIdentity.
"""
