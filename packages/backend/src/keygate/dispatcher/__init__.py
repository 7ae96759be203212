"""RPC dispatch — operation catalog plus the authenticate/rate-limit gate.

Learn: Two surfaces share one dispatcher. The ceremony surface carries the
unauthenticated WebAuthn steps; the API surface carries everything that
needs a session token.
"""
