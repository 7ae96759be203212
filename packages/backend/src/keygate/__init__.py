"""Keygate — passkey authentication gateway.

Registers and re-authenticates clients with WebAuthn credentials, issues
short-lived session tokens, and gates authenticated RPC operations behind
token verification and per-operation rate limits.
"""

__version__ = "0.1.0"
