"""Audit event type constants.

Learn: Centralizing event types as constants prevents typos and
makes it easy to discover everything the audit log can contain.
"""

# ─── Registration ────────────────────────────────────────

USER_REGISTERED = "user.registered"
CREDENTIAL_REGISTERED = "credential.registered"

# ─── Authentication ──────────────────────────────────────

CREDENTIAL_AUTHENTICATED = "credential.authenticated"

# ─── Account management ──────────────────────────────────

CREDENTIAL_REVOKED = "credential.revoked"
PREFERENCES_UPDATED = "account.preferences_updated"
