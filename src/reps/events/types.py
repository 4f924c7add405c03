"""Event type constants.

Learn: Centralizing event types as constants prevents typos and
makes it easy to discover all event types in the system.
Event payloads carry ids only — never a token, code or link.
"""

# ─── Accounts ────────────────────────────────────────────

USER_REGISTERED = "user.registered"
USER_EMAIL_VERIFIED = "user.email_verified"
USER_UPDATED = "user.updated"
USER_ADMIN_UPDATED = "user.admin_updated"

# ─── Sessions ────────────────────────────────────────────

SESSION_CREATED = "session.created"
SESSION_REVOKED = "session.revoked"
SESSIONS_REVOKED_ALL = "session.revoked_all"

# ─── Magic links ─────────────────────────────────────────

MAGIC_LINK_REQUESTED = "magic_link.requested"
MAGIC_LINK_REDEEMED = "magic_link.redeemed"

# ─── Device authorization ────────────────────────────────

DEVICE_AUTH_INITIATED = "device_auth.initiated"
DEVICE_AUTH_APPROVED = "device_auth.approved"
DEVICE_AUTH_DENIED = "device_auth.denied"
DEVICE_AUTH_DELIVERED = "device_auth.delivered"
