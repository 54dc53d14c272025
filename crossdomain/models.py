"""
crossdomain/models.py -- Transfer token dataclass.

Layer rule: no imports from api/, sessions/, or monitor/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class TransferToken:
    """Short-lived credential carrying a provider session from one origin to the other.

    issued_at: when the store minted it (TTL is measured from here).
    expires_at: the provider session's own expiry, copied at issuance. A token
        is dead once either the TTL or this expiry has passed.
    """

    id: str
    access_handle: str
    refresh_handle: str
    issued_at: float
    expires_at: float
    source_domain: str
    subject_user_id: str
    session_id: str | None = None
