"""Shared-secret checks for the client and admin tiers."""

from __future__ import annotations

import logging
from hmac import compare_digest
from typing import Optional

from .errors import CapabilityUnconfigured, Unauthorized

logger = logging.getLogger(__name__)

CLIENT_KEY_HEADER = "x-widget-api-key"
ADMIN_KEY_HEADER = "x-admin-api-key"


class CredentialGate:
    """Compare presented secrets against the configured ones.

    The byte comparison is constant time. A length mismatch returns early,
    which leaks only the secret's length.
    """

    def __init__(self, client_secret: str, admin_secret: Optional[str] = None) -> None:
        self._client_secret = client_secret
        self._admin_secret = admin_secret or None

    @property
    def admin_configured(self) -> bool:
        return self._admin_secret is not None

    @staticmethod
    def verify(presented: Optional[str], expected: Optional[str]) -> bool:
        if not presented or not expected:
            return False
        received = presented.encode("utf-8")
        wanted = expected.encode("utf-8")
        if len(received) != len(wanted):
            return False
        return compare_digest(received, wanted)

    def require_client(self, presented: Optional[str]) -> None:
        if not self.verify(presented, self._client_secret):
            logger.warning("Rejected chat request with missing or invalid client key")
            raise Unauthorized()

    def require_admin(self, presented: Optional[str]) -> None:
        if not self.admin_configured:
            logger.warning("Admin key not configured; rejecting admin request")
            raise CapabilityUnconfigured()
        if not self.verify(presented, self._admin_secret):
            logger.warning("Rejected admin request with missing or invalid admin key")
            raise Unauthorized()


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer`` header, if any."""
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip() or None
    return None
