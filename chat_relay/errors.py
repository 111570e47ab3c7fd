"""Error taxonomy shared by the relay components.

Every error carries the HTTP status it maps to and a public message that is
safe to send to clients. Internal detail goes to the logs, never outward.
"""

from __future__ import annotations

from typing import Any, Optional


class RelayError(Exception):
    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.public_message)


class RateLimited(RelayError):
    status_code = 429
    public_message = "Too many requests"

    def __init__(self, retry_after: int = 1) -> None:
        super().__init__()
        self.retry_after = max(1, int(retry_after))


class Unauthorized(RelayError):
    status_code = 401
    public_message = "Unauthorized"


class CapabilityUnconfigured(RelayError):
    status_code = 503
    public_message = "Admin access is not configured"


class InvalidInput(RelayError):
    status_code = 400
    public_message = "Invalid request payload"

    def __init__(self, message: Optional[str] = None, *, details: Any = None) -> None:
        super().__init__(message)
        self.details = details


class NotFound(RelayError):
    status_code = 404
    public_message = "Not found"


class UpstreamFailure(RelayError):
    """The completion API answered with a non-2xx status or without a readable body."""


class StoreError(RelayError):
    """A conversation store call failed."""


class StoreArgumentError(StoreError):
    """The store refused the call's arguments, e.g. an id of the wrong table."""


class Internal(RelayError):
    pass
