"""
Error taxonomy for the knowledge point core.

Every failure the repository or reconciliation layer can surface maps to one
of these types so callers can decide between "show a retry affordance",
"queue for the next sync" and "report a bug".
"""

from __future__ import annotations


class LinkerError(Exception):
    """Base class for all knowledge point core errors."""
    pass


class IdentityUnresolvable(LinkerError):
    """Raised when a record has no identifier and no usable correct phrase."""
    pass


class LocalPersistenceFailure(LinkerError):
    """Raised when the on-device store could not complete a write or read."""
    pass


class KnowledgePointNotFound(LinkerError):
    """Raised when an effective ID does not match any known record."""

    def __init__(self, effective_id: str):
        super().__init__(f"Knowledge point not found: {effective_id}")
        self.effective_id = effective_id


class GuestLimitReached(LinkerError):
    """Raised when a guest tries to keep more points than the on-device cap."""

    def __init__(self, limit: int):
        super().__init__(f"Guest mode keeps at most {limit} knowledge points")
        self.limit = limit


class ActionRequiresSync(LinkerError):
    """Raised when a cloud-only action targets a point not yet promoted."""
    pass


class RemoteError(LinkerError):
    """Base class for remote store failures."""
    pass


class RemoteRejected(RemoteError):
    """The server refused the request (validation, auth, missing record)."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"Remote store rejected request ({status_code}): {message}")
        self.status_code = status_code
        self.message = message


class RemoteUnreachable(RemoteError):
    """Transport failure, timeout or a 5xx answer from the server."""
    pass
