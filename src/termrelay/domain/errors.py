"""Exception hierarchy for the relay.

Each error maps to one way a terminal session can fail, and each is
handled at a single place: accept-time errors by the session registry,
remote errors by the relay session, decode errors by whichever pump read
the bad frame.
"""

from __future__ import annotations

from termrelay.domain.models import RejectReason


class RelayError(Exception):
    """Base class for all relay errors."""


class AuthRejected(RelayError):
    """The identity token is missing, malformed, expired or forged."""


class NotOwner(RelayError):
    """The caller does not own the requested connection."""


class ConnectionNotFound(RelayError):
    """No stored connection exists with the requested id."""


class RemoteUnreachable(RelayError):
    """The remote host could not be reached or timed out."""


class RemoteAuthFailed(RelayError):
    """The remote host rejected the stored credentials."""


class RelayIOError(RelayError):
    """A read or write failed on an established session."""


class DecodeError(RelayError):
    """A wire payload is not a valid frame."""

    def __init__(self, message: str, raw: str | bytes | None = None) -> None:
        super().__init__(message)
        self.raw = raw


class ProtocolMisuse(RelayError):
    """A frame was addressed to a session that is not live."""


class Rejected(RelayError):
    """An accept attempt was refused before any session was created."""

    def __init__(self, reason: RejectReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason
