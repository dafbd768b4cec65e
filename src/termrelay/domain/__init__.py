"""Domain models for termrelay.

This package contains the protocol frames, session bookkeeping types and
the error taxonomy used throughout the relay. All models use Pydantic v2
for validation and serialization.
"""

from termrelay.domain.errors import (
    AuthRejected,
    ConnectionNotFound,
    DecodeError,
    NotOwner,
    ProtocolMisuse,
    Rejected,
    RelayError,
    RelayIOError,
    RemoteAuthFailed,
    RemoteUnreachable,
)
from termrelay.domain.models import (
    AuthType,
    ConnectionDescriptor,
    ErrorFrame,
    Frame,
    Identity,
    InputFrame,
    OutputFrame,
    RejectReason,
    ResizeFrame,
    SessionKey,
    SessionState,
    StatusFrame,
    TerminalGeometry,
)

__all__ = [
    "AuthRejected",
    "AuthType",
    "ConnectionDescriptor",
    "ConnectionNotFound",
    "DecodeError",
    "ErrorFrame",
    "Frame",
    "Identity",
    "InputFrame",
    "NotOwner",
    "OutputFrame",
    "ProtocolMisuse",
    "RejectReason",
    "Rejected",
    "RelayError",
    "RelayIOError",
    "RemoteAuthFailed",
    "RemoteUnreachable",
    "ResizeFrame",
    "SessionKey",
    "SessionState",
    "StatusFrame",
    "TerminalGeometry",
]
