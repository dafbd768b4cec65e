"""Core domain models for the termrelay system.

These models represent the data flowing through the relay: protocol
frames exchanged with terminal clients, the stored connection descriptors
looked up per session, caller identities, and per-session bookkeeping.
"""

from __future__ import annotations

import enum
from typing import Annotated, Literal, NamedTuple, Union

from pydantic import BaseModel, ConfigDict, Field, SecretStr


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SessionState(str, enum.Enum):
    """Lifecycle state of a relay session."""

    OPENING = "opening"  # Remote duplex is being established
    STREAMING = "streaming"  # Both pumps are running
    CLOSING = "closing"  # Teardown in progress
    CLOSED = "closed"  # Terminal, no further operations


class AuthType(str, enum.Enum):
    """How the relay authenticates to the remote host."""

    PASSWORD = "password"
    KEY = "key"


class RejectReason(str, enum.Enum):
    """Why an incoming socket was refused a session."""

    UNAUTHENTICATED = "unauthenticated"
    NOT_OWNER = "not_owner"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"  # Relay is shutting down


# ---------------------------------------------------------------------------
# Protocol Frames (discriminated union)
# ---------------------------------------------------------------------------


class InputFrame(BaseModel):
    """Keystrokes typed by the user, forwarded verbatim to the remote shell."""

    model_config = ConfigDict(frozen=True, strict=True, extra="forbid")

    type: Literal["input"] = "input"
    data: str = Field(description="Raw terminal input")


class ResizeFrame(BaseModel):
    """New terminal geometry reported by the client."""

    model_config = ConfigDict(frozen=True, strict=True, extra="forbid")

    type: Literal["resize"] = "resize"
    cols: int = Field(gt=0, le=65535, description="Terminal width in columns")
    rows: int = Field(gt=0, le=65535, description="Terminal height in rows")


class OutputFrame(BaseModel):
    """Screen output read from the remote shell."""

    model_config = ConfigDict(frozen=True, strict=True, extra="forbid")

    type: Literal["output"] = "output"
    data: str = Field(description="Raw terminal output")


class StatusFrame(BaseModel):
    """Human-readable lifecycle notice (connecting, connected, disconnected)."""

    model_config = ConfigDict(frozen=True, strict=True, extra="forbid")

    type: Literal["status"] = "status"
    message: str


class ErrorFrame(BaseModel):
    """Human-readable error notice."""

    model_config = ConfigDict(frozen=True, strict=True, extra="forbid")

    type: Literal["error"] = "error"
    message: str


Frame = Annotated[
    Union[InputFrame, ResizeFrame, OutputFrame, StatusFrame, ErrorFrame],
    Field(discriminator="type"),
]

# Frames a client may send to the relay
CLIENT_FRAME_TYPES = (InputFrame, ResizeFrame)
# Frames the relay may send to a client
SERVER_FRAME_TYPES = (OutputFrame, StatusFrame, ErrorFrame)


# ---------------------------------------------------------------------------
# Identity / Credential Models
# ---------------------------------------------------------------------------


class Identity(BaseModel):
    """An authenticated caller, as established by token validation."""

    model_config = ConfigDict(frozen=True)

    user_id: int = Field(description="Stable user identifier")
    email: str | None = Field(default=None)


class ConnectionDescriptor(BaseModel):
    """A stored remote host and the credentials used to reach it.

    Owned by the credential store; the relay only ever reads it.
    """

    model_config = ConfigDict(frozen=True)

    id: int = Field(description="Connection identifier")
    user_id: int = Field(description="Owning user")
    name: str = Field(default="")
    host: str = Field(description="Remote host name or address")
    port: int = Field(default=22, ge=1, le=65535)
    username: str
    auth_type: AuthType = Field(default=AuthType.PASSWORD)
    password: SecretStr | None = Field(default=None)
    private_key: SecretStr | None = Field(default=None)

    @property
    def address(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


# ---------------------------------------------------------------------------
# Session Models
# ---------------------------------------------------------------------------


class TerminalGeometry(BaseModel):
    """Terminal size in character cells."""

    model_config = ConfigDict(frozen=True)

    cols: int = Field(default=80, gt=0)
    rows: int = Field(default=24, gt=0)


class SessionKey(NamedTuple):
    """Registry key: one live session per (connection, client socket)."""

    connection_id: int
    client_id: str


class SessionInfo(BaseModel):
    """Snapshot of a live session for reporting."""

    connection_id: int
    client_id: str
    user_id: int
    state: SessionState
    cols: int
    rows: int
