"""JSON frame codec for the terminal socket.

Each WebSocket text message carries exactly one frame: a JSON object with
a ``type`` tag and type-specific fields::

    {"type": "input", "data": "ls\\n"}
    {"type": "resize", "cols": 120, "rows": 40}
    {"type": "output", "data": "total 0\\r\\n"}
    {"type": "status", "message": "connected"}
    {"type": "error", "message": "SSH connection failed: ..."}

Decoding is strict. Anything that is not exactly one known frame raises
:class:`DecodeError`; callers drop the frame and keep the session alive.
"""

from __future__ import annotations

import codecs
import logging

from pydantic import TypeAdapter, ValidationError

from termrelay.domain.errors import DecodeError
from termrelay.domain.models import Frame

logger = logging.getLogger(__name__)

_FRAME_ADAPTER: TypeAdapter[Frame] = TypeAdapter(Frame)


def encode(frame: Frame) -> str:
    """Serialize a frame to its compact JSON wire form."""
    return frame.model_dump_json()


def decode(raw: str | bytes) -> Frame:
    """Parse one wire message into a frame.

    Raises:
        DecodeError: If the payload is not valid JSON, is not an object,
            carries an unknown or missing ``type``, or has fields of the
            wrong type.
    """
    try:
        return _FRAME_ADAPTER.validate_json(raw)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<frame>'}: {err['msg']}"
            for err in e.errors()
        )
        raise DecodeError(f"Invalid frame: {details}", raw=raw) from e
    except ValueError as e:
        raise DecodeError(f"Invalid frame: {e}", raw=raw) from e


def try_decode(raw: str | bytes) -> Frame | DecodeError:
    """Like :func:`decode`, but returns the error instead of raising it."""
    try:
        return decode(raw)
    except DecodeError as e:
        return e


class OutputDecoder:
    """Turns remote byte chunks into text without splitting characters.

    A multi-byte UTF-8 sequence cut in half by a read boundary is held
    back until the next chunk completes it. Invalid bytes are replaced.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")

    def feed(self, chunk: bytes) -> str:
        return self._decoder.decode(chunk)

    def flush(self) -> str:
        return self._decoder.decode(b"", final=True)
