"""Wire protocol for the terminal socket.

Public API:
    encode -- Frame to JSON text
    decode -- JSON text to Frame, raising DecodeError
    try_decode -- JSON text to Frame or DecodeError
    OutputDecoder -- incremental bytes-to-text for remote output
"""

from termrelay.protocol.codec import OutputDecoder, decode, encode, try_decode

__all__ = ["OutputDecoder", "decode", "encode", "try_decode"]
