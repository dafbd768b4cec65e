"""termrelay -- WebSocket relay for interactive remote terminals.

This package implements the transport between a browser-side terminal
emulator and a remote shell: a small JSON frame protocol, a per-socket
relay session that pumps bytes between the WebSocket and an SSH (or local
pty) channel, a registry that keeps one live session per connection and
client, and a client adapter that speaks the same protocol.
"""

__version__ = "0.1.0"
