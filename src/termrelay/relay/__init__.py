"""Server half of the terminal transport.

Public API:
    RelaySession -- per-socket state machine
    SessionRegistry -- keyed table of live sessions
    ClientChannel / WebSocketChannel -- client socket abstraction
    create_app -- FastAPI application factory
"""

from termrelay.relay.channel import ClientChannel, WebSocketChannel
from termrelay.relay.registry import SessionRegistry
from termrelay.relay.session import RelaySession

__all__ = ["ClientChannel", "RelaySession", "SessionRegistry", "WebSocketChannel", "create_app"]


def __getattr__(name: str) -> object:
    """Lazy import so the session machinery does not pull in uvicorn."""
    if name == "create_app":
        from termrelay.relay.server import create_app
        return create_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
