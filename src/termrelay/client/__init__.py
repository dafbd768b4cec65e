"""Client half of the terminal transport."""

from termrelay.client.adapter import TerminalClient
from termrelay.client.reconnect import ReconnectPolicy, Reconnector

__all__ = ["ReconnectPolicy", "Reconnector", "TerminalClient"]
