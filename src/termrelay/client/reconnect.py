"""Automatic reconnection for :class:`~termrelay.client.adapter.TerminalClient`."""

from __future__ import annotations

import asyncio
import logging

from pydantic import BaseModel, ConfigDict, Field

from termrelay.client.adapter import TerminalClient
from termrelay.config.settings import ClientConfig

logger = logging.getLogger(__name__)

# Status message the relay sends once the remote shell is up
CONNECTED_STATUS = "connected"


class ReconnectPolicy(BaseModel):
    """Exponential backoff schedule."""

    model_config = ConfigDict(frozen=True)

    initial_delay: float = Field(default=1.0, gt=0)
    max_delay: float = Field(default=30.0, gt=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    max_attempts: int = Field(default=5, ge=0)

    @classmethod
    def from_config(cls, config: ClientConfig) -> ReconnectPolicy:
        return cls(
            initial_delay=config.reconnect_initial_delay,
            max_delay=config.reconnect_max_delay,
            multiplier=config.reconnect_multiplier,
            max_attempts=config.reconnect_max_attempts,
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before reconnect number ``attempt`` (0-based)."""
        return min(self.initial_delay * self.multiplier ** attempt, self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts


class Reconnector:
    """Reconnects a client after disconnects it did not ask for.

    The attempt counter resets when the relay reports the remote shell as
    connected, not merely when the socket opens, so a relay that keeps
    rejecting the client is retried at most ``max_attempts`` times.
    """

    def __init__(self, client: TerminalClient, policy: ReconnectPolicy) -> None:
        self._client = client
        self._policy = policy
        self._attempt = 0
        self._timer: asyncio.Task[None] | None = None

        client.attach_reconnector(self)
        client.subscribe("status", self._on_status)
        client.subscribe("disconnect", self._on_disconnect)

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def cancel(self) -> None:
        """Cancel a scheduled reconnect, if any."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
            logger.debug("Pending reconnect cancelled")
        self._timer = None

    def _on_status(self, message: str) -> None:
        if message == CONNECTED_STATUS:
            self._attempt = 0

    def _on_disconnect(self) -> None:
        if self._client.user_closed or self.pending:
            return
        if not self._policy.should_retry(self._attempt):
            logger.warning("Giving up after %d reconnect attempts", self._attempt)
            return
        delay = self._policy.delay_for(self._attempt)
        self._attempt += 1
        logger.info("Reconnecting in %.1fs (attempt %d/%d)", delay, self._attempt, self._policy.max_attempts)
        self._timer = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._timer = None
        await self._client.connect()
