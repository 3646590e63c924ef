"""Periodic heartbeat for the gateway connection.

Runs as its own asyncio task alongside the read loop. Each pulse carries the
last seen sequence number. If no HEARTBEAT_ACK arrived since the previous
pulse the connection is treated as stale: the scheduler calls the stale hook
(which tears the socket down for a resume) and stops.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from websockets.exceptions import ConnectionClosed

logger = logging.getLogger("discordflow.gateway.heartbeat")


class HeartbeatScheduler:
    """Send op 1 every `interval` seconds and watch for op 11."""

    def __init__(
        self,
        interval: float,
        send: Callable[[Optional[int]], Awaitable[None]],
        sequence: Callable[[], Optional[int]],
        on_stale: Callable[[], Awaitable[None]],
    ):
        """
        Args:
            interval: Seconds between pulses (HELLO heartbeat_interval / 1000).
            send: Coroutine sending one heartbeat frame with the given sequence.
            sequence: Returns the last seen sequence number (None before any).
            on_stale: Coroutine invoked once when an ack is missed.
        """
        self.interval = interval
        self._send = send
        self._sequence = sequence
        self._on_stale = on_stale

        self._task: Optional[asyncio.Task] = None
        self._acked = True
        self.stale = False
        self.pulses_sent = 0
        self.acks_received = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="gateway-heartbeat")
        logger.debug(f"Heartbeat started (interval={self.interval:.3f}s)")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def ack(self) -> None:
        self._acked = True
        self.acks_received += 1

    async def beat(self) -> None:
        """Send a pulse now."""
        sequence = self._sequence()
        self._acked = False
        await self._send(sequence)
        self.pulses_sent += 1
        logger.debug(f"Heartbeat sent (seq={sequence})")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)

            if not self._acked:
                self.stale = True
                logger.warning(
                    f"No heartbeat ack within {self.interval:.1f}s - connection is stale"
                )
                try:
                    await self._on_stale()
                except Exception as e:
                    logger.error(f"Stale connection hook failed: {e}")
                return

            try:
                await self.beat()
            except ConnectionClosed as e:
                logger.debug(f"Heartbeat stopped, socket closed: {e}")
                return
