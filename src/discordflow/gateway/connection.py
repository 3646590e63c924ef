"""Gateway WebSocket connection: handshake, read loop and reconnect.

Lifecycle:
    DISCONNECTED -> AWAITING_HELLO -> NEGOTIATING -> CONNECTED -> CLOSING -> CLOSED
                                                        |
                                                   RECONNECTING (op 7, op 9, stale heartbeat)

Handshake: dial -> HELLO (op 10) -> start heartbeat -> IDENTIFY (op 2) or
RESUME (op 6) -> first dispatch frame (READY for a fresh session).

The read loop is single-consumer: frames are handled strictly in arrival
order and handlers run inline. close() never waits on the read loop, so it
can be called from inside a handler.
"""

import asyncio
import logging
import random
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..errors import (
    GatewayClosedError,
    GatewayConnectError,
    GatewayProtocolError,
    GatewayReconnectError,
    GatewayStateError,
    InvalidSessionError,
)
from .dispatcher import EventDispatcher
from .events import Ready
from .frames import GatewayFrame, HelloPayload
from .heartbeat import HeartbeatScheduler
from .opcodes import GatewayEvent, GatewayOp
from .session import Session, SessionNegotiator

if TYPE_CHECKING:
    from websockets.asyncio.client import ClientConnection

logger = logging.getLogger("discordflow.gateway.connection")

# Any close code other than 1000/1001 keeps the session resumable
RESUMABLE_CLOSE_CODE = 4000
NORMAL_CLOSE_CODE = 1000


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    AWAITING_HELLO = "awaiting_hello"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"
    CLOSED = "closed"


class GatewayConnection:
    """
    Owns the gateway socket for one client.

    Features:
    - HELLO / IDENTIFY-or-RESUME handshake with per-frame deadlines
    - Heartbeat task with missed-ack detection
    - Sequence tracking (regression is fatal)
    - Reconnect + resume on op 7, fresh identify on op 9
    - Clean termination when close() is called, fatal errors otherwise
    """

    def __init__(
        self,
        gateway_url: str,
        session: Session,
        negotiator: SessionNegotiator,
        dispatcher: EventDispatcher,
        connect_timeout: float = 10.0,
        handshake_timeout: float = 30.0,
        max_message_size: int = 2**22,
        max_reconnect_attempts: int = 5,
        base_reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 60.0,
    ):
        """
        Args:
            gateway_url: wss:// URL including version and encoding query.
            session: Session state shared with the owning client.
            negotiator: Chooses and sends IDENTIFY or RESUME.
            dispatcher: Receives every dispatch frame.
            connect_timeout: Seconds allowed for the WebSocket dial.
            handshake_timeout: Seconds allowed per handshake frame read.
            max_message_size: Largest inbound frame in bytes.
            max_reconnect_attempts: Attempts per reconnect before giving up.
            base_reconnect_delay: First backoff delay in seconds (doubles per attempt).
            max_reconnect_delay: Backoff ceiling in seconds.
        """
        self.gateway_url = gateway_url
        self.session = session
        self._negotiator = negotiator
        self._dispatcher = dispatcher

        self._connect_timeout = connect_timeout
        self._handshake_timeout = handshake_timeout
        self._max_message_size = max_message_size
        self._max_reconnect_attempts = max_reconnect_attempts
        self._base_reconnect_delay = base_reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay

        self._ws: Optional["ClientConnection"] = None
        self._heartbeat: Optional[HeartbeatScheduler] = None
        self._state = ConnectionState.DISCONNECTED
        self._close_requested = False
        self._close_event: Optional[asyncio.Event] = None
        self._reconnect_pending = False

        # Health metrics
        self._connected_at: Optional[float] = None
        self._last_frame_time: Optional[float] = None
        self._frames_received = 0
        self._reconnect_count = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def heartbeat(self) -> Optional[HeartbeatScheduler]:
        return self._heartbeat

    async def connect(self) -> None:
        """Dial and handshake. Returns once CONNECTED.

        Raises:
            GatewayStateError: Already connected or connecting.
            GatewayConnectError: Dial failure or unexpected handshake frame.
        """
        if self._state not in (ConnectionState.DISCONNECTED, ConnectionState.CLOSED):
            raise GatewayStateError(f"Cannot connect while {self._state.value}")
        self._close_requested = False
        self._close_event = asyncio.Event()
        await self._open()

    async def listen(self) -> None:
        """Run the read loop until close() or a fatal error.

        Returns normally after close(). Any other read failure, protocol
        violation or handler error tears the socket down (session kept for a
        later resume) and is raised.
        """
        if self._state is not ConnectionState.CONNECTED:
            raise GatewayStateError(f"Cannot listen while {self._state.value}")

        logger.info("Listening for gateway events")
        try:
            while self._state is ConnectionState.CONNECTED:
                try:
                    raw = await self._ws.recv()
                except ConnectionClosed as e:
                    if self._close_requested:
                        break
                    if self._reconnect_pending:
                        await self._reconnect()
                        continue
                    code = e.rcvd.code if e.rcvd is not None else None
                    raise GatewayClosedError(f"Gateway connection closed: {e}", close_code=code) from e

                await self._handle_frame(GatewayFrame.parse(raw))
        except Exception as e:
            if not self._close_requested:
                logger.error(f"Gateway listener stopped: {e}")
                await self._teardown(RESUMABLE_CLOSE_CODE)
                self._transition(ConnectionState.DISCONNECTED)
            raise

        logger.info("Gateway listener finished")

    async def close(self) -> None:
        """Send a close frame and release the socket.

        Not idempotent: a second call raises GatewayStateError. Safe to call
        from a handler; the read loop exits on its next iteration. During a
        reconnect it cancels the remaining attempts, including one waiting
        out its backoff delay.
        """
        reconnecting = self._state is ConnectionState.RECONNECTING
        if not reconnecting and (self._ws is None or self._state not in (
            ConnectionState.CONNECTED,
            ConnectionState.NEGOTIATING,
            ConnectionState.AWAITING_HELLO,
        )):
            raise GatewayStateError(f"Cannot close while {self._state.value}")

        self._close_requested = True
        if self._close_event is not None:
            self._close_event.set()
        self._transition(ConnectionState.CLOSING)

        if self._heartbeat:
            await self._heartbeat.stop()
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close(code=NORMAL_CLOSE_CODE)

        # Code 1000 invalidates the session on the remote side
        self.session.reset()
        self._transition(ConnectionState.CLOSED)

    def get_health(self) -> Dict[str, Any]:
        """Health metrics for monitoring."""
        return {
            "state": self._state.value,
            "session_id": self.session.session_id,
            "sequence": self.session.sequence,
            "connected_at": self._connected_at,
            "last_frame_time": self._last_frame_time,
            "frames_received": self._frames_received,
            "reconnect_count": self._reconnect_count,
            "heartbeats_sent": self._heartbeat.pulses_sent if self._heartbeat else 0,
            "heartbeat_acks": self._heartbeat.acks_received if self._heartbeat else 0,
        }

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def _dial_url(self) -> str:
        if self.session.can_resume and self.session.resume_gateway_url:
            query = self.gateway_url.partition("?")[2]
            base = self.session.resume_gateway_url.rstrip("/")
            return f"{base}/?{query}" if query else base
        return self.gateway_url

    async def _open(self) -> None:
        """Dial and run the handshake. On failure the socket is released.

        A close() that lands mid-dial or mid-handshake leaves the state at
        CLOSED and surfaces here as GatewayConnectError.
        """
        self._reconnect_pending = False
        url = self._dial_url()

        try:
            logger.info(f"Connecting to gateway: {url}")
            ws = await asyncio.wait_for(
                websockets.connect(
                    url,
                    max_size=self._max_message_size,
                    ping_interval=None,  # liveness is the gateway heartbeat
                    compression=None,
                ),
                timeout=self._connect_timeout,
            )
        except asyncio.TimeoutError as e:
            self._fail_open()
            raise GatewayConnectError(f"Gateway dial timed out after {self._connect_timeout}s") from e
        except (OSError, WebSocketException) as e:
            self._fail_open()
            raise GatewayConnectError(f"Failed to dial gateway: {e}") from e

        if self._close_requested:
            await ws.close(code=NORMAL_CLOSE_CODE)
            raise GatewayConnectError("Gateway closed while dialing")

        self._ws = ws
        self._transition(ConnectionState.AWAITING_HELLO)

        try:
            await self._handshake()
        except GatewayStateError as e:
            await self._teardown(RESUMABLE_CLOSE_CODE)
            self._fail_open()
            if self._close_requested:
                raise GatewayConnectError("Gateway closed during handshake") from e
            raise
        except Exception:
            await self._teardown(RESUMABLE_CLOSE_CODE)
            self._fail_open()
            raise

    def _fail_open(self) -> None:
        # close() already settled the state
        if not self._close_requested:
            self._transition(ConnectionState.DISCONNECTED)

    async def _handshake(self) -> None:
        frame = await self._read_handshake_frame()
        if frame.op != GatewayOp.HELLO:
            raise GatewayConnectError(f"Expected HELLO (op 10), got op {frame.op}")
        try:
            hello = HelloPayload.model_validate(frame.d)
        except ValueError as e:
            raise GatewayConnectError(f"Malformed HELLO payload: {frame.d!r}") from e

        self.session.heartbeat_interval = hello.heartbeat_interval
        self._heartbeat = HeartbeatScheduler(
            interval=hello.heartbeat_interval / 1000.0,
            send=self._send_heartbeat,
            sequence=lambda: self.session.sequence,
            on_stale=self._on_heartbeat_stale,
        )
        self._heartbeat.start()
        self._transition(ConnectionState.NEGOTIATING)

        sent = await self._negotiator.negotiate(self._send)

        frame = await self._read_handshake_frame()
        if frame.op == GatewayOp.INVALID_SESSION:
            raise InvalidSessionError("Gateway rejected the session (op 9)")
        if frame.op != GatewayOp.DISPATCH:
            raise GatewayConnectError(f"Expected first dispatch frame, got op {frame.op}")

        if sent == GatewayOp.IDENTIFY:
            if frame.t != GatewayEvent.READY.value:
                raise GatewayConnectError(f"Expected READY after IDENTIFY, got {frame.t}")
            try:
                ready = Ready.model_validate(frame.d)
            except ValueError as e:
                raise GatewayConnectError("READY payload missing session identity") from e
            self.session.establish(ready.session_id, ready.resume_gateway_url, ready.user)

        self._connected_at = time.time()
        self._transition(ConnectionState.CONNECTED)
        await self._handle_dispatch(frame)

    async def _read_handshake_frame(self) -> GatewayFrame:
        if self._ws is None:
            raise GatewayConnectError("Gateway socket released during handshake")
        try:
            raw = await asyncio.wait_for(self._ws.recv(), timeout=self._handshake_timeout)
        except asyncio.TimeoutError as e:
            raise GatewayConnectError(
                f"No handshake frame within {self._handshake_timeout}s ({self._state.value})"
            ) from e
        except ConnectionClosed as e:
            raise GatewayConnectError(f"Gateway closed during handshake: {e}") from e

        try:
            frame = GatewayFrame.parse(raw)
        except GatewayProtocolError as e:
            raise GatewayConnectError(str(e)) from e
        self._note_frame()
        return frame

    # ------------------------------------------------------------------
    # Read loop
    # ------------------------------------------------------------------

    async def _handle_frame(self, frame: GatewayFrame) -> None:
        self._note_frame()
        op = frame.op

        if op == GatewayOp.DISPATCH:
            await self._handle_dispatch(frame)
        elif op == GatewayOp.HEARTBEAT_ACK:
            self._heartbeat.ack()
        elif op == GatewayOp.HEARTBEAT:
            await self._heartbeat.beat()
        elif op == GatewayOp.RECONNECT:
            logger.info("Gateway requested reconnect (op 7)")
            await self._reconnect()
        elif op == GatewayOp.INVALID_SESSION:
            logger.warning("Gateway invalidated the session (op 9), re-identifying")
            self.session.reset()
            await self._reconnect()
        else:
            logger.debug(f"Ignoring gateway op {op}")

    async def _handle_dispatch(self, frame: GatewayFrame) -> None:
        if frame.s is not None:
            self.session.advance(frame.s)
        await self._dispatcher.dispatch(frame.t, frame.d)

    def _note_frame(self) -> None:
        self._frames_received += 1
        self._last_frame_time = time.time()

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    async def _reconnect(self) -> None:
        """Tear down and re-handshake with exponential backoff and jitter."""
        self._transition(ConnectionState.RECONNECTING)
        await self._teardown(RESUMABLE_CLOSE_CODE)

        last_error: Optional[Exception] = None
        for attempt in range(1, self._max_reconnect_attempts + 1):
            delay = min(self._base_reconnect_delay * (2 ** (attempt - 1)), self._max_reconnect_delay)
            total_delay = delay + random.uniform(0.1, 0.3) * delay

            logger.info(
                f"Reconnection attempt {attempt}/{self._max_reconnect_attempts} "
                f"in {total_delay:.1f} seconds (resume={self.session.can_resume})"
            )
            if await self._wait_for_close(total_delay):
                logger.info("Reconnect cancelled by close()")
                return

            try:
                await self._open()
            except GatewayConnectError as e:
                if self._close_requested:
                    logger.info("Reconnect cancelled by close()")
                    return
                if isinstance(e, InvalidSessionError):
                    logger.warning(f"Resume rejected on attempt {attempt}, will identify: {e}")
                    self.session.reset()
                else:
                    logger.warning(f"Reconnection attempt {attempt} failed: {e}")
                last_error = e
                self._transition(ConnectionState.RECONNECTING)
                continue

            self._reconnect_count += 1
            logger.info("Reconnection successful")
            return

        raise GatewayReconnectError(
            f"Exceeded maximum reconnection attempts ({self._max_reconnect_attempts})"
        ) from last_error

    async def _wait_for_close(self, delay: float) -> bool:
        """Sleep out a backoff delay, waking early on close(). True if closed."""
        if self._close_event is None:
            await asyncio.sleep(delay)
        else:
            try:
                await asyncio.wait_for(self._close_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        return self._close_requested

    async def _on_heartbeat_stale(self) -> None:
        """Called from the heartbeat task when an ack is missed."""
        if self._ws is None or self._state is not ConnectionState.CONNECTED:
            return
        self._reconnect_pending = True
        # Unblocks the read loop's recv(); listen() then reconnects
        await self._ws.close(code=RESUMABLE_CLOSE_CODE, reason="heartbeat ack missed")

    async def _teardown(self, code: int) -> None:
        if self._heartbeat:
            await self._heartbeat.stop()
            self._heartbeat = None
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close(code=code)
            except WebSocketException as e:
                logger.debug(f"Error while closing gateway socket: {e}")

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def _send(self, op: Union[GatewayOp, int], payload: Any) -> None:
        if self._ws is None:
            raise GatewayStateError("Gateway socket is not open")
        await self._ws.send(GatewayFrame(op=int(op), d=payload).encode())

    async def _send_heartbeat(self, sequence: Optional[int]) -> None:
        await self._send(GatewayOp.HEARTBEAT, sequence)

    def _transition(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug(f"Gateway state: {self._state.value} -> {state.value}")
        self._state = state
