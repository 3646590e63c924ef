"""Gateway session state and the Identify/Resume negotiator."""

import logging
import platform
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from ..errors import GatewayProtocolError
from .frames import ConnectionProperties, IdentifyPayload, ResumePayload
from .opcodes import GatewayOp

logger = logging.getLogger("discordflow.gateway.session")

SendFn = Callable[[GatewayOp, Dict[str, Any]], Awaitable[None]]


@dataclass
class Session:
    """
    Per-client gateway session.

    The token is fixed at construction. session_id, resume_gateway_url and
    user come from READY; sequence tracks the last dispatch frame and never
    goes backwards.
    """
    token: str
    session_id: Optional[str] = None
    sequence: Optional[int] = None
    heartbeat_interval: Optional[int] = None  # ms, from HELLO
    resume_gateway_url: Optional[str] = None
    user: Optional[Any] = None

    @property
    def can_resume(self) -> bool:
        return bool(self.session_id) and bool(self.sequence)

    def establish(self, session_id: str, resume_gateway_url: Optional[str] = None, user: Any = None) -> None:
        self.session_id = session_id
        self.resume_gateway_url = resume_gateway_url
        self.user = user
        logger.info(f"Session established: {session_id}")

    def advance(self, sequence: int) -> None:
        """Record the sequence number of a dispatch frame."""
        if self.sequence is not None and sequence < self.sequence:
            raise GatewayProtocolError(
                f"Sequence regression: received {sequence} after {self.sequence}"
            )
        self.sequence = sequence

    def reset(self) -> None:
        """Forget session identity so the next negotiation identifies."""
        self.session_id = None
        self.sequence = None
        self.resume_gateway_url = None


class SessionNegotiator:
    """Sends exactly one Identify or Resume per handshake."""

    def __init__(self, session: Session, intents: int, client_name: str = "discordflow"):
        self._session = session
        self._intents = intents
        self._properties = ConnectionProperties(
            os=platform.system().lower() or "unknown",
            browser=client_name,
            device=client_name,
        )

    def choose(self) -> GatewayOp:
        return GatewayOp.RESUME if self._session.can_resume else GatewayOp.IDENTIFY

    def identify_payload(self) -> Dict[str, Any]:
        return IdentifyPayload(
            token=self._session.token,
            properties=self._properties,
            intents=self._intents,
        ).model_dump()

    def resume_payload(self) -> Dict[str, Any]:
        return ResumePayload(
            token=self._session.token,
            session_id=self._session.session_id,
            seq=self._session.sequence,
        ).model_dump()

    async def negotiate(self, send: SendFn) -> GatewayOp:
        """Send the handshake request and return the op that was sent."""
        op = self.choose()
        if op == GatewayOp.RESUME:
            logger.info(f"Resuming session {self._session.session_id} at seq {self._session.sequence}")
            await send(op, self.resume_payload())
        else:
            logger.info("Identifying new session")
            await send(op, self.identify_payload())
        return op
