"""Gateway frame envelope and handshake payloads.

Every gateway message is a JSON object {"op", "d", "s", "t"}; `s` and `t`
are only present on dispatch (op 0) frames.
"""

import json
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from ..errors import GatewayProtocolError
from .opcodes import GatewayOp


class GatewayFrame(BaseModel):
    """One frame read from (or written to) the gateway socket."""
    op: int
    d: Any = None
    s: Optional[int] = None
    t: Optional[str] = None

    @property
    def is_dispatch(self) -> bool:
        return self.op == GatewayOp.DISPATCH

    @classmethod
    def parse(cls, raw: Union[str, bytes]) -> "GatewayFrame":
        """Decode a raw socket message.

        Raises:
            GatewayProtocolError: Payload is not a JSON frame.
        """
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            preview = raw[:100] if isinstance(raw, str) else raw[:100].decode("utf-8", "replace")
            raise GatewayProtocolError(f"Malformed gateway frame: {preview!r} ({e.error_count()} errors)") from e

    def encode(self) -> str:
        """Outbound wire form: only op and d."""
        return json.dumps({"op": int(self.op), "d": self.d})


class HelloPayload(BaseModel):
    heartbeat_interval: int = Field(..., gt=0)  # milliseconds


class ConnectionProperties(BaseModel):
    os: str
    browser: str
    device: str


class IdentifyPayload(BaseModel):
    token: str
    properties: ConnectionProperties
    intents: int
    large_threshold: int = 50


class ResumePayload(BaseModel):
    token: str
    session_id: str
    seq: int
