"""Handler registry and dispatch path for op 0 frames.

Each event tag maps to one (decode, callback) pair. A dispatch frame is
decoded with the routine paired with its tag and the callback is invoked
inline on the read loop. Unregistered tags are dropped.

By default any decode or callback failure propagates and ends listen().
With isolate_errors=True callback failures are logged and the stream
continues; decode failures always propagate.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from ..errors import EventDecodeError
from .events import DecodeFn, decoder_for
from ..models import DiscordModel

logger = logging.getLogger("discordflow.gateway.dispatcher")

# callback(client, event) -> None | Awaitable[None]
EventCallback = Callable[[Any, Any], Any]


@dataclass
class HandlerRegistration:
    tag: str
    decode: DecodeFn
    callback: EventCallback


class EventDispatcher:
    """Tag -> (decode, callback) registry plus the decode-then-invoke step."""

    def __init__(self, client: Any = None, isolate_errors: bool = False):
        """
        Args:
            client: Owning client; passed to callbacks and bound to decoded entities.
            isolate_errors: Log callback failures instead of propagating them.
        """
        self._client = client
        self._isolate_errors = isolate_errors
        self._handlers: Dict[str, HandlerRegistration] = {}
        self._hooks: Dict[str, List[Callable[[Any], Any]]] = {}

        self.events_dispatched = 0
        self.events_dropped = 0
        self.handler_errors = 0

    def register(self, tag: str, callback: EventCallback, decode: Optional[DecodeFn] = None) -> None:
        """Register the handler for a tag, replacing any existing one.

        Raises:
            ValueError: No decode routine given and the tag has no payload model.
        """
        tag = str(getattr(tag, "value", tag))
        decode = decode or decoder_for(tag)
        if decode is None:
            raise ValueError(f"No payload model for event {tag}; pass decode=")
        if tag in self._handlers:
            logger.debug(f"Replacing handler for {tag}")
        self._handlers[tag] = HandlerRegistration(tag=tag, decode=decode, callback=callback)

    def unregister(self, tag: str) -> None:
        self._handlers.pop(str(getattr(tag, "value", tag)), None)

    def add_hook(self, tag: str, hook: Callable[[Any], Any]) -> None:
        """Internal observer that sees every decoded event of a tag."""
        self._hooks.setdefault(str(getattr(tag, "value", tag)), []).append(hook)

    def registration(self, tag: str) -> Optional[HandlerRegistration]:
        return self._handlers.get(str(getattr(tag, "value", tag)))

    def __contains__(self, tag: str) -> bool:
        return self.registration(tag) is not None

    async def dispatch(self, tag: Optional[str], payload: Any) -> None:
        """Decode and deliver one dispatch payload."""
        if not tag:
            return

        registration = self._handlers.get(tag)
        hooks = self._hooks.get(tag, [])

        if registration is None and not hooks:
            self.events_dropped += 1
            logger.debug(f"No handler for {tag}, dropping")
            return

        if hooks:
            await self._run_hooks(tag, payload, hooks)

        if registration is None:
            self.events_dropped += 1
            return

        event = self._decode(registration.decode, tag, payload)

        try:
            result = registration.callback(self._client, event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.handler_errors += 1
            if not self._isolate_errors:
                raise
            logger.error(f"Handler error for {tag}: {e}", exc_info=True)

        self.events_dispatched += 1

    def _decode(self, decode: DecodeFn, tag: str, payload: Any) -> Any:
        try:
            event = decode(payload)
        except (ValueError, TypeError, KeyError) as e:
            raise EventDecodeError(f"Failed to decode {tag} payload: {e}", tag=tag) from e
        if isinstance(event, DiscordModel) and self._client is not None:
            event.bind(self._client)
        return event

    async def _run_hooks(self, tag: str, payload: Any, hooks: List[Callable[[Any], Any]]) -> None:
        decode = decoder_for(tag)
        if decode is None:
            return
        try:
            event = decode(payload)
        except ValidationError as e:
            logger.warning(f"Skipping internal hooks for malformed {tag}: {e.error_count()} errors")
            return
        for hook in hooks:
            result = hook(event)
            if inspect.isawaitable(result):
                await result
