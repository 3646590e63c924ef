"""
Tests for the gateway connection: handshake, read loop, close and reconnect.
"""

import asyncio

import pytest

from discordflow.errors import (
    GatewayClosedError,
    GatewayConnectError,
    GatewayProtocolError,
    GatewayReconnectError,
    GatewayStateError,
    InvalidSessionError,
)
from discordflow.gateway.connection import ConnectionState

from fakes import FakeDialer, FakeWebSocket, dispatch, hello, message_payload, ready, wait_until


class TestHandshake:
    """HELLO -> IDENTIFY/RESUME -> first dispatch."""

    @pytest.mark.asyncio
    async def test_connect_establishes_session(self, client):
        ws = FakeWebSocket([hello(), ready(session_id="abc123", seq=1)])
        dialer = FakeDialer(ws)

        with dialer.patch():
            await client.connect()

        assert client.gateway.state is ConnectionState.CONNECTED
        assert client.session.session_id == "abc123"
        assert client.session.sequence == 1
        assert client.session.heartbeat_interval == 41250
        assert client.user.username == "flowbot"
        assert dialer.urls == [client.config.gateway_url]
        assert dialer.kwargs[0]["ping_interval"] is None

        identify = ws.sent[0]
        assert identify["op"] == 2
        assert identify["d"]["token"] == "test-token"
        assert identify["d"]["intents"] == client.config.intents
        assert identify["d"]["properties"]["browser"] == "discordflow"

        await client.close()

    @pytest.mark.asyncio
    async def test_heartbeat_interval_from_hello(self, client):
        ws = FakeWebSocket([hello(41250), ready()])

        with FakeDialer(ws).patch():
            await client.connect()

        assert client.gateway.heartbeat.interval == pytest.approx(41.25)
        assert client.gateway.heartbeat.is_running

        await client.close()
        assert client.gateway.heartbeat is not None
        assert not client.gateway.heartbeat.is_running

    @pytest.mark.asyncio
    async def test_first_frame_must_be_hello(self, client):
        ws = FakeWebSocket([ready()])

        with FakeDialer(ws).patch():
            with pytest.raises(GatewayConnectError):
                await client.connect()

        assert client.gateway.state is ConnectionState.DISCONNECTED
        assert ws.closed
        assert ws.sent == []

    @pytest.mark.asyncio
    async def test_malformed_hello_frame(self, client):
        ws = FakeWebSocket()
        ws.push_raw("not json")

        with FakeDialer(ws).patch():
            with pytest.raises(GatewayConnectError):
                await client.connect()

    @pytest.mark.asyncio
    async def test_dial_failure(self, client):
        with FakeDialer().patch():
            with pytest.raises(GatewayConnectError):
                await client.connect()

        assert client.gateway.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_handshake_timeout(self, client):
        client.gateway._handshake_timeout = 0.05
        ws = FakeWebSocket([hello()])

        with FakeDialer(ws).patch():
            with pytest.raises(GatewayConnectError):
                await client.connect()

        assert ws.closed

    @pytest.mark.asyncio
    async def test_invalid_session_during_handshake(self, client):
        ws = FakeWebSocket([hello(), {"op": 9, "d": False}])

        with FakeDialer(ws).patch():
            with pytest.raises(InvalidSessionError):
                await client.connect()

        assert client.session.session_id is None

    @pytest.mark.asyncio
    async def test_identify_requires_ready(self, client):
        ws = FakeWebSocket([hello(), dispatch("MESSAGE_CREATE", message_payload(), 1)])

        with FakeDialer(ws).patch():
            with pytest.raises(GatewayConnectError):
                await client.connect()

    @pytest.mark.asyncio
    async def test_connect_twice_rejected(self, client):
        with FakeDialer(FakeWebSocket([hello(), ready()])).patch():
            await client.connect()
            with pytest.raises(GatewayStateError):
                await client.connect()

        await client.close()

    @pytest.mark.asyncio
    async def test_ready_is_dispatched_to_handler(self, client):
        seen = []
        client.handle("READY", lambda c, event: seen.append(event.session_id))

        with FakeDialer(FakeWebSocket([hello(), ready(session_id="xyz")])).patch():
            await client.connect()

        assert seen == ["xyz"]
        await client.close()


class TestListen:
    """Read loop: dispatch, close and fatal errors."""

    @pytest.mark.asyncio
    async def test_message_handler_then_close(self, client):
        received = []

        async def on_message(c, message):
            received.append(message)
            await c.close()

        client.handle("MESSAGE_CREATE", on_message)
        ws = FakeWebSocket([hello(), ready(), dispatch("MESSAGE_CREATE", message_payload("hi", "bob"), 2)])

        with FakeDialer(ws).patch():
            await client.connect()
            await asyncio.wait_for(client.listen(), timeout=2)

        assert len(received) == 1
        assert received[0].content == "hi"
        assert received[0].author.username == "bob"
        assert received[0].client is client

        assert client.gateway.state is ConnectionState.CLOSED
        assert ws.close_code == 1000
        assert client.session.session_id is None

    @pytest.mark.asyncio
    async def test_unregistered_tag_still_advances_sequence(self, client):
        sequences = []

        async def on_message(c, message):
            sequences.append(c.session.sequence)
            await c.close()

        client.handle("MESSAGE_CREATE", on_message)
        ws = FakeWebSocket([
            hello(),
            ready(seq=1),
            dispatch("TYPING_START", {"channel_id": "42", "user_id": "7", "timestamp": 1}, 2),
            dispatch("SOMETHING_NEW", {"x": 1}, 3),
            dispatch("MESSAGE_CREATE", message_payload(), 4),
        ])

        with FakeDialer(ws).patch():
            await client.connect()
            await asyncio.wait_for(client.listen(), timeout=2)

        assert sequences == [4]
        # READY, TYPING_START and SOMETHING_NEW have no handler
        assert client.dispatcher.events_dropped == 3

    @pytest.mark.asyncio
    async def test_handler_error_stops_listen(self, client):
        def on_message(c, message):
            raise RuntimeError("handler blew up")

        client.handle("MESSAGE_CREATE", on_message)
        ws = FakeWebSocket([hello(), ready(), dispatch("MESSAGE_CREATE", message_payload(), 2)])

        with FakeDialer(ws).patch():
            await client.connect()
            with pytest.raises(RuntimeError, match="handler blew up"):
                await asyncio.wait_for(client.listen(), timeout=2)

        assert client.gateway.state is ConnectionState.DISCONNECTED
        assert ws.close_code == 4000
        # Session survives a fatal error so the next connect resumes
        assert client.session.session_id == "abc123"
        assert client.session.sequence == 2

    @pytest.mark.asyncio
    async def test_isolated_handler_errors_keep_listening(self, config):
        from discordflow.client import DiscordClient

        config.isolate_handler_errors = True
        client = DiscordClient(config=config)
        calls = []

        async def on_message(c, message):
            calls.append(message.id)
            if message.id == "1":
                raise RuntimeError("first one fails")
            await c.close()

        client.handle("MESSAGE_CREATE", on_message)
        ws = FakeWebSocket([
            hello(),
            ready(),
            dispatch("MESSAGE_CREATE", message_payload(message_id="1"), 2),
            dispatch("MESSAGE_CREATE", message_payload(message_id="2"), 3),
        ])

        with FakeDialer(ws).patch():
            await client.connect()
            await asyncio.wait_for(client.listen(), timeout=2)

        assert calls == ["1", "2"]
        assert client.dispatcher.handler_errors == 1
        await client.rest.aclose()

    @pytest.mark.asyncio
    async def test_close_from_other_task(self, client):
        ws = FakeWebSocket([hello(), ready()])

        with FakeDialer(ws).patch():
            await client.connect()
            listener = asyncio.create_task(client.listen())
            await asyncio.sleep(0.01)
            await client.close()
            await asyncio.wait_for(listener, timeout=2)

        assert client.gateway.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_close_twice_raises(self, client):
        with FakeDialer(FakeWebSocket([hello(), ready()])).patch():
            await client.connect()

        await client.close()
        with pytest.raises(GatewayStateError):
            await client.close()

    @pytest.mark.asyncio
    async def test_listen_requires_connection(self, client):
        with pytest.raises(GatewayStateError):
            await client.listen()

    @pytest.mark.asyncio
    async def test_server_close_is_fatal(self, client):
        ws = FakeWebSocket([hello(), ready()])

        with FakeDialer(ws).patch():
            await client.connect()
            ws.server_close(4004, "Authentication failed")
            with pytest.raises(GatewayClosedError) as exc_info:
                await asyncio.wait_for(client.listen(), timeout=2)

        assert exc_info.value.close_code == 4004
        assert client.gateway.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_sequence_regression_is_fatal(self, client):
        ws = FakeWebSocket([hello(), ready(seq=5), dispatch("MESSAGE_CREATE", message_payload(), 3)])

        with FakeDialer(ws).patch():
            await client.connect()
            with pytest.raises(GatewayProtocolError):
                await asyncio.wait_for(client.listen(), timeout=2)

    @pytest.mark.asyncio
    async def test_malformed_frame_is_fatal(self, client):
        ws = FakeWebSocket([hello(), ready()])
        ws.push_raw("{broken")

        with FakeDialer(ws).patch():
            await client.connect()
            with pytest.raises(GatewayProtocolError):
                await asyncio.wait_for(client.listen(), timeout=2)

    @pytest.mark.asyncio
    async def test_heartbeat_ack_and_server_request(self, client):
        async def on_message(c, message):
            await c.close()

        client.handle("MESSAGE_CREATE", on_message)
        ws = FakeWebSocket([
            hello(),
            ready(seq=3),
            {"op": 11},
            {"op": 1, "d": None},
            {"op": 42, "d": None},
            dispatch("MESSAGE_CREATE", message_payload(), 4),
        ])

        with FakeDialer(ws).patch():
            await client.connect()
            heartbeat = client.gateway.heartbeat
            await asyncio.wait_for(client.listen(), timeout=2)

        assert heartbeat.acks_received == 1
        assert {"op": 1, "d": 3} in ws.sent


class TestReconnect:
    """op 7, op 9 and stale heartbeats re-handshake on a new socket."""

    @pytest.mark.asyncio
    async def test_reconnect_request_resumes(self, client):
        async def on_message(c, message):
            await c.close()

        client.handle("MESSAGE_CREATE", on_message)
        first = FakeWebSocket([hello(), ready(session_id="abc123", seq=1), {"op": 7, "d": None}])
        second = FakeWebSocket([hello(), dispatch("MESSAGE_CREATE", message_payload(), 2)])
        dialer = FakeDialer(first, second)

        with dialer.patch():
            await client.connect()
            await asyncio.wait_for(client.listen(), timeout=2)

        assert first.close_code == 4000
        assert dialer.urls[1] == "wss://resume.example.test/?v=10&encoding=json"

        resume = second.sent[0]
        assert resume["op"] == 6
        assert resume["d"] == {"token": "test-token", "session_id": "abc123", "seq": 1}
        assert client.gateway.get_health()["reconnect_count"] == 1

    @pytest.mark.asyncio
    async def test_invalid_session_reidentifies(self, client):
        async def on_message(c, message):
            await c.close()

        client.handle("MESSAGE_CREATE", on_message)
        first = FakeWebSocket([hello(), ready(session_id="abc123", seq=1), {"op": 9, "d": False}])
        second = FakeWebSocket([
            hello(),
            ready(session_id="def456", seq=1),
            dispatch("MESSAGE_CREATE", message_payload(), 2),
        ])
        dialer = FakeDialer(first, second)

        seen_sessions = []
        client.handle("READY", lambda c, event: seen_sessions.append(event.session_id))

        with dialer.patch():
            await client.connect()
            await asyncio.wait_for(client.listen(), timeout=2)

        assert second.sent[0]["op"] == 2
        assert dialer.urls[1] == client.config.gateway_url
        assert seen_sessions == ["abc123", "def456"]

    @pytest.mark.asyncio
    async def test_rejected_resume_falls_back_to_identify(self, client):
        async def on_message(c, message):
            await c.close()

        client.handle("MESSAGE_CREATE", on_message)
        first = FakeWebSocket([hello(), ready(seq=1), {"op": 7, "d": None}])
        rejected = FakeWebSocket([hello(), {"op": 9, "d": False}])
        third = FakeWebSocket([hello(), ready(session_id="fresh", seq=1), dispatch("MESSAGE_CREATE", message_payload(), 2)])

        with FakeDialer(first, rejected, third).patch():
            await client.connect()
            await asyncio.wait_for(client.listen(), timeout=2)

        assert rejected.sent[0]["op"] == 6
        assert third.sent[0]["op"] == 2

    @pytest.mark.asyncio
    async def test_reconnect_gives_up(self, client):
        first = FakeWebSocket([hello(), ready(seq=1), {"op": 7, "d": None}])

        with FakeDialer(first).patch():
            await client.connect()
            with pytest.raises(GatewayReconnectError):
                await asyncio.wait_for(client.listen(), timeout=2)

        assert client.gateway.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_stale_heartbeat_triggers_resume(self, client):
        async def on_message(c, message):
            await c.close()

        client.handle("MESSAGE_CREATE", on_message)
        # 20ms pulses and the server never acks
        first = FakeWebSocket([hello(20), ready(seq=1)])
        second = FakeWebSocket([hello(), dispatch("MESSAGE_CREATE", message_payload(), 2)])

        with FakeDialer(first, second).patch():
            await client.connect()
            stale_heartbeat = client.gateway.heartbeat
            await asyncio.wait_for(client.listen(), timeout=2)

        assert stale_heartbeat.stale
        assert first.close_code == 4000
        assert first.sent_ops()[0] == 2
        assert 1 in first.sent_ops()
        assert second.sent[0]["op"] == 6

    @pytest.mark.asyncio
    async def test_close_during_reconnect_handshake(self, client):
        first = FakeWebSocket([hello(), ready(seq=1), {"op": 7, "d": None}])
        # Answers HELLO, then never sends the first dispatch
        second = FakeWebSocket([hello()])
        spare = FakeWebSocket([hello(), ready()])
        dialer = FakeDialer(first, second, spare)

        with dialer.patch():
            await client.connect()
            listener = asyncio.create_task(client.listen())
            await wait_until(lambda: bool(second.sent))
            assert client.gateway.state is ConnectionState.NEGOTIATING

            await client.close()
            await asyncio.wait_for(listener, timeout=2)

        assert len(dialer.urls) == 2
        assert second.close_code == 1000
        assert client.gateway.state is ConnectionState.CLOSED
        assert client.session.session_id is None

    @pytest.mark.asyncio
    async def test_close_during_backoff(self, config):
        from discordflow.client import DiscordClient

        config.base_reconnect_delay = 5.0
        config.max_reconnect_delay = 5.0
        client = DiscordClient(config=config)
        first = FakeWebSocket([hello(), ready(seq=1), {"op": 7, "d": None}])
        dialer = FakeDialer(first, FakeWebSocket([hello(), ready()]))

        with dialer.patch():
            await client.connect()
            listener = asyncio.create_task(client.listen())
            await wait_until(lambda: client.gateway.state is ConnectionState.RECONNECTING)

            await client.close()
            # Returns well before the 5s backoff would have elapsed
            await asyncio.wait_for(listener, timeout=1)

        assert dialer.urls == [client.config.gateway_url]
        assert client.gateway.state is ConnectionState.CLOSED
        await client.rest.aclose()

    @pytest.mark.asyncio
    async def test_aclose_during_backoff(self, config):
        from discordflow.client import DiscordClient

        config.base_reconnect_delay = 5.0
        config.max_reconnect_delay = 5.0
        client = DiscordClient(config=config)
        first = FakeWebSocket([hello(), ready(seq=1), {"op": 7, "d": None}])

        with FakeDialer(first).patch():
            await client.connect()
            listener = asyncio.create_task(client.listen())
            await wait_until(lambda: client.gateway.state is ConnectionState.RECONNECTING)

            await client.aclose()
            await asyncio.wait_for(listener, timeout=1)

        assert client.gateway.state is ConnectionState.CLOSED
        assert client.rest._client is None
