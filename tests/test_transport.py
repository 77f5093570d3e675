import asyncio
import json

import pytest

from zoning_mcp.dispatcher import INVALID_REQUEST, INVALID_SESSION, SESSION_NOT_FOUND, ProtocolDispatcher
from zoning_mcp.sessions import CLOSE, SessionState, SessionStore
from zoning_mcp.tools import build_registry
from zoning_mcp.transport import SessionTransport, decode_body

from .conftest import StubClient, rpc

LOOKUP = rpc(
    "tools/call",
    {"name": "lookup_zoning_by_coordinates", "arguments": {"lat": 43.6426, "lon": -72.2515}},
    42,
)


def test_decode_body():
    assert decode_body(b'{"a": 1}') == {"a": 1}
    with pytest.raises(ValueError):
        decode_body(b"")
    with pytest.raises(ValueError):
        decode_body(b"{not json")


class TestRequestResponseMode:
    @pytest.mark.asyncio
    async def test_explicit_initialize_creates_session(self, transport, store):
        reply = await transport.handle_post(rpc("initialize", {}, 1), None)
        assert reply.status == 200
        assert reply.session_id
        assert reply.body["result"]["serverInfo"]["name"] == "lebanon-zoning-lookup"
        session = store.get(reply.session_id)
        assert session.state is SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_known_session_routes_call(self, transport, store):
        init = await transport.handle_post(rpc("initialize", {}, 1), None)
        reply = await transport.handle_post(rpc("tools/list", request_id=2), init.session_id)
        assert reply.status == 200
        assert reply.session_id == init.session_id
        assert len(reply.body["result"]["tools"]) == 2
        assert store.active_count == 1

    @pytest.mark.asyncio
    async def test_stateless_call_is_auto_initialized(self, transport, store):
        reply = await transport.handle_post(LOOKUP, None)

        assert reply.status == 200
        assert reply.session_id
        # only the caller's own exchange is visible
        assert reply.body["id"] == 42
        assert "serverInfo" not in reply.body["result"]
        data = json.loads(reply.body["result"]["content"][0]["text"])
        assert data["found"] is True
        assert data["coordinates"] == {"lat": 43.6426, "lon": -72.2515}

        session = store.get(reply.session_id)
        assert session is not None
        assert session.state is SessionState.ACTIVE

        # the minted id works for follow-up calls without another session
        again = await transport.handle_post(rpc("ping", request_id=43), reply.session_id)
        assert again.status == 200
        assert store.active_count == 1

    @pytest.mark.asyncio
    async def test_notification_gets_202(self, transport):
        init = await transport.handle_post(rpc("initialize", {}, 1), None)
        reply = await transport.handle_post(rpc("notifications/initialized", request_id=None), init.session_id)
        assert reply.status == 202
        assert reply.body is None

    @pytest.mark.asyncio
    async def test_unknown_session_rejected(self, transport, store):
        reply = await transport.handle_post(rpc("tools/list", request_id=5), "deadbeef")
        assert reply.status == 404
        assert reply.body["error"]["code"] == SESSION_NOT_FOUND
        assert reply.body["id"] == 5
        assert store.active_count == 0

    @pytest.mark.asyncio
    async def test_malformed_envelope_creates_no_session(self, transport, store):
        reply = await transport.handle_post({"jsonrpc": "2.0", "id": 3}, None)
        assert reply.status == 400
        assert reply.body["error"]["code"] == INVALID_REQUEST
        assert reply.body["id"] == 3
        assert store.active_count == 0

    @pytest.mark.asyncio
    async def test_terminated_session_rejects_late_messages(self, transport, store):
        init = await transport.handle_post(rpc("initialize", {}, 1), None)
        assert transport.terminate(init.session_id).status == 200
        assert store.active_count == 0

        late = await transport.handle_post(rpc("tools/list", request_id=2), init.session_id)
        assert late.status == 404
        assert transport.terminate(init.session_id).status == 404

    def test_terminate_without_id(self, transport):
        reply = transport.terminate(None)
        assert reply.status == 400
        assert reply.body["error"]["code"] == INVALID_SESSION

    @pytest.mark.asyncio
    async def test_stateless_sessions_expire_when_idle(self, transport, store):
        replies = [await transport.handle_post(rpc("ping", request_id=i), None) for i in range(50)]
        assert store.active_count == 50

        expired = store.expire_idle(0)
        assert len(expired) == 50
        assert store.active_count == 0

        late = await transport.handle_post(rpc("ping", request_id=99), replies[0].session_id)
        assert late.status == 404
        assert late.body["error"]["code"] == SESSION_NOT_FOUND
        assert late.body["id"] == 99

    @pytest.mark.asyncio
    async def test_call_queued_behind_termination_echoes_its_id(self, transport, store):
        init = await transport.handle_post(rpc("initialize", {}, 1), None)
        session = store.get(init.session_id)

        async with session.lock:
            pending = asyncio.ensure_future(transport.handle_post(rpc("tools/list", request_id=9), init.session_id))
            await asyncio.sleep(0.01)
            store.close(init.session_id)
        reply = await pending

        assert reply.status == 404
        assert reply.body["error"]["code"] == SESSION_NOT_FOUND
        assert reply.body["id"] == 9

    @pytest.mark.asyncio
    async def test_concurrent_stateless_callers_get_distinct_sessions(self, transport, store):
        replies = await asyncio.gather(*(transport.handle_post(LOOKUP, None) for _ in range(10)))
        ids = {r.session_id for r in replies}
        assert len(ids) == 10
        assert store.active_count == 10

    def test_describe(self, transport):
        doc = transport.describe()
        assert doc["name"] == "lebanon-zoning-lookup"
        assert [t["name"] for t in doc["tools"]] == [
            "lookup_zoning_by_coordinates",
            "lookup_zoning_by_address",
        ]
        assert doc["transport"]["sessionHeader"] == "Mcp-Session-Id"


class TestStreamingMode:
    @pytest.mark.asyncio
    async def test_stream_lifecycle(self, transport, store):
        session = transport.open_stream()
        sid = session.session_id
        frames = transport.events(session, announce_endpoint=True)

        first = await frames.__anext__()
        assert first == f"event: endpoint\ndata: /messages?sessionId={sid}\n\n"

        reply = await transport.handle_message(rpc("tools/list", request_id=1), sid)
        assert reply.status == 202

        frame = await frames.__anext__()
        assert frame.startswith("event: message\ndata: ")
        body = json.loads(frame[len("event: message\ndata: "):])
        assert body["id"] == 1
        assert len(body["result"]["tools"]) == 2

        store.close(sid)
        with pytest.raises(StopAsyncIteration):
            await frames.__anext__()
        assert store.get(sid) is None

    @pytest.mark.asyncio
    async def test_disconnect_cleans_up_session(self, transport, store):
        session = transport.open_stream()
        sid = session.session_id
        frames = transport.events(session, announce_endpoint=True)
        await frames.__anext__()

        # what the server does when the client goes away
        await frames.aclose()

        assert store.get(sid) is None
        assert session.state is SessionState.CLOSED
        await asyncio.sleep(0.01)
        reply = await transport.handle_message(rpc("ping", request_id=1), sid)
        assert reply.status == 400
        assert reply.body["error"]["code"] == INVALID_SESSION
        assert reply.body["id"] is None

    @pytest.mark.asyncio
    async def test_message_queued_behind_close_is_rejected(self, transport, store):
        session = transport.open_stream()
        sid = session.session_id

        async with session.lock:
            pending = asyncio.ensure_future(transport.handle_message(rpc("ping", request_id=1), sid))
            await asyncio.sleep(0.01)
            store.close(sid)
        reply = await pending

        assert reply.status == 400
        assert reply.body["error"]["code"] == INVALID_SESSION
        assert session.channel.get_nowait() is CLOSE
        assert session.channel.empty()

    @pytest.mark.asyncio
    async def test_keepalive_waits_for_stream_reader(self, settings, dispatcher):
        fast = settings.model_copy(update={"keepalive_s": 0.01})
        store = SessionStore()
        transport = SessionTransport(fast, store, dispatcher)

        session = transport.open_stream()
        await asyncio.sleep(0.05)
        assert session._keepalive is None
        assert session.channel.empty()

        # a stream nobody ever read is reclaimed by the idle sweep
        assert store.expire_idle(0) == [session.session_id]

    @pytest.mark.asyncio
    async def test_reader_starts_keepalive_and_blocks_expiry(self, settings, dispatcher):
        fast = settings.model_copy(update={"keepalive_s": 0.01})
        store = SessionStore()
        transport = SessionTransport(fast, store, dispatcher)
        session = transport.open_stream()
        frames = transport.events(session, announce_endpoint=True)

        await frames.__anext__()
        assert session._keepalive is not None
        assert session.stream_open is True
        assert store.expire_idle(0) == []

        await frames.aclose()
        assert session.stream_open is False
        assert store.active_count == 0

    @pytest.mark.asyncio
    async def test_keepalive_frames(self, settings, dispatcher):
        fast = settings.model_copy(update={"keepalive_s": 0.01})
        store = SessionStore()
        transport = SessionTransport(fast, store, dispatcher)
        session = transport.open_stream()
        frames = transport.events(session, announce_endpoint=False)

        frame = await asyncio.wait_for(frames.__anext__(), timeout=1)
        assert frame == ": ping\n\n"
        await frames.aclose()
        assert store.active_count == 0

    @pytest.mark.asyncio
    async def test_unknown_stream_session(self, transport):
        reply = await transport.handle_message(rpc("ping", request_id=1), "nope")
        assert reply.status == 400
        assert reply.body["error"]["message"] == "Invalid session. Please establish SSE connection first."

    @pytest.mark.asyncio
    async def test_request_response_session_cannot_use_messages(self, transport, store):
        session = store.create()
        reply = await transport.handle_message(rpc("ping", request_id=1), session.session_id)
        assert reply.status == 400

    @pytest.mark.asyncio
    async def test_attached_stream_detaches_without_closing(self, transport, store):
        session = store.create()
        assert transport.attach_stream(session) is True
        assert transport.attach_stream(session) is False
        frames = transport.events(session, announce_endpoint=False)
        store.close(session.session_id)
        with pytest.raises(StopAsyncIteration):
            await frames.__anext__()
        assert session.channel is None

    @pytest.mark.asyncio
    async def test_replies_keep_request_order(self, settings):
        class SlowFirstClient(StubClient):
            async def get_query(self, layer, params):
                if not self.calls:
                    self.calls.append((layer, params))
                    await asyncio.sleep(0.05)
                    return {"features": [{"attributes": {"ZONE": "FIRST"}}]}
                self.calls.append((layer, params))
                return {"features": [{"attributes": {"ZONE": "SECOND"}}]}

        client = SlowFirstClient(settings)
        store = SessionStore()
        transport = SessionTransport(settings, store, ProtocolDispatcher(settings, build_registry(settings, client)))
        session = transport.open_stream()
        sid = session.session_id

        def call(i):
            return rpc("tools/call", {"name": "lookup_zoning_by_coordinates", "arguments": {"lat": 1, "lon": 1}}, i)

        await asyncio.gather(transport.handle_message(call(1), sid), transport.handle_message(call(2), sid))

        first = session.channel.get_nowait()
        second = session.channel.get_nowait()
        assert (first["id"], second["id"]) == (1, 2)
        assert "FIRST" in first["result"]["content"][0]["text"]
        store.close(sid)
