"""
隧道会话测试
"""

import asyncio
import json

import pytest
import pytest_asyncio

from pubrelay.errors import (
    OriginDisconnectedError,
    ProtocolError,
    SessionReplacedError,
    UpstreamTimeoutError,
)
from pubrelay.protocol import TunnelRequest
from pubrelay.session import (
    CLOSE_INTERNAL_ERROR,
    CLOSE_PROTOCOL_ERROR,
    SessionState,
    TunnelSession,
)


def make_request(request_id: str, url: str = "/") -> TunnelRequest:
    return TunnelRequest.build(request_id, "GET", url, [("accept", "*/*")], b"")


async def next_sent(fake_ws) -> dict:
    return json.loads(await asyncio.wait_for(fake_ws.sent.get(), timeout=1.0))


@pytest_asyncio.fixture
async def session(fake_ws):
    session = TunnelSession("k", fake_ws)
    runner = asyncio.create_task(session.run())
    yield session
    if not session.closed:
        await session.close(OriginDisconnectedError("test finished"))
    await asyncio.wait_for(runner, timeout=1.0)


class TestRoundTrip:
    """测试请求-响应"""

    @pytest.mark.asyncio
    async def test_round_trip(self, session, fake_ws):
        """发送信封并收到对应响应"""
        call = asyncio.create_task(session.round_trip(make_request("r1", "/items"), timeout=1.0))

        sent = await next_sent(fake_ws)
        assert sent["id"] == "r1"
        assert sent["method"] == "GET"
        assert sent["url"] == "/items"
        assert sent["body"] == ""
        assert session.busy

        fake_ws.feed(json.dumps({"id": "r1", "status": 200, "body": {"ok": True}}))
        response = await call

        assert response.status == 200
        assert response.body == {"ok": True}
        assert session.request_count == 1
        assert not session.busy
        assert session.state is SessionState.ACTIVE

    @pytest.mark.asyncio
    async def test_response_without_id(self, session, fake_ws):
        """不带 id 的响应匹配当前在途请求"""
        call = asyncio.create_task(session.round_trip(make_request("r1"), timeout=1.0))
        await next_sent(fake_ws)
        fake_ws.feed('{"status": 204, "body": null}')
        assert (await call).status == 204

    @pytest.mark.asyncio
    async def test_requests_are_serialized(self, session, fake_ws):
        """同一会话至多一个在途请求，后到的请求排队"""
        first = asyncio.create_task(session.round_trip(make_request("r1"), timeout=2.0))
        second = asyncio.create_task(session.round_trip(make_request("r2"), timeout=2.0))

        assert (await next_sent(fake_ws))["id"] == "r1"
        await asyncio.sleep(0.05)
        assert fake_ws.sent.empty()

        fake_ws.feed('{"id": "r1", "status": 200, "body": "one"}')
        assert (await first).body == "one"

        assert (await next_sent(fake_ws))["id"] == "r2"
        fake_ws.feed('{"id": "r2", "status": 200, "body": "two"}')
        assert (await second).body == "two"


class TestFailures:
    """测试失败路径"""

    @pytest.mark.asyncio
    async def test_cancelled_request_tears_down_session(self, session, fake_ws):
        """已发送的请求被取消后拆除会话，迟到的响应不会配对到下一个请求"""
        call = asyncio.create_task(session.round_trip(make_request("a", "/a"), timeout=2.0))
        await next_sent(fake_ws)

        call.cancel()
        with pytest.raises(asyncio.CancelledError):
            await call

        assert session.closed
        assert fake_ws.closed_with == (CLOSE_INTERNAL_ERROR, "Request abandoned")

        fake_ws.feed('{"status": 200, "body": "reply-for-a"}')
        with pytest.raises(OriginDisconnectedError):
            await session.round_trip(make_request("b", "/b"), timeout=1.0)
        assert fake_ws.sent.empty()

    @pytest.mark.asyncio
    async def test_cancelled_while_queued_keeps_session(self, session, fake_ws):
        """排队中被取消不拆除会话，也不占用会话锁"""
        first = asyncio.create_task(session.round_trip(make_request("r1"), timeout=2.0))
        await next_sent(fake_ws)

        queued = asyncio.create_task(session.round_trip(make_request("r2"), timeout=2.0))
        await asyncio.sleep(0.01)
        queued.cancel()
        with pytest.raises(asyncio.CancelledError):
            await queued
        assert not session.closed

        fake_ws.feed('{"id": "r1", "status": 200, "body": "one"}')
        assert (await first).body == "one"

        third = asyncio.create_task(session.round_trip(make_request("r3"), timeout=1.0))
        assert (await next_sent(fake_ws))["id"] == "r3"
        fake_ws.feed('{"id": "r3", "status": 200, "body": "three"}')
        assert (await third).body == "three"

    @pytest.mark.asyncio
    async def test_timeout_tears_down_session(self, session, fake_ws):
        """已发送请求超时后会话被拆除"""
        with pytest.raises(UpstreamTimeoutError):
            await session.round_trip(make_request("r1"), timeout=0.05)

        assert session.closed
        assert fake_ws.closed_with[0] == CLOSE_INTERNAL_ERROR

    @pytest.mark.asyncio
    async def test_queue_timeout_keeps_session(self, session, fake_ws):
        """排队超时不拆除会话"""
        first = asyncio.create_task(session.round_trip(make_request("r1"), timeout=2.0))
        await next_sent(fake_ws)

        with pytest.raises(UpstreamTimeoutError):
            await session.round_trip(make_request("r2"), timeout=0.05)
        assert not session.closed

        fake_ws.feed('{"id": "r1", "status": 200, "body": null}')
        assert (await first).status == 200

    @pytest.mark.asyncio
    async def test_disconnect_fails_pending(self, session, fake_ws):
        """在途请求因连接断开而失败"""
        call = asyncio.create_task(session.round_trip(make_request("r1"), timeout=1.0))
        await next_sent(fake_ws)

        fake_ws.disconnect()
        with pytest.raises(OriginDisconnectedError):
            await call
        assert session.closed
        assert fake_ws.closed_with is None

    @pytest.mark.asyncio
    async def test_replacement_fails_pending(self, session, fake_ws):
        """被替换的会话上在途请求立即失败"""
        call = asyncio.create_task(session.round_trip(make_request("r1"), timeout=1.0))
        await next_sent(fake_ws)

        await session.close(SessionReplacedError("replaced"), reason="Connection replaced")
        with pytest.raises(SessionReplacedError):
            await call
        assert fake_ws.closed_with == (1000, "Connection replaced")

    @pytest.mark.asyncio
    async def test_closed_session_rejects_requests(self, session):
        await session.close(OriginDisconnectedError("gone"))
        with pytest.raises(OriginDisconnectedError):
            await session.round_trip(make_request("r1"), timeout=1.0)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, session, fake_ws):
        await session.close(OriginDisconnectedError("first"), code=1000)
        await session.close(OriginDisconnectedError("second"), code=1011)
        assert session.failure.message == "first"
        assert fake_ws.closed_with[0] == 1000


class TestProtocolErrors:
    """测试协议错误"""

    @pytest.mark.asyncio
    async def test_malformed_response(self, session, fake_ws):
        """非法响应视为协议错误并拆除会话"""
        call = asyncio.create_task(session.round_trip(make_request("r1"), timeout=1.0))
        await next_sent(fake_ws)

        fake_ws.feed("not json")
        with pytest.raises(ProtocolError):
            await call
        assert fake_ws.closed_with[0] == CLOSE_PROTOCOL_ERROR

    @pytest.mark.asyncio
    async def test_mismatched_id(self, session, fake_ws):
        call = asyncio.create_task(session.round_trip(make_request("r1"), timeout=1.0))
        await next_sent(fake_ws)

        fake_ws.feed('{"id": "other", "status": 200, "body": null}')
        with pytest.raises(ProtocolError):
            await call
        assert session.closed

    @pytest.mark.asyncio
    async def test_unsolicited_message(self, session, fake_ws):
        """无在途请求时收到的消息是协议错误"""
        fake_ws.feed('{"status": 200, "body": null}')
        for _ in range(100):
            if session.closed:
                break
            await asyncio.sleep(0.01)

        assert isinstance(session.failure, ProtocolError)
        assert fake_ws.closed_with[0] == CLOSE_PROTOCOL_ERROR
