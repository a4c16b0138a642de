"""
测试配置和 Fixtures
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from pubrelay.app import create_app
from pubrelay.config import BrokerConfig


class FakeWebSocket:
    """内存 WebSocket，按 ASGI 消息格式收发"""

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: asyncio.Queue = asyncio.Queue()
        self.closed_with: tuple[int, str | None] | None = None

    async def receive(self) -> dict:
        return await self.incoming.get()

    async def send_text(self, data: str) -> None:
        if self.closed_with is not None:
            raise RuntimeError("Cannot call send once a close message has been sent.")
        await self.sent.put(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed_with = (code, reason)
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": code})

    def feed(self, text: str) -> None:
        self.incoming.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self, code: int = 1006) -> None:
        self.incoming.put_nowait({"type": "websocket.disconnect", "code": code})


@pytest.fixture
def fake_ws() -> FakeWebSocket:
    return FakeWebSocket()


def make_client(**overrides) -> TestClient:
    """创建使用顺序 key 的测试客户端"""
    options = {
        "key_strategy": "sequential",
        "request_timeout": 2.0,
        "handshake_timeout": 2.0,
    }
    options.update(overrides)
    http_client = options.pop("http_client", None)
    return TestClient(create_app(BrokerConfig(**options), http_client=http_client))


@pytest.fixture
def client():
    with make_client() as test_client:
        yield test_client


def register_socket(client: TestClient) -> str:
    """注册隧道模式并返回 key"""
    response = client.post("/register", json={"mode": "socket"})
    assert response.status_code == 200
    return response.json()["public_api"].rsplit("/", 1)[-1]


def wait_connected(client: TestClient, key: str, expected: bool = True, timeout: float = 2.0) -> None:
    """轮询直到 key 的连接状态符合预期"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if client.get(f"/tunnels/{key}").json()["connected"] is expected:
            return
        time.sleep(0.01)
    raise AssertionError(f"tunnel {key} connected != {expected}")
