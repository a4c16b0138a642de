"""
PubRelay 客户端 SDK（origin 侧）

连接到服务端隧道，按顺序接收请求信封，转发到本地目标服务并回传响应信封

使用示例:
    from pubrelay import OriginClient

    client = OriginClient(
        server_url="http://broker:8080",
        target_url="http://localhost:3000",
    )

    # 启动客户端（阻塞），未提供 key 时自动注册
    await client.run()

    # 或在后台运行
    task = asyncio.create_task(client.run())
"""

import asyncio
import base64
import json
import logging
from typing import Any, Callable

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from .config import OriginClientConfig
from .protocol import (
    HOP_BY_HOP_HEADERS,
    TunnelRequest,
    TunnelResponse,
    headers_to_multimap,
    multimap_to_items,
    tunnel_url,
)

logger = logging.getLogger(__name__)


class OriginClient:
    """
    隧道客户端

    对每个请求信封恰好回传一个响应信封，不并发处理
    """

    def __init__(
        self,
        server_url: str | None = None,
        target_url: str | None = None,
        key: str | None = None,
        config: OriginClientConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        初始化客户端

        Args:
            server_url: 服务端 HTTP 基础 URL
            target_url: 本地目标服务 URL
            key: 公开 Key（可选）
            config: 客户端配置（可选，优先级低于直接参数）
            transport: 注册和访问目标服务使用的 httpx transport（可选）
        """
        if config:
            self.config = config
        else:
            self.config = OriginClientConfig(
                server_url=server_url or "http://localhost:8080",
                target_url=target_url or "http://localhost:3000",
                key=key,
            )

        self._transport = transport
        self._websocket = None
        self._running = False
        self._connected = False
        self._key: str | None = self.config.key
        self._ws_url: str | None = None
        self._reconnect_count = 0

        # 回调函数
        self._on_connect: Callable[[], None] | None = None
        self._on_disconnect: Callable[[], None] | None = None

    @property
    def is_connected(self) -> bool:
        """是否已连接"""
        return self._connected

    @property
    def key(self) -> str | None:
        """公开 Key"""
        return self._key

    @property
    def public_api(self) -> str | None:
        """公开调用地址"""
        if self._key is None:
            return None
        return f"{self.config.server_url.rstrip('/')}/api/{self._key}"

    def on_connect(self, callback: Callable[[], None]) -> None:
        """设置连接成功回调"""
        self._on_connect = callback

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        """设置断开连接回调"""
        self._on_disconnect = callback

    async def ensure_key(self) -> str:
        """
        确保拥有 key：未配置时以 socket 模式注册

        Returns:
            公开 Key
        """
        if self._key is not None:
            if self._ws_url is None:
                self._ws_url = tunnel_url(self.config.server_url, self._key)
            return self._key

        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.post(
                f"{self.config.server_url.rstrip('/')}/register",
                json={"mode": "socket"},
            )
        if response.status_code != 200:
            raise ConnectionError(f"Registration failed: {response.status_code} {response.text}")

        data = response.json()
        self._key = data["public_api"].rstrip("/").rsplit("/", 1)[-1]
        self._ws_url = data.get("ws_url") or tunnel_url(self.config.server_url, self._key)
        logger.info(f"已注册: key={self._key}")
        return self._key

    async def run(self) -> None:
        """
        运行客户端

        自动重连，直到调用 stop()
        """
        self._running = True

        while self._running:
            try:
                await self.ensure_key()
                await self._connect_and_run()
            except Exception as e:
                if not self._running:
                    break

                self._connected = False
                if self._on_disconnect:
                    self._on_disconnect()

                self._reconnect_count += 1
                max_attempts = self.config.max_reconnect_attempts

                if max_attempts > 0 and self._reconnect_count > max_attempts:
                    logger.error(f"超过最大重连次数 ({max_attempts})，停止")
                    break

                logger.warning(
                    f"连接断开: {e}，{self.config.reconnect_interval}秒后重连 "
                    f"(第 {self._reconnect_count} 次)"
                )
                await asyncio.sleep(self.config.reconnect_interval)

    async def stop(self) -> None:
        """停止客户端"""
        self._running = False
        if self._websocket:
            await self._websocket.close()

    async def _connect_and_run(self) -> None:
        """连接并运行"""
        logger.info(f"正在连接到 {self._ws_url}...")

        async with websockets.connect(
            self._ws_url,
            ping_interval=30,
            ping_timeout=10,
        ) as websocket:
            self._websocket = websocket

            # 握手：发送 key
            await websocket.send(self._key)

            self._connected = True
            self._reconnect_count = 0
            logger.info(f"已连接: key={self._key}")

            if self._on_connect:
                self._on_connect()

            try:
                await self._message_loop(websocket)
            except ConnectionClosed as e:
                raise ConnectionError(f"Tunnel closed: {e}") from e

        # 服务端正常关闭（例如被新连接替换）也触发重连
        raise ConnectionError("Tunnel closed by server")

    async def _message_loop(self, websocket) -> None:
        """消息处理循环"""
        async for raw_message in websocket:
            response = await self.handle_message(raw_message)
            await websocket.send(response.to_wire())

    async def handle_message(self, raw_message: str | bytes) -> TunnelResponse:
        """处理一条请求信封，总是返回一个响应信封"""
        try:
            request = TunnelRequest.model_validate_json(raw_message)
        except ValueError as e:
            logger.error(f"请求信封解析错误: {e}")
            return TunnelResponse(status=400, body={"error": "Malformed request envelope"})

        return await self.execute(request)

    async def execute(self, request: TunnelRequest) -> TunnelResponse:
        """
        执行 HTTP 请求

        将隧道请求转发到本地目标服务
        """
        url = f"{self.config.target_url.rstrip('/')}{request.url}"
        headers = [
            (name, value)
            for name, value in multimap_to_items(request.headers)
            if name.lower() not in HOP_BY_HOP_HEADERS
        ]

        try:
            async with httpx.AsyncClient(
                timeout=self.config.request_timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method=request.method,
                    url=url,
                    headers=headers,
                    content=request.body_bytes() or None,
                )
        except httpx.TimeoutException:
            return TunnelResponse(
                id=request.id, status=504, body={"error": "Target service timeout"}
            )
        except httpx.ConnectError as e:
            return TunnelResponse(
                id=request.id,
                status=503,
                body={"error": f"Target service unavailable: {e}"},
            )
        except Exception as e:
            logger.error(f"转发请求失败: {e}", exc_info=True)
            return TunnelResponse(id=request.id, status=500, body={"error": str(e)})

        body, encoding = encode_response_body(response)
        logger.info(f"{request.method} {request.url} -> {response.status_code}")
        return TunnelResponse(
            id=request.id,
            status=response.status_code,
            headers=headers_to_multimap(
                [
                    (name, value)
                    for name, value in response.headers.multi_items()
                    if name.lower() != "content-encoding"
                ]
            ),
            body=body,
            body_encoding=encoding,
        )


def encode_response_body(response: httpx.Response) -> tuple[Any, str | None]:
    """
    JSON 响应作为结构化值发送，其余文本作为字符串，二进制作为 base64
    """
    content = response.content
    if not content:
        return None, None

    content_type = response.headers.get("content-type", "").lower()
    if "json" in content_type:
        try:
            return json.loads(content), None
        except ValueError:
            pass

    try:
        return content.decode("utf-8"), None
    except UnicodeDecodeError:
        return base64.b64encode(content).decode("ascii"), "base64"

