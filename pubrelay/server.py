"""
PubRelay 服务端 SDK

提供：
1. POST /register 注册公开 key
2. WebSocket /ws/{key} 供 origin 建立隧道
3. ANY /api/{key}[/{path}] 公开调用入口（直连转发或隧道中继）

使用示例:
    from pubrelay import BrokerConfig, create_app

    # lifespan 负责 broker.initialize() 与 broker.close()
    app = create_app(BrokerConfig(key_strategy="sequential"))
    broker = app.state.broker
"""

import asyncio
import logging
import uuid
from datetime import datetime

import httpx
from fastapi import APIRouter, Request, Response, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, HttpUrl, ValidationError, model_validator

from .config import BrokerConfig
from .errors import (
    InputError,
    KeyNotFoundError,
    OriginDisconnectedError,
    OriginUnavailableError,
    ProtocolError,
    SessionReplacedError,
    UpstreamError,
    UpstreamTimeoutError,
)
from .protocol import (
    HOP_BY_HOP_HEADERS,
    TunnelRequest,
    parse_handshake,
    public_api_path,
    tunnel_url,
)
from .registry import (
    ForwardMode,
    KeyAllocator,
    OriginBinding,
    RandomKeyAllocator,
    SequentialKeyAllocator,
    SessionRegistry,
)
from .session import CLOSE_POLICY_VIOLATION, TunnelSession, receive_text

logger = logging.getLogger(__name__)

RELAY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


# ============== 请求/响应模型 ==============


class RegisterRequest(BaseModel):
    """注册请求：提供 local_api 为直连模式，否则为隧道模式"""

    local_api: HttpUrl | None = None
    mode: ForwardMode | None = None

    @model_validator(mode="after")
    def _resolve_mode(self) -> "RegisterRequest":
        if self.mode is None:
            self.mode = ForwardMode.DIRECT if self.local_api else ForwardMode.SOCKET
        if self.mode is ForwardMode.DIRECT and self.local_api is None:
            raise ValueError("local_api is required in direct mode")
        return self


class RegisterResponse(BaseModel):
    """注册响应"""

    public_api: str
    ws_url: str | None = None


class TunnelInfo(BaseModel):
    """key 信息"""

    key: str
    mode: ForwardMode
    public_api: str
    local_api: str | None = None
    connected: bool = False
    connected_at: str | None = None
    request_count: int = 0
    busy: bool = False
    created_at: str | None = None


# ============== 服务端 ==============


def create_allocator(config: BrokerConfig) -> KeyAllocator:
    """根据配置创建 key 分配器"""
    if config.key_strategy == "sequential":
        return SequentialKeyAllocator()
    return RandomKeyAllocator(config.key_length)


class BrokerServer:
    """
    中继服务端

    注册表由构造方注入或自动创建，便于测试中使用独立实例
    """

    def __init__(
        self,
        config: BrokerConfig | None = None,
        registry: SessionRegistry | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config or BrokerConfig()
        self.registry = registry or SessionRegistry(create_allocator(self.config))
        self.http_client = http_client
        self._owns_http_client = http_client is None
        self.router = APIRouter(tags=["Relay"])

        # 注册路由
        self._register_routes()

    async def initialize(self) -> None:
        """初始化服务端（创建直连转发使用的 HTTP 客户端）"""
        if self.http_client is None:
            self.http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.direct_fetch_timeout),
                follow_redirects=False,
                headers={"Accept-Encoding": "identity"},
            )
            self._owns_http_client = True
        logger.info("BrokerServer 初始化完成")

    async def close(self) -> None:
        """关闭服务端"""
        if self.http_client is not None and self._owns_http_client:
            await self.http_client.aclose()
            self.http_client = None
        logger.info("BrokerServer 已关闭")

    def _register_routes(self) -> None:
        """注册路由"""

        @self.router.post(
            "/register", response_model=RegisterResponse, response_model_exclude_none=True
        )
        async def register(request: Request):
            return await self._register(request)

        @self.router.get("/tunnels/{key}", response_model=TunnelInfo)
        async def get_tunnel(key: str):
            return self._get_tunnel(key)

        @self.router.websocket("/ws/{key}")
        async def websocket_endpoint(websocket: WebSocket, key: str):
            await self._handle_websocket(websocket, key)

        @self.router.api_route("/api/{key}", methods=RELAY_METHODS)
        async def relay_root(request: Request, key: str):
            return await self.relay(request, key, "")

        @self.router.api_route("/api/{key}/{path:path}", methods=RELAY_METHODS)
        async def relay_path(request: Request, key: str, path: str):
            return await self.relay(request, key, path)

    # ============== 注册 ==============

    async def _register(self, request: Request) -> RegisterResponse:
        """注册 key"""
        raw = await request.body()
        try:
            payload = RegisterRequest.model_validate_json(raw)
        except ValidationError as e:
            raise InputError("Invalid input") from e

        local_api = str(payload.local_api) if payload.local_api else None
        binding = await self.registry.register(payload.mode, local_api=local_api)

        response = RegisterResponse(public_api=public_api_path(binding.key))
        if binding.mode is ForwardMode.SOCKET:
            base_url = self.config.ws_base_url or str(request.base_url)
            response.ws_url = tunnel_url(base_url, binding.key)
        return response

    def _get_tunnel(self, key: str) -> TunnelInfo:
        """获取 key 详情"""
        binding = self.registry.get_binding(key)
        if binding is None:
            raise KeyNotFoundError("API not found")

        info = TunnelInfo(
            key=binding.key,
            mode=binding.mode,
            public_api=public_api_path(binding.key),
            local_api=binding.local_api,
            created_at=binding.created_at.isoformat(),
        )
        session = self.registry.get(key)
        if session is not None and not session.closed:
            snapshot = session.info()
            info.connected = True
            info.connected_at = snapshot["connected_at"]
            info.request_count = snapshot["request_count"]
            info.busy = snapshot["busy"]
        return info

    # ============== 隧道接入 ==============

    async def _handle_websocket(self, websocket: WebSocket, key: str) -> None:
        """
        处理隧道连接

        Handshaking: 等待 origin 发送 key，失败则直接关闭，不修改注册表
        Active: 安装会话（替换旧会话），运行至断开
        Closed: 条件删除，避免误删更新的会话
        """
        await websocket.accept()

        try:
            raw = await asyncio.wait_for(
                receive_text(websocket),
                timeout=self.config.handshake_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"握手超时: key={key}")
            await self._reject(websocket, "Handshake timeout")
            return
        except WebSocketDisconnect:
            logger.info(f"握手前断开: key={key}")
            return
        except ProtocolError as e:
            await self._reject(websocket, e.message)
            return

        if parse_handshake(raw) != key:
            logger.warning(f"握手 key 不匹配: key={key}")
            await self._reject(websocket, "Key mismatch")
            return

        binding = self.registry.get_binding(key)
        if binding is None or binding.mode is not ForwardMode.SOCKET:
            logger.warning(f"拒绝未知隧道 key: {key}")
            await self._reject(websocket, "Unknown tunnel key")
            return

        session = TunnelSession(key, websocket)
        previous = await self.registry.put(key, session)
        if previous is not None:
            await previous.close(
                SessionReplacedError(f"Session replaced: {key}"),
                reason="Connection replaced",
            )
        logger.info(f"隧道已连接: key={key}")

        try:
            await session.run()
        finally:
            await self.registry.remove(key, session)
            if not session.closed:
                await session.close(OriginDisconnectedError("Tunnel handler exited"))
            logger.info(f"隧道已断开: key={key}")

    async def _reject(self, websocket: WebSocket, reason: str) -> None:
        try:
            await websocket.close(code=CLOSE_POLICY_VIOLATION, reason=reason)
        except (RuntimeError, OSError, WebSocketDisconnect) as e:
            logger.debug(f"关闭 WebSocket 失败: {e}")

    # ============== 公开中继 ==============

    async def relay(self, request: Request, key: str, path: str) -> Response:
        """
        转发公开请求到 key 绑定的 origin

        Raises:
            KeyNotFoundError: key 未注册
            OriginUnavailableError: 隧道模式但 origin 未连接
            UpstreamError: 转发失败
        """
        binding = self.registry.get_binding(key)
        if binding is None:
            raise KeyNotFoundError("API not found")

        body = await request.body()
        headers = request.headers.multi_items()
        query = request.url.query

        if binding.mode is ForwardMode.DIRECT:
            return await self._forward_direct(binding, request.method, path, query, headers, body)
        return await self._forward_socket(binding, request.method, path, query, headers, body)

    async def _forward_direct(
        self,
        binding: OriginBinding,
        method: str,
        path: str,
        query: str,
        headers: list[tuple[str, str]],
        body: bytes,
    ) -> Response:
        """直连模式：原样转发，状态码、响应头和字节流原样返回"""
        if self.http_client is None:
            raise RuntimeError("BrokerServer not initialized")

        url = binding.local_api or ""
        if path:
            url = f"{url.rstrip('/')}/{path}"
        if query:
            url += ("&" if "?" in url else "?") + query

        outbound = [(k, v) for k, v in headers if k.lower() not in HOP_BY_HOP_HEADERS]

        try:
            upstream = self.http_client.build_request(
                method, url, headers=outbound, content=body or None
            )
            response = await self.http_client.send(upstream, stream=True)
            try:
                content = b"".join([chunk async for chunk in response.aiter_raw()])
            finally:
                await response.aclose()
        except httpx.TimeoutException as e:
            logger.warning(f"直连转发超时: key={binding.key}, {e}")
            raise UpstreamTimeoutError("Origin API timed out") from e
        except httpx.HTTPError as e:
            logger.warning(f"直连转发失败: key={binding.key}, {e}")
            raise UpstreamError("Failed to reach origin API") from e

        return build_response(
            response.status_code,
            response.headers.multi_items(),
            content,
            keep_content_length=method == "HEAD",
        )

    async def _forward_socket(
        self,
        binding: OriginBinding,
        method: str,
        path: str,
        query: str,
        headers: list[tuple[str, str]],
        body: bytes,
    ) -> Response:
        """隧道模式：构造信封，经会话往返，回放响应"""
        session = self.registry.get(binding.key)
        if session is None or session.closed:
            raise OriginUnavailableError(f"Origin offline: {binding.key}")

        origin_url = f"/{path}"
        if query:
            origin_url += f"?{query}"

        envelope = TunnelRequest.build(
            request_id=uuid.uuid4().hex,
            method=method,
            url=origin_url,
            headers=headers,
            body=body,
        )

        start_time = datetime.now()
        response = await session.round_trip(envelope, timeout=self.config.request_timeout)
        duration_ms = int((datetime.now() - start_time).total_seconds() * 1000)
        logger.debug(
            f"中继完成: key={binding.key}, {method} {origin_url} -> {response.status} ({duration_ms}ms)"
        )

        content, default_media_type = response.render_body()
        return build_response(
            response.status, response.header_items(), content, default_media_type
        )


def build_response(
    status: int,
    header_items: list[tuple[str, str]],
    content: bytes,
    default_media_type: str | None = None,
    keep_content_length: bool = False,
) -> Response:
    """
    构造回放响应，保留同名多值头，丢弃逐跳头

    keep_content_length 用于 HEAD：响应没有 body，但 Content-Length 应与上游一致
    """
    response = Response(content=content, status_code=status)

    has_content_type = False
    for name, value in header_items:
        lowered = name.lower()
        if lowered == "content-length" and keep_content_length:
            response.headers["content-length"] = value
            continue
        if lowered in HOP_BY_HOP_HEADERS:
            continue
        if lowered == "content-type":
            has_content_type = True
        response.headers.append(name, value)

    if not has_content_type and default_media_type:
        response.headers["content-type"] = default_media_type
    return response
