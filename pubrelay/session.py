"""
PubRelay 隧道会话

每个会话独占一条 origin 持有的 WebSocket 连接：
- 读任务是入站帧的唯一消费者（兼做存活检测）
- round_trip 是出站信封的唯一生产者，由会话锁串行化（深度为 1 的队列）

状态机（握手由接入处理器负责，会话创建即 ACTIVE）:
    ACTIVE → CLOSED
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from .errors import (
    OriginDisconnectedError,
    ProtocolError,
    UpstreamError,
    UpstreamTimeoutError,
)
from .protocol import TunnelRequest, TunnelResponse, parse_response

logger = logging.getLogger(__name__)

# WebSocket 关闭码
CLOSE_NORMAL = 1000
CLOSE_PROTOCOL_ERROR = 1002
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011


class SessionState(str, Enum):
    """会话状态"""

    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class PendingRequest:
    """已发送、等待响应的请求"""

    request_id: str
    future: asyncio.Future
    created_at: datetime = field(default_factory=datetime.now)


class TunnelSession:
    """
    隧道会话

    绑定一个 key 和一条连接；同一时刻至多一个请求在途
    """

    def __init__(self, key: str, websocket: WebSocket):
        self.key = key
        self.websocket = websocket
        self.state = SessionState.ACTIVE
        self.connected_at = datetime.now()
        self.request_count = 0
        self.failure: UpstreamError | None = None

        self._pending: PendingRequest | None = None
        self._request_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    @property
    def busy(self) -> bool:
        """是否有请求在途"""
        return self._pending is not None

    def info(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "state": self.state.value,
            "connected_at": self.connected_at.isoformat(),
            "request_count": self.request_count,
            "busy": self.busy,
        }

    # ============== 生命周期 ==============

    async def run(self) -> None:
        """
        运行会话直到连接断开或会话被关闭（替换、超时、协议错误）
        """
        reader = asyncio.create_task(self._read_loop())
        closed = asyncio.create_task(self._closed.wait())
        try:
            await asyncio.wait({reader, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (reader, closed):
                task.cancel()
            await asyncio.gather(reader, closed, return_exceptions=True)

    async def close(
        self,
        error: UpstreamError,
        code: int = CLOSE_NORMAL,
        reason: str = "",
        notify: bool = True,
    ) -> None:
        """
        关闭会话

        在途请求以 error 失败；notify 为 False 时表示连接已断开，不再发送关闭帧
        """
        if self.closed:
            return

        self.state = SessionState.CLOSED
        self.failure = error

        pending = self._pending
        if pending and not pending.future.done():
            pending.future.set_exception(error)

        self._closed.set()
        logger.info(f"会话已关闭: key={self.key}, reason={error.message}")

        if notify:
            async with self._write_lock:
                try:
                    await self.websocket.close(code=code, reason=reason)
                except (RuntimeError, OSError, WebSocketDisconnect) as e:
                    logger.debug(f"关闭 WebSocket 失败（连接可能已断开）: key={self.key}, {e}")

    # ============== 请求-响应 ==============

    async def round_trip(self, request: TunnelRequest, timeout: float) -> TunnelResponse:
        """
        发送请求信封并等待唯一对应的响应信封

        排队等待会话锁的时间也计入 timeout。

        Raises:
            UpstreamTimeoutError: 超时（已发送的请求超时会拆除会话）
            UpstreamError: 连接断开、会话被替换或协议错误
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        if not await self._acquire_request_lock(timeout):
            raise UpstreamTimeoutError(f"Tunnel busy for {timeout:.1f}s: {self.key}")

        sent = False
        try:
            if self.closed:
                raise OriginDisconnectedError(f"Tunnel closed: {self.key}")

            future = loop.create_future()
            self._pending = PendingRequest(request_id=request.id, future=future)
            self.request_count += 1

            try:
                async with self._write_lock:
                    # 帧可能在取消时已部分写出
                    sent = True
                    await self.websocket.send_text(request.to_wire())
            except (RuntimeError, OSError, WebSocketDisconnect) as e:
                error = OriginDisconnectedError(f"Failed to send request: {e}")
                self._pending = None
                await self.close(error, notify=False)
                raise error from e

            logger.debug(f"请求已发送: key={self.key}, id={request.id}, {request.method} {request.url}")

            remaining = max(deadline - loop.time(), 0.0)
            try:
                return await asyncio.wait_for(future, timeout=remaining)
            except asyncio.TimeoutError:
                error = UpstreamTimeoutError(
                    f"Origin did not respond within {timeout:.1f}s"
                )
                logger.warning(f"请求超时，拆除会话: key={self.key}, id={request.id}")
                await self.close(error, code=CLOSE_INTERNAL_ERROR, reason="Request timed out")
                raise error from None
        except asyncio.CancelledError:
            # 已发出的请求被放弃后，迟到的响应无法与下一个请求区分
            if sent:
                logger.warning(f"请求被取消，拆除会话: key={self.key}, id={request.id}")
                self._pending = None
                await self.close(
                    OriginDisconnectedError("Request abandoned"),
                    code=CLOSE_INTERNAL_ERROR,
                    reason="Request abandoned",
                )
            raise
        finally:
            self._pending = None
            self._request_lock.release()

    async def _acquire_request_lock(self, timeout: float) -> bool:
        """
        在 timeout 内获取会话锁

        获取与超时同时发生时不会丢失锁；调用方被取消时不持有锁
        """
        acquire = asyncio.ensure_future(self._request_lock.acquire())
        try:
            await asyncio.wait({acquire}, timeout=timeout)
        except asyncio.CancelledError:
            if acquire.done() and not acquire.cancelled():
                self._request_lock.release()
            else:
                acquire.cancel()
            raise

        if acquire.done():
            return True
        acquire.cancel()
        return False

    # ============== 读循环 ==============

    async def _read_loop(self) -> None:
        """读取入站帧；任何读错误或关闭都视为断开"""
        while not self.closed:
            try:
                raw = await receive_text(self.websocket)
                self._dispatch(raw)
            except WebSocketDisconnect as e:
                logger.info(f"隧道断开: key={self.key}, code={e.code}")
                await self.close(OriginDisconnectedError("Origin disconnected"), notify=False)
                return
            except ProtocolError as e:
                logger.warning(f"协议错误，拆除会话: key={self.key}, {e.message}")
                await self.close(e, code=CLOSE_PROTOCOL_ERROR, reason="Protocol error")
                return
            except RuntimeError as e:
                logger.info(f"隧道读取失败: key={self.key}, {e}")
                await self.close(OriginDisconnectedError(f"Origin disconnected: {e}"), notify=False)
                return

    def _dispatch(self, raw: str) -> None:
        pending = self._pending
        if pending is None or pending.future.done():
            raise ProtocolError("Unsolicited message from origin")

        response = parse_response(raw)
        if response.id is not None and response.id != pending.request_id:
            raise ProtocolError(
                f"Response id {response.id!r} does not match request {pending.request_id!r}"
            )

        pending.future.set_result(response)
        logger.debug(f"收到响应: key={self.key}, id={pending.request_id}, status={response.status}")


async def receive_text(websocket: WebSocket) -> str:
    """
    读取一条文本帧（二进制帧按 UTF-8 解码）

    Raises:
        WebSocketDisconnect: 连接已关闭
        ProtocolError: 二进制帧不是合法 UTF-8
    """
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", CLOSE_NORMAL), message.get("reason"))

    text = message.get("text")
    if text is not None:
        return text

    data = message.get("bytes") or b""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolError("Binary frame is not valid UTF-8") from e
