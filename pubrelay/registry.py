"""
PubRelay 注册表

进程内的 key → origin 绑定 与 key → 活跃隧道会话 映射。
锁只保护映射本身，从不跨 I/O 持有。
"""

import asyncio
import itertools
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .session import TunnelSession

logger = logging.getLogger(__name__)


class ForwardMode(str, Enum):
    """转发模式"""

    DIRECT = "direct"  # 服务端直接请求 origin URL
    SOCKET = "socket"  # 经由 origin 持有的 WebSocket 隧道中继


@dataclass(frozen=True)
class OriginBinding:
    """key 与 origin 的绑定（创建后不再修改）"""

    key: str
    mode: ForwardMode
    local_api: str | None = None
    created_at: datetime = field(default_factory=datetime.now)


# ============== Key 分配 ==============


class KeyAllocator:
    """Key 分配策略基类"""

    def allocate(self) -> str:
        raise NotImplementedError


class RandomKeyAllocator(KeyAllocator):
    """URL 安全的随机 Key"""

    def __init__(self, nbytes: int = 8):
        self.nbytes = nbytes

    def allocate(self) -> str:
        return secrets.token_urlsafe(self.nbytes)


class SequentialKeyAllocator(KeyAllocator):
    """单调递增的十进制 Key：1, 2, 3 ..."""

    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)

    def allocate(self) -> str:
        return str(next(self._counter))


# ============== 注册表 ==============


class SessionRegistry:
    """
    会话注册表

    管理 key 绑定和每个 key 至多一个的活跃隧道会话
    """

    def __init__(self, allocator: KeyAllocator | None = None):
        self.allocator = allocator or RandomKeyAllocator()

        # key → OriginBinding
        self._bindings: dict[str, OriginBinding] = {}

        # key → TunnelSession
        self._sessions: dict[str, "TunnelSession"] = {}

        self._lock = asyncio.Lock()

    async def register(
        self, mode: ForwardMode, local_api: str | None = None
    ) -> OriginBinding:
        """
        分配新 key 并保存绑定

        Args:
            mode: 转发模式
            local_api: 直连模式下的 origin URL

        Returns:
            新建的绑定
        """
        async with self._lock:
            key = self.allocator.allocate()
            while key in self._bindings:
                key = self.allocator.allocate()

            binding = OriginBinding(key=key, mode=mode, local_api=local_api)
            self._bindings[key] = binding

        logger.info(f"已注册 key={key}, mode={mode.value}")
        return binding

    def get_binding(self, key: str) -> OriginBinding | None:
        """根据 key 获取绑定"""
        return self._bindings.get(key)

    def list_bindings(self) -> list[OriginBinding]:
        """列出所有绑定"""
        return list(self._bindings.values())

    async def put(self, key: str, session: "TunnelSession") -> "TunnelSession | None":
        """
        安装或替换 key 的会话

        Returns:
            被替换的旧会话（调用方负责关闭它）
        """
        if session.key != key:
            raise ValueError(f"Session bound to {session.key!r} cannot occupy {key!r}")

        async with self._lock:
            previous = self._sessions.get(key)
            self._sessions[key] = session

        if previous is not None:
            logger.info(f"会话被替换: key={key}")
        return previous

    def get(self, key: str) -> "TunnelSession | None":
        """获取 key 当前的会话"""
        return self._sessions.get(key)

    async def remove(self, key: str, session: "TunnelSession") -> bool:
        """
        仅当槽位仍是该会话时删除

        避免旧连接的断开处理误删已替换的新会话
        """
        async with self._lock:
            if self._sessions.get(key) is not session:
                return False
            del self._sessions[key]
        return True

    def is_connected(self, key: str) -> bool:
        """检查 key 是否有活跃会话"""
        session = self._sessions.get(key)
        return session is not None and not session.closed

    def connected_keys(self) -> list[str]:
        """列出所有已连接的 key"""
        return [key for key, session in self._sessions.items() if not session.closed]
