"""
PubRelay - 将本地 API 以短 key 公开

提供服务端和客户端 SDK，支持：
- 直连模式：服务端直接请求已注册的 origin URL
- 隧道模式：origin 持有 WebSocket 长连接，服务端经隧道中继请求
- 服务端嵌入到 FastAPI 应用或独立运行
"""

__version__ = "0.1.0"

from .protocol import TunnelRequest, TunnelResponse
from .errors import (
    RelayError,
    InputError,
    KeyNotFoundError,
    OriginUnavailableError,
    UpstreamError,
    UpstreamTimeoutError,
    OriginDisconnectedError,
    SessionReplacedError,
    ProtocolError,
)
from .registry import ForwardMode, OriginBinding, SessionRegistry
from .session import TunnelSession
from .server import BrokerServer
from .client import OriginClient
from .config import BrokerConfig, OriginClientConfig
from .app import create_app, run_app

__all__ = [
    # 版本
    "__version__",
    # 协议
    "TunnelRequest",
    "TunnelResponse",
    # 错误
    "RelayError",
    "InputError",
    "KeyNotFoundError",
    "OriginUnavailableError",
    "UpstreamError",
    "UpstreamTimeoutError",
    "OriginDisconnectedError",
    "SessionReplacedError",
    "ProtocolError",
    # 服务端
    "ForwardMode",
    "OriginBinding",
    "SessionRegistry",
    "TunnelSession",
    "BrokerServer",
    "BrokerConfig",
    # 客户端
    "OriginClient",
    "OriginClientConfig",
    # 应用
    "create_app",
    "run_app",
]
