"""
PubRelay 配置
"""

from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class BrokerConfig(BaseSettings):
    """服务端（Broker）配置"""

    # 监听配置
    host: str = Field(default="0.0.0.0", description="监听地址")
    port: int = Field(
        default=8080,
        description="监听端口（兼容部署平台注入的 PORT 环境变量）",
        validation_alias=AliasChoices("port", "PUBRELAY_PORT", "PORT"),
    )

    # 隧道配置
    request_timeout: float = Field(
        default=30.0, gt=0, description="隧道往返超时（秒）"
    )
    handshake_timeout: float = Field(
        default=30.0, gt=0, description="等待客户端发送 key 的超时（秒）"
    )
    ws_base_url: str | None = Field(
        default=None,
        description="隧道 WebSocket 基础 URL（可选，用于覆盖根据请求推导的地址）",
    )

    # 直连转发配置
    direct_fetch_timeout: float = Field(
        default=30.0, gt=0, description="直连转发超时（秒）"
    )

    # Key 分配
    key_strategy: Literal["random", "sequential"] = Field(
        default="random", description="Key 分配策略"
    )
    key_length: int = Field(default=8, ge=4, description="随机 Key 的熵（字节数）")

    # CORS
    cors_allow_origin: str = Field(default="*", description="Access-Control-Allow-Origin")
    cors_allow_methods: str = Field(
        default="GET, POST, PUT, PATCH, DELETE, OPTIONS",
        description="Access-Control-Allow-Methods",
    )
    cors_allow_headers: str = Field(
        default="Content-Type, Authorization",
        description="Access-Control-Allow-Headers",
    )

    model_config = {
        "env_prefix": "PUBRELAY_",
        "env_file": ".env",
        "extra": "ignore",
        "populate_by_name": True,
    }


class OriginClientConfig(BaseSettings):
    """客户端（Origin 侧）配置"""

    # 服务端连接
    server_url: str = Field(
        default="http://localhost:8080", description="服务端 HTTP 基础 URL"
    )
    key: str | None = Field(
        default=None, description="公开 Key（不提供则自动注册 socket-relay 模式）"
    )

    # 目标服务
    target_url: str = Field(
        default="http://localhost:3000", description="本地目标服务 URL"
    )

    # 连接配置
    reconnect_interval: float = Field(default=5.0, description="重连间隔（秒）")
    max_reconnect_attempts: int = Field(default=0, description="最大重连次数（0 表示无限）")

    # 请求配置
    request_timeout: float = Field(default=30.0, description="本地请求超时（秒）")

    model_config = {
        "env_prefix": "PUBRELAY_CLIENT_",
        "env_file": ".env",
        "extra": "ignore",
    }
