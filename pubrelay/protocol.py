"""
PubRelay 隧道协议定义

连接流程:
- 客户端连接 /ws/{key}
- 第一条消息: key 本身（裸字符串，也接受 JSON 字符串字面量）
- 之后严格按 请求 → 响应 交替，不支持流水线

消息格式:
- request (服务端 → 客户端): {id, method, url, headers, body[, body_encoding]}
- response (客户端 → 服务端): {status, body[, id, headers, body_encoding]}
"""

import base64
import binascii
import json
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ProtocolError

# 逐跳头，不跨隧道转发
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "host",
        "content-length",
    }
)

PUBLIC_API_PREFIX = "/api"
TUNNEL_PREFIX = "/ws"


# ============== 请求-响应消息 ==============


class TunnelRequest(BaseModel):
    """
    HTTP 请求（服务端 → 客户端）

    公开端点收到的请求序列化后通过隧道发送给 origin
    """

    id: str = Field(..., description="请求 ID，origin 可在响应中回显用于校验")
    method: str = Field(..., description="HTTP 方法: GET, POST, PUT, DELETE 等")
    url: str = Field(..., description="origin 侧路径（含查询参数），如 /users?page=1")
    headers: dict[str, list[str]] = Field(
        default_factory=dict, description="HTTP 请求头（同名多值按顺序保存）"
    )
    body: str = Field(default="", description="请求体（文本，或 base64）")
    body_encoding: Literal["base64"] | None = Field(
        default=None, description="body 编码（非 UTF-8 内容时为 base64）"
    )

    @field_validator("headers", mode="before")
    @classmethod
    def _normalize_headers(cls, value: Any) -> Any:
        return normalize_headers(value)

    @classmethod
    def build(
        cls,
        request_id: str,
        method: str,
        url: str,
        headers: list[tuple[str, str]],
        body: bytes,
    ) -> "TunnelRequest":
        """根据原始请求构建信封"""
        text, encoding = encode_body(body)
        return cls(
            id=request_id,
            method=method,
            url=url,
            headers=headers_to_multimap(headers),
            body=text,
            body_encoding=encoding,
        )

    def body_bytes(self) -> bytes:
        """还原请求体字节"""
        if self.body_encoding == "base64":
            return base64.b64decode(self.body)
        return self.body.encode("utf-8")

    def to_wire(self) -> str:
        return self.model_dump_json(exclude_none=True)


class TunnelResponse(BaseModel):
    """
    HTTP 响应（客户端 → 服务端）

    body 为任意 JSON 值；字符串原样回放，base64 字符串按字节回放
    """

    status: int = Field(..., ge=100, le=599, description="HTTP 状态码")
    body: Any = Field(default=None, description="响应体（JSON 值）")
    id: str | None = Field(default=None, description="请求 ID，与 TunnelRequest.id 对应")
    headers: dict[str, list[str]] | None = Field(default=None, description="HTTP 响应头")
    body_encoding: Literal["base64"] | None = Field(default=None, description="body 编码")

    @field_validator("headers", mode="before")
    @classmethod
    def _normalize_headers(cls, value: Any) -> Any:
        if value is None:
            return None
        return normalize_headers(value)

    @model_validator(mode="after")
    def _check_encoded_body(self) -> "TunnelResponse":
        if self.body_encoding == "base64":
            if not isinstance(self.body, str):
                raise ValueError("base64 body must be a string")
            try:
                base64.b64decode(self.body, validate=True)
            except binascii.Error as e:
                raise ValueError(f"invalid base64 body: {e}") from e
        return self

    def header_items(self) -> list[tuple[str, str]]:
        """可回放的响应头（已去除逐跳头）"""
        items = []
        for name, values in (self.headers or {}).items():
            if name.lower() in HOP_BY_HOP_HEADERS:
                continue
            items.extend((name, value) for value in values)
        return items

    def content_type(self) -> str | None:
        for name, values in (self.headers or {}).items():
            if name.lower() == "content-type" and values:
                return values[0]
        return None

    def render_body(self) -> tuple[bytes, str | None]:
        """
        将 body 转换为回放字节

        Returns:
            (content, default_media_type) - origin 未指定 Content-Type 时使用后者
        """
        if self.body is None:
            return b"", None
        if self.body_encoding == "base64":
            return base64.b64decode(self.body), "application/octet-stream"
        if isinstance(self.body, str):
            return self.body.encode("utf-8"), "text/plain; charset=utf-8"
        return json.dumps(self.body).encode("utf-8"), "application/json"

    def to_wire(self) -> str:
        return self.model_dump_json(exclude_none=True)


# ============== 编解码工具 ==============


def normalize_headers(value: Any) -> Any:
    """将 {name: value} 或 {name: [values]} 统一为多值形式"""
    if not isinstance(value, dict):
        return value
    normalized: dict[str, list[str]] = {}
    for name, values in value.items():
        if isinstance(values, str):
            normalized[name] = [values]
        else:
            normalized[name] = values
    return normalized


def headers_to_multimap(items: list[tuple[str, str]]) -> dict[str, list[str]]:
    """(name, value) 列表 → 多值映射，丢弃逐跳头"""
    headers: dict[str, list[str]] = {}
    for name, value in items:
        if name.lower() in HOP_BY_HOP_HEADERS:
            continue
        headers.setdefault(name, []).append(value)
    return headers


def multimap_to_items(headers: dict[str, list[str]]) -> list[tuple[str, str]]:
    return [(name, value) for name, values in headers.items() for value in values]


def encode_body(body: bytes) -> tuple[str, Literal["base64"] | None]:
    """UTF-8 内容按文本发送，其余按 base64 发送"""
    try:
        return body.decode("utf-8"), None
    except UnicodeDecodeError:
        return base64.b64encode(body).decode("ascii"), "base64"


def parse_response(raw: str) -> TunnelResponse:
    """
    解析 origin 发回的响应信封

    Raises:
        ProtocolError: 非 JSON、非对象或字段不合法
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Malformed envelope: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Malformed envelope: expected a JSON object")

    try:
        return TunnelResponse.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid response envelope: {e.error_count()} error(s)") from e


def parse_handshake(raw: str) -> str:
    """解析握手消息中的 key（裸字符串或 JSON 字符串字面量）"""
    text = raw.strip()
    if text.startswith('"'):
        try:
            value = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(value, str):
            return value.strip()
    return text


# ============== URL 约定 ==============


def public_api_path(key: str) -> str:
    return f"{PUBLIC_API_PREFIX}/{key}"


def tunnel_path(key: str) -> str:
    return f"{TUNNEL_PREFIX}/{key}"


def to_ws_url(base_url: str) -> str:
    """http(s):// → ws(s)://"""
    base_url = base_url.rstrip("/")
    if base_url.startswith("https://"):
        return "wss://" + base_url[len("https://"):]
    if base_url.startswith("http://"):
        return "ws://" + base_url[len("http://"):]
    return base_url


def tunnel_url(base_url: str, key: str) -> str:
    return f"{to_ws_url(base_url)}{tunnel_path(key)}"
