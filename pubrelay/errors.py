"""
PubRelay 错误定义

每个错误携带其在公开入口上对应的 HTTP 状态码
"""


class RelayError(Exception):
    """中继错误基类"""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputError(RelayError):
    """注册请求无法解析"""

    status_code = 400


class KeyNotFoundError(RelayError):
    """key 未注册"""

    status_code = 404


class OriginUnavailableError(RelayError):
    """隧道模式的 key 已注册，但 origin 未连接"""

    status_code = 503


class UpstreamError(RelayError):
    """转发到 origin 失败"""

    status_code = 502


class UpstreamTimeoutError(UpstreamError):
    """origin 未在时限内响应"""

    status_code = 504


class OriginDisconnectedError(UpstreamError):
    """请求在途时隧道断开"""


class SessionReplacedError(UpstreamError):
    """同一 key 的新隧道替换了当前会话"""


class ProtocolError(UpstreamError):
    """origin 发送了非法或不应出现的信封"""
