"""
PubRelay Server - 独立的中继服务应用

使用示例:
    # 启动服务器
    python -m pubrelay.app

    # 或使用 CLI
    pubrelay serve --port 8080

访问方式:
    # 注册直连模式
    curl -X POST http://localhost:8080/register -d '{"local_api": "http://10.0.0.5:3000/data"}'

    # 注册隧道模式，然后由 origin 连接返回的 ws_url
    curl -X POST http://localhost:8080/register -d '{"mode": "socket"}'

    # 公开调用
    curl http://localhost:8080/api/{key}
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from . import __version__
from .config import BrokerConfig
from .errors import RelayError
from .server import BrokerServer

logger = logging.getLogger(__name__)


class CORSHeadersMiddleware(BaseHTTPMiddleware):
    """
    为所有 HTTP 响应添加宽松的跨域头

    OPTIONS 预检请求直接返回 204，不进入任何处理器
    """

    def __init__(self, app: ASGIApp, config: BrokerConfig):
        super().__init__(app)
        self.headers = {
            "Access-Control-Allow-Origin": config.cors_allow_origin,
            "Access-Control-Allow-Methods": config.cors_allow_methods,
            "Access-Control-Allow-Headers": config.cors_allow_headers,
        }

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=self.headers)

        response = await call_next(request)
        for name, value in self.headers.items():
            response.headers[name] = value
        return response


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    """RelayError → {"error": ...}"""
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


def create_lifespan(broker: BrokerServer):
    """创建带有 BrokerServer 引用的 lifespan 函数"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        config = broker.config
        logger.info("PubRelay Server 启动")
        logger.info(f"  监听: {config.host}:{config.port}")
        logger.info(f"  Key 策略: {config.key_strategy}")
        logger.info(f"  隧道超时: {config.request_timeout}s")

        await broker.initialize()

        yield

        await broker.close()
        logger.info("PubRelay Server 已关闭")

    return lifespan


def create_app(
    config: BrokerConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """
    创建完整的 PubRelay Server 应用

    Args:
        config: 服务端配置（默认从环境变量读取）
        http_client: 直连转发使用的 HTTP 客户端（可选，默认在启动时创建）

    Returns:
        FastAPI 应用实例，BrokerServer 挂在 app.state.broker
    """
    config = config or BrokerConfig()
    broker = BrokerServer(config=config, http_client=http_client)

    app = FastAPI(
        title="PubRelay Server",
        description="公开本地 API：直连转发或 WebSocket 隧道中继",
        version=__version__,
        lifespan=create_lifespan(broker),
    )
    app.state.broker = broker

    app.add_middleware(CORSHeadersMiddleware, config=config)
    app.add_exception_handler(RelayError, relay_error_handler)
    app.include_router(broker.router)

    @app.get("/")
    async def root():
        """根路径"""
        return {
            "service": "PubRelay Server",
            "version": __version__,
            "status": "running",
        }

    @app.get("/health")
    async def health():
        """健康检查"""
        return {
            "status": "healthy",
            "registered": len(broker.registry.list_bindings()),
            "connected": len(broker.registry.connected_keys()),
        }

    return app


def run_app(config: BrokerConfig | None = None) -> None:
    """
    运行 PubRelay Server

    Args:
        config: 服务端配置
    """
    import uvicorn

    config = config or BrokerConfig()
    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    run_app()
