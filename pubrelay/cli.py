"""
PubRelay 命令行工具

使用示例:
    # 启动服务端
    pubrelay serve --port 8080

    # 注册直连模式
    pubrelay register --local-api http://10.0.0.5:3000/data

    # 启动隧道客户端（未提供 key 时自动注册）
    pubrelay connect --server http://broker:8080 --target http://localhost:3000
"""

import asyncio
import logging
import sys

import click
import httpx
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .client import OriginClient
from .config import BrokerConfig, OriginClientConfig

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """配置日志"""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


@click.group()
@click.version_option(version=__version__)
def main():
    """PubRelay - 将本地 API 以短 key 公开"""
    pass


@main.command()
@click.option("--host", "-h", default=None, help="监听地址")
@click.option("--port", "-p", type=int, default=None, help="监听端口")
@click.option("--request-timeout", "-t", type=float, default=None, help="隧道往返超时（秒）")
@click.option(
    "--key-strategy",
    type=click.Choice(["random", "sequential"]),
    default=None,
    help="Key 分配策略",
)
@click.option("--verbose", "-v", is_flag=True, help="详细日志")
def serve(
    host: str | None,
    port: int | None,
    request_timeout: float | None,
    key_strategy: str | None,
    verbose: bool,
):
    """启动 PubRelay Server"""
    setup_logging(verbose)

    overrides = {
        "host": host,
        "port": port,
        "request_timeout": request_timeout,
        "key_strategy": key_strategy,
    }
    config = BrokerConfig(**{k: v for k, v in overrides.items() if v is not None})

    console.print(f"[bold blue]PubRelay Server v{__version__}[/bold blue]")
    console.print(f"  监听: {config.host}:{config.port}")
    console.print(f"  Key 策略: {config.key_strategy}")
    console.print(f"  隧道超时: {config.request_timeout}s")
    console.print()
    console.print("[dim]访问方式:[/dim]")
    console.print(f"  注册:     POST http://{config.host}:{config.port}/register")
    console.print(f"  公开调用: http://{config.host}:{config.port}/api/{{key}}")
    console.print(f"  隧道:     ws://{config.host}:{config.port}/ws/{{key}}")
    console.print()

    from .app import run_app

    run_app(config)


@main.command()
@click.option("--server", "-s", default="http://localhost:8080", help="服务端 URL")
@click.option("--local-api", "-l", default=None, help="直连模式的 origin URL（不提供则为隧道模式）")
def register(server: str, local_api: str | None):
    """注册公开 key"""
    payload = {"local_api": local_api} if local_api else {"mode": "socket"}

    try:
        response = httpx.post(f"{server.rstrip('/')}/register", json=payload)
    except httpx.HTTPError as e:
        console.print(f"[red]✗[/red] 请求失败: {e}")
        sys.exit(1)

    if response.status_code != 200:
        console.print(f"[red]✗[/red] 注册失败: {response.text}")
        sys.exit(1)

    data = response.json()
    table = Table(title="注册成功")
    table.add_column("字段", style="cyan")
    table.add_column("值")
    table.add_row("模式", "直连" if local_api else "隧道")
    table.add_row("公开地址", f"{server.rstrip('/')}{data['public_api']}")
    if data.get("ws_url"):
        table.add_row("隧道地址", data["ws_url"])
    console.print(table)


@main.command()
@click.option("--server", "-s", default="http://localhost:8080", help="服务端 URL")
@click.option("--target", "-T", default="http://localhost:3000", help="本地目标服务 URL")
@click.option("--key", "-k", default=None, help="公开 Key（不提供则自动注册）")
@click.option("--reconnect", "-r", default=5.0, help="重连间隔（秒）")
@click.option("--verbose", "-v", is_flag=True, help="详细日志")
def connect(server: str, target: str, key: str | None, reconnect: float, verbose: bool):
    """连接到服务端，经隧道公开本地服务"""
    setup_logging(verbose)

    console.print("[bold blue]PubRelay Client[/bold blue]")
    console.print(f"  服务端: {server}")
    console.print(f"  目标: {target}")
    console.print()

    config = OriginClientConfig(
        server_url=server,
        target_url=target,
        key=key,
        reconnect_interval=reconnect,
    )
    client = OriginClient(config=config)

    def on_connect():
        console.print(f"[green]✓[/green] 已连接: {client.public_api}")

    def on_disconnect():
        console.print("[yellow]![/yellow] 连接断开")

    client.on_connect(on_connect)
    client.on_disconnect(on_disconnect)

    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        console.print("\n[dim]已停止[/dim]")
        sys.exit(0)


if __name__ == "__main__":
    main()
