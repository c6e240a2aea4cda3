"""
MCP Tunnel 命令行工具

使用示例:
    # 启动中继
    mcp-tunnel serve --port 8787

    # 启动桌面端，把本地 MCP 服务暴露出去
    mcp-tunnel connect --server wss://relay.example.com/tunnel --target http://localhost:3000/mcp
"""

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .client import TunnelClient
from .config import TunnelClientConfig, TunnelServerConfig

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
    """MCP Tunnel - 通过 WebSocket 隧道暴露本地 MCP 服务"""
    pass


@main.command()
@click.option("--host", "-h", default="0.0.0.0", help="监听地址")
@click.option("--port", "-p", default=8787, help="监听端口")
@click.option("--timeout", "-t", default=30.0, help="等待桌面端响应的超时（秒）")
@click.option("--cors-origins", default="*", help="CORS 允许的来源（逗号分隔，* 表示全部）")
@click.option("--verbose", "-v", is_flag=True, help="详细日志")
def serve(host: str, port: int, timeout: float, cors_origins: str, verbose: bool):
    """启动中继服务"""
    setup_logging(verbose)

    config = TunnelServerConfig(
        host=host,
        port=port,
        request_timeout=timeout,
        cors_origins=cors_origins,
    )

    console.print(f"[bold blue]MCP Tunnel v{__version__}[/bold blue]")
    console.print(f"  监听: {host}:{port}")
    console.print(f"  隧道: ws://{host}:{port}{config.tunnel_path}")
    console.print(f"  MCP:  http://{host}:{port}{config.mcp_path}")
    console.print(f"  超时: {timeout}s")
    console.print()

    from .app import run_app

    run_app(config)


@main.command()
@click.option(
    "--server",
    "-s",
    default="ws://localhost:8787/tunnel",
    help="中继 WebSocket URL",
)
@click.option(
    "--target",
    "-T",
    default="http://localhost:3000/mcp",
    help="本地 MCP 服务 URL",
)
@click.option("--reconnect", "-r", default=5.0, help="重连间隔（秒）")
@click.option("--verbose", "-v", is_flag=True, help="详细日志")
def connect(server: str, target: str, reconnect: float, verbose: bool):
    """连接到中继"""
    setup_logging(verbose)

    console.print("[bold blue]MCP Tunnel Client[/bold blue]")
    console.print(f"  中继: {server}")
    console.print(f"  目标: {target}")
    console.print()

    config = TunnelClientConfig(
        server_url=server,
        target_url=target,
        reconnect_interval=reconnect,
    )
    client = TunnelClient(config=config)

    def on_connect():
        console.print(f"[green]✓[/green] 已连接: {client.public_url}")

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
