"""
MCP Tunnel - 独立的中继服务应用

远程 MCP 客户端 → 中继 (HTTPS) → WebSocket 隧道 → 桌面端 → 本地 MCP 服务

使用示例:
    # 启动服务器
    python -m mcp_tunnel.app

    # 或使用 CLI
    mcp-tunnel serve --port 8787
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import TunnelServerConfig
from .connection import SocketRegistry
from .server import TunnelServer

logger = logging.getLogger(__name__)


def create_lifespan(tunnel_srv: TunnelServer):
    """创建带有 TunnelServer 引用的 lifespan 函数"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        config = tunnel_srv.config
        logger.info("MCP Tunnel 启动")
        logger.info(f"  隧道端点: {config.tunnel_path}")
        logger.info(f"  MCP 端点: {config.mcp_path}")
        logger.info(f"  请求超时: {config.request_timeout}s")

        yield

        await tunnel_srv.close()
        logger.info("MCP Tunnel 已关闭")

    return lifespan


def create_app(
    config: TunnelServerConfig | None = None,
    registry: SocketRegistry | None = None,
) -> FastAPI:
    """
    创建 MCP Tunnel 应用

    Args:
        config: 服务端配置（默认从环境变量读取）
        registry: 桌面端连接登记表（默认新建）

    Returns:
        FastAPI 应用实例，TunnelServer 保存在 app.state.tunnel_server
    """
    config = config or TunnelServerConfig()

    # 创建 TunnelServer（路由在此时注册）
    tunnel_srv = TunnelServer(config=config, registry=registry)

    new_app = FastAPI(
        title="MCP Tunnel",
        description="通过 WebSocket 隧道把本地 MCP 服务暴露到公网",
        version=__version__,
        lifespan=create_lifespan(tunnel_srv),
    )
    new_app.state.tunnel_server = tunnel_srv

    new_app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origin_list,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "mcp-session-id"],
    )

    @new_app.exception_handler(Exception)
    async def internal_error(request: Request, exc: Exception):
        logger.error(f"处理请求失败: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "message": str(exc)},
        )

    new_app.include_router(tunnel_srv.router)
    return new_app


def run_app(config: TunnelServerConfig | None = None) -> None:
    """
    运行 MCP Tunnel

    Args:
        config: 服务端配置（默认从环境变量读取）
    """
    import uvicorn

    config = config or TunnelServerConfig()
    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
    )


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    run_app()
