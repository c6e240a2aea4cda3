"""
MCP Tunnel 服务端

提供 HTTP 入口，可嵌入到 FastAPI 应用中

使用示例:
    from fastapi import FastAPI
    from mcp_tunnel import TunnelServer

    app = FastAPI()
    tunnel_server = TunnelServer()

    # 注册路由
    app.include_router(tunnel_server.router)

端点:
    GET  /         - 服务信息
    GET  /health   - 健康检查（显示隧道状态）
    GET  /tunnel   - 桌面端 WebSocket 端点
    POST /mcp      - 远程 MCP 客户端端点
"""

import logging

from fastapi import APIRouter, Request, WebSocket
from fastapi.responses import PlainTextResponse, Response

from . import __version__
from .config import TunnelServerConfig
from .connection import SocketRegistry, is_open
from .exceptions import ProtocolError
from .manager import TunnelManager

logger = logging.getLogger(__name__)


class TunnelServer:
    """
    隧道服务器

    提供：
    1. WebSocket 端点用于桌面端连接
    2. MCP 端点用于远程客户端
    3. 健康检查和服务信息
    """

    def __init__(
        self,
        config: TunnelServerConfig | None = None,
        registry: SocketRegistry | None = None,
    ):
        self.config = config or TunnelServerConfig()
        self.registry = registry or SocketRegistry()
        self.manager = TunnelManager(config=self.config, registry=self.registry)
        self.router = APIRouter(tags=["Tunnel"])

        # 注册路由
        self._register_routes()

    def resume(self) -> TunnelManager:
        """
        挂起恢复后重建管理器

        新管理器从 SocketRegistry 找回仍然打开的桌面端连接，
        正在读取的连接会把之后的帧交给新管理器。
        """
        self.manager = TunnelManager(config=self.config, registry=self.registry)
        return self.manager

    async def close(self) -> None:
        """关闭服务器"""
        await self.manager.close()
        logger.info("TunnelServer 已关闭")

    def info(self) -> dict:
        """服务信息"""
        return {
            "name": self.config.service_name,
            "version": __version__,
            "endpoints": {
                "health": "/health",
                "tunnel": f"{self.config.tunnel_path} (WebSocket)",
                "mcp": f"{self.config.mcp_path} (POST)",
            },
        }

    def _register_routes(self) -> None:
        """注册路由"""

        @self.router.get("/")
        async def get_server_info():
            return self.info()

        @self.router.get("/health")
        async def health():
            """健康检查"""
            return self.manager.health()

        @self.router.websocket(self.config.tunnel_path)
        async def websocket_endpoint(websocket: WebSocket):
            await self._handle_websocket(websocket)

        @self.router.get(self.config.tunnel_path)
        async def tunnel_without_upgrade(request: Request):
            """非 WebSocket 请求到达隧道端点"""
            try:
                await self.manager.handle_agent_upgrade(request)
            except ProtocolError as e:
                logger.warning(f"拒绝非 WebSocket 请求: {request.client}")
                return PlainTextResponse(e.message, status_code=e.status_code)

        @self.router.api_route(self.config.mcp_path, methods=["GET", "POST", "DELETE"])
        async def mcp_endpoint(request: Request):
            return await self.forward_request(request)

    async def forward_request(self, request: Request) -> Response:
        """把远程 MCP 请求转发给桌面端"""
        body = await request.body()
        result = await self.manager.forward(
            method=request.method,
            url=str(request.url),
            headers=dict(request.headers),
            body=body.decode("utf-8", errors="replace"),
        )
        return Response(
            content=result.body,
            status_code=result.status,
            headers=result.headers,
        )

    async def _handle_websocket(self, websocket: WebSocket) -> None:
        """处理桌面端 WebSocket 连接"""
        await self.manager.handle_agent_upgrade(websocket)

        code: int | None = None
        reason = ""

        try:
            # 处理消息循环
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    code = message.get("code")
                    reason = message.get("reason") or ""
                    break

                raw = message.get("text")
                if raw is None:
                    raw = (message.get("bytes") or b"").decode("utf-8", errors="replace")

                # 心跳在消息分发之前直接应答
                if raw == self.config.keepalive_request:
                    if is_open(websocket):
                        await websocket.send_text(self.config.keepalive_response)
                    continue

                # 单个帧处理失败只丢弃该帧，不影响连接
                try:
                    await self.manager.handle_message(websocket, raw)
                except Exception as e:
                    logger.exception(f"处理桌面端消息失败: {e}")

        except Exception as e:
            self.manager.connection.handle_transport_error(websocket, e)
        finally:
            self.manager.connection.handle_closed(websocket, code, reason)
