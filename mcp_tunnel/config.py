"""
MCP Tunnel 配置
"""

from pydantic import Field
from pydantic_settings import BaseSettings


class TunnelServerConfig(BaseSettings):
    """中继服务端配置"""

    # 服务配置
    host: str = Field(default="0.0.0.0", description="监听地址")
    port: int = Field(default=8787, description="监听端口")
    service_name: str = Field(default="mcp-tunnel", description="服务名称（/ 接口返回）")

    # 路由配置
    tunnel_path: str = Field(default="/tunnel", description="桌面端 WebSocket 端点路径")
    mcp_path: str = Field(default="/mcp", description="远程 MCP 端点路径")
    remote_endpoint: str = Field(
        default="/mcp",
        description="connected 消息中告知桌面端的远程端点（相对路径）",
    )

    # 连接配置
    socket_tag: str = Field(default="desktop", description="桌面端连接标签（用于挂起恢复）")
    keepalive_request: str = Field(default="ping", description="心跳请求文本")
    keepalive_response: str = Field(default="pong", description="心跳应答文本")

    # 请求配置
    request_timeout: float = Field(default=30.0, description="等待桌面端响应的超时（秒）")

    # CORS
    cors_origins: str = Field(default="*", description="CORS 允许的来源（逗号分隔）")

    model_config = {
        "env_prefix": "MCP_TUNNEL_",
        "env_file": ".env",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


class TunnelClientConfig(BaseSettings):
    """桌面端（私有侧代理）配置"""

    # 中继连接
    server_url: str = Field(
        default="ws://localhost:8787/tunnel", description="中继 WebSocket URL"
    )

    # 本地 MCP 服务
    target_url: str = Field(
        default="http://localhost:3000/mcp", description="本地 MCP 服务 URL"
    )

    # 连接配置
    reconnect_interval: float = Field(default=5.0, description="重连间隔（秒）")
    max_reconnect_attempts: int = Field(default=0, description="最大重连次数（0 表示无限）")
    keepalive_interval: float = Field(
        default=30.0, description="心跳间隔（秒，0 表示不发送）"
    )

    # 请求配置
    request_timeout: float = Field(default=30.0, description="本地请求超时（秒）")

    model_config = {
        "env_prefix": "MCP_TUNNEL_CLIENT_",
        "env_file": ".env",
        "extra": "ignore",
    }
