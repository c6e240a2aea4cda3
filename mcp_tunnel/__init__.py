"""
MCP Tunnel - 通过 WebSocket 隧道把本地 MCP 服务暴露到公网

远程 MCP 客户端 → 中继 (HTTPS) → WebSocket 隧道 → 桌面端 → 本地 MCP 服务

提供：
- 中继服务端，可嵌入到 FastAPI 应用
- 桌面端客户端，独立运行或嵌入应用
- 单条隧道上的请求/响应多路复用（按请求 ID 匹配）
"""

__version__ = "0.1.0"

from .protocol import (
    MessageType,
    ConnectMessage,
    ConnectedMessage,
    RequestMessage,
    ResponseMessage,
    ErrorMessage,
    RequestPayload,
    ResponsePayload,
    decode_message,
    encode_message,
)
from .exceptions import (
    TunnelError,
    ProtocolError,
    NotConnected,
    RequestTimeout,
    PeerDisconnected,
)
from .pending import PendingRequestTable
from .connection import SocketRegistry, TunnelConnectionHolder
from .manager import TunnelManager, ForwardResponse
from .server import TunnelServer
from .client import TunnelClient
from .config import TunnelServerConfig, TunnelClientConfig
from .app import create_app, run_app

__all__ = [
    # 版本
    "__version__",
    # 协议
    "MessageType",
    "ConnectMessage",
    "ConnectedMessage",
    "RequestMessage",
    "ResponseMessage",
    "ErrorMessage",
    "RequestPayload",
    "ResponsePayload",
    "decode_message",
    "encode_message",
    # 异常
    "TunnelError",
    "ProtocolError",
    "NotConnected",
    "RequestTimeout",
    "PeerDisconnected",
    # 服务端
    "PendingRequestTable",
    "SocketRegistry",
    "TunnelConnectionHolder",
    "TunnelManager",
    "ForwardResponse",
    "TunnelServer",
    "TunnelServerConfig",
    # 客户端
    "TunnelClient",
    "TunnelClientConfig",
    # 应用
    "create_app",
    "run_app",
]
