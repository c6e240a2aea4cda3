"""
测试配置和 Fixtures
"""

import json

import pytest
from starlette.websockets import WebSocketState

from mcp_tunnel.config import TunnelServerConfig
from mcp_tunnel.connection import SocketRegistry
from mcp_tunnel.manager import TunnelManager


class FakeWebSocket:
    """模拟 Starlette WebSocket 的连接状态和发送"""

    def __init__(self, scope_type: str = "websocket"):
        self.scope = {"type": scope_type}
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTING
        self.sent: list[str] = []
        self.close_code: int | None = None
        self.close_reason: str | None = None

    async def accept(self) -> None:
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, data: str) -> None:
        if self.application_state != WebSocketState.CONNECTED:
            raise RuntimeError("Cannot call send once a close message has been sent.")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.application_state = WebSocketState.DISCONNECTED
        self.close_code = code
        self.close_reason = reason

    def drop(self) -> None:
        """对端断开"""
        self.client_state = WebSocketState.DISCONNECTED

    def sent_messages(self) -> list[dict]:
        return [json.loads(data) for data in self.sent]


@pytest.fixture
def config() -> TunnelServerConfig:
    """短超时的测试配置"""
    return TunnelServerConfig(request_timeout=0.2)


@pytest.fixture
def registry() -> SocketRegistry:
    return SocketRegistry()


@pytest.fixture
def manager(config: TunnelServerConfig, registry: SocketRegistry) -> TunnelManager:
    return TunnelManager(config=config, registry=registry)


@pytest.fixture
def websocket_factory():
    """创建模拟 WebSocket"""
    return FakeWebSocket
