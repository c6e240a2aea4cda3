"""
隧道连接持有者

同一时间只持有一个活跃的桌面端 WebSocket 连接：
新连接到达时关闭旧连接（1000，"New connection replacing old one"），
连接关闭或出错时清空引用并拒绝所有待响应请求。

SocketRegistry 模拟传输层的"带标签连接"查询：进程挂起恢复后，
新的持有者可以通过标签重新找回仍然打开的连接（reattach），
而不需要桌面端重新握手。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from starlette.requests import HTTPConnection
from starlette.websockets import WebSocket, WebSocketState

from .exceptions import NotConnected, PeerDisconnected, ProtocolError
from .pending import PendingRequestTable
from .protocol import TunnelMessage, encode_message

logger = logging.getLogger(__name__)

# WebSocket 关闭码
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001

REPLACED_REASON = "New connection replacing old one"


def is_open(websocket: WebSocket) -> bool:
    """WebSocket 两端状态均为 CONNECTED"""
    return (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    )


class SocketRegistry:
    """按标签登记已接受的 WebSocket（生命周期与进程相同）"""

    def __init__(self):
        self._sockets: dict[str, list[WebSocket]] = {}

    def add(self, tag: str, websocket: WebSocket) -> None:
        self._sockets.setdefault(tag, []).append(websocket)

    def discard(self, websocket: WebSocket) -> None:
        for sockets in self._sockets.values():
            if websocket in sockets:
                sockets.remove(websocket)

    def get(self, tag: str) -> list[WebSocket]:
        """返回该标签下仍然打开的连接（按接受顺序）"""
        return [ws for ws in self._sockets.get(tag, []) if is_open(ws)]


@dataclass
class ActiveConnection:
    """活跃的隧道连接"""

    websocket: WebSocket
    connected_at: datetime = field(default_factory=datetime.now)


class TunnelConnectionHolder:
    """
    隧道连接持有者

    状态机:
        Disconnected --accept--> Connected --close/error--> Disconnected
        Connected --accept--> 关闭旧连接，新连接成为 Connected
    """

    def __init__(
        self,
        pending: PendingRequestTable,
        registry: SocketRegistry | None = None,
        tag: str = "desktop",
    ):
        self.pending = pending
        self.registry = registry or SocketRegistry()
        self.tag = tag
        self._active: ActiveConnection | None = None

    @property
    def active(self) -> ActiveConnection | None:
        return self._active

    @property
    def websocket(self) -> WebSocket | None:
        return self._active.websocket if self._active else None

    def is_connected(self) -> bool:
        """是否存在打开的活跃连接"""
        return self._active is not None and is_open(self._active.websocket)

    async def accept(self, handshake: HTTPConnection) -> ActiveConnection:
        """
        接受桌面端连接

        Args:
            handshake: 握手请求，必须是 WebSocket 升级

        Returns:
            新的活跃连接

        Raises:
            ProtocolError: 不是 WebSocket 升级请求
        """
        if handshake.scope.get("type") != "websocket":
            raise ProtocolError()

        if self._active is not None:
            await self._replace(self._active.websocket)

        websocket: WebSocket = handshake  # type: ignore[assignment]
        await websocket.accept()

        # 并发升级时，等待期间可能已有别的连接成为活跃连接
        while self._active is not None:
            await self._replace(self._active.websocket)

        self.registry.add(self.tag, websocket)
        self._active = ActiveConnection(websocket=websocket)

        logger.info("桌面端已连接")
        return self._active

    async def _replace(self, old: WebSocket) -> None:
        """关闭被替换的旧连接，并拒绝其上的待响应请求"""
        self._active = None
        self.registry.discard(old)
        try:
            await old.close(code=CLOSE_NORMAL, reason=REPLACED_REASON)
        except Exception as e:
            logger.debug(f"关闭旧连接失败: {e}")
        logger.info("旧连接已被新连接替换")
        self.pending.reject_all(PeerDisconnected())

    async def send(self, message: TunnelMessage) -> None:
        """
        发送消息到活跃连接

        Raises:
            NotConnected: 没有活跃连接
        """
        if not self.is_connected():
            raise NotConnected()
        await self._active.websocket.send_text(encode_message(message))

    def handle_closed(
        self,
        websocket: WebSocket,
        code: int | None = None,
        reason: str = "",
    ) -> None:
        """传输层通知连接关闭"""
        self.registry.discard(websocket)

        if self._active is None or self._active.websocket is not websocket:
            logger.debug(f"非活跃连接已关闭: {code} - {reason}")
            return

        logger.info(f"WebSocket 已关闭: {code} - {reason}")
        self._active = None
        self.pending.reject_all(PeerDisconnected())

    def handle_transport_error(self, websocket: WebSocket, error: BaseException) -> None:
        """传输层通知连接出错"""
        logger.error(f"WebSocket 错误: {error}")
        self.handle_closed(websocket, reason=str(error))

    def reattach(self) -> bool:
        """
        恢复后重新找回仍然打开的带标签连接

        Returns:
            是否找回了连接
        """
        if self.is_connected():
            return True

        sockets = self.registry.get(self.tag)
        if not sockets:
            return False

        # 接受顺序的最后一个是最新的连接
        self._active = ActiveConnection(websocket=sockets[-1])
        logger.info("已从挂起中恢复桌面端连接")
        return True

    def suspend(self) -> None:
        """丢弃内存中的连接引用，连接本身保持打开"""
        self._active = None

    async def close(self) -> None:
        """关闭活跃连接（进程退出时调用）"""
        active = self._active
        if active is None:
            return
        self._active = None
        self.registry.discard(active.websocket)
        try:
            await active.websocket.close(code=CLOSE_GOING_AWAY, reason="Server shutting down")
        except Exception as e:
            logger.debug(f"关闭连接失败: {e}")
        self.pending.reject_all(PeerDisconnected())
