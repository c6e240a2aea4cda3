"""
隧道管理器

组合连接持有者和待响应请求表，对外提供两个操作：

- handle_agent_upgrade: 接受桌面端的 WebSocket 连接
- forward: 把远程 MCP 请求通过隧道转发给桌面端，并等待匹配的响应

以及供传输层逐帧调用的 handle_message。
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone

from pydantic import BaseModel
from starlette.requests import HTTPConnection
from starlette.websockets import WebSocket

from .config import TunnelServerConfig
from .connection import (
    CLOSE_NORMAL,
    REPLACED_REASON,
    ActiveConnection,
    SocketRegistry,
    TunnelConnectionHolder,
)
from .exceptions import NotConnected, ProtocolError, TunnelError, UnknownMessageType
from .pending import PendingRequestTable
from .protocol import (
    ConnectedMessage,
    ConnectMessage,
    ErrorMessage,
    RequestMessage,
    RequestPayload,
    ResponseMessage,
    ResponsePayload,
    decode_message,
    encode_message,
    filter_headers,
)

logger = logging.getLogger(__name__)

# 不转发给桌面端的请求头
STRIPPED_REQUEST_HEADERS = ("host", "connection", "upgrade")

# 由 HTTP 层重新计算的响应头
STRIPPED_RESPONSE_HEADERS = (
    "content-length",
    "content-encoding",
    "transfer-encoding",
    "connection",
    "content-type",
)


class ForwardResponse(BaseModel):
    """转发响应"""

    status: int
    headers: dict[str, str] = {}
    body: str = ""
    duration_ms: int = 0
    error: str | None = None

    @classmethod
    def from_error(cls, error: TunnelError, duration_ms: int = 0) -> "ForwardResponse":
        return cls(
            status=error.status_code,
            headers={"content-type": "application/json"},
            body=json.dumps(error.to_dict()),
            duration_ms=duration_ms,
            error=error.message,
        )


class TunnelManager:
    """
    隧道管理器

    整个部署只有一个实例，由应用启动时显式创建并注入路由层。
    创建时会尝试从 SocketRegistry 找回仍然打开的桌面端连接。
    """

    def __init__(
        self,
        config: TunnelServerConfig | None = None,
        registry: SocketRegistry | None = None,
    ):
        self.config = config or TunnelServerConfig()
        self.pending = PendingRequestTable()
        self.connection = TunnelConnectionHolder(
            pending=self.pending,
            registry=registry,
            tag=self.config.socket_tag,
        )
        self.connection.reattach()

    def is_connected(self) -> bool:
        return self.connection.is_connected()

    def health(self) -> dict:
        """健康检查"""
        now = datetime.now(timezone.utc)
        return {
            "status": "ok",
            "tunnel": "connected" if self.is_connected() else "disconnected",
            # 毫秒精度，UTC 以 Z 结尾
            "timestamp": now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        }

    async def handle_agent_upgrade(self, handshake: HTTPConnection) -> ActiveConnection:
        """
        接受桌面端连接

        Raises:
            ProtocolError: 不是 WebSocket 升级请求（HTTP 426）
        """
        return await self.connection.accept(handshake)

    async def handle_message(self, websocket: WebSocket, raw: str | bytes) -> None:
        """处理桌面端发来的一帧，任何错误都只记录日志，不影响连接"""
        try:
            message = decode_message(raw)
        except UnknownMessageType as e:
            logger.warning(f"未知消息类型: {e.msg_type}")
            return
        except ProtocolError as e:
            logger.error(f"处理消息失败: {e}")
            return

        if isinstance(message, ConnectMessage):
            await self._handle_connect(websocket, message)
        elif isinstance(message, ResponseMessage):
            self.pending.resolve(message.id, message.payload)
        elif isinstance(message, ErrorMessage):
            self._handle_error(message)
        else:
            logger.warning(f"忽略消息: type={message.type.value}")

    async def _handle_connect(self, websocket: WebSocket, message: ConnectMessage) -> None:
        """桌面端就绪，回复 connected"""
        if websocket is not self.connection.websocket:
            # 已被替换的连接不能再认领隧道
            logger.warning("收到非活跃连接的 connect，关闭该连接")
            try:
                await websocket.close(code=CLOSE_NORMAL, reason=REPLACED_REASON)
            except Exception as e:
                logger.debug(f"关闭非活跃连接失败: {e}")
            return

        reply = ConnectedMessage(remote_endpoint=self.config.remote_endpoint)
        try:
            await websocket.send_text(encode_message(reply))
        except Exception as e:
            logger.error(f"发送 connected 失败: {e}")
            return
        logger.info(f"桌面端已就绪，隧道建立 (client_version={message.client_version})")

    def _handle_error(self, message: ErrorMessage) -> None:
        if message.id is None:
            logger.error(f"桌面端报告错误: {message.error}")
            return
        logger.warning(f"桌面端请求失败: id={message.id}, error={message.error}")
        self.pending.reject(message.id, TunnelError(message.error))

    async def forward(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: str = "",
    ) -> ForwardResponse:
        """
        转发请求到桌面端

        Args:
            method: HTTP 方法
            url: 原始请求 URL
            headers: 请求头（传输层相关的头会被去掉）
            body: 请求体文本，原样转发

        Returns:
            ForwardResponse，失败时为 JSON-RPC 错误体（503 未连接，500 超时/断开），
            不会抛出异常
        """
        if not self.is_connected():
            logger.warning("桌面端未连接，拒绝请求")
            return ForwardResponse.from_error(NotConnected())

        request_id = str(uuid.uuid4())
        message = RequestMessage(
            id=request_id,
            payload=RequestPayload(
                method=method,
                url=url,
                headers=filter_headers(headers or {}, STRIPPED_REQUEST_HEADERS),
                body=body,
            ),
        )

        loop = asyncio.get_running_loop()
        start_time = loop.time()
        future = self.pending.register(request_id, self.config.request_timeout)

        try:
            await self.connection.send(message)
            payload: ResponsePayload = await future
        except TunnelError as e:
            self.pending.discard(request_id)
            duration_ms = int((loop.time() - start_time) * 1000)
            logger.warning(f"请求失败: id={request_id}, error={e}")
            return ForwardResponse.from_error(e, duration_ms=duration_ms)
        except Exception as e:
            self.pending.discard(request_id)
            logger.error(f"转发请求失败: id={request_id}, error={e}", exc_info=True)
            return ForwardResponse.from_error(TunnelError(str(e)))

        duration_ms = int((loop.time() - start_time) * 1000)
        response_headers = filter_headers(payload.headers or {}, STRIPPED_RESPONSE_HEADERS)
        response_headers["content-type"] = "application/json"

        logger.debug(f"请求完成: id={request_id}, status={payload.status}, {duration_ms}ms")
        return ForwardResponse(
            status=payload.status,
            headers=response_headers,
            body=payload.body,
            duration_ms=duration_ms,
        )

    async def close(self) -> None:
        """关闭管理器（进程退出时调用）"""
        await self.connection.close()
