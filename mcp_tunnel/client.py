"""
MCP Tunnel 桌面端（私有侧代理）

连接到中继，接收请求并转发到本地 MCP 服务

使用示例:
    from mcp_tunnel import TunnelClient

    client = TunnelClient(
        server_url="wss://relay.example.com/tunnel",
        target_url="http://localhost:3000/mcp",
    )

    # 启动客户端（阻塞）
    await client.run()

    # 或在后台运行
    task = asyncio.create_task(client.run())
"""

import asyncio
import json
import logging
import time
from typing import Callable
from urllib.parse import urlsplit, urlunsplit

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from . import __version__
from .config import TunnelClientConfig
from .exceptions import JSONRPC_SERVER_ERROR, ProtocolError, UnknownMessageType
from .protocol import (
    ConnectedMessage,
    ConnectMessage,
    ErrorMessage,
    RequestMessage,
    ResponseMessage,
    ResponsePayload,
    decode_message,
    encode_message,
    filter_headers,
)

logger = logging.getLogger(__name__)

KEEPALIVE_REQUEST = "ping"
KEEPALIVE_RESPONSE = "pong"

# 不转发给本地服务的请求头
STRIPPED_REQUEST_HEADERS = ("host", "content-length", "accept-encoding")

# 响应体已被 httpx 解码，这些头不再适用
STRIPPED_RESPONSE_HEADERS = (
    "content-length",
    "content-encoding",
    "transfer-encoding",
    "connection",
)


def _extract_id(raw: str | bytes) -> str | None:
    """从无法解析的帧中尽量取出请求 ID"""
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError):
        return None
    if isinstance(data, dict) and isinstance(data.get("id"), str):
        return data["id"]
    return None


class TunnelClient:
    """
    隧道客户端

    连接到中继，接收请求并转发到本地 MCP 服务
    """

    def __init__(
        self,
        server_url: str | None = None,
        target_url: str | None = None,
        config: TunnelClientConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        初始化客户端

        Args:
            server_url: 中继 WebSocket URL
            target_url: 本地 MCP 服务 URL
            config: 客户端配置（可选，优先级低于直接参数）
            transport: httpx 传输层（可选，测试时注入）
        """
        if config:
            self.config = config
        else:
            self.config = TunnelClientConfig()
        if server_url:
            self.config.server_url = server_url
        if target_url:
            self.config.target_url = target_url

        self._transport = transport
        self._websocket = None
        self._running = False
        self._connected = False
        self._remote_endpoint: str | None = None
        self._reconnect_count = 0
        self._tasks: set[asyncio.Task] = set()

        # 回调函数
        self._on_connect: Callable[[], None] | None = None
        self._on_disconnect: Callable[[], None] | None = None

    @property
    def is_connected(self) -> bool:
        """是否已连接"""
        return self._connected

    @property
    def remote_endpoint(self) -> str | None:
        """中继告知的远程端点路径"""
        return self._remote_endpoint

    @property
    def public_url(self) -> str | None:
        """远程 MCP 客户端应使用的完整 URL"""
        if not self._remote_endpoint:
            return None
        parts = urlsplit(self.config.server_url)
        scheme = {"ws": "http", "wss": "https"}.get(parts.scheme, parts.scheme)
        return urlunsplit((scheme, parts.netloc, self._remote_endpoint, "", ""))

    def on_connect(self, callback: Callable[[], None]) -> None:
        """设置连接成功回调"""
        self._on_connect = callback

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        """设置断开连接回调"""
        self._on_disconnect = callback

    async def run(self) -> None:
        """
        运行客户端

        自动重连，直到调用 stop()
        """
        self._running = True

        while self._running:
            try:
                await self._connect_and_run()
                if not self._running:
                    break
                raise ConnectionError("connection closed by relay")
            except Exception as e:
                if not self._running:
                    break

                if self._connected:
                    self._connected = False
                    if self._on_disconnect:
                        self._on_disconnect()

                self._reconnect_count += 1
                max_attempts = self.config.max_reconnect_attempts

                if max_attempts > 0 and self._reconnect_count > max_attempts:
                    logger.error(f"超过最大重连次数 ({max_attempts})，停止")
                    break

                logger.warning(
                    f"连接断开: {e}，{self.config.reconnect_interval}秒后重连 "
                    f"(第 {self._reconnect_count} 次)"
                )
                await asyncio.sleep(self.config.reconnect_interval)

        if self._connected:
            self._connected = False
            if self._on_disconnect:
                self._on_disconnect()
        self._running = False

    async def stop(self) -> None:
        """停止客户端"""
        self._running = False
        if self._websocket:
            await self._websocket.close()

    async def _connect_and_run(self) -> None:
        """连接并运行"""
        logger.info(f"正在连接到 {self.config.server_url}...")

        async with websockets.connect(
            self.config.server_url,
            ping_interval=30,
            ping_timeout=10,
        ) as websocket:
            self._websocket = websocket

            # 声明就绪
            await websocket.send(encode_message(ConnectMessage(client_version=__version__)))

            # 等待确认
            raw_response = await asyncio.wait_for(websocket.recv(), timeout=30.0)
            response = decode_message(raw_response)
            if not isinstance(response, ConnectedMessage):
                raise ProtocolError(f"Expected connected message, got {response.type.value}")

            self._remote_endpoint = response.remote_endpoint
            self._connected = True
            self._reconnect_count = 0
            logger.info(f"隧道已建立: {self.public_url}")

            if self._on_connect:
                self._on_connect()

            keepalive_task = None
            if self.config.keepalive_interval > 0:
                keepalive_task = asyncio.create_task(self._keepalive(websocket))

            try:
                await self._message_loop(websocket)
            finally:
                if keepalive_task:
                    keepalive_task.cancel()
                for task in list(self._tasks):
                    task.cancel()

    async def _keepalive(self, websocket) -> None:
        """应用层心跳（中继直接应答，不经过消息分发）"""
        try:
            while True:
                await asyncio.sleep(self.config.keepalive_interval)
                await websocket.send(KEEPALIVE_REQUEST)
        except ConnectionClosed:
            pass

    async def _message_loop(self, websocket) -> None:
        """消息处理循环"""
        async with httpx.AsyncClient(
            timeout=self.config.request_timeout,
            transport=self._transport,
        ) as http:
            async for raw_message in websocket:
                if raw_message == KEEPALIVE_RESPONSE:
                    continue

                try:
                    message = decode_message(raw_message)
                except UnknownMessageType as e:
                    logger.warning(f"未知消息类型: {e.msg_type}")
                    continue
                except ProtocolError as e:
                    logger.error(f"处理消息错误: {e}")
                    await websocket.send(
                        encode_message(ErrorMessage(id=_extract_id(raw_message), error=str(e)))
                    )
                    continue

                if isinstance(message, RequestMessage):
                    # 并发处理，响应按 ID 匹配
                    task = asyncio.create_task(self._handle_request(websocket, http, message))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                elif isinstance(message, ErrorMessage):
                    logger.error(f"中继报告错误: {message.error}")
                else:
                    logger.warning(f"忽略消息: type={message.type.value}")

    async def _handle_request(self, websocket, http: httpx.AsyncClient, request: RequestMessage) -> None:
        response = await self.execute_request(http, request)
        try:
            await websocket.send(encode_message(response))
        except ConnectionClosed:
            logger.warning(f"连接已关闭，丢弃响应: id={request.id}")

    def _target_url(self, request_url: str) -> str:
        """本地服务 URL，保留原始请求的查询参数"""
        query = urlsplit(request_url).query
        if not query:
            return self.config.target_url
        separator = "&" if "?" in self.config.target_url else "?"
        return f"{self.config.target_url}{separator}{query}"

    async def execute_request(
        self, http: httpx.AsyncClient, request: RequestMessage
    ) -> ResponseMessage:
        """
        执行 HTTP 请求

        将隧道请求转发到本地 MCP 服务，失败时返回带 JSON-RPC 错误体的响应
        """
        start_time = time.time()
        payload = request.payload

        try:
            response = await http.request(
                method=payload.method,
                url=self._target_url(payload.url),
                headers=filter_headers(payload.headers, STRIPPED_REQUEST_HEADERS),
                content=payload.body.encode("utf-8") if payload.body else None,
            )
        except httpx.TimeoutException:
            return self._error_response(request.id, 504, "Target service timeout")
        except httpx.ConnectError as e:
            return self._error_response(request.id, 503, f"Target service unavailable: {e}")
        except Exception as e:
            logger.error(f"执行请求失败: {e}", exc_info=True)
            return self._error_response(request.id, 500, str(e))

        duration_ms = int((time.time() - start_time) * 1000)
        logger.debug(f"请求完成: id={request.id}, status={response.status_code}, {duration_ms}ms")

        return ResponseMessage(
            id=request.id,
            payload=ResponsePayload(
                status=response.status_code,
                headers=filter_headers(dict(response.headers), STRIPPED_RESPONSE_HEADERS),
                body=response.text,
            ),
        )

    @staticmethod
    def _error_response(request_id: str, status: int, message: str) -> ResponseMessage:
        body = {"jsonrpc": "2.0", "error": {"code": JSONRPC_SERVER_ERROR, "message": message}}
        return ResponseMessage(
            id=request_id,
            payload=ResponsePayload(
                status=status,
                headers={"content-type": "application/json"},
                body=json.dumps(body),
            ),
        )

