"""
MCP Tunnel 协议定义

桌面端与中继之间通过一条 WebSocket 连接通信，每个文本帧是一个 JSON 对象，
通过 type 字段区分消息类型:

- connect: 桌面端在连接建立后声明已就绪
- connected: 中继确认连接，附带远程端点路径（remoteEndpoint）
- request: 中继转发给桌面端的 HTTP 请求
- response: 桌面端返回的 HTTP 响应
- error: 任一方向的协议级错误

心跳（ping/pong 文本）由传输层直接应答，不经过消息分发。
"""

import json
from enum import Enum
from typing import Any, Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import ProtocolError, UnknownMessageType


class MessageType(str, Enum):
    """消息类型"""

    # 握手
    CONNECT = "connect"
    CONNECTED = "connected"

    # 请求-响应
    REQUEST = "request"
    RESPONSE = "response"

    # 错误
    ERROR = "error"


class TunnelMessage(BaseModel):
    """消息基类，线上字段使用 camelCase"""

    model_config = ConfigDict(populate_by_name=True)


# ============== 握手消息 ==============


class ConnectMessage(TunnelMessage):
    """桌面端就绪通知"""

    type: MessageType = MessageType.CONNECT
    client_version: str | None = Field(
        default=None, alias="clientVersion", description="客户端版本"
    )


class ConnectedMessage(TunnelMessage):
    """中继确认连接"""

    type: MessageType = MessageType.CONNECTED
    remote_endpoint: str | None = Field(
        default=None,
        alias="remoteEndpoint",
        description="远程 MCP 端点路径，桌面端据此拼出完整 URL",
    )


# ============== 请求-响应消息 ==============


class RequestPayload(BaseModel):
    """转发给桌面端的 HTTP 请求内容"""

    method: str = Field(..., description="HTTP 方法")
    url: str = Field(..., description="原始请求 URL")
    headers: dict[str, str] = Field(default_factory=dict, description="HTTP 请求头")
    body: str = Field(default="", description="请求体文本")


class ResponsePayload(BaseModel):
    """桌面端返回的 HTTP 响应内容"""

    status: int = Field(..., description="HTTP 状态码")
    headers: dict[str, str] | None = Field(default=None, description="HTTP 响应头")
    body: str = Field(default="", description="响应体文本")


class RequestMessage(TunnelMessage):
    """
    HTTP 请求（中继 → 桌面端）

    id 由中继生成，桌面端必须在 response 中原样返回
    """

    type: MessageType = MessageType.REQUEST
    id: str = Field(..., description="请求唯一 ID，用于匹配响应")
    payload: RequestPayload


class ResponseMessage(TunnelMessage):
    """HTTP 响应（桌面端 → 中继）"""

    type: MessageType = MessageType.RESPONSE
    id: str = Field(..., description="请求 ID，与 RequestMessage.id 对应")
    payload: ResponsePayload


class ErrorMessage(TunnelMessage):
    """协议错误，携带 id 时表示对应请求失败"""

    type: MessageType = MessageType.ERROR
    id: str | None = Field(default=None, description="关联的请求 ID（可选）")
    error: str = Field(..., description="错误信息")


Message = ConnectMessage | ConnectedMessage | RequestMessage | ResponseMessage | ErrorMessage


# ============== 编解码 ==============


def parse_message(data: dict[str, Any]) -> Message:
    """
    解析消息

    Args:
        data: JSON 解析后的字典

    Returns:
        对应类型的消息对象

    Raises:
        UnknownMessageType: 未知消息类型
        ProtocolError: 字段校验失败
    """
    msg_type = data.get("type")

    try:
        if msg_type == MessageType.CONNECT:
            return ConnectMessage(**data)
        elif msg_type == MessageType.CONNECTED:
            return ConnectedMessage(**data)
        elif msg_type == MessageType.REQUEST:
            return RequestMessage(**data)
        elif msg_type == MessageType.RESPONSE:
            return ResponseMessage(**data)
        elif msg_type == MessageType.ERROR:
            return ErrorMessage(**data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid {msg_type} message: {e}") from e

    raise UnknownMessageType(msg_type)


def decode_message(raw: str | bytes) -> Message:
    """解码一个 WebSocket 帧"""
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError) as e:
        # 嵌套过深的帧也按格式错误处理
        raise ProtocolError(f"Malformed frame: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Malformed frame: expected a JSON object")

    return parse_message(data)


def encode_message(message: TunnelMessage) -> str:
    """编码为 WebSocket 文本帧"""
    return message.model_dump_json(by_alias=True, exclude_none=True)


def filter_headers(headers: Mapping[str, str], excluded: Iterable[str]) -> dict[str, str]:
    """去掉传输层相关的头（大小写不敏感）"""
    excluded = {name.lower() for name in excluded}
    return {key: value for key, value in headers.items() if key.lower() not in excluded}
