"""
MCP Tunnel 异常定义

所有异常都携带 HTTP 状态码和 JSON-RPC 错误码，
由 HTTP 入口层转换为 {"jsonrpc": "2.0", "error": {"code", "message"}} 响应。
"""

# JSON-RPC 实现自定义错误码（服务端错误）
JSONRPC_SERVER_ERROR = -32000


class TunnelError(Exception):
    """隧道错误基类"""

    status_code: int = 500
    code: int = JSONRPC_SERVER_ERROR
    default_message = "Tunnel error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict:
        """转换为 JSON-RPC 风格的错误体"""
        return {
            "jsonrpc": "2.0",
            "error": {
                "code": self.code,
                "message": self.message,
            },
        }


class ProtocolError(TunnelError):
    """协议错误：消息格式错误，或握手不是 WebSocket 升级请求"""

    status_code = 426
    default_message = "Expected WebSocket upgrade"


class UnknownMessageType(ProtocolError):
    """未知消息类型（记录日志后忽略）"""

    def __init__(self, msg_type):
        self.msg_type = msg_type
        super().__init__(f"Unknown message type: {msg_type}")


class NotConnected(TunnelError):
    """桌面端未连接"""

    status_code = 503
    default_message = "Desktop is not connected"


class RequestTimeout(TunnelError):
    """等待桌面端响应超时"""

    default_message = "Request timeout"


class PeerDisconnected(TunnelError):
    """桌面端连接已断开（关闭、出错或被新连接替换）"""

    default_message = "Desktop disconnected"


class DuplicateRequestId(TunnelError):
    """请求 ID 重复（内部不变量被破坏，正常情况下不可能发生）"""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Duplicate request id: {request_id}")
