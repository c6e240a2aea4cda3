"""
待响应请求表

request_id → PendingRequest，每个条目带一个超时定时器。
所有操作都在同一个事件循环上执行，条目由最先到达的结果（响应、超时、
断开）弹出，后到的结果因找不到条目而成为空操作，因此每个请求只会有一个结果。
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .exceptions import DuplicateRequestId, RequestTimeout

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """待响应的请求"""

    request_id: str
    future: asyncio.Future
    timer: asyncio.TimerHandle | None = None
    created_at: datetime = field(default_factory=datetime.now)


class PendingRequestTable:
    """待响应请求表"""

    def __init__(self):
        self._pending: dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._pending

    def register(self, request_id: str, timeout: float) -> asyncio.Future:
        """
        注册待响应请求

        Args:
            request_id: 请求 ID
            timeout: 超时时间（秒），到期后 Future 以 RequestTimeout 失败

        Returns:
            等待响应的 Future

        Raises:
            DuplicateRequestId: ID 已存在
        """
        if request_id in self._pending:
            logger.error(f"请求 ID 重复，内部状态异常: {request_id}")
            raise DuplicateRequestId(request_id)

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        pending = PendingRequest(request_id=request_id, future=future)
        pending.timer = loop.call_later(timeout, self._expire, request_id, timeout)
        self._pending[request_id] = pending

        # 调用方被取消时（如 HTTP 客户端断开）清理条目
        future.add_done_callback(lambda f: self._on_done(request_id, f))
        return future

    def resolve(self, request_id: str, result: Any) -> bool:
        """完成请求，ID 不存在时为空操作（重复或超时后才到达的响应）"""
        pending = self._pop(request_id)
        if pending is None:
            logger.debug(f"忽略未知请求的响应: {request_id}")
            return False
        if not pending.future.done():
            pending.future.set_result(result)
        return True

    def reject(self, request_id: str, error: Exception) -> bool:
        """使单个请求失败"""
        pending = self._pop(request_id)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_exception(error)
        return True

    def reject_all(self, error: Exception) -> int:
        """使所有待响应请求失败（连接断开时调用）"""
        pending_list = list(self._pending.values())
        self._pending.clear()
        for pending in pending_list:
            if pending.timer:
                pending.timer.cancel()
            if not pending.future.done():
                pending.future.set_exception(error)
        if pending_list:
            logger.info(f"已拒绝 {len(pending_list)} 个待响应请求: {error}")
        return len(pending_list)

    def discard(self, request_id: str) -> None:
        """移除请求，不产生结果（发送失败后的清理）"""
        pending = self._pop(request_id)
        if pending and not pending.future.done():
            pending.future.cancel()

    def _pop(self, request_id: str) -> PendingRequest | None:
        pending = self._pending.pop(request_id, None)
        if pending and pending.timer:
            pending.timer.cancel()
        return pending

    def _expire(self, request_id: str, timeout: float) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        logger.warning(f"请求超时: id={request_id}, timeout={timeout}s")
        if not pending.future.done():
            pending.future.set_exception(RequestTimeout())

    def _on_done(self, request_id: str, future: asyncio.Future) -> None:
        if not future.cancelled():
            return
        pending = self._pending.get(request_id)
        if pending is not None and pending.future is future:
            self._pop(request_id)
