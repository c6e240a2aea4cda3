"""
隧道管理器测试
"""

import asyncio
import json
import re

import pytest

from mcp_tunnel.manager import TunnelManager


async def wait_for_requests(ws, count: int) -> list[dict]:
    """等待管理器向桌面端发出 count 个 request"""
    for _ in range(100):
        requests = [m for m in ws.sent_messages() if m["type"] == "request"]
        if len(requests) >= count:
            return requests
        await asyncio.sleep(0.01)
    raise AssertionError(f"expected {count} requests, got {ws.sent}")


def response_frame(request_id: str, status: int = 200, body: str = '{"ok":true}', headers=None) -> str:
    payload = {"status": status, "body": body}
    if headers is not None:
        payload["headers"] = headers
    return json.dumps({"type": "response", "id": request_id, "payload": payload})


async def connect(manager: TunnelManager, websocket_factory):
    ws = websocket_factory()
    await manager.handle_agent_upgrade(ws)
    return ws


class TestForward:
    """测试请求转发"""

    @pytest.mark.asyncio
    async def test_forward_not_connected(self, manager):
        """没有桌面端时返回 503"""
        response = await manager.forward(
            method="POST",
            url="https://relay.example.com/mcp",
            body='{"jsonrpc":"2.0","method":"ping"}',
        )

        assert response.status == 503
        body = json.loads(response.body)
        assert body["error"]["code"] == -32000
        assert body["error"]["message"] == "Desktop is not connected"
        assert len(manager.pending) == 0

    @pytest.mark.asyncio
    async def test_forward_round_trip(self, manager, websocket_factory):
        """桌面端按 ID 返回响应"""
        ws = await connect(manager, websocket_factory)

        task = asyncio.create_task(
            manager.forward(
                method="POST",
                url="https://relay.example.com/mcp",
                headers={"content-type": "application/json", "mcp-session-id": "abc"},
                body='{"jsonrpc":"2.0","method":"ping"}',
            )
        )
        [request] = await wait_for_requests(ws, 1)

        assert request["payload"]["method"] == "POST"
        assert request["payload"]["url"] == "https://relay.example.com/mcp"
        assert request["payload"]["body"] == '{"jsonrpc":"2.0","method":"ping"}'
        assert request["payload"]["headers"]["mcp-session-id"] == "abc"

        await manager.handle_message(
            ws, response_frame(request["id"], headers={"mcp-session-id": "abc", "content-length": "11"})
        )
        response = await task

        assert response.status == 200
        assert response.body == '{"ok":true}'
        assert response.headers["content-type"] == "application/json"
        assert response.headers["mcp-session-id"] == "abc"
        assert "content-length" not in response.headers
        assert len(manager.pending) == 0

    @pytest.mark.asyncio
    async def test_transport_headers_stripped(self, manager, websocket_factory):
        """host/connection/upgrade 不转发"""
        ws = await connect(manager, websocket_factory)

        task = asyncio.create_task(
            manager.forward(
                method="POST",
                url="https://relay.example.com/mcp",
                headers={"Host": "relay", "connection": "keep-alive", "upgrade": "h2c", "accept": "*/*"},
            )
        )
        [request] = await wait_for_requests(ws, 1)
        await manager.handle_message(ws, response_frame(request["id"]))
        await task

        assert request["payload"]["headers"] == {"accept": "*/*"}

    @pytest.mark.asyncio
    async def test_timeout(self, manager, websocket_factory):
        """桌面端不回复时，不早于超时时间返回 500"""
        await connect(manager, websocket_factory)
        loop = asyncio.get_running_loop()

        start = loop.time()
        response = await manager.forward(method="POST", url="https://relay.example.com/mcp")
        elapsed = loop.time() - start

        assert response.status == 500
        assert json.loads(response.body)["error"]["message"] == "Request timeout"
        assert elapsed >= manager.config.request_timeout - 0.01
        assert len(manager.pending) == 0

    @pytest.mark.asyncio
    async def test_late_response_is_noop(self, manager, websocket_factory):
        """超时后到达的响应被忽略"""
        ws = await connect(manager, websocket_factory)

        response = await manager.forward(method="POST", url="https://relay.example.com/mcp")
        [request] = await wait_for_requests(ws, 1)
        assert response.status == 500

        await manager.handle_message(ws, response_frame(request["id"]))
        assert manager.is_connected() is True

    @pytest.mark.asyncio
    async def test_disconnect_rejects_all_pending(self, manager, websocket_factory):
        """断开时 N 个待响应请求全部返回 500"""
        ws = await connect(manager, websocket_factory)

        tasks = [
            asyncio.create_task(manager.forward(method="POST", url="https://relay.example.com/mcp"))
            for _ in range(3)
        ]
        await wait_for_requests(ws, 3)

        ws.drop()
        manager.connection.handle_closed(ws, 1006, "")
        responses = await asyncio.gather(*tasks)

        for response in responses:
            assert response.status == 500
            assert json.loads(response.body)["error"]["message"] == "Desktop disconnected"
        assert manager.health()["tunnel"] == "disconnected"
        assert len(manager.pending) == 0

    @pytest.mark.asyncio
    async def test_replacement_rejects_pending(self, manager, websocket_factory):
        """新连接替换旧连接时，旧连接上的请求返回 PeerDisconnected"""
        old_ws = await connect(manager, websocket_factory)
        task = asyncio.create_task(manager.forward(method="POST", url="https://relay.example.com/mcp"))
        await wait_for_requests(old_ws, 1)

        new_ws = await connect(manager, websocket_factory)
        response = await task

        assert old_ws.close_code == 1000
        assert response.status == 500
        assert json.loads(response.body)["error"]["message"] == "Desktop disconnected"
        assert manager.connection.websocket is new_ws

    @pytest.mark.asyncio
    async def test_out_of_order_responses(self, manager, websocket_factory):
        """并发请求可以乱序完成"""
        ws = await connect(manager, websocket_factory)

        first = asyncio.create_task(manager.forward(method="POST", url="https://relay.example.com/mcp", body="1"))
        second = asyncio.create_task(manager.forward(method="POST", url="https://relay.example.com/mcp", body="2"))
        requests = await wait_for_requests(ws, 2)
        by_body = {r["payload"]["body"]: r["id"] for r in requests}

        assert by_body["1"] != by_body["2"]

        await manager.handle_message(ws, response_frame(by_body["2"], body="second"))
        assert (await second).body == "second"
        assert not first.done()

        await manager.handle_message(ws, response_frame(by_body["1"], body="first"))
        assert (await first).body == "first"

    @pytest.mark.asyncio
    async def test_agent_error_with_id(self, manager, websocket_factory):
        """桌面端以 error 回复某个请求"""
        ws = await connect(manager, websocket_factory)
        task = asyncio.create_task(manager.forward(method="POST", url="https://relay.example.com/mcp"))
        [request] = await wait_for_requests(ws, 1)

        await manager.handle_message(
            ws, json.dumps({"type": "error", "id": request["id"], "error": "Local server crashed"})
        )
        response = await task

        assert response.status == 500
        assert json.loads(response.body)["error"]["message"] == "Local server crashed"

    @pytest.mark.asyncio
    async def test_send_failure(self, manager, websocket_factory):
        """发送失败时返回 500 并清理条目"""
        ws = await connect(manager, websocket_factory)

        async def broken_send(data):
            raise ConnectionResetError("reset by peer")

        ws.send_text = broken_send
        response = await manager.forward(method="POST", url="https://relay.example.com/mcp")

        assert response.status == 500
        assert "reset by peer" in json.loads(response.body)["error"]["message"]
        assert len(manager.pending) == 0


class TestHandleMessage:
    """测试消息分发"""

    @pytest.mark.asyncio
    async def test_connect_acknowledged(self, manager, websocket_factory):
        """connect → connected"""
        ws = await connect(manager, websocket_factory)

        await manager.handle_message(ws, '{"type": "connect"}')

        assert ws.sent_messages() == [{"type": "connected", "remoteEndpoint": "/mcp"}]

    @pytest.mark.asyncio
    async def test_connect_from_inactive_socket(self, manager, websocket_factory):
        """非活跃连接发来的 connect 不确认，直接关闭"""
        ws = await connect(manager, websocket_factory)
        stray = websocket_factory()
        await stray.accept()

        await manager.handle_message(stray, '{"type": "connect"}')

        assert stray.sent == []
        assert stray.close_code == 1000
        assert manager.connection.websocket is ws

    @pytest.mark.asyncio
    async def test_unknown_type_ignored(self, manager, websocket_factory):
        """未知消息类型只记录日志，连接保持"""
        ws = await connect(manager, websocket_factory)
        task = asyncio.create_task(manager.forward(method="POST", url="https://relay.example.com/mcp"))
        [request] = await wait_for_requests(ws, 1)

        await manager.handle_message(ws, '{"type": "bogus", "id": "x"}')
        await manager.handle_message(ws, "{not json")
        await manager.handle_message(ws, "[" * 100000)
        await manager.handle_message(ws, '{"type": "response", "id": "nope"}')

        assert manager.is_connected() is True
        assert request["id"] in manager.pending

        await manager.handle_message(ws, response_frame(request["id"]))
        assert (await task).status == 200

    @pytest.mark.asyncio
    async def test_unknown_id_response_is_noop(self, manager, websocket_factory):
        ws = await connect(manager, websocket_factory)
        task = asyncio.create_task(manager.forward(method="POST", url="https://relay.example.com/mcp"))
        [request] = await wait_for_requests(ws, 1)

        await manager.handle_message(ws, response_frame("some-other-id"))

        assert not task.done()
        await manager.handle_message(ws, response_frame(request["id"]))
        assert (await task).status == 200


class TestHealth:
    """测试健康检查和恢复"""

    @pytest.mark.asyncio
    async def test_health(self, manager, websocket_factory):
        health = manager.health()
        assert health["status"] == "ok"
        assert health["tunnel"] == "disconnected"
        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z", health["timestamp"])

        ws = await connect(manager, websocket_factory)
        assert manager.health()["tunnel"] == "connected"

        ws.drop()
        manager.connection.handle_closed(ws)
        assert manager.health()["tunnel"] == "disconnected"

    @pytest.mark.asyncio
    async def test_new_manager_reattaches(self, config, registry, websocket_factory):
        """恢复后新管理器找回连接，无需重新握手"""
        first = TunnelManager(config=config, registry=registry)
        ws = await connect(first, websocket_factory)

        second = TunnelManager(config=config, registry=registry)

        assert second.health()["tunnel"] == "connected"
        assert second.connection.websocket is ws

    @pytest.mark.asyncio
    async def test_close(self, manager, websocket_factory):
        ws = await connect(manager, websocket_factory)

        await manager.close()

        assert ws.close_code == 1001
        assert manager.is_connected() is False
