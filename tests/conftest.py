"""
Shared fixtures: an in-process getwork node for client and miner tests.
"""

import json

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer


class FakeNode:
    """In-process node speaking JSON-RPC over HTTP POST (/) and WebSocket (/ws)."""

    def __init__(self, works, *, block_number="0x1b4", submit_result=True):
        self.works = list(works)
        self.block_number = block_number
        self.submit_result = submit_result
        self.errors = {}
        self.http_status = 200
        self.notify_first = False
        self.calls = []
        self.submissions = []
        self.ws_sessions = 0
        self._sockets = set()
        self._served = 0
        self._server = None

    def reply(self, request):
        method = request.get("method")
        params = request.get("params") or []
        self.calls.append(method)
        env = {"jsonrpc": "2.0", "id": request.get("id")}
        if method in self.errors:
            env["error"] = self.errors[method]
        elif method == "eth_getWork":
            env["result"] = self.works[min(self._served, len(self.works) - 1)]
            self._served += 1
        elif method == "eth_blockNumber":
            env["result"] = self.block_number
        elif method == "eth_submitWork":
            self.submissions.append(list(params))
            env["result"] = self.submit_result
        else:
            env["error"] = {"code": -32601, "message": f"the method {method} does not exist"}
        return env

    async def _handle_http(self, request):
        if self.http_status != 200:
            return web.Response(status=self.http_status, text="unavailable")
        return web.json_response(self.reply(await request.json()))

    async def _handle_ws(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.ws_sessions += 1
        self._sockets.add(ws)
        try:
            async for msg in ws:
                if msg.type != WSMsgType.TEXT:
                    continue
                if self.notify_first:
                    await ws.send_json({"jsonrpc": "2.0", "method": "eth_subscription", "params": {}})
                await ws.send_json(self.reply(json.loads(msg.data)))
        finally:
            self._sockets.discard(ws)
        return ws

    async def drop_connections(self):
        """Close every open WebSocket from the server side."""
        for ws in list(self._sockets):
            await ws.close()

    def url(self, websocket=False):
        if websocket:
            return "ws" + str(self._server.make_url("/ws"))[len("http"):]
        return str(self._server.make_url("/"))

    async def __aenter__(self):
        app = web.Application()
        app.router.add_post("/", self._handle_http)
        app.router.add_get("/ws", self._handle_ws)
        self._server = TestServer(app)
        await self._server.start_server()
        return self

    async def __aexit__(self, *exc_info):
        await self._server.close()


@pytest.fixture
def fake_node():
    """Factory: `async with fake_node(works) as node: ...`."""
    return FakeNode
