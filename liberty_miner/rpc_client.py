from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import aiohttp

from .job import Job
from .mining.errors import ProtocolError, TransportError
from .mining.version import __version__
from .rpc_protocol import (Method, RpcErrorCodes, RpcResponse, decode_response,
                           encode_request, parse_block_number,
                           parse_submit_result, parse_work, submit_params)

log = logging.getLogger("liberty_miner.rpc")

HTTP_SCHEMES = ("http", "https")
WS_SCHEMES = ("ws", "wss")


def endpoint_scheme(endpoint: str) -> str:
    """Return the lower-cased scheme of a node URL, or raise ValueError if unsupported."""
    scheme = urlparse(endpoint).scheme.lower()
    if scheme not in HTTP_SCHEMES + WS_SCHEMES:
        raise ValueError(f"unsupported endpoint scheme {scheme!r}; use http(s):// or ws(s)://")
    return scheme


def _fail_pending(pending: Dict[int, asyncio.Future], reason: str) -> None:
    for fut in list(pending.values()):
        if not fut.done():
            fut.set_exception(TransportError(message=reason))
    pending.clear()


class NodeClient:
    """
    Minimal asyncio JSON-RPC client for the node's getwork endpoints.

    Usage:
        client = NodeClient("http://127.0.0.1:8545")
        await client.connect()
        job = await client.fetch_job()
        ok = await client.submit_solution(nonce_bytes, job.header_hash, mix_digest)
        await client.close()

    All calls must be awaited on the loop that ran `connect()`. Calls are
    independent, so the dispatcher and any number of submissions may be in
    flight at the same time.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 10.0,
        agent: str = f"liberty-miner/{__version__}",
    ) -> None:
        scheme = endpoint_scheme(endpoint)
        self.endpoint = endpoint
        self.timeout = float(timeout)
        self.agent = agent
        self.is_websocket = scheme in WS_SCHEMES

        self._id = 0
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        # Calls in flight on the current socket; each socket gets a fresh table.
        self._pending: Dict[int, asyncio.Future] = {}
        self._rx_task: Optional[asyncio.Task] = None
        self._ws_lock = asyncio.Lock()
        self.ws_connects = 0
        self._closed = False

    # ------------- transport -------------

    async def connect(self) -> None:
        """
        Open the session (and socket) and probe the node. Raises
        TransportError when the node cannot be reached.
        """
        self._closed = False
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": self.agent},
            )
        if self.is_websocket:
            await self._ensure_ws()
        height = await self.block_number()
        log.info("[client] connected to %s (head block %d)", self.endpoint, height)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._rx_task:
            self._rx_task.cancel()
            self._rx_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        _fail_pending(self._pending, "connection closed")
        if self._session is not None:
            await self._session.close()
            self._session = None
        log.info("[client] closed")

    async def _ensure_ws(self) -> aiohttp.ClientWebSocketResponse:
        """Return the open socket, reconnecting first if it has dropped."""
        async with self._ws_lock:
            if self._ws is None or self._ws.closed:
                await self._open_ws()
            assert self._ws is not None
            return self._ws

    async def _open_ws(self) -> None:
        assert self._session is not None
        if self._rx_task is not None:
            self._rx_task.cancel()
            self._rx_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        try:
            ws = await self._session.ws_connect(self.endpoint)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise TransportError(
                message=f"websocket connect to {self.endpoint} failed: {exc}",
                context={"type": type(exc).__name__},
            ) from exc
        self.ws_connects += 1
        self._ws = ws
        self._pending = {}
        self._rx_task = asyncio.get_running_loop().create_task(self._rx_loop(ws, self._pending))

    # ------------- JSON-RPC helpers -------------

    def _next_id(self) -> int:
        self._id += 1
        return self._id

    async def _call(self, method: Method, *params: Any) -> Any:
        if self._closed or self._session is None:
            raise TransportError(message="client is not connected")
        req_id = self._next_id()
        payload = encode_request(method, params, req_id)
        if self.is_websocket:
            res = await self._call_ws(req_id, payload)
        else:
            res = await self._call_http(payload)

        if res.error is not None:
            context: Dict[str, Any] = {"method": method.value, "rpc_code": res.error.code}
            try:
                context["rpc_name"] = RpcErrorCodes(res.error.code).name
            except ValueError:
                pass
            raise TransportError(
                message=f"{method.value} failed: {res.error.message}",
                context=context,
            )
        return res.result

    async def _call_http(self, payload: bytes) -> RpcResponse:
        assert self._session is not None
        try:
            async with self._session.post(
                self.endpoint,
                data=payload,
                headers={"Content-Type": "application/json"},
            ) as resp:
                body = await resp.read()
                if resp.status < 200 or resp.status >= 300:
                    raise TransportError(
                        message=f"HTTP {resp.status} from {self.endpoint}",
                        context={"status": resp.status},
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise TransportError(
                message=f"request to {self.endpoint} failed: {exc}",
                context={"type": type(exc).__name__},
            ) from exc
        return decode_response(body)

    async def _call_ws(self, req_id: int, payload: bytes) -> RpcResponse:
        ws = await self._ensure_ws()
        pending = self._pending
        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        pending[req_id] = fut
        try:
            await ws.send_str(payload.decode("utf-8"))
            return await asyncio.wait_for(fut, self.timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(
                message=f"no reply from {self.endpoint} within {self.timeout:.1f}s",
                context={"id": req_id},
            ) from exc
        except (aiohttp.ClientError, ConnectionError) as exc:
            raise TransportError(
                message=f"websocket send failed: {exc}",
                context={"type": type(exc).__name__},
            ) from exc
        finally:
            pending.pop(req_id, None)

    # ------------- RX loop -------------

    async def _rx_loop(self, ws: aiohttp.ClientWebSocketResponse, pending: Dict[int, asyncio.Future]) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_incoming(msg.data, pending)
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.ERROR):
                    break
        except aiohttp.ClientError as e:
            log.info("[client] rx loop error: %s", e)
        finally:
            if not self._closed and ws is self._ws:
                log.warning("[client] websocket to %s dropped; reconnecting on next call", self.endpoint)
            _fail_pending(pending, "websocket closed")

    def _handle_incoming(self, data: str, pending: Dict[int, asyncio.Future]) -> None:
        try:
            res = decode_response(data)
        except ProtocolError as exc:
            log.warning("[client] dropping undecodable frame: %s", exc)
            return
        # Subscription notifications carry no id.
        if not isinstance(res.id, int):
            log.debug("[client] unhandled message: %s", data[:200])
            return
        fut = pending.pop(res.id, None)
        if fut and not fut.done():
            fut.set_result(res)

    # ------------- protocol -------------

    async def block_number(self) -> int:
        return parse_block_number(await self._call(Method.BLOCK_NUMBER))

    async def fetch_job(self) -> Job:
        work = parse_work(await self._call(Method.GET_WORK))
        height = await self.block_number()
        return Job(
            header_hash=work.header_hash,
            seed_hash=work.seed_hash,
            target=work.target,
            block_number=height,
        )

    async def submit_solution(self, nonce_bytes: bytes, header_hash: bytes, mix_digest: bytes) -> bool:
        params = submit_params(nonce_bytes, header_hash, mix_digest)
        log.debug("[client] eth_submitWork nonce=%s header=%s", params[0], params[1])
        return parse_submit_result(await self._call(Method.SUBMIT_WORK, *params))


__all__ = ["NodeClient", "endpoint_scheme"]
