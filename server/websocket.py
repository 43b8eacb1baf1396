"""WebSocket control channel for agent connections.

Binds a loopback port from a configured range and accepts agent
connections on ``/``. The upgrade request must carry the session token in
the ``x-agentlink-authorization`` header; anything else is refused before
it is ever counted as a client.

After the upgrade the agent speaks JSON-RPC 2.0:

    agent  -> {"id": 1, "method": "initialize", "params": {...}}
    server -> {"id": 1, "result": {"protocolVersion": ..., "serverInfo": ...}}
    agent  -> {"method": "notifications/initialized"}

Only then is the connection ready to receive broadcasts.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from collections.abc import Callable
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web

from auth import tokens_match
from config import TRACE
from server import (
    BindError,
    BroadcastDeliveryError,
    Connection,
    ConnectionState,
    NoPortAvailableError,
)

log = logging.getLogger(__name__)

AUTH_HEADER = "x-agentlink-authorization"
PROTOCOL_VERSION = "2024-11-05"

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603


def _result(msg_id: Any, result: dict) -> dict:
    return {"jsonrpc": "2.0", "id": msg_id, "result": result}


def _error(msg_id: Any, code: int, message: str) -> dict:
    return {"jsonrpc": "2.0", "id": msg_id, "error": {"code": code, "message": message}}


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class ConnectionServer:
    """Token-authenticated WebSocket server tracking per-connection handshake state."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        on_ready: Callable[[Connection], Any] | None = None,
        on_disconnect: Callable[[Connection], Any] | None = None,
        heartbeat: float | None = 30.0,
        max_msg_size: int = 4 * 1024 * 1024,
        close_timeout: float = 2.0,
        server_name: str = "agentlink",
        server_version: str = "0.1.0",
    ):
        self.host = host
        self.heartbeat = heartbeat
        self.max_msg_size = max_msg_size
        self.close_timeout = close_timeout
        self.server_name = server_name
        self.server_version = server_version
        self.port: int | None = None
        self._on_ready = on_ready
        self._on_disconnect = on_disconnect
        self._token: str | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._clients: dict[str, Connection] = {}
        self._handlers: dict[str, Callable[..., Any]] = {}

    @property
    def running(self) -> bool:
        return self._site is not None

    # ─── Lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        app = web.Application(client_max_size=self.max_msg_size)
        app.router.add_get("/", self._handle_ws)
        return app

    async def start(self, port_min: int, port_max: int, token: str) -> int:
        """Bind the first free port in ``[port_min, port_max]`` and start serving."""
        if self.running:
            raise BindError(f"Server already listening on port {self.port}")
        if port_min > port_max:
            raise BindError(f"Empty port range {port_min}-{port_max}")

        self._token = token
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()

        for port in range(port_min, port_max + 1):
            site = web.TCPSite(self._runner, self.host, port)
            try:
                await site.start()
            except OSError as e:
                log.debug("Port %d unavailable: %s", port, e)
                await site.stop()
                continue
            self._site = site
            self.port = port
            log.info("Agent channel listening on %s:%d", self.host, port)
            return port

        await self._runner.cleanup()
        self._runner = None
        self._token = None
        raise NoPortAvailableError(
            f"No free port in range {port_min}-{port_max} on {self.host}"
        )

    async def stop(self) -> None:
        """Close every connection and release the port. Safe to call twice."""
        if self._runner is None:
            return
        for conn in list(self._clients.values()):
            ws = conn.ws
            if ws is not None and not ws.closed:
                try:
                    await ws.close(code=WSCloseCode.GOING_AWAY, message=b"server shutdown")
                except (OSError, RuntimeError) as e:
                    log.debug("Close failed for %s: %s", conn.id, e)
            conn.state = ConnectionState.CLOSED
        self._clients.clear()
        await self._runner.cleanup()
        log.info("Agent channel on port %s stopped", self.port)
        self._runner = None
        self._site = None
        self._token = None
        self.port = None

    # ─── Status ───────────────────────────────────────────────────

    def get_status(self) -> dict:
        clients = [c.snapshot() for c in self._clients.values()]
        return {
            "running": self.running,
            "port": self.port,
            "clients": clients,
            "client_count": len(clients),
        }

    def add_handler(self, method: str, callback: Callable[..., Any]) -> None:
        """Route inbound ``method`` to ``callback(params, connection)``.

        Requests get the callback's return value (a dict, or {}) as result.
        """
        self._handlers[method] = callback

    # ─── Broadcast ────────────────────────────────────────────────

    async def broadcast(self, method: str, params: dict | None = None) -> bool:
        """Notify every ready connection. True if at least one accepted it."""
        targets = [c for c in self._clients.values() if c.ready]
        if not targets:
            log.debug("Broadcast %s skipped: no ready clients", method)
            return False
        payload = {"jsonrpc": "2.0", "method": method, "params": params or {}}
        results = await asyncio.gather(*(self._deliver(c, payload) for c in targets))
        delivered = sum(1 for ok in results if ok)
        if delivered < len(targets):
            log.warning("Broadcast %s reached %d/%d clients", method, delivered, len(targets))
        return delivered > 0

    async def _deliver(self, conn: Connection, payload: dict) -> bool:
        try:
            await self._send(conn, payload)
        except BroadcastDeliveryError as e:
            log.warning("Delivery to %s failed: %s", conn.id, e)
            return False
        return True

    async def _send(self, conn: Connection, payload: dict) -> None:
        ws = conn.ws
        if ws is None or ws.closed:
            raise BroadcastDeliveryError(f"connection {conn.id} is closed")
        try:
            log.log(TRACE, "-> %s %s", conn.id, payload.get("method") or payload.get("id"))
            await ws.send_str(json.dumps(payload))
        except (OSError, RuntimeError) as e:
            raise BroadcastDeliveryError(str(e)) from e

    # ─── Connection Handling ──────────────────────────────────────

    async def _handle_ws(self, request: web.Request) -> web.StreamResponse:
        conn = Connection(id=uuid.uuid4().hex[:12], remote=request.remote or "")
        self._clients[conn.id] = conn

        if not tokens_match(request.headers.get(AUTH_HEADER), self._token):
            log.warning("Agent channel: auth failed from %s", conn.remote)
            self._discard(conn)
            return web.json_response({"error": "unauthorized"}, status=401)

        ws = web.WebSocketResponse(
            heartbeat=self.heartbeat,
            max_msg_size=self.max_msg_size,
            timeout=self.close_timeout,
        )
        if not ws.can_prepare(request).ok:
            self._discard(conn)
            return web.json_response({"error": "websocket upgrade required"}, status=400)

        await ws.prepare(request)
        conn.ws = ws
        conn.state = ConnectionState.CONNECTED
        log.info("Agent connected: %s from %s", conn.id, conn.remote)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._on_text(conn, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    log.warning("Connection %s error: %s", conn.id, ws.exception())
                    break
                else:
                    log.debug("Ignoring %s frame from %s", msg.type, conn.id)
        finally:
            was_ready = conn.ready
            self._discard(conn)
            log.info("Agent disconnected: %s", conn.id)
            if was_ready and self._on_disconnect is not None:
                try:
                    await _maybe_await(self._on_disconnect(conn))
                except Exception as e:
                    log.error("on_disconnect callback failed: %s", e)
        return ws

    def _discard(self, conn: Connection) -> None:
        conn.state = ConnectionState.CLOSED
        self._clients.pop(conn.id, None)

    async def _on_text(self, conn: Connection, data: str) -> None:
        log.log(TRACE, "<- %s %s", conn.id, data[:500])
        try:
            msg = json.loads(data)
        except json.JSONDecodeError:
            log.warning("Invalid JSON from %s: %s", conn.id, data[:200])
            await self._reply(conn, _error(None, PARSE_ERROR, "parse error"))
            return
        if not isinstance(msg, dict):
            await self._reply(conn, _error(None, INVALID_REQUEST, "invalid request"))
            return

        method = msg.get("method")
        if not isinstance(method, str):
            # A response to something we sent; nothing here waits on those
            log.debug("Ignoring non-request message from %s", conn.id)
            return

        params = msg.get("params") or {}
        if "id" in msg:
            await self._on_request(conn, msg["id"], method, params)
        else:
            await self._on_notification(conn, method, params)

    async def _on_request(self, conn: Connection, msg_id: Any, method: str, params: dict) -> None:
        if method == "initialize":
            info = params.get("clientInfo") if isinstance(params, dict) else None
            # Only a table is kept
            conn.client_info = info if isinstance(info, dict) else None
            await self._reply(conn, _result(msg_id, {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"logging": {}},
                "serverInfo": {"name": self.server_name, "version": self.server_version},
            }))
            return
        if method == "ping":
            await self._reply(conn, _result(msg_id, {}))
            return

        handler = self._handlers.get(method)
        if handler is None:
            await self._reply(conn, _error(msg_id, METHOD_NOT_FOUND, f"method not found: {method}"))
            return
        try:
            result = await _maybe_await(handler(params, conn))
        except Exception as e:
            log.error("Handler for %s failed: %s", method, e)
            await self._reply(conn, _error(msg_id, INTERNAL_ERROR, "internal error"))
            return
        await self._reply(conn, _result(msg_id, result if isinstance(result, dict) else {}))

    async def _on_notification(self, conn: Connection, method: str, params: dict) -> None:
        if method == "notifications/initialized":
            if conn.state is not ConnectionState.CONNECTED or conn.handshake_complete:
                return
            conn.handshake_complete = True
            log.info("Agent %s ready (%s)", conn.id,
                     (conn.client_info or {}).get("name") or "unknown client")
            if self._on_ready is not None:
                try:
                    await _maybe_await(self._on_ready(conn))
                except Exception as e:
                    log.error("on_ready callback failed: %s", e)
            return

        handler = self._handlers.get(method)
        if handler is None:
            log.debug("Unhandled notification %s from %s", method, conn.id)
            return
        try:
            await _maybe_await(handler(params, conn))
        except Exception as e:
            log.error("Handler for %s failed: %s", method, e)

    async def _reply(self, conn: Connection, payload: dict) -> None:
        try:
            await self._send(conn, payload)
        except BroadcastDeliveryError as e:
            log.debug("Reply to %s dropped: %s", conn.id, e)
