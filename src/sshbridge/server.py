"""
sshbridge MCP HTTP/SSE server: exposes the local tool catalogue to a remote
MCP client (typically Claude Code on the far end of an SSH tunnel).

MCP SSE transport (protocol revision 2024-11-05):
  GET  /sse           client connects here; receives an 'endpoint' event
                      pointing to /message?sessionId=<id>
  POST /message       client sends JSON-RPC requests here; the response is
                      returned in the body AND broadcast to every open stream
  GET  /health        {"status": "ok", "port": <bound port>}
  GET  /tunnels       reverse tunnel status

The server only binds 127.0.0.1; remote hosts reach it through the reverse
tunnels managed by sshbridge.tunnels.
"""
from __future__ import annotations

import asyncio
import errno
import json
import logging
import socket
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .config import DEFAULT_PORT
from .tools.dispatcher import Dispatcher
from .tools.errors import METHOD_NOT_FOUND, PARSE_ERROR, ToolRequestError

if TYPE_CHECKING:
    from .tunnels import TunnelSupervisor

log = logging.getLogger("sshbridge-mcp")

SERVER_NAME = "sshbridge"
try:
    SERVER_VERSION = version("sshbridge")
except PackageNotFoundError:
    # running from a source checkout that was never installed
    SERVER_VERSION = "0.0.0"
PROTOCOL_VERSION = "2024-11-05"

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
    "Connection": "keep-alive",
}

PARSE_ERROR_RESPONSE = {"jsonrpc": "2.0", "id": None, "error": {"code": PARSE_ERROR, "message": "Parse error"}}


def _sse(event: str, data: Any) -> str:
    payload = data if isinstance(data, str) else json.dumps(data)
    return f"event: {event}\ndata: {payload}\n\n"


@dataclass
class Session:
    id: str
    queue: asyncio.Queue
    closed: bool = False
    dropped: int = 0


class ProtocolEngine:
    """Owns the SSE sessions and routes JSON-RPC requests to the dispatcher."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        supervisor: "TunnelSupervisor | None" = None,
        keepalive_interval: float = 30.0,
        session_queue_size: int = 256,
        port: int = DEFAULT_PORT,
    ) -> None:
        self.dispatcher = dispatcher
        self.supervisor = supervisor
        self.keepalive_interval = keepalive_interval
        self.session_queue_size = session_queue_size
        self.port = port
        self.sessions: dict[str, Session] = {}

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def open_session(self) -> Session:
        session_id = uuid.uuid4().hex
        while session_id in self.sessions:
            session_id = uuid.uuid4().hex
        session = Session(id=session_id, queue=asyncio.Queue(maxsize=self.session_queue_size))
        self.sessions[session_id] = session
        log.info("SSE client connected: %s (total: %d)", session_id, len(self.sessions))
        return session

    def close_session(self, session_id: str) -> None:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return
        session.closed = True
        log.info("SSE client disconnected: %s (total: %d)", session_id, len(self.sessions))

    def _offer(self, session: Session, item: tuple[str, Any] | None) -> None:
        # Bounded per-session buffer: a stalled subscriber loses its oldest events.
        try:
            session.queue.put_nowait(item)
        except asyncio.QueueFull:
            session.queue.get_nowait()
            session.dropped += 1
            log.warning("SSE session %s is not draining; dropped oldest event (%d so far)", session.id, session.dropped)
            session.queue.put_nowait(item)

    def broadcast(self, event: str, data: Any) -> int:
        """Queue ``data`` on every open session; returns the number of sessions reached."""
        delivered = 0
        for session in list(self.sessions.values()):
            if session.closed:
                continue
            self._offer(session, (event, data))
            delivered += 1
        return delivered

    async def event_stream(
        self,
        session: Session,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
    ) -> AsyncIterator[str]:
        yield _sse("endpoint", f"/message?sessionId={session.id}")
        try:
            while not session.closed:
                if is_disconnected is not None and await is_disconnected():
                    break
                try:
                    item = await asyncio.wait_for(session.queue.get(), timeout=self.keepalive_interval)
                except asyncio.TimeoutError:
                    yield ": ping\n\n"
                    continue
                if item is None:
                    break
                event, data = item
                yield _sse(event, data)
        finally:
            self.close_session(session.id)

    def close(self) -> None:
        """End every open stream; used on shutdown."""
        for session in list(self.sessions.values()):
            session.closed = True
            self._offer(session, None)
        self.sessions.clear()

    # ------------------------------------------------------------------
    # JSON-RPC
    # ------------------------------------------------------------------

    @staticmethod
    def parse_request(body: bytes) -> dict[str, Any] | None:
        try:
            rpc = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        return rpc if isinstance(rpc, dict) else None

    async def handle_rpc(self, req: dict[str, Any]) -> dict[str, Any]:
        """Process one JSON-RPC request and return its response envelope."""
        req_id = req.get("id")
        method = req.get("method", "")
        params = req.get("params")
        if not isinstance(params, dict):
            params = {}

        def ok(result: Any) -> dict:
            return {"jsonrpc": "2.0", "id": req_id, "result": result}

        def err(code: int, msg: str) -> dict:
            return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": msg}}

        log.info("Received: %s", method)

        if method == "initialize":
            return ok({
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            })

        if method == "notifications/initialized":
            return ok({})

        if method == "tools/list":
            return ok({"tools": self.dispatcher.list_tools()})

        if method == "tools/call":
            tool_name = params.get("name", "")
            arguments = params.get("arguments")
            try:
                result = await self.dispatcher.dispatch(str(tool_name), {} if arguments is None else arguments)
            except ToolRequestError as exc:
                return err(exc.code, str(exc))
            return ok({"content": [{"type": "text", "text": json.dumps(result, default=str)}]})

        if method == "ping":
            return ok({})

        return err(METHOD_NOT_FOUND, f"Method not found: {method}")


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------

def create_app(engine: ProtocolEngine) -> FastAPI:
    app = FastAPI(title="sshbridge-mcp")
    app.state.engine = engine

    # Traffic only arrives over loopback or the SSH tunnel, so any origin is allowed.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> Response:
        log.error("Unhandled error [%s %s]: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.get("/sse")
    async def sse_connect(request: Request) -> StreamingResponse:
        session = engine.open_session()
        return StreamingResponse(
            engine.event_stream(session, request.is_disconnected),
            media_type="text/event-stream",
            headers=_SSE_HEADERS,
        )

    @app.post("/message")
    async def message(request: Request, sessionId: str = "") -> Response:
        body = await request.body()
        rpc = engine.parse_request(body)
        if rpc is None:
            log.warning("Rejected unparsable message (session %s)", sessionId or "-")
            return Response(
                content=json.dumps(PARSE_ERROR_RESPONSE),
                media_type="application/json",
                status_code=400,
            )
        response = await engine.handle_rpc(rpc)
        engine.broadcast("message", response)
        return Response(content=json.dumps(response), media_type="application/json")

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "port": engine.port}

    @app.get("/tunnels")
    async def tunnels() -> list[dict[str, Any]]:
        if engine.supervisor is None:
            return []
        return engine.supervisor.get_status()

    return app


def bind_socket(host: str = "127.0.0.1", port: int = DEFAULT_PORT) -> tuple[socket.socket, int]:
    """Bind ``host:port``, moving up one port at a time while it is taken."""
    candidate = port
    while candidate < 65536:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((host, candidate))
        except OSError as exc:
            sock.close()
            if exc.errno != errno.EADDRINUSE:
                raise
            log.info("Port %d in use, trying %d", candidate, candidate + 1)
            candidate += 1
            continue
        sock.set_inheritable(True)
        return sock, candidate
    raise OSError(errno.EADDRINUSE, f"No free port at or above {port}")
