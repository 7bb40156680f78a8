from __future__ import annotations

import asyncio
import contextlib
import errno
import inspect
import logging
import socket
from typing import Any, Awaitable, Callable, Literal

import aiohttp
from aiohttp import WSMsgType, web

from tabbroker.errors import PortInUseError, TransportUnavailable

log = logging.getLogger(__name__)

TextHandler = Callable[[str], Awaitable[Any] | None]
EventHandler = Callable[[], Awaitable[Any] | None]
ConnectionState = Literal["idle", "connecting", "open", "stopped"]

WS_HEARTBEAT_S = 20


def is_port_in_use(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError as exc:
            return exc.errno in {errno.EADDRINUSE, errno.EACCES}
    return False


class _TaskSet:
    """Keeps fire-and-forget handler tasks alive and logs their failures."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def run(self, maybe: Awaitable[Any] | None, what: str) -> None:
        if not inspect.isawaitable(maybe):
            return
        task = asyncio.ensure_future(maybe)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                log.error("%s handler failed", what, exc_info=t.exception())

        task.add_done_callback(_done)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()


class BrokerServer:
    """Websocket endpoint the executor connects to.

    Holds at most one current connection. A new connection replaces the
    previous reference; requests sent over the old one are not rejected.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        on_text: TextHandler,
        on_connect: EventHandler | None = None,
        on_disconnect: EventHandler | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._on_text = on_text
        self._on_connect = on_connect
        self._on_disconnect = on_disconnect
        self._runner: web.AppRunner | None = None
        self._ws: web.WebSocketResponse | None = None
        self._handlers = _TaskSet()

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    async def start(self) -> None:
        if self._port and is_port_in_use(self._host, self._port):
            raise PortInUseError(
                f"Configured port {self._port} is already in use. Please configure a different port."
            )
        app = web.Application()
        app.router.add_get("/", self._handle_ws)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        try:
            await site.start()
        except OSError as exc:
            await runner.cleanup()
            raise PortInUseError(f"Cannot listen on {self._host}:{self._port}: {exc}") from exc
        self._runner = runner
        addresses = runner.addresses
        if addresses:
            self._port = int(addresses[0][1])
        log.info("Starting WebSocket server on %s:%s", self._host, self._port)

    async def stop(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is not None and not ws.closed:
            await ws.close()
        await self._handlers.cancel_all()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def send_text(self, text: str) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise TransportUnavailable("WebSocket is not open")
        try:
            await ws.send_str(text)
        except (ConnectionError, RuntimeError) as exc:
            raise TransportUnavailable(f"WebSocket send failed: {exc}") from exc

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=WS_HEARTBEAT_S)
        await ws.prepare(request)
        previous = self._ws
        self._ws = ws
        if previous is not None and not previous.closed:
            log.warning("New connection from %s replaces the current one", request.remote)
        log.info("WebSocket connection established on port %s", self._port)
        if self._on_connect is not None:
            self._handlers.run(self._on_connect(), "connect")

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._handlers.run(self._on_text(msg.data), "message")
                elif msg.type == WSMsgType.ERROR:
                    log.error("WebSocket connection error: %s", ws.exception())
        finally:
            log.info("WebSocket connection closed on port %s", self._port)
            if self._ws is ws:
                self._ws = None
                if self._on_disconnect is not None:
                    self._handlers.run(self._on_disconnect(), "disconnect")
        return ws


class ExecutorClient:
    """Reconnecting websocket client for the executor side.

    A supervisor ticks every ``reconnect_interval_s``. When idle it starts
    a connection attempt; an attempt still connecting after
    ``max_connect_ticks`` ticks is cancelled and restarted.
    """

    def __init__(
        self,
        url: str,
        *,
        on_text: TextHandler,
        reconnect_interval_s: float = 2.0,
        max_connect_ticks: int = 2,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url
        self._on_text = on_text
        self._interval = reconnect_interval_s
        self._max_connect_ticks = max_connect_ticks
        self._session = session
        self._owns_session = session is None
        self._state: ConnectionState = "idle"
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._connection_task: asyncio.Task | None = None
        self._supervisor: asyncio.Task | None = None
        self._connect_ticks = 0
        self._handlers = _TaskSet()

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        return self._state == "open" and self._ws is not None and not self._ws.closed

    def start(self) -> None:
        if self._supervisor is not None:
            return
        if self._session is None:
            self._session = aiohttp.ClientSession()
        log.info("Connecting to WebSocket server at %s", self._url)
        self._supervisor = asyncio.create_task(self._supervise())

    async def _supervise(self) -> None:
        while True:
            self._tick()
            await asyncio.sleep(self._interval)

    def _tick(self) -> None:
        if self._state == "connecting":
            self._connect_ticks += 1
            if self._connect_ticks <= self._max_connect_ticks:
                return
            log.warning(
                "Connection attempt to %s stuck for %d ticks, restarting",
                self._url,
                self._connect_ticks,
            )
            if self._connection_task is not None:
                self._connection_task.cancel()
            self._connection_task = None
            self._state = "idle"
        if self._state == "idle":
            self._connect_ticks = 0
            self._state = "connecting"
            self._connection_task = asyncio.create_task(self._run_connection())

    async def _run_connection(self) -> None:
        assert self._session is not None
        task = asyncio.current_task()
        ws: aiohttp.ClientWebSocketResponse | None = None
        try:
            ws = await self._session.ws_connect(self._url, heartbeat=WS_HEARTBEAT_S)
            self._ws = ws
            self._state = "open"
            self._connect_ticks = 0
            log.info("Connected to WebSocket server at %s", self._url)
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    self._handlers.run(self._on_text(msg.data), "message")
                elif msg.type == WSMsgType.ERROR:
                    log.error("WebSocket error: %s", ws.exception())
            log.info("WebSocket connection closed at %s", self._url)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            log.info("WebSocket connection to %s failed: %r", self._url, exc)
        finally:
            if ws is not None and not ws.closed:
                with contextlib.suppress(Exception):
                    await ws.close()
            if self._ws is ws:
                self._ws = None
            # A cancelled attempt may already have been replaced by the supervisor.
            if self._connection_task is task and self._state != "stopped":
                self._state = "idle"

    async def send_text(self, text: str) -> None:
        ws = self._ws
        if not self.is_connected() or ws is None:
            log.error("Socket is not open, dropping outgoing message")
            return
        try:
            await ws.send_str(text)
        except (ConnectionError, RuntimeError) as exc:
            log.error("WebSocket send failed: %r", exc)

    async def stop(self) -> None:
        self._state = "stopped"
        if self._supervisor is not None:
            self._supervisor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._supervisor
            self._supervisor = None
        if self._connection_task is not None:
            self._connection_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._connection_task
            self._connection_task = None
        await self._handlers.cancel_all()
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
