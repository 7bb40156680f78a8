"""Process wiring for the broker and executor sides."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys

from tabbroker.api import BrowserAPI
from tabbroker.audit import AuditRecorder, AuditStore, format_entry
from tabbroker.broker import CorrelationBroker
from tabbroker.config import BrokerConfig, PolicyWatcher
from tabbroker.dispatcher import Dispatcher
from tabbroker.frontend import serve_stdio
from tabbroker.playwright_executor import PlaywrightExecutor
from tabbroker.policy import SecurityGate
from tabbroker.tools import ToolAdapter
from tabbroker.transport import BrokerServer, ExecutorClient

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

log = logging.getLogger(__name__)


def configure_logging(level: str = "INFO", log_file: str | None = None) -> None:
    # stdout carries the MCP stdio transport, so console logs go to stderr.
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)

    # write logs both to console and to a persistent file for later review
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(file_handler)


def _install_reload_handler(watcher: PolicyWatcher) -> None:
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError, AttributeError, RuntimeError):
        loop.add_signal_handler(signal.SIGHUP, watcher.reload)


async def run_broker(config: BrokerConfig) -> None:
    gate = SecurityGate(config.security_policy())
    store = AuditStore(config.audit_db, max_entries=config.audit_max_entries)
    await store.initialize()
    recorder = AuditRecorder(store)
    broker = CorrelationBroker(
        gate=gate, recorder=recorder, response_timeout_s=config.response_timeout_s
    )
    server = BrokerServer(config.host, config.port, on_text=broker.on_message)
    broker.attach(server)
    await server.start()
    _install_reload_handler(PolicyWatcher(gate))

    adapter = ToolAdapter(BrowserAPI(broker, screenshot_dir=config.screenshot_dir))
    try:
        await serve_stdio(adapter)
    finally:
        broker.close("Broker shutting down")
        await server.stop()
        await recorder.drain()


def _executor_client(url: str, dispatcher: Dispatcher, config: BrokerConfig) -> ExecutorClient:
    client: ExecutorClient | None = None

    async def _on_text(text: str) -> None:
        reply = await dispatcher.dispatch_text(text)
        if reply is not None and client is not None:
            await client.send_text(reply)

    client = ExecutorClient(
        url,
        on_text=_on_text,
        reconnect_interval_s=config.reconnect_interval_s,
        max_connect_ticks=config.max_connect_ticks,
    )
    return client


async def run_executor(config: BrokerConfig) -> None:
    gate = SecurityGate(config.security_policy())
    store = AuditStore(config.audit_db, max_entries=config.audit_max_entries)
    await store.initialize()
    recorder = AuditRecorder(store)
    executor = PlaywrightExecutor(
        mode="cdp" if config.browser_mode == "cdp" else "launch",
        headless=config.headless,
        cdp_url=config.cdp_url,
        bookmarks_path=config.bookmarks_path,
    )
    await executor.start()
    dispatcher = Dispatcher(executor, gate, recorder)
    _install_reload_handler(PolicyWatcher(gate))

    clients = [
        _executor_client(f"ws://localhost:{port}", dispatcher, config)
        for port in config.executor_ports
    ]
    for client in clients:
        client.start()
    if not clients:
        log.error("No ports configured for the executor")
        return
    log.info("Executor initialized with %d connection(s)", len(clients))

    try:
        await asyncio.Event().wait()
    finally:
        for client in clients:
            await client.stop()
        await recorder.drain()
        await executor.close()


async def show_audit(config: BrokerConfig, limit: int | None) -> list[str]:
    store = AuditStore(config.audit_db, max_entries=config.audit_max_entries)
    entries = await store.list_entries(limit)
    return [format_entry(entry) for entry in entries]
