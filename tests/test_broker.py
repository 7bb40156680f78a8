from __future__ import annotations

import asyncio
import itertools
import json
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from tabbroker.api import BrowserAPI  # noqa: E402
from tabbroker.audit import AuditRecorder  # noqa: E402
from tabbroker.broker import CorrelationBroker  # noqa: E402
from tabbroker.errors import (  # noqa: E402
    BrokerClosed,
    CommandFailed,
    DuplicateCorrelationId,
    RequestTimeout,
    TransportUnavailable,
)
from tabbroker.policy import (  # noqa: E402
    CommandDisabled,
    DestinationDenied,
    InvalidDestination,
    SecurityGate,
    SecurityPolicy,
)


class FakeTransport:
    def __init__(self, connected: bool = True) -> None:
        self.connected = connected
        self.sent: list[dict] = []

    def is_connected(self) -> bool:
        return self.connected

    async def send_text(self, text: str) -> None:
        self.sent.append(json.loads(text))


async def _wait_sent(transport: FakeTransport, count: int = 1) -> None:
    async def _poll() -> None:
        while len(transport.sent) < count:
            await asyncio.sleep(0)

    await asyncio.wait_for(_poll(), timeout=1)


def test_open_tab_resolves_with_tab_id() -> None:
    async def _run() -> None:
        transport = FakeTransport()
        broker = CorrelationBroker(transport, id_factory=lambda: "abc")
        api = BrowserAPI(broker)

        task = asyncio.create_task(api.open_tab("https://example.com"))
        await _wait_sent(transport)
        assert transport.sent == [
            {"cmd": "open-tab", "correlationId": "abc", "url": "https://example.com"}
        ]
        broker.on_message(
            json.dumps({"resource": "opened-tab-id", "correlationId": "abc", "tabId": 7})
        )

        assert await task == 7
        assert broker.pending_count() == 0

    asyncio.run(_run())


def test_error_envelope_fails_request() -> None:
    async def _run() -> None:
        transport = FakeTransport()
        broker = CorrelationBroker(transport, id_factory=lambda: "x1")

        task = asyncio.create_task(broker.send("click-element", tabId=7, selector="#btn"))
        await _wait_sent(transport)
        broker.on_message(json.dumps({"correlationId": "x1", "errorMessage": "Element not found"}))

        with pytest.raises(CommandFailed, match="Element not found") as excinfo:
            await task
        assert excinfo.value.correlation_id == "x1"
        assert not broker.is_pending("x1")

    asyncio.run(_run())


def test_generated_ids_are_unique_among_pending() -> None:
    async def _run() -> None:
        transport = FakeTransport()
        ids = itertools.chain(["dup", "dup", "dup"], (f"id{n}" for n in itertools.count()))
        broker = CorrelationBroker(transport, id_factory=lambda: next(ids))

        tasks = [asyncio.create_task(broker.send("get-tab-list")) for _ in range(3)]
        await _wait_sent(transport, 3)
        sent_ids = [frame["correlationId"] for frame in transport.sent]
        assert len(set(sent_ids)) == 3
        assert sorted(broker.pending_ids()) == sorted(sent_ids)

        for cid in sent_ids:
            broker.on_message(json.dumps({"resource": "tabs", "correlationId": cid, "tabs": []}))
        results = await asyncio.gather(*tasks)
        assert [r.correlation_id for r in results] == sent_ids

    asyncio.run(_run())


def test_resource_mismatch_leaves_request_pending() -> None:
    async def _run() -> None:
        transport = FakeTransport()
        broker = CorrelationBroker(transport, id_factory=lambda: "m1")

        task = asyncio.create_task(broker.send("get-tab-list"))
        await _wait_sent(transport)
        broker.on_message(json.dumps({"resource": "tabs-closed", "correlationId": "m1"}))
        await asyncio.sleep(0)
        assert broker.is_pending("m1")
        assert not task.done()

        broker.on_message(json.dumps({"resource": "tabs", "correlationId": "m1", "tabs": []}))
        result = await task
        assert result.fields == {"tabs": []}

    asyncio.run(_run())


def test_orphans_and_bad_frames_are_dropped() -> None:
    async def _run() -> None:
        broker = CorrelationBroker(FakeTransport())

        broker.on_message(json.dumps({"resource": "tabs", "correlationId": "nobody", "tabs": []}))
        broker.on_message(json.dumps({"correlationId": "nobody", "errorMessage": "late"}))
        broker.on_message("{not json")
        broker.on_message(json.dumps({"resource": "tabs"}))

        assert broker.pending_count() == 0

    asyncio.run(_run())


def test_request_settles_at_most_once() -> None:
    async def _run() -> None:
        transport = FakeTransport()
        broker = CorrelationBroker(transport, id_factory=lambda: "once")

        task = asyncio.create_task(broker.send("close-tabs", tabIds=[1]))
        await _wait_sent(transport)
        broker.on_message(json.dumps({"resource": "tabs-closed", "correlationId": "once"}))
        broker.on_message(json.dumps({"correlationId": "once", "errorMessage": "too late"}))

        result = await task
        assert result.resource == "tabs-closed"

    asyncio.run(_run())


def test_timeout_then_late_response_is_orphan() -> None:
    async def _run() -> None:
        transport = FakeTransport()
        broker = CorrelationBroker(transport, response_timeout_s=0.1, id_factory=lambda: "slow")

        with pytest.raises(RequestTimeout):
            await broker.send("get-tab-list")
        assert broker.pending_count() == 0

        broker.on_message(json.dumps({"resource": "tabs", "correlationId": "slow", "tabs": []}))
        assert broker.pending_count() == 0

    asyncio.run(_run())


def test_zero_timeout_waits_for_response() -> None:
    async def _run() -> None:
        transport = FakeTransport()
        broker = CorrelationBroker(transport, id_factory=lambda: "w")

        task = asyncio.create_task(broker.send("get-tab-list"))
        await _wait_sent(transport)
        await asyncio.sleep(0.05)
        assert not task.done()
        broker.on_message(json.dumps({"resource": "tabs", "correlationId": "w", "tabs": []}))
        await task

    asyncio.run(_run())


def test_disabled_command_is_rejected_before_sending() -> None:
    async def _run() -> None:
        transport = FakeTransport()
        gate = SecurityGate(SecurityPolicy(disabled_tools=frozenset({"open-browser-tab"})))
        broker = CorrelationBroker(transport, gate=gate)

        with pytest.raises(CommandDisabled, match="open-tab"):
            await broker.send("open-tab", url="https://example.com")
        assert transport.sent == []
        assert broker.pending_count() == 0

    asyncio.run(_run())


def test_denied_destination_is_rejected_before_sending() -> None:
    async def _run() -> None:
        transport = FakeTransport()
        gate = SecurityGate(SecurityPolicy(denied_domains=("example.com",)))
        broker = CorrelationBroker(transport, gate=gate)

        with pytest.raises(DestinationDenied):
            await broker.send("open-tab", url="https://www.example.com/page")
        with pytest.raises(InvalidDestination, match="Invalid URL"):
            await broker.send("open-tab", url="http://other.org")
        assert transport.sent == []

    asyncio.run(_run())


def test_explicit_duplicate_id_is_rejected() -> None:
    async def _run() -> None:
        transport = FakeTransport()
        broker = CorrelationBroker(transport)

        first = asyncio.create_task(broker.send("get-tab-list", correlation_id="same"))
        await _wait_sent(transport)
        with pytest.raises(DuplicateCorrelationId):
            await broker.send("get-tab-list", correlation_id="same")
        assert len(transport.sent) == 1

        broker.close()
        with pytest.raises(BrokerClosed):
            await first

    asyncio.run(_run())


def test_send_without_connection_fails() -> None:
    async def _run() -> None:
        broker = CorrelationBroker(FakeTransport(connected=False))
        with pytest.raises(TransportUnavailable, match="WebSocket is not open"):
            await broker.send("get-tab-list")

        unattached = CorrelationBroker()
        with pytest.raises(TransportUnavailable):
            await unattached.send("get-tab-list")

    asyncio.run(_run())


def test_invalid_arguments_never_reach_the_wire() -> None:
    async def _run() -> None:
        transport = FakeTransport()
        broker = CorrelationBroker(transport)

        with pytest.raises(ValueError):
            await broker.send("get-tab-content", tabId="7")
        assert transport.sent == []

    asyncio.run(_run())


def test_cancelled_send_clears_pending_entry() -> None:
    async def _run() -> None:
        transport = FakeTransport()
        broker = CorrelationBroker(transport, id_factory=lambda: "c")

        task = asyncio.create_task(broker.send("get-tab-list"))
        await _wait_sent(transport)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert broker.pending_count() == 0

    asyncio.run(_run())


def test_negative_timeout_is_rejected() -> None:
    with pytest.raises(ValueError):
        CorrelationBroker(response_timeout_s=-1)


def test_blocked_destination_is_audited_and_never_sent() -> None:
    entries = []

    class Sink:
        async def append(self, entry) -> None:
            entries.append(entry)

    async def _run() -> None:
        transport = FakeTransport()
        gate = SecurityGate(SecurityPolicy(denied_domains=("blocked.example",)))
        recorder = AuditRecorder(Sink(), clock=lambda: 1.0)
        broker = CorrelationBroker(transport, gate=gate, recorder=recorder)

        with pytest.raises(DestinationDenied, match="destination denied"):
            await broker.send("open-tab", url="https://blocked.example")
        await recorder.drain()
        assert transport.sent == []

    asyncio.run(_run())

    assert [(e.command, e.url) for e in entries] == [("open-tab", "https://blocked.example")]
