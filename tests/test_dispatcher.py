from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

sys.path.append(str(Path(__file__).resolve().parents[1]))

from tabbroker.audit import AuditEntry, AuditRecorder  # noqa: E402
from tabbroker.dispatcher import Dispatcher  # noqa: E402
from tabbroker.errors import ExecutionError  # noqa: E402
from tabbroker.policy import SecurityGate, SecurityPolicy  # noqa: E402


class FakeExecutor:
    def __init__(self) -> None:
        self.tabs = {3: "https://shop.test/cart", 4: "https://bank.test/"}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def get_tab_url(self, tab_id: int) -> str | None:
        return self.tabs.get(tab_id)

    async def get_bookmark_url(self, bookmark_id: str) -> str | None:
        return None

    async def open_tab(self, url: str) -> dict[str, Any]:
        self.calls.append(("open_tab", {"url": url}))
        return {"tabId": 7}

    async def get_tab_list(self) -> dict[str, Any]:
        return {"tabs": [{"id": 3, "url": self.tabs[3], "title": "Cart"}]}

    async def click_element(self, tab_id, selector, x, y) -> dict[str, Any]:
        self.calls.append(("click_element", {"tab_id": tab_id, "selector": selector, "x": x, "y": y}))
        raise ExecutionError("Element not found")

    async def find_highlight(self, tab_id, query_phrase) -> dict[str, Any]:
        raise KeyError("page crashed")

    async def get_tab_content(self, tab_id, offset) -> dict[str, Any]:
        return {"tabId": tab_id, "fullText": "partial"}


class ListSink:
    def __init__(self, fail: bool = False) -> None:
        self.entries: list[AuditEntry] = []
        self.fail = fail

    async def append(self, entry: AuditEntry) -> None:
        if self.fail:
            raise OSError("disk full")
        self.entries.append(entry)


def _frame(**payload: Any) -> str:
    return json.dumps(payload)


def test_dispatch_success_reply() -> None:
    executor = FakeExecutor()
    dispatcher = Dispatcher(executor, SecurityGate())

    reply = asyncio.run(
        dispatcher.dispatch_text(_frame(cmd="open-tab", correlationId="abc", url="https://a.test"))
    )

    assert json.loads(reply) == {"resource": "opened-tab-id", "correlationId": "abc", "tabId": 7}
    assert executor.calls == [("open_tab", {"url": "https://a.test"})]


def test_execution_error_becomes_error_envelope() -> None:
    executor = FakeExecutor()
    dispatcher = Dispatcher(executor, SecurityGate())

    reply = asyncio.run(
        dispatcher.dispatch_text(
            _frame(cmd="click-element", correlationId="x1", tabId=3, selector="#nope")
        )
    )

    assert json.loads(reply) == {"correlationId": "x1", "errorMessage": "Element not found"}
    assert executor.calls[0][1] == {"tab_id": 3, "selector": "#nope", "x": None, "y": None}


def test_unexpected_error_still_answers() -> None:
    dispatcher = Dispatcher(FakeExecutor(), SecurityGate())

    reply = asyncio.run(
        dispatcher.dispatch_text(_frame(cmd="find-highlight", correlationId="f", tabId=3, queryPhrase="x"))
    )

    payload = json.loads(reply)
    assert payload["correlationId"] == "f"
    assert "page crashed" in payload["errorMessage"]


def test_denied_destination_never_runs_capability() -> None:
    executor = FakeExecutor()
    gate = SecurityGate(SecurityPolicy(denied_domains=("bank.test",)))
    dispatcher = Dispatcher(executor, gate)

    reply = asyncio.run(
        dispatcher.dispatch_text(_frame(cmd="click-element", correlationId="d", tabId=4, x=1, y=1))
    )

    payload = json.loads(reply)
    assert payload["correlationId"] == "d"
    assert payload["errorMessage"].startswith("destination denied")
    assert executor.calls == []


def test_disabled_command_is_answered_with_error() -> None:
    gate = SecurityGate(SecurityPolicy(disabled_tools=frozenset({"get-list-of-open-tabs"})))
    dispatcher = Dispatcher(FakeExecutor(), gate)

    reply = asyncio.run(dispatcher.dispatch_text(_frame(cmd="get-tab-list", correlationId="t")))

    assert json.loads(reply) == {
        "correlationId": "t",
        "errorMessage": "Command 'get-tab-list' disabled by policy",
    }


def test_unknown_command_is_ignored() -> None:
    dispatcher = Dispatcher(FakeExecutor(), SecurityGate())

    assert asyncio.run(dispatcher.dispatch_text(_frame(cmd="format-disk", correlationId="u"))) is None


def test_malformed_request_with_id_gets_error() -> None:
    dispatcher = Dispatcher(FakeExecutor(), SecurityGate())

    reply = asyncio.run(dispatcher.dispatch_text(_frame(cmd="get-tab-content", correlationId="m")))
    payload = json.loads(reply)

    assert payload["correlationId"] == "m"
    assert payload["errorMessage"].startswith("Invalid request")
    assert asyncio.run(dispatcher.dispatch_text("not json")) is None


def test_malformed_result_is_reported() -> None:
    dispatcher = Dispatcher(FakeExecutor(), SecurityGate())

    reply = asyncio.run(
        dispatcher.dispatch_text(_frame(cmd="get-tab-content", correlationId="r", tabId=3))
    )

    assert json.loads(reply)["errorMessage"].startswith("Malformed result")


def test_every_attempt_is_audited() -> None:
    sink = ListSink()

    async def _run() -> None:
        recorder = AuditRecorder(sink, clock=lambda: 1_700_000_000.0)
        gate = SecurityGate(SecurityPolicy(denied_domains=("bank.test",)))
        dispatcher = Dispatcher(FakeExecutor(), gate, recorder)
        await dispatcher.dispatch_text(_frame(cmd="get-tab-list", correlationId="1"))
        await dispatcher.dispatch_text(_frame(cmd="click-element", correlationId="2", tabId=4))
        await recorder.drain()

    asyncio.run(_run())

    assert [(e.tool_id, e.url) for e in sink.entries] == [
        ("get-list-of-open-tabs", None),
        ("click-element-in-browser", "https://bank.test/"),
    ]
    assert sink.entries[0].timestamp == 1_700_000_000_000


def test_audit_failure_does_not_affect_command() -> None:
    async def _run() -> str | None:
        recorder = AuditRecorder(ListSink(fail=True))
        dispatcher = Dispatcher(FakeExecutor(), SecurityGate(), recorder)
        reply = await dispatcher.dispatch_text(_frame(cmd="get-tab-list", correlationId="ok"))
        await recorder.drain()
        return reply

    reply = asyncio.run(_run())

    assert json.loads(reply)["resource"] == "tabs"


def test_malformed_known_command_is_audited() -> None:
    sink = ListSink()

    async def _run() -> str | None:
        recorder = AuditRecorder(sink, clock=lambda: 1.0)
        dispatcher = Dispatcher(FakeExecutor(), SecurityGate(), recorder)
        reply = await dispatcher.dispatch_text(_frame(cmd="get-tab-content", correlationId="m"))
        await dispatcher.dispatch_text(_frame(cmd="format-disk", correlationId="u"))
        await recorder.drain()
        return reply

    reply = asyncio.run(_run())

    assert json.loads(reply)["errorMessage"].startswith("Invalid request")
    assert [(e.tool_id, e.command) for e in sink.entries] == [
        ("get-tab-web-content", "get-tab-content")
    ]
