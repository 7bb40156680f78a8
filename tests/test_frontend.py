from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest
from mcp.server.fastmcp.exceptions import ToolError

sys.path.append(str(Path(__file__).resolve().parents[1]))

from tabbroker.errors import CommandFailed  # noqa: E402
from tabbroker.frontend import build_server  # noqa: E402
from tabbroker.tools import ToolAdapter  # noqa: E402


class FakeAPI:
    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    async def open_tab(self, url: str) -> int | None:
        self.calls.append(("open_tab", (url,)))
        return 7

    async def group_tabs(self, tab_ids, is_collapsed, group_color, group_title) -> int:
        self.calls.append(("group_tabs", (tab_ids, is_collapsed, group_color, group_title)))
        return 3

    async def click_element(self, tab_id, selector=None, x=None, y=None) -> dict[str, Any]:
        raise CommandFailed("Element not found", correlation_id="x1")

    async def execute_javascript(self, tab_id: int, code: str) -> dict[str, Any]:
        self.calls.append(("execute_javascript", (tab_id, len(code))))
        return {"result": len(code), "error": None}


def _server(api: FakeAPI):
    return build_server(ToolAdapter(api, clock=lambda: 0.0))


def test_every_tool_is_registered() -> None:
    adapter = ToolAdapter(FakeAPI())
    tools = asyncio.run(build_server(adapter).list_tools())
    by_name = {tool.name: tool for tool in tools}

    assert set(by_name) == set(adapter.tool_ids)
    assert by_name["open-browser-tab"].description.startswith("Open a new tab")
    assert by_name["get-list-of-open-tabs"].annotations.readOnlyHint is True


def test_argument_defaults_are_published() -> None:
    tools = asyncio.run(_server(FakeAPI()).list_tools())
    schemas = {tool.name: tool.inputSchema for tool in tools}

    group = schemas["group-browser-tabs"]
    assert group["required"] == ["tabIds"]
    assert group["properties"]["groupColor"]["default"] == "grey"
    assert "magenta" not in group["properties"]["groupColor"]["enum"]
    assert group["properties"]["groupTitle"]["default"] == "New Group"
    assert schemas["monitor-page-changes-in-browser"]["properties"]["timeout"]["default"] == 10000
    assert schemas["get-tab-web-content"]["properties"]["offset"]["default"] == 0


def test_tool_call_returns_text() -> None:
    api = FakeAPI()

    result = asyncio.run(
        _server(api).call_tool("group-browser-tabs", {"tabIds": [1, 2], "groupTitle": "Work"})
    )

    assert [block.text for block in result] == ['Created tab group "Work" with 2 tabs (group ID: 3)']
    assert api.calls == [("group_tabs", ([1, 2], False, "grey", "Work"))]


def test_broker_failure_is_tool_error() -> None:
    server = _server(FakeAPI())

    with pytest.raises(ToolError, match="Element not found"):
        asyncio.run(server.call_tool("click-element-in-browser", {"tabId": 1, "selector": "#x"}))


def test_missing_argument_is_rejected() -> None:
    api = FakeAPI()

    with pytest.raises(ToolError):
        asyncio.run(_server(api).call_tool("open-browser-tab", {}))
    assert api.calls == []


def test_large_arguments_pass_through() -> None:
    api = FakeAPI()
    server = _server(api)
    code = "x" * 70_000

    async def _run() -> list[str]:
        big = await server.call_tool("execute-javascript-in-browser", {"tabId": 1, "code": code})
        small = await server.call_tool("open-browser-tab", {"url": "https://a.test"})
        return [block.text for block in [*big, *small]]

    texts = asyncio.run(_run())

    assert texts == [
        "JavaScript executed successfully. Result: 70000",
        "https://a.test opened in tab id 7",
    ]
    assert api.calls == [("execute_javascript", (1, 70_000)), ("open_tab", ("https://a.test",))]
