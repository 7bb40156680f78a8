"""MCP server that exposes the browser tools to an agent over stdio."""

from __future__ import annotations

import logging
from typing import Any, Literal

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from mcp.types import TextContent, ToolAnnotations

from tabbroker.tools import ToolAdapter

log = logging.getLogger(__name__)

SERVER_NAME = "BrowserControl"

GroupColor = Literal["grey", "blue", "red", "yellow", "green", "pink", "purple", "cyan", "orange"]

READ_ONLY = ToolAnnotations(readOnlyHint=True)


async def _call(adapter: ToolAdapter, tool_id: str, args: dict[str, Any]) -> list[TextContent]:
    result = await adapter.invoke(tool_id, {k: v for k, v in args.items() if v is not None})
    if result.is_error:
        raise ToolError("\n".join(result.content))
    return [TextContent(type="text", text=text) for text in result.content]


def build_server(adapter: ToolAdapter) -> FastMCP:
    """Register one MCP tool per browser command on a fresh server."""
    mcp = FastMCP(SERVER_NAME)

    @mcp.tool(
        name="open-browser-tab",
        description="Open a new tab in the user's browser (useful when the user asks to open a website)",
        structured_output=False,
    )
    async def open_browser_tab(url: str) -> list[TextContent]:
        return await _call(adapter, "open-browser-tab", {"url": url})

    @mcp.tool(
        name="close-browser-tabs",
        description="Close tabs in the user's browser by tab IDs",
        structured_output=False,
    )
    async def close_browser_tabs(tabIds: list[int]) -> list[TextContent]:
        return await _call(adapter, "close-browser-tabs", {"tabIds": tabIds})

    @mcp.tool(
        name="get-list-of-open-tabs",
        description="Get the list of open tabs in the user's browser",
        annotations=READ_ONLY,
        structured_output=False,
    )
    async def get_list_of_open_tabs() -> list[TextContent]:
        return await _call(adapter, "get-list-of-open-tabs", {})

    @mcp.tool(
        name="get-recent-browser-history",
        description="Get the list of recent browser history (to get all, don't use searchQuery)",
        annotations=READ_ONLY,
        structured_output=False,
    )
    async def get_recent_browser_history(searchQuery: str | None = None) -> list[TextContent]:
        return await _call(adapter, "get-recent-browser-history", {"searchQuery": searchQuery})

    @mcp.tool(
        name="get-tab-web-content",
        description=(
            "Get the full text content of the webpage and the list of links in the webpage, "
            'by tab ID. Use "offset" only for larger documents when the first call was '
            "truncated and if you require more content in order to assist the user."
        ),
        annotations=READ_ONLY,
        structured_output=False,
    )
    async def get_tab_web_content(tabId: int, offset: int = 0) -> list[TextContent]:
        return await _call(adapter, "get-tab-web-content", {"tabId": tabId, "offset": offset})

    @mcp.tool(
        name="reorder-browser-tabs",
        description="Change the order of open browser tabs",
        structured_output=False,
    )
    async def reorder_browser_tabs(tabOrder: list[int]) -> list[TextContent]:
        return await _call(adapter, "reorder-browser-tabs", {"tabOrder": tabOrder})

    @mcp.tool(
        name="find-highlight-in-browser-tab",
        description=(
            "Find and highlight text in a browser tab "
            "(use a query phrase that exists in the web content)"
        ),
        structured_output=False,
    )
    async def find_highlight_in_browser_tab(tabId: int, queryPhrase: str) -> list[TextContent]:
        return await _call(
            adapter, "find-highlight-in-browser-tab", {"tabId": tabId, "queryPhrase": queryPhrase}
        )

    @mcp.tool(
        name="group-browser-tabs",
        description="Organize opened browser tabs in a new tab group",
        structured_output=False,
    )
    async def group_browser_tabs(
        tabIds: list[int],
        isCollapsed: bool = False,
        groupColor: GroupColor = "grey",
        groupTitle: str = "New Group",
    ) -> list[TextContent]:
        return await _call(
            adapter,
            "group-browser-tabs",
            {
                "tabIds": tabIds,
                "isCollapsed": isCollapsed,
                "groupColor": groupColor,
                "groupTitle": groupTitle,
            },
        )

    @mcp.tool(
        name="click-element-in-browser",
        description="Click on an element in a browser tab using CSS selector or coordinates",
        structured_output=False,
    )
    async def click_element_in_browser(
        tabId: int,
        selector: str | None = None,
        x: float | None = None,
        y: float | None = None,
    ) -> list[TextContent]:
        return await _call(
            adapter,
            "click-element-in-browser",
            {"tabId": tabId, "selector": selector, "x": x, "y": y},
        )

    @mcp.tool(
        name="fill-form-field-in-browser",
        description=(
            "Fill out a form field in a browser tab (supports text inputs, checkboxes, "
            "radio buttons, and select dropdowns)"
        ),
        structured_output=False,
    )
    async def fill_form_field_in_browser(
        tabId: int, selector: str, value: str, submit: bool = False
    ) -> list[TextContent]:
        return await _call(
            adapter,
            "fill-form-field-in-browser",
            {"tabId": tabId, "selector": selector, "value": value, "submit": submit},
        )

    @mcp.tool(
        name="execute-javascript-in-browser",
        description="Execute arbitrary JavaScript code in a browser tab and return the result",
        structured_output=False,
    )
    async def execute_javascript_in_browser(tabId: int, code: str) -> list[TextContent]:
        return await _call(
            adapter, "execute-javascript-in-browser", {"tabId": tabId, "code": code}
        )

    @mcp.tool(
        name="monitor-page-changes-in-browser",
        description=(
            "Monitor DOM changes on a web page for a specified duration "
            "(useful for detecting dynamic content loading)"
        ),
        structured_output=False,
    )
    async def monitor_page_changes_in_browser(
        tabId: int, selector: str | None = None, timeout: int = 10000
    ) -> list[TextContent]:
        return await _call(
            adapter,
            "monitor-page-changes-in-browser",
            {"tabId": tabId, "selector": selector, "timeout": timeout},
        )

    @mcp.tool(
        name="screenshot-website",
        description=(
            "Take a screenshot of a website tab and save it to the Browser-Screenshots "
            "folder in user's Pictures directory"
        ),
        structured_output=False,
    )
    async def screenshot_website(tabId: int, fullPage: bool = False) -> list[TextContent]:
        return await _call(adapter, "screenshot-website", {"tabId": tabId, "fullPage": fullPage})

    @mcp.tool(
        name="search-bookmarks",
        description="Search browser bookmarks by query (returns all bookmarks if no query provided)",
        annotations=READ_ONLY,
        structured_output=False,
    )
    async def search_bookmarks(query: str | None = None) -> list[TextContent]:
        return await _call(adapter, "search-bookmarks", {"query": query})

    @mcp.tool(
        name="open-bookmark",
        description="Open a bookmark in a new tab by bookmark ID",
        structured_output=False,
    )
    async def open_bookmark(bookmarkId: str) -> list[TextContent]:
        return await _call(adapter, "open-bookmark", {"bookmarkId": bookmarkId})

    return mcp


async def serve_stdio(adapter: ToolAdapter) -> None:
    """Serve the tools on stdin/stdout until the agent closes stdin."""
    server = build_server(adapter)
    log.info("Serving %d browser tools over stdio", len(adapter.tool_ids))
    await server.run_stdio_async()
    log.info("stdin closed, shutting down front end")
