"""Capability interface the dispatcher drives on the executor side."""

from __future__ import annotations

from typing import Any, Protocol

from tabbroker.errors import ExecutionError

__all__ = ["CAPABILITY_ARGS", "ExecutionError", "Executor"]

# command -> (method name, [(wire field, keyword argument)])
CAPABILITY_ARGS: dict[str, tuple[str, list[tuple[str, str]]]] = {
    "open-tab": ("open_tab", [("url", "url")]),
    "close-tabs": ("close_tabs", [("tabIds", "tab_ids")]),
    "get-tab-list": ("get_tab_list", []),
    "get-browser-recent-history": (
        "get_browser_recent_history",
        [("searchQuery", "search_query")],
    ),
    "get-tab-content": ("get_tab_content", [("tabId", "tab_id"), ("offset", "offset")]),
    "reorder-tabs": ("reorder_tabs", [("tabOrder", "tab_order")]),
    "find-highlight": (
        "find_highlight",
        [("tabId", "tab_id"), ("queryPhrase", "query_phrase")],
    ),
    "group-tabs": (
        "group_tabs",
        [
            ("tabIds", "tab_ids"),
            ("isCollapsed", "is_collapsed"),
            ("groupColor", "group_color"),
            ("groupTitle", "group_title"),
        ],
    ),
    "click-element": (
        "click_element",
        [("tabId", "tab_id"), ("selector", "selector"), ("x", "x"), ("y", "y")],
    ),
    "fill-form-field": (
        "fill_form_field",
        [
            ("tabId", "tab_id"),
            ("selector", "selector"),
            ("value", "value"),
            ("submit", "submit"),
        ],
    ),
    "execute-javascript": ("execute_javascript", [("tabId", "tab_id"), ("code", "code")]),
    "monitor-page-changes": (
        "monitor_page_changes",
        [("tabId", "tab_id"), ("selector", "selector"), ("timeout", "timeout")],
    ),
    "screenshot-website": (
        "screenshot_website",
        [("tabId", "tab_id"), ("fullPage", "full_page")],
    ),
    "search-bookmarks": ("search_bookmarks", [("query", "query")]),
    "open-bookmark": ("open_bookmark", [("bookmarkId", "bookmark_id")]),
}


class Executor(Protocol):
    """Browser-side capabilities, one per command.

    Each returns the resource fields (camelCase, as on the wire) or raises
    ``ExecutionError``. Implementations must tolerate concurrent calls.
    """

    async def get_tab_url(self, tab_id: int) -> str | None:
        ...

    async def get_bookmark_url(self, bookmark_id: str) -> str | None:
        ...

    async def open_tab(self, url: str) -> dict[str, Any]:
        ...

    async def close_tabs(self, tab_ids: list[int]) -> dict[str, Any]:
        ...

    async def get_tab_list(self) -> dict[str, Any]:
        ...

    async def get_browser_recent_history(self, search_query: str | None) -> dict[str, Any]:
        ...

    async def get_tab_content(self, tab_id: int, offset: int | None) -> dict[str, Any]:
        ...

    async def reorder_tabs(self, tab_order: list[int]) -> dict[str, Any]:
        ...

    async def find_highlight(self, tab_id: int, query_phrase: str) -> dict[str, Any]:
        ...

    async def group_tabs(
        self, tab_ids: list[int], is_collapsed: bool, group_color: str, group_title: str
    ) -> dict[str, Any]:
        ...

    async def click_element(
        self, tab_id: int, selector: str | None, x: float | None, y: float | None
    ) -> dict[str, Any]:
        ...

    async def fill_form_field(
        self, tab_id: int, selector: str, value: str, submit: bool | None
    ) -> dict[str, Any]:
        ...

    async def execute_javascript(self, tab_id: int, code: str) -> dict[str, Any]:
        ...

    async def monitor_page_changes(
        self, tab_id: int, selector: str | None, timeout: int | None
    ) -> dict[str, Any]:
        ...

    async def screenshot_website(self, tab_id: int, full_page: bool | None) -> dict[str, Any]:
        ...

    async def search_bookmarks(self, query: str | None) -> dict[str, Any]:
        ...

    async def open_bookmark(self, bookmark_id: str) -> dict[str, Any]:
        ...
