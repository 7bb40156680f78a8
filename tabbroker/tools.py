"""Tool adapter: renders broker results as text for the calling agent."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from tabbroker.api import BrowserAPI
from tabbroker.errors import BrokerError

log = logging.getLogger(__name__)

GROUP_COLORS = {"grey", "blue", "red", "yellow", "green", "pink", "purple", "cyan", "orange"}


@dataclass(slots=True)
class ToolResult:
    content: list[str] = field(default_factory=list)
    is_error: bool = False


_AGE_STEPS: list[tuple[float, str, float | None]] = [
    (45, "a few seconds", None),
    (90, "a minute", None),
    (45 * 60, "{} minutes", 60),
    (90 * 60, "an hour", None),
    (22 * 3600, "{} hours", 3600),
    (36 * 3600, "a day", None),
    (26 * 86400, "{} days", 86400),
    (46 * 86400, "a month", None),
    (320 * 86400, "{} months", 30.4 * 86400),
    (548 * 86400, "a year", None),
]


def relative_age(seconds: float) -> str:
    """Coarse age such as "a few seconds ago" or "3 hours ago"."""
    seconds = max(seconds, 0)
    for limit, phrase, unit in _AGE_STEPS:
        if seconds < limit:
            return f"{phrase.format(round(seconds / unit)) if unit else phrase} ago"
    return f"{round(seconds / (365 * 86400))} years ago"


def time_ago(timestamp_ms: float | None, *, now: float | None = None) -> str:
    if not timestamp_ms:
        return "unknown"
    now = time.time() if now is None else now
    return relative_age(now - timestamp_ms / 1000)


def _error(text: str) -> ToolResult:
    return ToolResult([text], is_error=True)


def _require(args: dict[str, Any], name: str, kind: type | tuple[type, ...]) -> Any:
    value = args.get(name)
    if not isinstance(value, kind) or isinstance(value, bool) and kind is int:
        raise ValueError(f"Argument '{name}' is required")
    return value


def _int_list(args: dict[str, Any], name: str) -> list[int]:
    value = args.get(name)
    if not isinstance(value, list) or not all(
        isinstance(item, int) and not isinstance(item, bool) for item in value
    ):
        raise ValueError(f"Argument '{name}' must be a list of integers")
    return value


class ToolAdapter:
    """Maps tool ids to broker calls and renders their results.

    ``invoke`` never raises: every failure becomes an error result.
    """

    def __init__(self, api: BrowserAPI, *, clock: Callable[[], float] | None = None) -> None:
        self._api = api
        self._clock = clock or time.time
        self._tools: dict[str, Callable[[dict[str, Any]], Awaitable[ToolResult]]] = {
            "open-browser-tab": self._open_tab,
            "close-browser-tabs": self._close_tabs,
            "get-list-of-open-tabs": self._get_tab_list,
            "get-recent-browser-history": self._get_history,
            "get-tab-web-content": self._get_tab_content,
            "reorder-browser-tabs": self._reorder_tabs,
            "find-highlight-in-browser-tab": self._find_highlight,
            "group-browser-tabs": self._group_tabs,
            "click-element-in-browser": self._click_element,
            "fill-form-field-in-browser": self._fill_form_field,
            "execute-javascript-in-browser": self._execute_javascript,
            "monitor-page-changes-in-browser": self._monitor_page_changes,
            "screenshot-website": self._screenshot_website,
            "search-bookmarks": self._search_bookmarks,
            "open-bookmark": self._open_bookmark,
        }

    @property
    def tool_ids(self) -> list[str]:
        return list(self._tools.keys())

    async def invoke(self, tool_id: str, args: dict[str, Any] | None = None) -> ToolResult:
        handler = self._tools.get(tool_id)
        if handler is None:
            return _error(f"Unknown tool: {tool_id}")
        try:
            return await handler(args or {})
        except (BrokerError, ValueError) as exc:
            log.info("Tool %s failed: %s", tool_id, exc)
            return _error(f"{tool_id} failed: {exc}")
        except Exception as exc:
            log.exception("Tool %s raised unexpectedly", tool_id)
            return _error(f"{tool_id} failed: {exc!r}")

    async def _open_tab(self, args: dict[str, Any]) -> ToolResult:
        url = _require(args, "url", str)
        tab_id = await self._api.open_tab(url)
        if tab_id is None:
            return _error("Failed to open tab")
        return ToolResult([f"{url} opened in tab id {tab_id}"])

    async def _close_tabs(self, args: dict[str, Any]) -> ToolResult:
        await self._api.close_tabs(_int_list(args, "tabIds"))
        return ToolResult(["Closed tabs"])

    async def _get_tab_list(self, args: dict[str, Any]) -> ToolResult:
        tabs = await self._api.get_tab_list()
        now = self._clock()
        return ToolResult(
            [
                f"tab id={tab.get('id')}, tab url={tab.get('url')}, tab title={tab.get('title')}, "
                f"last accessed={time_ago(tab.get('lastAccessed'), now=now)}"
                for tab in tabs
            ]
        )

    async def _get_history(self, args: dict[str, Any]) -> ToolResult:
        search_query = args.get("searchQuery") or None
        items = await self._api.get_browser_recent_history(search_query)
        if not items:
            # Point the agent at the unfiltered history instead.
            hint = "Try without a searchQuery" if search_query else ""
            return ToolResult([f"No history found. {hint}".rstrip()])
        now = self._clock()
        return ToolResult(
            [
                f'url={item.get("url")}, title="{item.get("title")}", '
                f"lastVisitTime={time_ago(item.get('lastVisitTime'), now=now)}"
                for item in items
            ]
        )

    async def _get_tab_content(self, args: dict[str, Any]) -> ToolResult:
        tab_id = _require(args, "tabId", int)
        offset = args.get("offset") or 0
        content = await self._api.get_tab_content(tab_id, offset)
        text = content["fullText"]
        parts: list[str] = []
        if content["isTruncated"] or offset > 0:
            parts.append(
                f"The following text content is truncated due to size (includes character range "
                f"{offset}-{offset + len(text)} out of {content['totalLength']}). "
                "If you want to read characters beyond this range, please use the "
                "'get-tab-web-content' tool with an offset. "
            )
        parts.append(text)
        # Links only on the first page; later pages would repeat them.
        if offset == 0:
            parts.extend(
                f"Link text: {link.get('text')}, Link URL: {link.get('url')}"
                for link in content["links"]
            )
        return ToolResult(parts)

    async def _reorder_tabs(self, args: dict[str, Any]) -> ToolResult:
        new_order = await self._api.reorder_tabs(_int_list(args, "tabOrder"))
        return ToolResult([f"Tabs reordered: {', '.join(str(t) for t in new_order)}"])

    async def _find_highlight(self, args: dict[str, Any]) -> ToolResult:
        count = await self._api.find_highlight(
            _require(args, "tabId", int), _require(args, "queryPhrase", str)
        )
        return ToolResult([f"Number of results found and highlighted in the tab: {count}"])

    async def _group_tabs(self, args: dict[str, Any]) -> ToolResult:
        tab_ids = _int_list(args, "tabIds")
        color = args.get("groupColor") or "grey"
        if color not in GROUP_COLORS:
            raise ValueError(f"Argument 'groupColor' must be one of {sorted(GROUP_COLORS)}")
        title = args.get("groupTitle") or "New Group"
        group_id = await self._api.group_tabs(
            tab_ids, bool(args.get("isCollapsed", False)), color, title
        )
        return ToolResult(
            [f'Created tab group "{title}" with {len(tab_ids)} tabs (group ID: {group_id})']
        )

    async def _click_element(self, args: dict[str, Any]) -> ToolResult:
        result = await self._api.click_element(
            _require(args, "tabId", int), args.get("selector"), args.get("x"), args.get("y")
        )
        if not result["success"]:
            return _error("Failed to click element")
        info = result.get("elementInfo")
        return ToolResult([f"Successfully clicked element{': ' + info if info else ''}"])

    async def _fill_form_field(self, args: dict[str, Any]) -> ToolResult:
        selector = _require(args, "selector", str)
        value = _require(args, "value", str)
        submit = bool(args.get("submit", False))
        result = await self._api.fill_form_field(
            _require(args, "tabId", int), selector, value, submit
        )
        if not result["success"]:
            return _error("Failed to fill form field")
        suffix = " and submitted form" if submit else ""
        return ToolResult(
            [f"Successfully filled form field '{selector}' with value '{value}'{suffix}"]
        )

    async def _execute_javascript(self, args: dict[str, Any]) -> ToolResult:
        result = await self._api.execute_javascript(
            _require(args, "tabId", int), _require(args, "code", str)
        )
        if result.get("error"):
            return _error(f"JavaScript execution failed: {result['error']}")
        rendered = json.dumps(result.get("result"), ensure_ascii=False, default=str)
        return ToolResult([f"JavaScript executed successfully. Result: {rendered}"])

    async def _monitor_page_changes(self, args: dict[str, Any]) -> ToolResult:
        timeout = args.get("timeout")
        result = await self._api.monitor_page_changes(
            _require(args, "tabId", int),
            args.get("selector"),
            timeout if isinstance(timeout, int) else 10000,
        )
        suffix = " (monitoring timed out)" if result["timedOut"] else ""
        return ToolResult([f"Page changes detected{suffix}: {result['changes']}"])

    async def _screenshot_website(self, args: dict[str, Any]) -> ToolResult:
        result = await self._api.screenshot_website(
            _require(args, "tabId", int), bool(args.get("fullPage", False))
        )
        if not result["success"]:
            return _error("Failed to save screenshot")
        return ToolResult([f"Screenshot saved successfully to: {result['filePath']}"])

    async def _search_bookmarks(self, args: dict[str, Any]) -> ToolResult:
        query = args.get("query") or None
        bookmarks = await self._api.search_bookmarks(query)
        if not bookmarks:
            return ToolResult(
                [f'No bookmarks found matching "{query}"' if query else "No bookmarks found"]
            )
        return ToolResult(
            [
                f'ID: {b.get("id")}, Title: "{b.get("title")}", '
                f"URL: {b.get('url') or 'N/A (folder)'}, Type: {b.get('type')}"
                for b in bookmarks
            ]
        )

    async def _open_bookmark(self, args: dict[str, Any]) -> ToolResult:
        result = await self._api.open_bookmark(_require(args, "bookmarkId", str))
        if not result["success"] or not result.get("tabId"):
            return _error("Failed to open bookmark (bookmark may be a folder or not exist)")
        return ToolResult([f"Bookmark opened in tab ID {result['tabId']}"])
