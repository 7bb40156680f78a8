from __future__ import annotations

import asyncio
import base64
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

from tabbroker.broker import CorrelationBroker
from tabbroker.config import DEFAULT_SCREENSHOT_DIR

log = logging.getLogger(__name__)

_DATA_URL_PREFIX_RE = re.compile(r"^data:image/png;base64,")


def screenshot_filename(now: datetime) -> str:
    """``ddmmyyHHMMSSmmm.png``"""
    return now.strftime("%d%m%y%H%M%S") + f"{now.microsecond // 1000:03d}.png"


class BrowserAPI:
    """Typed coroutines over the broker, one per command."""

    def __init__(self, broker: CorrelationBroker, *, screenshot_dir: Path | None = None) -> None:
        self._broker = broker
        self._screenshot_dir = screenshot_dir or DEFAULT_SCREENSHOT_DIR

    async def open_tab(self, url: str) -> int | None:
        message = await self._broker.send("open-tab", url=url)
        return message.fields.get("tabId")

    async def close_tabs(self, tab_ids: list[int]) -> None:
        await self._broker.send("close-tabs", tabIds=tab_ids)

    async def get_tab_list(self) -> list[dict[str, Any]]:
        message = await self._broker.send("get-tab-list")
        return message.fields["tabs"]

    async def get_browser_recent_history(
        self, search_query: str | None = None
    ) -> list[dict[str, Any]]:
        message = await self._broker.send("get-browser-recent-history", searchQuery=search_query)
        return message.fields["historyItems"]

    async def get_tab_content(self, tab_id: int, offset: int = 0) -> dict[str, Any]:
        message = await self._broker.send("get-tab-content", tabId=tab_id, offset=offset)
        return message.fields

    async def reorder_tabs(self, tab_order: list[int]) -> list[int]:
        message = await self._broker.send("reorder-tabs", tabOrder=tab_order)
        return message.fields["tabOrder"]

    async def find_highlight(self, tab_id: int, query_phrase: str) -> int:
        message = await self._broker.send(
            "find-highlight", tabId=tab_id, queryPhrase=query_phrase
        )
        return message.fields["noOfResults"]

    async def group_tabs(
        self, tab_ids: list[int], is_collapsed: bool, group_color: str, group_title: str
    ) -> int:
        message = await self._broker.send(
            "group-tabs",
            tabIds=tab_ids,
            isCollapsed=is_collapsed,
            groupColor=group_color,
            groupTitle=group_title,
        )
        return message.fields["groupId"]

    async def click_element(
        self,
        tab_id: int,
        selector: str | None = None,
        x: float | None = None,
        y: float | None = None,
    ) -> dict[str, Any]:
        message = await self._broker.send(
            "click-element", tabId=tab_id, selector=selector, x=x, y=y
        )
        return {
            "success": message.fields["success"],
            "elementInfo": message.fields.get("elementInfo"),
        }

    async def fill_form_field(
        self, tab_id: int, selector: str, value: str, submit: bool = False
    ) -> dict[str, Any]:
        message = await self._broker.send(
            "fill-form-field", tabId=tab_id, selector=selector, value=value, submit=submit
        )
        return {"success": message.fields["success"]}

    async def execute_javascript(self, tab_id: int, code: str) -> dict[str, Any]:
        message = await self._broker.send("execute-javascript", tabId=tab_id, code=code)
        return {"result": message.fields.get("result"), "error": message.fields.get("error")}

    async def monitor_page_changes(
        self, tab_id: int, selector: str | None = None, timeout: int | None = None
    ) -> dict[str, Any]:
        message = await self._broker.send(
            "monitor-page-changes", tabId=tab_id, selector=selector, timeout=timeout
        )
        return {"changes": message.fields["changes"], "timedOut": message.fields["timedOut"]}

    async def screenshot_website(self, tab_id: int, full_page: bool = False) -> dict[str, Any]:
        message = await self._broker.send("screenshot-website", tabId=tab_id, fullPage=full_page)
        try:
            file_path = await asyncio.to_thread(self._save_screenshot, message.fields["dataUrl"])
        except Exception:
            log.exception("Failed to save screenshot")
            return {"filePath": "", "success": False}
        return {"filePath": str(file_path), "success": True}

    def _save_screenshot(self, data_url: str) -> Path:
        self._screenshot_dir.mkdir(parents=True, exist_ok=True)
        file_path = self._screenshot_dir / screenshot_filename(datetime.now())
        payload = base64.b64decode(_DATA_URL_PREFIX_RE.sub("", data_url), validate=True)
        file_path.write_bytes(payload)
        return file_path

    async def search_bookmarks(self, query: str | None = None) -> list[dict[str, Any]]:
        message = await self._broker.send("search-bookmarks", query=query)
        return message.fields["bookmarks"]

    async def open_bookmark(self, bookmark_id: str) -> dict[str, Any]:
        message = await self._broker.send("open-bookmark", bookmarkId=bookmark_id)
        return {"tabId": message.fields.get("tabId"), "success": message.fields["success"]}
