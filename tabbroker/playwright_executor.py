from __future__ import annotations

import asyncio
import base64
import contextlib
import json
import logging
import time
from collections import deque
from pathlib import Path
from typing import Any, Literal

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    async_playwright,
)

from tabbroker.errors import ExecutionError

BrowserMode = Literal["launch", "cdp"]

log = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 50_000
MAX_HISTORY_RESULTS = 200
MAX_RECORDED_CHANGES = 50

CONTENT_SCRIPT = """
([offset, maxLength]) => {
  const links = Array.from(document.querySelectorAll('a[href]'))
    .map(el => ({
      url: el.href,
      text: el.innerText.trim() || el.getAttribute('aria-label') || el.getAttribute('title') || ''
    }))
    .filter(link => link.text !== '' && link.url.startsWith('https://') && !link.url.includes('#'));
  const body = document.body ? document.body.innerText : '';
  let text = body.substring(offset);
  let isTruncated = false;
  if (text.length > maxLength) {
    text = text.substring(0, maxLength);
    isTruncated = true;
  }
  return { links, fullText: text, isTruncated, totalLength: body.length };
}
"""

FIND_SCRIPT = """
(phrase) => {
  const body = document.body ? document.body.innerText : '';
  let count = 0;
  let index = body.indexOf(phrase);
  while (phrase && index !== -1) {
    count += 1;
    index = body.indexOf(phrase, index + phrase.length);
  }
  if (count > 0 && typeof window.find === 'function') {
    window.getSelection().removeAllRanges();
    window.find(phrase, true);
  }
  return count;
}
"""

DESCRIBE_ELEMENT = """
const describe = (element) =>
  element.tagName +
  (element.id ? '#' + element.id : '') +
  (typeof element.className === 'string' && element.className
    ? '.' + element.className.trim().split(/\\s+/).join('.')
    : '');
"""

CLICK_SCRIPT = (
    "({ selector, x, y }) => {"
    + DESCRIBE_ELEMENT
    + """
  const element = selector
    ? document.querySelector(selector)
    : document.elementFromPoint(x ?? 0, y ?? 0);
  if (!element) {
    return { success: false, error: selector ? 'Element not found' : 'No element at coordinates' };
  }
  element.click();
  return { success: true, elementInfo: describe(element) };
}
"""
)

FILL_SCRIPT = """
({ selector, value, submit }) => {
  const element = document.querySelector(selector);
  if (!element) {
    return { success: false, error: 'Element not found' };
  }
  if (element.tagName === 'SELECT') {
    element.value = value;
    element.dispatchEvent(new Event('change', { bubbles: true }));
  } else if (element.type === 'checkbox' || element.type === 'radio') {
    element.checked = value === 'true';
    element.dispatchEvent(new Event('change', { bubbles: true }));
  } else {
    element.value = value;
    element.dispatchEvent(new Event('input', { bubbles: true }));
    element.dispatchEvent(new Event('change', { bubbles: true }));
  }
  if (submit) {
    const form = element.closest('form');
    if (form) {
      form.submit();
    }
  }
  return { success: true };
}
"""

MONITOR_SCRIPT = """
({ selector, timeout, maxChanges }) => new Promise((resolve) => {
  const changes = [];
  const target = selector ? document.querySelector(selector) : document.body;
  if (!target) {
    resolve({ changes: 'Target element not found', timedOut: false });
    return;
  }
  const observer = new MutationObserver((mutations) => {
    mutations.forEach((mutation) => {
      changes.push({
        type: mutation.type,
        target: mutation.target.tagName + (mutation.target.id ? '#' + mutation.target.id : ''),
        addedNodes: mutation.addedNodes.length,
        removedNodes: mutation.removedNodes.length,
      });
    });
  });
  observer.observe(target, { childList: true, subtree: true, attributes: true, characterData: true });
  setTimeout(() => {
    observer.disconnect();
    resolve({ changes: JSON.stringify(changes.slice(0, maxChanges)), timedOut: true });
  }, timeout);
})
"""


class PlaywrightExecutor:
    """Executor capabilities backed by a Playwright Chromium context.

    Tabs are pages, numbered from 1 in the order they appear. History is
    the navigations seen by this process; bookmarks come from a JSON file.
    """

    def __init__(
        self,
        *,
        mode: BrowserMode = "launch",
        headless: bool = True,
        cdp_url: str | None = None,
        bookmarks_path: Path | None = None,
        default_timeout_ms: int = 15_000,
        max_history: int = 1000,
    ) -> None:
        self.mode = mode
        self.headless = headless
        self.cdp_url = cdp_url
        self.bookmarks_path = bookmarks_path
        self.default_timeout_ms = default_timeout_ms

        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._owns_browser = False
        self._pages: dict[int, Page] = {}
        self._page_ids: dict[Page, int] = {}
        self._last_accessed: dict[int, float] = {}
        self._order: list[int] = []
        self._next_tab_id = 1
        self._history: deque[dict[str, Any]] = deque(maxlen=max_history)
        self._groups: dict[int, dict[str, Any]] = {}
        self._next_group_id = 1

    def is_started(self) -> bool:
        return self._context is not None

    async def start(self) -> None:
        if self._playwright is not None:
            return
        try:
            await self._start_browser()
        except Exception:
            await self.close()
            raise

    async def _start_browser(self) -> None:
        self._playwright = await async_playwright().start()
        if self.mode == "cdp":
            if not self.cdp_url:
                raise ValueError("cdp_url is required for mode='cdp'.")
            self._browser = await self._playwright.chromium.connect_over_cdp(self.cdp_url)
            self._owns_browser = False
            if self._browser.contexts:
                self._context = self._browser.contexts[0]
            else:
                self._context = await self._browser.new_context()
        else:
            self._browser = await self._playwright.chromium.launch(headless=self.headless)
            self._owns_browser = True
            self._context = await self._browser.new_context()

        self._context.set_default_timeout(self.default_timeout_ms)
        self._context.on("page", self._register_page)
        for page in self._context.pages:
            self._register_page(page)
        log.info("Browser started (mode=%s, %d tab(s))", self.mode, len(self._pages))

    async def close(self) -> None:
        if self._browser is not None and self._owns_browser:
            # Only close browsers we launched; CDP-attached browsers are external.
            with contextlib.suppress(Exception):
                await self._browser.close()
        if self._playwright is not None:
            with contextlib.suppress(Exception):
                await self._playwright.stop()
        self._playwright = None
        self._browser = None
        self._context = None
        self._pages = {}
        self._page_ids = {}
        self._last_accessed = {}
        self._order = []

    def _register_page(self, page: Page) -> int:
        existing = self._page_ids.get(page)
        if existing is not None:
            return existing
        tab_id = self._next_tab_id
        self._next_tab_id += 1
        self._pages[tab_id] = page
        self._page_ids[page] = tab_id
        self._order.append(tab_id)
        self._last_accessed[tab_id] = time.time()

        def _on_close(_page: Page) -> None:
            self._pages.pop(tab_id, None)
            self._page_ids.pop(page, None)
            self._last_accessed.pop(tab_id, None)
            with contextlib.suppress(ValueError):
                self._order.remove(tab_id)

        def _on_navigated(frame: Any) -> None:
            if frame != page.main_frame:
                return
            self._last_accessed[tab_id] = time.time()
            if frame.url and not frame.url.startswith("about:"):
                self._history.append(
                    {"url": frame.url, "title": "", "lastVisitTime": int(time.time() * 1000)}
                )

        page.on("close", _on_close)
        page.on("framenavigated", _on_navigated)
        return tab_id

    def _require_context(self) -> BrowserContext:
        if self._context is None:
            raise ExecutionError("Browser has not started yet.")
        return self._context

    def _page(self, tab_id: int) -> Page:
        page = self._pages.get(tab_id)
        if page is None or page.is_closed():
            raise ExecutionError(f"No tab with id {tab_id}")
        return page

    async def _evaluate(self, page: Page, script: str, arg: Any = None) -> Any:
        try:
            return await page.evaluate(script, arg)
        except PlaywrightError as exc:
            raise ExecutionError(str(exc).splitlines()[0] if str(exc) else "Script failed") from exc

    async def get_tab_url(self, tab_id: int) -> str | None:
        return self._page(tab_id).url

    async def open_tab(self, url: str) -> dict[str, Any]:
        context = self._require_context()
        try:
            page = await context.new_page()
        except PlaywrightError as exc:
            raise ExecutionError(f"Failed to open tab: {exc}") from exc
        tab_id = self._register_page(page)
        try:
            await page.goto(url)
        except PlaywrightError as exc:
            log.warning("Navigation to %s in tab %d failed: %s", url, tab_id, exc)
        return {"tabId": tab_id}

    async def close_tabs(self, tab_ids: list[int]) -> dict[str, Any]:
        pages = [self._page(tab_id) for tab_id in tab_ids]
        for page in pages:
            with contextlib.suppress(PlaywrightError):
                await page.close()
        return {}

    async def get_tab_list(self) -> dict[str, Any]:
        tabs = []
        for tab_id in list(self._order):
            page = self._pages.get(tab_id)
            if page is None:
                continue
            title = ""
            with contextlib.suppress(Exception):
                title = await page.title()
            last_accessed = self._last_accessed.get(tab_id)
            tabs.append(
                {
                    "id": tab_id,
                    "url": page.url,
                    "title": title,
                    "lastAccessed": int(last_accessed * 1000) if last_accessed else None,
                }
            )
        return {"tabs": tabs}

    async def get_browser_recent_history(self, search_query: str | None) -> dict[str, Any]:
        needle = (search_query or "").lower()
        items = [
            item
            for item in reversed(self._history)
            if item.get("url")
            and (not needle or needle in item["url"].lower() or needle in item["title"].lower())
        ]
        return {"historyItems": items[:MAX_HISTORY_RESULTS]}

    async def get_tab_content(self, tab_id: int, offset: int | None) -> dict[str, Any]:
        page = self._page(tab_id)
        result = await self._evaluate(page, CONTENT_SCRIPT, [int(offset or 0), MAX_CONTENT_LENGTH])
        return {
            "tabId": tab_id,
            "fullText": result["fullText"],
            "isTruncated": result["isTruncated"],
            "totalLength": result["totalLength"],
            "links": result["links"],
        }

    async def reorder_tabs(self, tab_order: list[int]) -> dict[str, Any]:
        for tab_id in tab_order:
            self._page(tab_id)
        rest = [tab_id for tab_id in self._order if tab_id not in tab_order]
        self._order = list(tab_order) + rest
        return {"tabOrder": tab_order}

    async def find_highlight(self, tab_id: int, query_phrase: str) -> dict[str, Any]:
        page = self._page(tab_id)
        count = await self._evaluate(page, FIND_SCRIPT, query_phrase)
        if count:
            with contextlib.suppress(PlaywrightError):
                await page.bring_to_front()
            self._last_accessed[tab_id] = time.time()
        return {"noOfResults": int(count or 0)}

    async def group_tabs(
        self, tab_ids: list[int], is_collapsed: bool, group_color: str, group_title: str
    ) -> dict[str, Any]:
        for tab_id in tab_ids:
            self._page(tab_id)
        group_id = self._next_group_id
        self._next_group_id += 1
        self._groups[group_id] = {
            "tabIds": list(tab_ids),
            "collapsed": is_collapsed,
            "color": group_color,
            "title": group_title,
        }
        return {"groupId": group_id}

    async def click_element(
        self, tab_id: int, selector: str | None, x: float | None, y: float | None
    ) -> dict[str, Any]:
        page = self._page(tab_id)
        result = await self._evaluate(page, CLICK_SCRIPT, {"selector": selector, "x": x, "y": y})
        return {"success": bool(result.get("success")), "elementInfo": result.get("elementInfo")}

    async def fill_form_field(
        self, tab_id: int, selector: str, value: str, submit: bool | None
    ) -> dict[str, Any]:
        page = self._page(tab_id)
        result = await self._evaluate(
            page, FILL_SCRIPT, {"selector": selector, "value": value, "submit": bool(submit)}
        )
        return {"success": bool(result.get("success"))}

    async def execute_javascript(self, tab_id: int, code: str) -> dict[str, Any]:
        page = self._page(tab_id)
        try:
            result = await page.evaluate(f"(function() {{ {code} }})()")
        except PlaywrightError as exc:
            return {"result": None, "error": str(exc).splitlines()[0] if str(exc) else "error"}
        return {"result": result}

    async def monitor_page_changes(
        self, tab_id: int, selector: str | None, timeout: int | None
    ) -> dict[str, Any]:
        page = self._page(tab_id)
        timeout_ms = timeout if timeout is not None else 10_000
        result = await self._evaluate(
            page,
            MONITOR_SCRIPT,
            {"selector": selector, "timeout": timeout_ms, "maxChanges": MAX_RECORDED_CHANGES},
        )
        return {"changes": result["changes"], "timedOut": bool(result["timedOut"])}

    async def screenshot_website(self, tab_id: int, full_page: bool | None) -> dict[str, Any]:
        page = self._page(tab_id)
        try:
            await page.bring_to_front()
            png = await page.screenshot(type="png", full_page=bool(full_page))
        except PlaywrightError as exc:
            raise ExecutionError(f"Screenshot failed: {exc}") from exc
        self._last_accessed[tab_id] = time.time()
        return {"dataUrl": "data:image/png;base64," + base64.b64encode(png).decode("ascii")}

    def _read_bookmarks(self) -> list[dict[str, Any]]:
        if self.bookmarks_path is None or not self.bookmarks_path.exists():
            return []
        data = json.loads(self.bookmarks_path.read_text(encoding="utf-8"))
        if not isinstance(data, list):
            return []
        bookmarks = []
        for item in data:
            if not isinstance(item, dict) or "id" not in item:
                continue
            url = item.get("url")
            bookmarks.append(
                {
                    "id": str(item["id"]),
                    "title": str(item.get("title") or ""),
                    "url": url,
                    "type": item.get("type") or ("bookmark" if url else "folder"),
                    "parentId": item.get("parentId"),
                    "dateAdded": item.get("dateAdded"),
                }
            )
        return bookmarks

    async def _load_bookmarks(self) -> list[dict[str, Any]]:
        try:
            return await asyncio.to_thread(self._read_bookmarks)
        except (OSError, ValueError) as exc:
            raise ExecutionError(f"Failed to read bookmarks: {exc}") from exc

    async def get_bookmark_url(self, bookmark_id: str) -> str | None:
        bookmarks = await self._load_bookmarks()
        bookmark = next((b for b in bookmarks if b["id"] == bookmark_id), None)
        return bookmark.get("url") if bookmark else None

    async def search_bookmarks(self, query: str | None) -> dict[str, Any]:
        bookmarks = await self._load_bookmarks()
        if query:
            needle = query.lower()
            bookmarks = [
                b
                for b in bookmarks
                if needle in b["title"].lower() or needle in (b.get("url") or "").lower()
            ]
        return {"bookmarks": bookmarks}

    async def open_bookmark(self, bookmark_id: str) -> dict[str, Any]:
        try:
            bookmarks = await self._load_bookmarks()
            bookmark = next((b for b in bookmarks if b["id"] == bookmark_id), None)
            if bookmark is None or not bookmark.get("url"):
                # Missing, or a folder/separator.
                return {"success": False}
            opened = await self.open_tab(bookmark["url"])
        except ExecutionError as exc:
            log.info("Failed to open bookmark %s: %s", bookmark_id, exc)
            return {"success": False}
        return {"tabId": opened["tabId"], "success": True}
