from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Protocol

from tabbroker.models import COMMAND_TO_TOOL_ID, Request
from tabbroker.policy import TabUrlResolver

log = logging.getLogger(__name__)


@dataclass(slots=True)
class AuditEntry:
    tool_id: str
    command: str
    timestamp: int
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        if payload["url"] is None:
            payload.pop("url")
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "AuditEntry":
        url = payload.get("url")
        return cls(
            tool_id=str(payload.get("tool_id") or ""),
            command=str(payload.get("command") or ""),
            timestamp=int(payload.get("timestamp") or 0),
            url=str(url) if url else None,
        )


class AuditSink(Protocol):
    async def append(self, entry: AuditEntry) -> None:
        ...


class AuditStore:
    """Append-only SQLite audit log that keeps the newest ``max_entries`` rows."""

    def __init__(self, path: Path, *, max_entries: int = 1000) -> None:
        self._path = path
        self._max_entries = max_entries
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        async with self._init_lock:
            await asyncio.to_thread(self._init_db)
            self._initialized = True

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=30000;")
        return conn

    def _init_db(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tool_id TEXT NOT NULL,
                    command TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    url TEXT
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON audit_log(timestamp)"
            )
            conn.commit()

    async def _ensure_initialized(self) -> None:
        if not self._initialized or not self._path.exists():
            await self.initialize()

    async def append(self, entry: AuditEntry) -> None:
        await self._ensure_initialized()
        await asyncio.to_thread(self._append, entry)

    def _append(self, entry: AuditEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO audit_log (tool_id, command, timestamp, url) VALUES (?, ?, ?, ?)",
                (entry.tool_id, entry.command, entry.timestamp, entry.url),
            )
            conn.execute(
                """
                DELETE FROM audit_log WHERE id NOT IN (
                    SELECT id FROM audit_log ORDER BY id DESC LIMIT ?
                )
                """,
                (self._max_entries,),
            )
            conn.commit()

    async def list_entries(self, limit: int | None = None) -> list[AuditEntry]:
        await self._ensure_initialized()
        return await asyncio.to_thread(self._list_entries, limit)

    def _list_entries(self, limit: int | None) -> list[AuditEntry]:
        query = "SELECT tool_id, command, timestamp, url FROM audit_log ORDER BY id DESC"
        params: list[Any] = []
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [AuditEntry.from_dict(dict(row)) for row in rows]

    async def clear(self) -> None:
        await self._ensure_initialized()
        await asyncio.to_thread(self._clear)

    def _clear(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM audit_log")
            conn.commit()


def format_entry(entry: AuditEntry) -> str:
    when = datetime.fromtimestamp(entry.timestamp / 1000).strftime("%Y-%m-%d %H:%M:%S")
    line = f"{when} {entry.tool_id} ({entry.command})"
    if entry.url:
        line += f" {entry.url}"
    return line


class AuditRecorder:
    """Fire-and-forget audit trail of attempted commands.

    Failures are logged and never reach the command being audited.
    """

    def __init__(self, sink: AuditSink, *, clock: Callable[[], float] | None = None) -> None:
        self._sink = sink
        self._clock = clock or time.time
        self._tasks: set[asyncio.Task] = set()

    def build_entry(self, request: Request, url: str | None) -> AuditEntry:
        return AuditEntry(
            tool_id=COMMAND_TO_TOOL_ID.get(request.command, request.command),
            command=request.command,
            timestamp=int(self._clock() * 1000),
            url=url,
        )

    async def resolve_context_url(
        self, request: Request, resolve_tab_url: TabUrlResolver | None
    ) -> str | None:
        url = request.fields.get("url")
        context_url = url if isinstance(url, str) and url else None
        tab_id = request.fields.get("tabId")
        if tab_id is not None and resolve_tab_url is not None:
            try:
                context_url = await resolve_tab_url(tab_id) or context_url
            except Exception as exc:
                log.error("Failed to get tab URL for audit log: %r", exc)
        return context_url

    async def _record(self, request: Request, resolve_tab_url: TabUrlResolver | None) -> None:
        try:
            url = await self.resolve_context_url(request, resolve_tab_url)
            await self._sink.append(self.build_entry(request, url))
        except Exception:
            log.exception("Failed to add audit log entry for %s", request.command)

    def record(
        self, request: Request, resolve_tab_url: TabUrlResolver | None = None
    ) -> asyncio.Task:
        task = asyncio.create_task(self._record(request, resolve_tab_url))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
