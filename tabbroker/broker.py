"""Correlation broker: one pending entry per outbound request.

Every request gets a fresh correlation id and a future. The future is
settled exactly once: by the matching response, by an error envelope, or by
the optional response timeout. Whichever arrives first pops the pending
entry; anything arriving later finds no entry and is dropped as an orphan.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from tabbroker.audit import AuditRecorder
from tabbroker.codec import build_request, decode_message, encode_request
from tabbroker.errors import (
    BrokerClosed,
    CommandFailed,
    DuplicateCorrelationId,
    ProtocolViolation,
    RequestTimeout,
    TransportUnavailable,
)
from tabbroker.models import COMMAND_TO_RESOURCE, ErrorEnvelope, Message, Response
from tabbroker.policy import PolicyDenied, SecurityGate

log = logging.getLogger(__name__)


class Transport(Protocol):
    def is_connected(self) -> bool:
        ...

    async def send_text(self, text: str) -> None:
        ...


@dataclass(slots=True)
class PendingRequest:
    correlation_id: str
    command: str
    expected_resource: str
    future: asyncio.Future
    created_at: float
    timer: asyncio.TimerHandle | None = None


def _default_id() -> str:
    return uuid.uuid4().hex


class CorrelationBroker:
    def __init__(
        self,
        transport: Transport | None = None,
        *,
        gate: SecurityGate | None = None,
        recorder: AuditRecorder | None = None,
        response_timeout_s: float = 0.0,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        if response_timeout_s < 0:
            raise ValueError("response_timeout_s must be >= 0")
        self._transport = transport
        self._gate = gate
        self._recorder = recorder
        self._response_timeout_s = response_timeout_s
        self._id_factory = id_factory or _default_id
        self._pending: dict[str, PendingRequest] = {}
        self._closed = False

    @property
    def response_timeout_s(self) -> float:
        return self._response_timeout_s

    def attach(self, transport: Transport) -> None:
        self._transport = transport

    def pending_ids(self) -> list[str]:
        return list(self._pending.keys())

    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, correlation_id: str) -> bool:
        return correlation_id in self._pending

    def _new_correlation_id(self, requested: str | None) -> str:
        if requested is not None:
            if requested in self._pending:
                raise DuplicateCorrelationId(
                    f"Correlation id {requested!r} is already pending"
                )
            return requested
        correlation_id = self._id_factory()
        while correlation_id in self._pending:
            correlation_id = self._id_factory()
        return correlation_id

    async def send(
        self, command: str, *, correlation_id: str | None = None, **fields: Any
    ) -> Response:
        if self._closed:
            raise BrokerClosed("Broker is closed")
        # Validate before any id is allocated; a bad call never reaches the wire.
        request = build_request(command, "", **fields)
        if self._gate is not None:
            try:
                self._gate.check_local(request.command, request.fields)
            except PolicyDenied:
                # The executor never sees a locally refused attempt.
                if self._recorder is not None:
                    self._recorder.record(request)
                raise
        transport = self._transport
        if transport is None or not transport.is_connected():
            raise TransportUnavailable("WebSocket is not open")

        request.correlation_id = self._new_correlation_id(correlation_id)
        loop = asyncio.get_running_loop()
        entry = PendingRequest(
            correlation_id=request.correlation_id,
            command=request.command,
            expected_resource=COMMAND_TO_RESOURCE[request.command],
            future=loop.create_future(),
            created_at=time.monotonic(),
        )
        self._pending[entry.correlation_id] = entry
        if self._response_timeout_s > 0:
            entry.timer = loop.call_later(
                self._response_timeout_s, self._expire, entry.correlation_id
            )

        try:
            await transport.send_text(encode_request(request))
        except Exception as exc:
            self._discard(entry.correlation_id)
            if isinstance(exc, TransportUnavailable):
                raise
            raise TransportUnavailable(f"Failed to send {command}: {exc}") from exc
        log.debug("Sent %s (%s)", request.command, request.correlation_id)

        try:
            return await entry.future
        except asyncio.CancelledError:
            self._discard(entry.correlation_id, entry)
            raise

    def _discard(self, correlation_id: str, entry: PendingRequest | None = None) -> None:
        current = self._pending.get(correlation_id)
        if current is None or (entry is not None and current is not entry):
            return
        self._pending.pop(correlation_id, None)
        if current.timer is not None:
            current.timer.cancel()

    def _pop(self, correlation_id: str) -> PendingRequest | None:
        entry = self._pending.pop(correlation_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    def _expire(self, correlation_id: str) -> None:
        entry = self._pop(correlation_id)
        if entry is None:
            return
        log.warning(
            "Timed out waiting for %s response to %s (%s)",
            entry.expected_resource,
            entry.command,
            correlation_id,
        )
        if not entry.future.done():
            entry.future.set_exception(
                RequestTimeout(
                    f"Timed out waiting for response after {self._response_timeout_s:g}s"
                )
            )

    def on_message(self, text: str | bytes) -> None:
        try:
            message = decode_message(text)
        except ProtocolViolation as exc:
            log.warning("Protocol violation, dropping frame: %s", exc)
            return
        self.handle_message(message)

    def handle_message(self, message: Message) -> None:
        if isinstance(message, ErrorEnvelope):
            entry = self._pop(message.correlation_id)
            if entry is None:
                log.warning(
                    "Error for unknown correlation id %s dropped: %s",
                    message.correlation_id,
                    message.error_message,
                )
                return
            if not entry.future.done():
                entry.future.set_exception(
                    CommandFailed(message.error_message, correlation_id=message.correlation_id)
                )
            return

        entry = self._pending.get(message.correlation_id)
        if entry is None:
            log.warning(
                "Orphan %s response for correlation id %s dropped",
                message.resource,
                message.correlation_id,
            )
            return
        if entry.expected_resource != message.resource:
            log.warning(
                "Resource mismatch for %s: expected %s, got %s",
                message.correlation_id,
                entry.expected_resource,
                message.resource,
            )
            return
        self._pop(message.correlation_id)
        if not entry.future.done():
            entry.future.set_result(message)

    def close(self, reason: str = "Broker closed") -> None:
        self._closed = True
        pending = list(self._pending.keys())
        for correlation_id in pending:
            entry = self._pop(correlation_id)
            if entry is not None and not entry.future.done():
                entry.future.set_exception(BrokerClosed(reason))
        if pending:
            log.info("Rejected %d pending request(s) on close", len(pending))
