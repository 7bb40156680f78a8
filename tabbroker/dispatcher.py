from __future__ import annotations

import logging

from tabbroker.audit import AuditRecorder
from tabbroker.codec import (
    build_response,
    decode_request,
    encode_message,
    recover_command,
    recover_correlation_id,
)
from tabbroker.errors import ExecutionError, ProtocolViolation, UnknownCommand
from tabbroker.executor import CAPABILITY_ARGS, Executor
from tabbroker.models import COMMAND_TO_RESOURCE, ErrorEnvelope, Message, Request
from tabbroker.policy import PolicyDenied, SecurityGate

log = logging.getLogger(__name__)


class Dispatcher:
    """Maps incoming requests to executor capabilities.

    Always answers with the request's correlation id, as either the
    command's resource or an error envelope.
    """

    def __init__(
        self,
        executor: Executor,
        gate: SecurityGate,
        recorder: AuditRecorder | None = None,
    ) -> None:
        self._executor = executor
        self._gate = gate
        self._recorder = recorder

    async def dispatch(self, request: Request) -> Message:
        if self._recorder is not None:
            self._recorder.record(request, self._executor.get_tab_url)

        try:
            await self._gate.check(
                request,
                self._executor.get_tab_url,
                getattr(self._executor, "get_bookmark_url", None),
            )
        except PolicyDenied as exc:
            log.info("Denied %s (%s): %s", request.command, request.correlation_id, exc)
            return ErrorEnvelope(request.correlation_id, str(exc))

        method_name, arg_map = CAPABILITY_ARGS[request.command]
        capability = getattr(self._executor, method_name)
        kwargs = {kwarg: request.fields.get(wire) for wire, kwarg in arg_map}
        try:
            result = await capability(**kwargs)
        except ExecutionError as exc:
            log.info("%s failed (%s): %s", request.command, request.correlation_id, exc)
            return ErrorEnvelope(request.correlation_id, str(exc))
        except Exception as exc:
            log.exception("Unexpected error running %s", request.command)
            return ErrorEnvelope(request.correlation_id, str(exc) or type(exc).__name__)

        try:
            return build_response(
                COMMAND_TO_RESOURCE[request.command],
                request.correlation_id,
                result if isinstance(result, dict) else {},
            )
        except ProtocolViolation as exc:
            log.error("Executor returned a malformed %s result: %s", request.command, exc)
            return ErrorEnvelope(request.correlation_id, f"Malformed result: {exc}")

    async def dispatch_text(self, text: str | bytes) -> str | None:
        try:
            request = decode_request(text)
        except UnknownCommand as exc:
            log.error("Invalid message received: %s", exc)
            return None
        except ProtocolViolation as exc:
            log.warning("Invalid message received: %s", exc)
            correlation_id = recover_correlation_id(text)
            command = recover_command(text)
            if command is not None and self._recorder is not None:
                self._recorder.record(Request(command, correlation_id or "", {}))
            if correlation_id is None:
                return None
            return encode_message(ErrorEnvelope(correlation_id, f"Invalid request: {exc}"))
        return encode_message(await self.dispatch(request))
