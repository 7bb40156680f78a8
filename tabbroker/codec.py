"""JSON wire codec for requests, responses and error envelopes.

One JSON object per frame. Requests carry ``cmd``, responses carry
``resource``, and both carry ``correlationId``. An error envelope is the
only frame with ``errorMessage`` and without ``resource``.
"""

from __future__ import annotations

import json
from typing import Any

from tabbroker.errors import ProtocolViolation, UnknownCommand
from tabbroker.models import (
    COMMAND_SPECS,
    RESOURCE_SPECS,
    ErrorEnvelope,
    FieldSpec,
    Message,
    Request,
    Response,
)


def _matches_kind(value: Any, kind: str) -> bool:
    if kind.endswith("[]"):
        if not isinstance(value, list):
            return False
        item_kind = kind[:-2]
        return all(_matches_kind(item, item_kind) for item in value)
    if kind == "any":
        return True
    if kind == "str":
        return isinstance(value, str)
    if kind == "bool":
        return isinstance(value, bool)
    if kind == "int":
        return isinstance(value, int) and not isinstance(value, bool)
    if kind == "num":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if kind == "obj":
        return isinstance(value, dict)
    raise ValueError(f"Unknown field kind: {kind}")


def validate_fields(
    raw: dict[str, Any], specs: dict[str, FieldSpec], *, context: str
) -> dict[str, Any]:
    """Return the known fields of ``raw``, checked against ``specs``.

    Unknown keys are dropped and optional ``None`` values are treated as
    absent. Raises ``ProtocolViolation`` on a missing or mistyped field.
    """
    fields: dict[str, Any] = {}
    for name, spec in specs.items():
        value = raw.get(name)
        if value is None:
            if spec.required and spec.kind != "any":
                raise ProtocolViolation(f"{context}: missing field '{name}'")
            if spec.required:
                fields[name] = None
            continue
        if not _matches_kind(value, spec.kind):
            raise ProtocolViolation(
                f"{context}: field '{name}' must be {spec.kind}, got {type(value).__name__}"
            )
        fields[name] = value
    return fields


def build_request(command: str, correlation_id: str, **fields: Any) -> Request:
    spec = COMMAND_SPECS.get(command)
    if spec is None:
        raise ValueError(f"Unknown command: {command}")
    try:
        checked = validate_fields(fields, spec.fields, context=command)
    except ProtocolViolation as exc:
        raise ValueError(str(exc)) from exc
    return Request(command=spec.command, correlation_id=correlation_id, fields=checked)


def build_response(resource: str, correlation_id: str, fields: dict[str, Any]) -> Response:
    spec = RESOURCE_SPECS.get(resource)
    if spec is None:
        raise ProtocolViolation(f"Unknown resource: {resource}")
    checked = validate_fields(fields, spec.resource_fields, context=resource)
    return Response(resource=spec.resource, correlation_id=correlation_id, fields=checked)


def _loads_object(text: str | bytes) -> dict[str, Any]:
    try:
        decoded = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise ProtocolViolation(f"Frame is not valid JSON: {exc}") from exc
    if not isinstance(decoded, dict):
        raise ProtocolViolation("Frame is not a JSON object")
    return decoded


def _correlation_id(decoded: dict[str, Any]) -> str:
    correlation_id = decoded.get("correlationId")
    if not isinstance(correlation_id, str) or not correlation_id:
        raise ProtocolViolation("Frame has no correlationId")
    return correlation_id


def recover_correlation_id(text: str | bytes) -> str | None:
    """Best-effort lookup of the correlation id of a malformed frame."""
    try:
        return _correlation_id(_loads_object(text))
    except ProtocolViolation:
        return None


def recover_command(text: str | bytes) -> str | None:
    """Known command name of a frame that failed validation, if any."""
    try:
        command = _loads_object(text).get("cmd")
    except ProtocolViolation:
        return None
    return command if isinstance(command, str) and command in COMMAND_SPECS else None


def encode_request(request: Request) -> str:
    payload: dict[str, Any] = {"cmd": request.command, "correlationId": request.correlation_id}
    payload.update(request.fields)
    return json.dumps(payload, ensure_ascii=False)


def decode_request(text: str | bytes) -> Request:
    decoded = _loads_object(text)
    command = decoded.get("cmd")
    spec = COMMAND_SPECS.get(command) if isinstance(command, str) else None
    if spec is None:
        raise UnknownCommand(f"Unknown command: {command!r}")
    correlation_id = _correlation_id(decoded)
    fields = validate_fields(decoded, spec.fields, context=spec.command)
    return Request(command=spec.command, correlation_id=correlation_id, fields=fields)


def encode_response(response: Response) -> str:
    payload: dict[str, Any] = {
        "resource": response.resource,
        "correlationId": response.correlation_id,
    }
    payload.update(response.fields)
    return json.dumps(payload, ensure_ascii=False)


def encode_error(error: ErrorEnvelope) -> str:
    return json.dumps(
        {"correlationId": error.correlation_id, "errorMessage": error.error_message},
        ensure_ascii=False,
    )


def encode_message(message: Message) -> str:
    if isinstance(message, ErrorEnvelope):
        return encode_error(message)
    return encode_response(message)


def is_error_frame(decoded: dict[str, Any]) -> bool:
    return (
        decoded.get("errorMessage") is not None
        and decoded.get("correlationId") is not None
        and "resource" not in decoded
    )


def decode_message(text: str | bytes) -> Message:
    decoded = _loads_object(text)
    correlation_id = _correlation_id(decoded)
    if is_error_frame(decoded):
        return ErrorEnvelope(
            correlation_id=correlation_id,
            error_message=str(decoded["errorMessage"]),
        )
    resource = decoded.get("resource")
    if not isinstance(resource, str):
        raise ProtocolViolation("Frame has neither resource nor errorMessage")
    return build_response(resource, correlation_id, decoded)
