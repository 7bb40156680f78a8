from __future__ import annotations


class BrokerError(RuntimeError):
    pass


class ProtocolViolation(BrokerError):
    """A frame that does not fit the message model."""


class TransportUnavailable(BrokerError):
    pass


class PortInUseError(BrokerError):
    pass


class CommandFailed(BrokerError):
    """The peer answered a request with an error envelope."""

    def __init__(self, message: str, *, correlation_id: str | None = None) -> None:
        super().__init__(message)
        self.correlation_id = correlation_id


class RequestTimeout(BrokerError):
    pass


class DuplicateCorrelationId(BrokerError):
    pass


class BrokerClosed(BrokerError):
    pass


class ExecutionError(BrokerError):
    """Raised by executor capabilities, e.g. element not found."""


class UnknownCommand(ProtocolViolation):
    pass
