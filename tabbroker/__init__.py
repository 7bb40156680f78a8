"""Browser command broker package."""

from tabbroker.audit import AuditEntry, AuditRecorder, AuditStore
from tabbroker.broker import CorrelationBroker, PendingRequest
from tabbroker.dispatcher import Dispatcher
from tabbroker.models import ErrorEnvelope, Request, Response
from tabbroker.policy import SecurityGate, SecurityPolicy

__all__ = [
    "AuditEntry",
    "AuditRecorder",
    "AuditStore",
    "CorrelationBroker",
    "Dispatcher",
    "ErrorEnvelope",
    "PendingRequest",
    "Request",
    "Response",
    "SecurityGate",
    "SecurityPolicy",
]
