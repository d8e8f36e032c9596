"""Invocation router: the inbound and outbound roles of a gateway."""

from .inbound import Handler, InboundHandlerRegistry, schema_from_signature
from .outbound import OutboundInvoker
from .pending import Deferred, PendingInvocation, PendingInvocations, PendingStatus

__all__ = [
    "InboundHandlerRegistry", "Handler", "schema_from_signature",
    "OutboundInvoker",
    "Deferred", "PendingInvocation", "PendingInvocations", "PendingStatus",
]
