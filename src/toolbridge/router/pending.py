"""Deferred (human-in-the-loop) invocations.

A handler that cannot answer synchronously returns ``Deferred``. The router
stores a PendingInvocation under a correlation id and answers the caller
with that id; the peer later completes the record through a separate
inbound call (``POST /invocations/{id}``) and polls it with
``GET /invocations/{id}``.
"""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Callable

from toolbridge.foundation.errors import ErrorEnvelope, JsonDict, PendingInvocationError
from toolbridge.observability import get_logger

log = get_logger("toolbridge.pending")


class PendingStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


@dataclass(slots=True, frozen=True)
class Deferred:
    """Returned by a handler to park the invocation until a later completion.

    Attributes:
        message: Shown to the caller while the invocation is pending
        correlation_id: Use a caller-meaningful id instead of a generated one
        ttl: Override the pending-record lifetime in seconds
    """

    message: str = ""
    correlation_id: str | None = None
    ttl: float | None = None


@dataclass(slots=True)
class PendingInvocation:
    correlation_id: str
    tool_name: str
    params: JsonDict
    created_at: float
    expires_at: float
    message: str = ""
    status: PendingStatus = PendingStatus.PENDING
    result: Any = None
    error: ErrorEnvelope | None = None
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def settled(self) -> bool:
        return self.status is not PendingStatus.PENDING

    def to_wire(self, now: float | None = None) -> JsonDict:
        wire: JsonDict = {
            "correlation_id": self.correlation_id,
            "tool": self.tool_name,
            "status": self.status.value,
        }
        if self.message:
            wire["message"] = self.message
        if self.status is PendingStatus.PENDING and now is not None:
            wire["expires_in"] = round(max(0.0, self.expires_at - now), 3)
        if self.status is PendingStatus.COMPLETED:
            wire["result"] = self.result
        if self.error is not None:
            wire["error"] = self.error.to_wire()
        return wire


class PendingInvocations:
    """Correlation-id keyed store of parked invocations.

    Example:
        >>> pending = PendingInvocations(ttl=600)
        >>> record = pending.create("approve_refund", {"order": 42})
        >>> pending.complete(record.correlation_id, {"approved": True})
        >>> (await pending.wait(record.correlation_id, timeout=1)).status
        <PendingStatus.COMPLETED: 'completed'>
    """

    __slots__ = ("_records", "_lock", "_ttl", "_max_records", "_clock")

    def __init__(
        self, *, ttl: float = 3600.0, max_records: int = 10_000, clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._records: dict[str, PendingInvocation] = {}
        self._lock = threading.Lock()
        self._ttl = ttl
        self._max_records = max_records
        self._clock = clock

    def create(
        self,
        tool_name: str,
        params: JsonDict,
        *,
        correlation_id: str | None = None,
        ttl: float | None = None,
        message: str = "",
    ) -> PendingInvocation:
        """Park a new invocation.

        Raises:
            PendingInvocationError: Correlation id already in use, or store full.
        """
        cid = correlation_id or uuid.uuid4().hex
        now = self._clock()
        with self._lock:
            if cid in self._records:
                raise PendingInvocationError(f"Correlation id '{cid}' already in use",
                                             details={"correlation_id": cid})
            if len(self._records) >= self._max_records:
                self._purge_unlocked(now)
                if len(self._records) >= self._max_records:
                    raise PendingInvocationError("Too many pending invocations",
                                                 details={"limit": self._max_records})
            record = self._records[cid] = PendingInvocation(
                cid, tool_name, dict(params), now, now + (ttl or self._ttl), message,
            )
        log.info("pending.created", correlation_id=cid, tool=tool_name)
        return record

    def get(self, correlation_id: str) -> PendingInvocation:
        with self._lock:
            record = self._records.get(correlation_id)
            if record is None:
                raise PendingInvocationError(f"Unknown correlation id '{correlation_id}'",
                                             details={"correlation_id": correlation_id})
            self._expire_unlocked(record, self._clock())
            return record

    def complete(self, correlation_id: str, result: Any) -> PendingInvocation:
        return self._settle(correlation_id, PendingStatus.COMPLETED, result=result)

    def fail(self, correlation_id: str, error: ErrorEnvelope) -> PendingInvocation:
        return self._settle(correlation_id, PendingStatus.FAILED, error=error)

    async def wait(self, correlation_id: str, timeout: float | None = None) -> PendingInvocation:
        """Block until the record settles (completed, failed or expired)."""
        record = self.get(correlation_id)
        if not record.settled:
            remaining = record.expires_at - self._clock()
            wait_for = remaining if timeout is None else min(timeout, remaining)
            try:
                async with asyncio.timeout(max(0.0, wait_for)):
                    await record._done.wait()
            except TimeoutError:
                pass
        return self.get(correlation_id)

    def purge_expired(self) -> int:
        """Drop settled records past their expiry. Returns how many were removed."""
        with self._lock:
            return self._purge_unlocked(self._clock())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._records

    # ─────────────────────────────────────────────────────────────────
    # Internals (caller holds lock)
    # ─────────────────────────────────────────────────────────────────

    def _settle(self, cid: str, status: PendingStatus, *, result: Any = None,
                error: ErrorEnvelope | None = None) -> PendingInvocation:
        with self._lock:
            record = self._records.get(cid)
            if record is None:
                raise PendingInvocationError(f"Unknown correlation id '{cid}'", details={"correlation_id": cid})
            self._expire_unlocked(record, self._clock())
            if record.settled:
                raise PendingInvocationError(
                    f"Invocation '{cid}' is already {record.status.value}",
                    details={"correlation_id": cid, "status": record.status.value},
                )
            record.status, record.result, record.error = status, result, error
            record._done.set()
        log.info("pending.settled", correlation_id=cid, status=status.value)
        return record

    def _expire_unlocked(self, record: PendingInvocation, now: float) -> None:
        if record.status is PendingStatus.PENDING and now >= record.expires_at:
            record.status = PendingStatus.EXPIRED
            record._done.set()

    def _purge_unlocked(self, now: float) -> int:
        for record in self._records.values():
            self._expire_unlocked(record, now)
        stale = [cid for cid, r in self._records.items() if r.settled and now >= r.expires_at]
        for cid in stale:
            del self._records[cid]
        return len(stale)
