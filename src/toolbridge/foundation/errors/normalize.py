"""Error normalization: every failure origin collapses into one ErrorEnvelope."""

from __future__ import annotations

import ssl
import traceback
from typing import Any

import httpx
from pydantic import ValidationError

from .errors import (
    AuthRejected,
    ErrorCode,
    ErrorEnvelope,
    FieldViolation,
    GatewayError,
    RemoteApplicationError,
    SchemaViolation,
    TRANSIENT_CODES,
    ToolNotFound,
    TransportConnectionError,
    TransportTimeout,
    TransportTLSError,
)


def _violations_from_pydantic(exc: ValidationError) -> list[FieldViolation]:
    return [
        FieldViolation(field=".".join(str(p) for p in err["loc"]), reason=err["msg"])
        for err in exc.errors()
    ]


def _is_tls_failure(exc: BaseException) -> bool:
    seen: set[int] = set()
    cur: BaseException | None = exc
    while cur is not None and id(cur) not in seen:
        if isinstance(cur, ssl.SSLError):
            return True
        seen.add(id(cur))
        cur = cur.__cause__ or cur.__context__
    return "ssl" in str(exc).lower() or "certificate" in str(exc).lower()


def classify_exception(exc: BaseException) -> GatewayError:
    """Map any exception onto the typed taxonomy.

    Typed gateway errors pass through; httpx / asyncio / pydantic errors are
    translated; anything else becomes a non-retryable internal error.
    """
    match exc:
        case GatewayError():
            return exc
        case httpx.TimeoutException() | TimeoutError():
            return TransportTimeout(f"Request timed out: {exc}" if str(exc) else "Request timed out")
        case httpx.ConnectError() if _is_tls_failure(exc):
            return TransportTLSError(f"TLS handshake failed: {exc}")
        case httpx.TransportError():
            return TransportConnectionError(f"Network error: {exc}")
        case ssl.SSLError():
            return TransportTLSError(f"TLS error: {exc}")
        case ConnectionError():
            return TransportConnectionError(f"Connection error: {exc}")
        case ValidationError():
            return SchemaViolation(_violations_from_pydantic(exc))
        case _:
            return GatewayError(
                f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__,
                details={"exception": type(exc).__name__},
            )


def normalize(exc: BaseException, *, include_trace: bool = False) -> ErrorEnvelope:
    """Convert any failure into an ErrorEnvelope."""
    envelope = classify_exception(exc).to_envelope()
    if include_trace and envelope.code is ErrorCode.INTERNAL_ERROR:
        tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return envelope.model_copy(update={"details": {**envelope.details, "traceback": tb}})
    return envelope


def error_from_wire(payload: Any, *, status: int | None = None) -> GatewayError:
    """Rebuild a typed exception from a peer's ``{"error": {...}}`` body."""
    if not isinstance(payload, dict):
        return RemoteApplicationError(
            f"Remote error: {payload}", status=status, transient=status is not None and status >= 500,
        )
    code = str(payload.get("code") or ErrorCode.REMOTE_APPLICATION_ERROR.value)
    message = str(payload.get("message") or "").strip() or "Remote error"
    details = payload.get("details") if isinstance(payload.get("details"), dict) else {}

    if code == ErrorCode.TOOL_NOT_FOUND:
        server = details.get("server_id")
        return ToolNotFound(str(details.get("tool") or "unknown"), str(server) if server else None)
    if code == ErrorCode.SCHEMA_VIOLATION:
        raw = details.get("violations") or []
        violations = [FieldViolation(field=str(v.get("field", "")), reason=str(v.get("reason", "")))
                      for v in raw if isinstance(v, dict)]
        return SchemaViolation(violations or [FieldViolation(field="", reason=message)])
    if code == ErrorCode.AUTH_REJECTED or status in (401, 403):
        return AuthRejected(message, details={"status": status})
    # Structured bodies are application answers; transient only when relaying a transport failure
    return RemoteApplicationError(
        message, status=status, remote_code=code,
        transient=status is not None and status >= 500 and code in {c.value for c in TRANSIENT_CODES},
    )
