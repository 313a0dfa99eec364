from __future__ import annotations

import json
from typing import Optional

import httpx

from ..errors import ErrorKind, StageError


def error_message(r: httpx.Response, *, limit: int = 2000) -> str:
    """Best-effort human message from a structured (JSON) or plain error body."""
    try:
        data = r.json()
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError):
        return r.text[:limit] or r.reason_phrase
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])[:limit]
        for key in ("error", "detail", "message"):
            if data.get(key):
                return str(data[key])[:limit]
    return json.dumps(data)[:limit]


def classify_status(status_code: int, *, unavailable_kind: ErrorKind = ErrorKind.TRANSIENT_NETWORK) -> Optional[ErrorKind]:
    if status_code < 400:
        return None
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code == 429:
        return ErrorKind.QUOTA_EXCEEDED
    if status_code == 408:
        return ErrorKind.TIMEOUT
    if status_code in (502, 503, 504):
        return unavailable_kind
    if status_code >= 500:
        return ErrorKind.TRANSIENT_NETWORK
    return ErrorKind.BAD_REQUEST


def raise_for_status(r: httpx.Response, what: str, *, unavailable_kind: ErrorKind = ErrorKind.TRANSIENT_NETWORK) -> None:
    kind = classify_status(r.status_code, unavailable_kind=unavailable_kind)
    if kind is None:
        return
    raise StageError(kind, f"{what} failed ({r.status_code}): {error_message(r)}")


def transport_error(exc: httpx.HTTPError, what: str, *, connect_kind: ErrorKind = ErrorKind.TRANSIENT_NETWORK) -> StageError:
    if isinstance(exc, httpx.TimeoutException):
        return StageError(ErrorKind.TIMEOUT, f"{what} timed out: {exc}")
    if isinstance(exc, httpx.ConnectError):
        return StageError(connect_kind, f"{what}: cannot connect: {exc}")
    return StageError(ErrorKind.TRANSIENT_NETWORK, f"{what}: {type(exc).__name__}: {exc}")
