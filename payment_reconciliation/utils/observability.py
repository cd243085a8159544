"""Correlation IDs tying request logs and queued jobs back to their origin."""
from __future__ import annotations
import uuid
from typing import Mapping

REQUEST_ID_HEADER = "X-Request-ID"


def ensure_request_id(headers: Mapping[str, str]) -> str:
    """Reuse the caller's request id when present, otherwise mint one."""
    return headers.get(REQUEST_ID_HEADER, None) or str(uuid.uuid4())


def new_correlation_id(origin: str) -> str:
    """``<origin>-<12 hex>``, e.g. ``frequent-3f2a9c1b7d4e`` for a scheduled cadence run."""
    return f"{origin}-{uuid.uuid4().hex[:12]}"


__all__ = ["ensure_request_id", "new_correlation_id", "REQUEST_ID_HEADER"]
