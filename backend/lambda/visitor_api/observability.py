"""observability.py — Structured JSON log lines for transitions, audit writes and deliveries."""
from __future__ import annotations

import json
from typing import Any, Dict, Optional

from gate_shared.serialization import _now_z
from visitor_api.config import logger

__all__ = ["_emit_structured_observability"]


def _emit_structured_observability(
    *,
    component: str,
    event: str,
    visitor_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    latency_ms: Optional[int] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
        "visitor_id": str(visitor_id or ""),
        "actor_id": str(actor_id or ""),
        "latency_ms": int(max(0, latency_ms or 0)),
        "error_code": str(error_code or ""),
    }
    if extra:
        payload.update(extra)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))
