"""visitor_api/lambda_function.py

Lambda API for the gated-community visitor lifecycle.

Routes (API Gateway HTTP API, optional ``API_PREFIX``):
    POST /approve              admin
    POST /deny                 admin
    POST /checkin              guard, admin
    POST /checkout             guard, admin
    POST /chat                 any authenticated user
    POST /visitors             resident
    GET  /visitors?status=     any (residents see their household only)
    GET  /events?limit=        admin
    POST /push-token           any
    GET  /admin/users          admin
    OPTIONS *                  CORS preflight

The same function subscribes to the visitors table stream. An ``INSERT``
record runs the creation side effects (audit + notifications) once per
newly inserted visitor.

Auth:
    Cognito ID token (Bearer header or ``gate_id_token`` cookie), or an
    internal key in ``X-Gate-Internal-Key`` with ``X-Gate-Actor-Id``.
"""
from __future__ import annotations

import time
from typing import Any, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from gate_shared.auth import _authenticate
from gate_shared.aws_clients import _get_ddb, _get_secretsmanager, _get_sns
from gate_shared.http_utils import _cors_headers, _error, _parse_body, _path_method, _query_params
from gate_shared.serialization import _deserialize
from visitor_api.audit import AuditLog
from visitor_api.completion import CompletionClient
from visitor_api.config import API_PREFIX, EVENTS_TABLE, USERS_TABLE, VISITORS_TABLE, logger
from visitor_api.errors import GateError
from visitor_api.handlers import (
    _gate_error,
    _handle_chat,
    _handle_create_visitor,
    _handle_list_users,
    _handle_list_visitors,
    _handle_push_token,
    _handle_recent_events,
    _handle_transition,
)
from visitor_api.identity import resolve_identity
from visitor_api.lifecycle import VisitorLifecycle
from visitor_api.models import STATUS_PENDING, Visitor
from visitor_api.notifications import NotificationDispatcher
from visitor_api.persistence import UserStore, VisitorStore

_TRANSITION_PATHS = {
    "/approve": "approve",
    "/deny": "deny",
    "/checkin": "checkin",
    "/checkout": "checkout",
}

# ---------------------------------------------------------------------------
# Lazy wiring
# ---------------------------------------------------------------------------

_users: Optional[UserStore] = None
_engine: Optional[VisitorLifecycle] = None
_completion: Optional[CompletionClient] = None


def _get_users() -> UserStore:
    global _users
    if _users is None:
        _users = UserStore(_get_ddb(), USERS_TABLE)
    return _users


def _get_engine() -> VisitorLifecycle:
    global _engine
    if _engine is None:
        ddb = _get_ddb()
        users = _get_users()
        _engine = VisitorLifecycle(
            VisitorStore(ddb, VISITORS_TABLE),
            users,
            AuditLog(ddb, EVENTS_TABLE),
            NotificationDispatcher(users, _get_sns()),
        )
    return _engine


def _get_completion() -> CompletionClient:
    global _completion
    if _completion is None:
        _completion = CompletionClient(_get_secretsmanager())
    return _completion


# ---------------------------------------------------------------------------
# Stream trigger
# ---------------------------------------------------------------------------


def _is_stream_event(event: Dict[str, Any]) -> bool:
    records = event.get("Records")
    return isinstance(records, list) and bool(records) and all(
        isinstance(r, dict) and r.get("eventSource") == "aws:dynamodb" for r in records
    )


def _handle_stream(event: Dict[str, Any]) -> Dict[str, Any]:
    engine = _get_engine()
    processed = skipped = 0
    for record in event.get("Records") or []:
        if record.get("eventName") != "INSERT":
            skipped += 1
            continue
        image = (record.get("dynamodb") or {}).get("NewImage")
        if not image:
            skipped += 1
            continue
        visitor = Visitor.from_item(_deserialize(image))
        if not visitor.visitor_id or visitor.status != STATUS_PENDING:
            logger.warning("[WARNING] ignoring inserted visitor %s with status %s", visitor.visitor_id, visitor.status)
            skipped += 1
            continue
        engine.record_created(visitor)
        processed += 1
    logger.info("[INFO] stream batch: processed=%d skipped=%d", processed, skipped)
    return {"processed": processed, "skipped": skipped}


# ---------------------------------------------------------------------------
# HTTP routing
# ---------------------------------------------------------------------------


def _normalize_path(path: str) -> str:
    if API_PREFIX and (path == API_PREFIX or path.startswith(API_PREFIX + "/")):
        path = path[len(API_PREFIX):]
    path = path.rstrip("/")
    return path or "/"


def _route(method: str, path: str, event: Dict[str, Any]) -> Dict[str, Any]:
    known = path in _TRANSITION_PATHS or path in ("/chat", "/visitors", "/events", "/push-token", "/admin/users")
    if not known:
        return _error(404, f"Route not found: {method} {path}")

    claims, auth_err = _authenticate(event, error_fn=_error)
    if auth_err:
        return auth_err
    identity = resolve_identity(claims, _get_users())
    engine = _get_engine()

    if method == "POST":
        try:
            body = _parse_body(event)
        except ValueError as exc:
            return _error(400, str(exc))
    else:
        body = {}

    if path in _TRANSITION_PATHS:
        if method != "POST":
            return _error(405, f"Method {method} not allowed on {path}")
        return _handle_transition(engine, identity, _TRANSITION_PATHS[path], body)
    if path == "/chat":
        if method != "POST":
            return _error(405, f"Method {method} not allowed on {path}")
        return _handle_chat(engine, _get_completion(), identity, body)
    if path == "/visitors":
        if method == "POST":
            return _handle_create_visitor(engine, identity, body)
        if method == "GET":
            return _handle_list_visitors(engine, identity, _query_params(event))
        return _error(405, f"Method {method} not allowed on {path}")
    if path == "/events":
        if method != "GET":
            return _error(405, f"Method {method} not allowed on {path}")
        return _handle_recent_events(engine, identity, _query_params(event))
    if path == "/push-token":
        if method != "POST":
            return _error(405, f"Method {method} not allowed on {path}")
        return _handle_push_token(engine, identity, body)
    if method != "GET":
        return _error(405, f"Method {method} not allowed on {path}")
    return _handle_list_users(engine, identity)


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    if _is_stream_event(event):
        return _handle_stream(event)

    method, raw_path = _path_method(event)
    if method == "OPTIONS":
        return {"statusCode": 204, "headers": _cors_headers(), "body": ""}

    path = _normalize_path(raw_path)
    started = time.perf_counter()
    try:
        response = _route(method, path, event)
    except GateError as exc:
        response = _gate_error(exc)
    except (ClientError, BotoCoreError) as exc:
        logger.exception("[ERROR] storage failure on %s %s: %s", method, path, exc)
        response = _error(500, "Internal error. Please retry.")
    logger.info(
        "[INFO] %s %s -> %s (%dms)",
        method,
        path,
        response.get("statusCode"),
        int((time.perf_counter() - started) * 1000),
    )
    return response
