"""handlers.py — HTTP route handlers for the visitor API.

Handlers take an already-resolved Identity and the parsed request, call the
engine, and build the response envelope. Engine errors propagate as
``GateError`` and are rendered by ``_gate_error`` in the entry point.
"""
from __future__ import annotations

from typing import Any, Dict

from gate_shared.http_utils import _error, _response
from visitor_api.chat_bridge import handle_chat
from visitor_api.errors import GateError
from visitor_api.models import Identity

__all__ = [
    "_gate_error",
    "_handle_chat",
    "_handle_create_visitor",
    "_handle_list_users",
    "_handle_list_visitors",
    "_handle_push_token",
    "_handle_recent_events",
    "_handle_transition",
]


def _gate_error(exc: GateError) -> Dict[str, Any]:
    return _error(exc.status_code, exc.message, code=exc.code, details=exc.details or None)


def _handle_transition(engine, identity: Identity, operation: str, body: Dict[str, Any]) -> Dict[str, Any]:
    visitor_id = body.get("visitorId")
    if operation == "approve":
        result = engine.approve(identity, visitor_id)
    elif operation == "deny":
        result = engine.deny(identity, visitor_id, body.get("reason"))
    elif operation == "checkin":
        result = engine.check_in(identity, visitor_id)
    else:
        result = engine.check_out(identity, visitor_id)
    return _response(
        200,
        {"success": True, "message": result.message, "visitor": result.visitor.to_public()},
    )


def _handle_create_visitor(engine, identity: Identity, body: Dict[str, Any]) -> Dict[str, Any]:
    visitor = engine.create_visitor(identity, body.get("name"), body.get("phone"), body.get("purpose"))
    return _response(
        201,
        {"success": True, "message": f"Visitor {visitor.name} registered", "visitor": visitor.to_public()},
    )


def _handle_list_visitors(engine, identity: Identity, query: Dict[str, str]) -> Dict[str, Any]:
    visitors = engine.list_visitors(identity, query.get("status") or "all")
    return _response(
        200,
        {"success": True, "count": len(visitors), "visitors": [v.to_public() for v in visitors]},
    )


def _handle_recent_events(engine, identity: Identity, query: Dict[str, str]) -> Dict[str, Any]:
    events = engine.recent_events(identity, query.get("limit"))
    return _response(200, {"success": True, "events": [e.to_public() for e in events]})


def _handle_push_token(engine, identity: Identity, body: Dict[str, Any]) -> Dict[str, Any]:
    engine.register_push_token(identity, body.get("token"))
    return _response(200, {"success": True, "message": "Push token registered"})


def _handle_list_users(engine, identity: Identity) -> Dict[str, Any]:
    users = engine.list_users(identity)
    return _response(200, {"success": True, "count": len(users), "users": users})


def _handle_chat(engine, completion, identity: Identity, body: Dict[str, Any]) -> Dict[str, Any]:
    result = handle_chat(engine, completion, identity, body.get("message"), body.get("conversationHistory"))
    return _response(200, result)
