"""chat_bridge.py — Natural-language command dispatch onto the lifecycle engine.

The assistant is offered a closed set of tools. Each tool call is parsed
into a typed intent and run through the same ``VisitorLifecycle`` methods as
the HTTP routes, so role and state checks are identical on both surfaces.
Engine errors are handed back to the model as a failed tool result, and a
second completion pass turns the outcome into a reply.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from visitor_api.config import ADMIN_ROLE, CHAT_HISTORY_MAX_TURNS, GUARD_ROLE, logger
from visitor_api.errors import GateError, ValidationError
from visitor_api.models import LISTABLE_STATUSES, Identity

__all__ = [
    "ChatCall",
    "DenyArgs",
    "Intent",
    "ListArgs",
    "TOOL_DEFINITIONS",
    "VisitorArgs",
    "execute",
    "handle_chat",
    "parse_tool_call",
]

# Visitors echoed back to the model per list call.
_LIST_RESULT_LIMIT = 50


class Intent(str, Enum):
    APPROVE_VISITOR = "approve_visitor"
    DENY_VISITOR = "deny_visitor"
    CHECKIN_VISITOR = "checkin_visitor"
    CHECKOUT_VISITOR = "checkout_visitor"
    LIST_VISITORS = "list_visitors"


@dataclass(frozen=True)
class VisitorArgs:
    visitor_id: str


@dataclass(frozen=True)
class DenyArgs:
    visitor_id: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class ListArgs:
    status: str = "all"


@dataclass(frozen=True)
class ChatCall:
    intent: Intent
    args: Union[VisitorArgs, DenyArgs, ListArgs]
    tool_use_id: str = ""


def _visitor_id_schema(description: str) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {"visitorId": {"type": "string", "description": description}},
        "required": ["visitorId"],
    }


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": Intent.APPROVE_VISITOR.value,
        "description": "Approve a pending visitor request. Admin only.",
        "input_schema": _visitor_id_schema("ID of the pending visitor to approve"),
    },
    {
        "name": Intent.DENY_VISITOR.value,
        "description": "Deny a pending visitor request, optionally with a reason. Admin only.",
        "input_schema": {
            "type": "object",
            "properties": {
                "visitorId": {"type": "string", "description": "ID of the pending visitor to deny"},
                "reason": {"type": "string", "description": "Reason shown to the resident"},
            },
            "required": ["visitorId"],
        },
    },
    {
        "name": Intent.CHECKIN_VISITOR.value,
        "description": "Check in an approved visitor at the gate. Guards and admins.",
        "input_schema": _visitor_id_schema("ID of the approved visitor arriving"),
    },
    {
        "name": Intent.CHECKOUT_VISITOR.value,
        "description": "Check out a visitor who is currently checked in. Guards and admins.",
        "input_schema": _visitor_id_schema("ID of the checked-in visitor leaving"),
    },
    {
        "name": Intent.LIST_VISITORS.value,
        "description": "List visitors visible to the current user, optionally filtered by status.",
        "input_schema": {
            "type": "object",
            "properties": {
                "status": {
                    "type": "string",
                    "enum": sorted(LISTABLE_STATUSES),
                    "description": "Status filter; 'all' for every visitor",
                }
            },
        },
    },
]


def parse_tool_call(name: str, raw_input: Any, tool_use_id: str = "") -> ChatCall:
    """Turn a model tool call into a typed ChatCall. Raises ValidationError on bad input."""
    try:
        intent = Intent(str(name or ""))
    except ValueError:
        raise ValidationError(f"Unknown function: {name}") from None
    if raw_input is None:
        raw_input = {}
    if not isinstance(raw_input, dict):
        raise ValidationError(f"Arguments for {intent.value} must be an object")

    if intent is Intent.LIST_VISITORS:
        status = str(raw_input.get("status") or "all").strip().lower()
        if status not in LISTABLE_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(sorted(LISTABLE_STATUSES))}")
        return ChatCall(intent=intent, args=ListArgs(status=status), tool_use_id=tool_use_id)

    visitor_id = str(raw_input.get("visitorId") or "").strip()
    if not visitor_id:
        raise ValidationError(f"visitorId is required for {intent.value}")
    if intent is Intent.DENY_VISITOR:
        reason = str(raw_input.get("reason") or "").strip() or None
        return ChatCall(intent=intent, args=DenyArgs(visitor_id=visitor_id, reason=reason), tool_use_id=tool_use_id)
    return ChatCall(intent=intent, args=VisitorArgs(visitor_id=visitor_id), tool_use_id=tool_use_id)


def execute(engine, identity: Identity, call: ChatCall) -> Dict[str, Any]:
    """Run one parsed call against the engine and return a tool-result payload."""
    try:
        if call.intent is Intent.LIST_VISITORS:
            visitors = engine.list_visitors(identity, call.args.status)
            return {
                "success": True,
                "count": len(visitors),
                "visitors": [v.to_public() for v in visitors[:_LIST_RESULT_LIMIT]],
            }
        if call.intent is Intent.APPROVE_VISITOR:
            result = engine.approve(identity, call.args.visitor_id)
        elif call.intent is Intent.DENY_VISITOR:
            result = engine.deny(identity, call.args.visitor_id, call.args.reason)
        elif call.intent is Intent.CHECKIN_VISITOR:
            result = engine.check_in(identity, call.args.visitor_id)
        else:
            result = engine.check_out(identity, call.args.visitor_id)
    except GateError as exc:
        return {"success": False, "error": exc.message, "code": exc.code}
    return {"success": True, "message": result.message, "visitor": result.visitor.to_public()}


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


def _system_prompt(identity: Identity) -> str:
    if identity.role == ADMIN_ROLE:
        abilities = "approve or deny pending visitors, check visitors in and out, and list all visitors"
    elif identity.role == GUARD_ROLE:
        abilities = "check approved visitors in, check visitors out, and list all visitors"
    else:
        abilities = "list the visitors registered to their household"
    return (
        "You are the gate assistant for a gated community visitor system. "
        f"The current user is a {identity.role}; they can {abilities}. "
        "Use the provided tools to act on visitors and never claim an action succeeded "
        "unless the tool result says so. When a visitor is referred to by name, list "
        "visitors first to find the ID. Keep replies short."
    )


def _clean_history(raw: Any) -> List[Dict[str, str]]:
    """Keep well-formed text turns, trimmed so the window opens on a user turn."""
    if not isinstance(raw, list):
        return []
    turns = [
        {"role": entry["role"], "content": entry["content"]}
        for entry in raw
        if isinstance(entry, dict)
        and entry.get("role") in ("user", "assistant")
        and isinstance(entry.get("content"), str)
        and entry["content"].strip()
    ]
    turns = turns[-CHAT_HISTORY_MAX_TURNS:] if CHAT_HISTORY_MAX_TURNS > 0 else []
    while turns and turns[0]["role"] != "user":
        turns.pop(0)
    return turns


def _text_of(response: Dict[str, Any]) -> str:
    parts = [
        str(block.get("text") or "")
        for block in response.get("content") or []
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return "\n".join(p for p in parts if p).strip()


def _tool_uses(response: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        block
        for block in response.get("content") or []
        if isinstance(block, dict) and block.get("type") == "tool_use"
    ]


def handle_chat(engine, completion, identity: Identity, message: Any, history: Any = None) -> Dict[str, Any]:
    text = str(message or "").strip()
    if not text:
        raise ValidationError("message is required")

    turns = _clean_history(history)
    messages: List[Dict[str, Any]] = turns + [{"role": "user", "content": text}]
    system = _system_prompt(identity)

    first = completion.create(system=system, messages=messages, tools=TOOL_DEFINITIONS)
    tool_uses = _tool_uses(first)
    function_called: Optional[str] = None

    if not tool_uses:
        reply = _text_of(first)
    else:
        function_called = str(tool_uses[0].get("name") or "")
        tool_results = []
        outcomes = []
        for block in tool_uses:
            try:
                call = parse_tool_call(block.get("name"), block.get("input"), str(block.get("id") or ""))
                outcome = execute(engine, identity, call)
            except ValidationError as exc:
                outcome = {"success": False, "error": exc.message, "code": exc.code}
            logger.info(
                "[INFO] chat tool %s by %s -> success=%s",
                block.get("name"),
                identity.uid,
                outcome.get("success"),
            )
            outcomes.append(outcome)
            tool_results.append(
                {
                    "type": "tool_result",
                    "tool_use_id": str(block.get("id") or ""),
                    "content": json.dumps(outcome, default=str),
                    "is_error": not outcome.get("success"),
                }
            )

        follow_up = messages + [
            {"role": "assistant", "content": first.get("content") or []},
            {"role": "user", "content": tool_results},
        ]
        second = completion.create(system=system, messages=follow_up, tools=TOOL_DEFINITIONS)
        reply = _text_of(second) or _fallback_reply(outcomes)

    if not reply:
        reply = "Sorry, I could not work out how to help with that."

    new_history = _clean_history(turns + [{"role": "user", "content": text}, {"role": "assistant", "content": reply}])
    return {
        "success": True,
        "message": reply,
        "functionCalled": function_called,
        "conversationHistory": new_history,
    }


def _fallback_reply(outcomes: List[Dict[str, Any]]) -> str:
    lines = []
    for outcome in outcomes:
        if outcome.get("success"):
            lines.append(str(outcome.get("message") or f"Found {outcome.get('count', 0)} visitor(s)."))
        else:
            lines.append(f"That did not work: {outcome.get('error')}")
    return " ".join(lines)
