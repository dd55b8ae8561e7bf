"""models.py — Identity, visitor record, lifecycle rules and audit event payloads."""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, FrozenSet, Mapping, Optional, Type

from visitor_api.config import ADMIN_ROLE, DEFAULT_DENIAL_REASON, DEFAULT_PHONE, DEFAULT_PURPOSE, GUARD_ROLE, NO_HOUSEHOLD

__all__ = [
    "AuditEvent",
    "DenialPayload",
    "DeliveryOutcome",
    "Identity",
    "LIFECYCLE_RULES",
    "LISTABLE_STATUSES",
    "Notification",
    "STATUS_APPROVED",
    "STATUS_CHECKED_IN",
    "STATUS_CHECKED_OUT",
    "STATUS_DENIED",
    "STATUS_PENDING",
    "TransitionRule",
    "UserCreatedPayload",
    "Visitor",
    "VisitorEventPayload",
    "_TRANSITIONS",
]

# ---------------------------------------------------------------------------
# Visitor states
# ---------------------------------------------------------------------------

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_DENIED = "denied"
STATUS_CHECKED_IN = "checked_in"
STATUS_CHECKED_OUT = "checked_out"

_TRANSITIONS = {
    STATUS_PENDING: {STATUS_APPROVED, STATUS_DENIED},
    STATUS_APPROVED: {STATUS_CHECKED_IN},
    STATUS_CHECKED_IN: {STATUS_CHECKED_OUT},
    STATUS_DENIED: set(),
    STATUS_CHECKED_OUT: set(),
}

LISTABLE_STATUSES = frozenset(_TRANSITIONS) | {"all"}


@dataclass(frozen=True)
class Identity:
    uid: str
    role: str
    household_id: Optional[str] = None
    email: str = ""


@dataclass(frozen=True)
class TransitionRule:
    """One lifecycle operation: where it starts, where it lands, who may run it."""

    operation: str
    from_status: str
    to_status: str
    allowed_roles: FrozenSet[str]
    actor_field: str
    time_field: str
    audit_type: str
    forbidden_message: str

    def __post_init__(self) -> None:
        if self.to_status not in _TRANSITIONS[self.from_status]:
            raise ValueError(f"Invalid state transition {self.from_status} -> {self.to_status}")


LIFECYCLE_RULES: Dict[str, TransitionRule] = {
    rule.operation: rule
    for rule in (
        TransitionRule(
            operation="approve",
            from_status=STATUS_PENDING,
            to_status=STATUS_APPROVED,
            allowed_roles=frozenset({ADMIN_ROLE}),
            actor_field="approvedBy",
            time_field="approvedAt",
            audit_type="approval",
            forbidden_message="Only admins can approve visitors",
        ),
        TransitionRule(
            operation="deny",
            from_status=STATUS_PENDING,
            to_status=STATUS_DENIED,
            allowed_roles=frozenset({ADMIN_ROLE}),
            actor_field="deniedBy",
            time_field="deniedAt",
            audit_type="denial",
            forbidden_message="Only admins can deny visitors",
        ),
        TransitionRule(
            operation="checkin",
            from_status=STATUS_APPROVED,
            to_status=STATUS_CHECKED_IN,
            allowed_roles=frozenset({GUARD_ROLE, ADMIN_ROLE}),
            actor_field="checkedInBy",
            time_field="checkedInAt",
            audit_type="checkin",
            forbidden_message="Only guards or admins can check in visitors",
        ),
        TransitionRule(
            operation="checkout",
            from_status=STATUS_CHECKED_IN,
            to_status=STATUS_CHECKED_OUT,
            allowed_roles=frozenset({GUARD_ROLE, ADMIN_ROLE}),
            actor_field="checkedOutBy",
            time_field="checkedOutAt",
            audit_type="checkout",
            forbidden_message="Only guards or admins can check out visitors",
        ),
    )
}


# ---------------------------------------------------------------------------
# Visitor record
# ---------------------------------------------------------------------------

# Python attribute -> persisted attribute name.
_VISITOR_FIELDS = {
    "name": "name",
    "phone": "phone",
    "purpose": "purpose",
    "status": "status",
    "household_id": "householdId",
    "created_by": "createdBy",
    "created_at": "createdAt",
    "approved_by": "approvedBy",
    "approved_at": "approvedAt",
    "denied_by": "deniedBy",
    "denied_at": "deniedAt",
    "denial_reason": "denialReason",
    "checked_in_by": "checkedInBy",
    "checked_in_at": "checkedInAt",
    "checked_out_by": "checkedOutBy",
    "checked_out_at": "checkedOutAt",
}


@dataclass
class Visitor:
    visitor_id: str
    name: str
    status: str
    created_by: str
    phone: str = DEFAULT_PHONE
    purpose: str = DEFAULT_PURPOSE
    household_id: Optional[str] = None
    created_at: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    denied_by: Optional[str] = None
    denied_at: Optional[str] = None
    denial_reason: Optional[str] = None
    checked_in_by: Optional[str] = None
    checked_in_at: Optional[str] = None
    checked_out_by: Optional[str] = None
    checked_out_at: Optional[str] = None

    @property
    def household_label(self) -> str:
        return self.household_id or NO_HOUSEHOLD

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> "Visitor":
        kwargs = {attr: item.get(stored) for attr, stored in _VISITOR_FIELDS.items() if item.get(stored) is not None}
        kwargs.setdefault("name", "")
        kwargs.setdefault("status", STATUS_PENDING)
        kwargs.setdefault("created_by", "")
        return cls(visitor_id=str(item.get("visitor_id") or item.get("id") or ""), **kwargs)

    def to_item(self) -> Dict[str, Any]:
        item: Dict[str, Any] = {"visitor_id": self.visitor_id}
        for attr, stored in _VISITOR_FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                item[stored] = value
        return item

    def to_public(self) -> Dict[str, Any]:
        out = self.to_item()
        out["id"] = out.pop("visitor_id")
        return out


# ---------------------------------------------------------------------------
# Audit events (tagged union keyed by event type)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VisitorEventPayload:
    visitor_id: str
    visitor_name: str
    household_id: str = NO_HOUSEHOLD

    @classmethod
    def for_visitor(cls, visitor: Visitor, **extra: Any) -> "VisitorEventPayload":
        return cls(
            visitor_id=visitor.visitor_id,
            visitor_name=visitor.name,
            household_id=visitor.household_label,
            **extra,
        )

    def to_item(self) -> Dict[str, Any]:
        return {
            "visitorId": self.visitor_id,
            "visitorName": self.visitor_name,
            "householdId": self.household_id,
        }

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> "VisitorEventPayload":
        return cls(
            visitor_id=str(item.get("visitorId") or ""),
            visitor_name=str(item.get("visitorName") or ""),
            household_id=str(item.get("householdId") or NO_HOUSEHOLD),
        )


@dataclass(frozen=True)
class DenialPayload(VisitorEventPayload):
    reason: str = DEFAULT_DENIAL_REASON

    def to_item(self) -> Dict[str, Any]:
        return {**super().to_item(), "reason": self.reason}

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> "DenialPayload":
        base = VisitorEventPayload.from_item(item)
        return cls(
            visitor_id=base.visitor_id,
            visitor_name=base.visitor_name,
            household_id=base.household_id,
            reason=str(item.get("reason") or DEFAULT_DENIAL_REASON),
        )


@dataclass(frozen=True)
class UserCreatedPayload:
    new_user_id: str
    new_user_email: str
    new_user_role: str
    household_id: str = NO_HOUSEHOLD

    def to_item(self) -> Dict[str, Any]:
        return {
            "newUserId": self.new_user_id,
            "newUserEmail": self.new_user_email,
            "newUserRole": self.new_user_role,
            "householdId": self.household_id,
        }

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> "UserCreatedPayload":
        return cls(
            new_user_id=str(item.get("newUserId") or ""),
            new_user_email=str(item.get("newUserEmail") or ""),
            new_user_role=str(item.get("newUserRole") or ""),
            household_id=str(item.get("householdId") or NO_HOUSEHOLD),
        )


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    actor_id: str
    payload: Any
    timestamp: str = ""
    event_id: str = ""

    PAYLOAD_TYPES: ClassVar[Dict[str, Type[Any]]] = {
        "approval": VisitorEventPayload,
        "denial": DenialPayload,
        "checkin": VisitorEventPayload,
        "checkout": VisitorEventPayload,
        "visitor_created": VisitorEventPayload,
        "user_created": UserCreatedPayload,
    }

    def __post_init__(self) -> None:
        expected = self.PAYLOAD_TYPES.get(self.event_type)
        if expected is None:
            raise ValueError(f"Unknown audit event type '{self.event_type}'")
        if type(self.payload) is not expected:
            raise ValueError(
                f"Audit event '{self.event_type}' requires {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.event_id,
            "type": self.event_type,
            "actorUserId": self.actor_id,
            "payload": self.payload.to_item(),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> "AuditEvent":
        event_type = str(item.get("type") or "")
        payload_type = cls.PAYLOAD_TYPES.get(event_type)
        if payload_type is None:
            raise ValueError(f"Unknown audit event type '{event_type}'")
        raw_payload = item.get("payload") or {}
        if not isinstance(raw_payload, dict):
            raise ValueError(f"Audit event payload must be a map, got {type(raw_payload).__name__}")
        return cls(
            event_type=event_type,
            actor_id=str(item.get("actorUserId") or ""),
            payload=payload_type.from_item(raw_payload),
            timestamp=str(item.get("timestamp") or ""),
            event_id=str(item.get("event_id") or ""),
        )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class DeliveryOutcome:
    DELIVERED = "delivered"
    SKIPPED = "skipped"
    TOKEN_INVALIDATED = "token_invalidated"
    FAILED = "failed"


@dataclass(frozen=True)
class Notification:
    recipient_id: str
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)

    def with_recipient(self, recipient_id: str) -> "Notification":
        return dataclasses.replace(self, recipient_id=recipient_id)
