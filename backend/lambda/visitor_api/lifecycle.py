"""lifecycle.py — Visitor lifecycle state machine, audit logging and notification fan-out.

Every transition is one read-validate-write against a single visitor record:

    role check -> load -> status check -> conditional write -> audit -> notify

The role and status checks both run before the write, and either one
failing aborts with nothing written. The write itself is a compare-and-swap
on ``status``, so two callers racing on the same record cannot both win.
Audit and notification side effects run only after the write has landed and
never change the caller's outcome.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from botocore.exceptions import ClientError

from gate_shared.serialization import _now_z
from visitor_api.config import (
    ADMIN_ROLE,
    DEFAULT_DENIAL_REASON,
    DEFAULT_PHONE,
    DEFAULT_PURPOSE,
    GUARD_ROLE,
    MAX_NAME_LENGTH,
    MAX_REASON_LENGTH,
    RESIDENT_ROLE,
    VALID_ROLES,
    logger,
)
from visitor_api.errors import Forbidden, InvalidTransition, NotFound, ValidationError
from visitor_api.models import (
    AuditEvent,
    LIFECYCLE_RULES,
    LISTABLE_STATUSES,
    STATUS_PENDING,
    DenialPayload,
    Identity,
    Notification,
    TransitionRule,
    Visitor,
    VisitorEventPayload,
)
from visitor_api.observability import _emit_structured_observability
from visitor_api.persistence import _is_conditional_check_failed

__all__ = [
    "TransitionResult",
    "VisitorLifecycle",
    "_normalize_reason",
    "_require_visitor_id",
]

_OPERATION_VERBS = {
    "approve": "approve",
    "deny": "deny",
    "checkin": "check in",
    "checkout": "check out",
}

_SUCCESS_MESSAGES = {
    "approve": "Visitor {name} approved",
    "deny": "Visitor {name} denied",
    "checkin": "Visitor {name} checked in",
    "checkout": "Visitor {name} checked out",
}


@dataclass
class TransitionResult:
    visitor: Visitor
    message: str
    deliveries: List[Tuple[str, str]] = field(default_factory=list)


def _require_visitor_id(raw: Any) -> str:
    visitor_id = str(raw or "").strip()
    if not visitor_id:
        raise ValidationError("visitorId is required")
    return visitor_id


def _normalize_reason(raw: Any) -> str:
    reason = str(raw or "").strip()
    if not reason:
        return DEFAULT_DENIAL_REASON
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationError(f"reason exceeds maximum length of {MAX_REASON_LENGTH} characters")
    return reason


def _invalid_transition(rule: TransitionRule, current_status: str) -> InvalidTransition:
    return InvalidTransition(
        f"Cannot {_OPERATION_VERBS[rule.operation]} visitor with status '{current_status}'; "
        f"visitor must be '{rule.from_status}'",
        current_status=current_status,
        details={"currentStatus": current_status, "requiredStatus": rule.from_status},
    )


def _visitor_data(visitor: Visitor, notification_type: str, **extra: str) -> Dict[str, str]:
    data = {"type": notification_type, "visitorId": visitor.visitor_id, "visitorName": visitor.name}
    data.update(extra)
    return data


class VisitorLifecycle:
    def __init__(self, visitors, users, audit, notifier):
        self._visitors = visitors
        self._users = users
        self._audit = audit
        self._notifier = notifier

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def approve(self, identity: Identity, visitor_id: Any) -> TransitionResult:
        return self._transition(identity, visitor_id, "approve")

    def deny(self, identity: Identity, visitor_id: Any, reason: Any = None) -> TransitionResult:
        return self._transition(identity, visitor_id, "deny", reason=reason)

    def check_in(self, identity: Identity, visitor_id: Any) -> TransitionResult:
        return self._transition(identity, visitor_id, "checkin")

    def check_out(self, identity: Identity, visitor_id: Any) -> TransitionResult:
        return self._transition(identity, visitor_id, "checkout")

    def _transition(
        self,
        identity: Identity,
        raw_visitor_id: Any,
        operation: str,
        *,
        reason: Any = None,
    ) -> TransitionResult:
        rule = LIFECYCLE_RULES[operation]
        visitor_id = _require_visitor_id(raw_visitor_id)
        if identity.role not in rule.allowed_roles:
            raise Forbidden(rule.forbidden_message)

        extra: Dict[str, str] = {}
        if operation == "deny":
            extra["denialReason"] = _normalize_reason(reason)

        current = self._visitors.get(visitor_id)
        if current is None:
            raise NotFound(f"Visitor not found: {visitor_id}")
        if current.status != rule.from_status:
            raise _invalid_transition(rule, current.status)

        started = time.perf_counter()
        updated = self._visitors.transition(visitor_id, rule, identity.uid, extra=extra)
        if updated is None:
            # Lost the compare-and-swap: report what the record holds now.
            latest = self._visitors.get(visitor_id)
            if latest is None:
                raise NotFound(f"Visitor not found: {visitor_id}")
            raise _invalid_transition(rule, latest.status)

        _emit_structured_observability(
            component="visitor_lifecycle",
            event="state_transition",
            visitor_id=visitor_id,
            actor_id=identity.uid,
            latency_ms=int((time.perf_counter() - started) * 1000),
            extra={"operation": operation, "from_status": rule.from_status, "to_status": rule.to_status},
        )

        if operation == "deny":
            payload = DenialPayload.for_visitor(updated, reason=extra["denialReason"])
        else:
            payload = VisitorEventPayload.for_visitor(updated)
        self._append_audit(rule.audit_type, identity.uid, payload)
        deliveries = self._notify(self._transition_notifications(rule, updated))

        return TransitionResult(
            visitor=updated,
            message=_SUCCESS_MESSAGES[operation].format(name=updated.name),
            deliveries=deliveries,
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_visitor(
        self,
        identity: Identity,
        name: Any,
        phone: Any = None,
        purpose: Any = None,
    ) -> Visitor:
        """Insert a ``pending`` visitor for the calling resident's household.

        Creation side effects are driven by the table stream (see
        ``record_created``), so they fire once per inserted record.
        """
        if identity.role != RESIDENT_ROLE:
            raise Forbidden("Only residents can request visitor passes")
        if not identity.household_id:
            raise ValidationError("Residents must belong to a household to request visitor passes")
        clean_name = str(name or "").strip()
        if not clean_name:
            raise ValidationError("name is required")
        if len(clean_name) > MAX_NAME_LENGTH:
            raise ValidationError(f"name exceeds maximum length of {MAX_NAME_LENGTH} characters")

        visitor = Visitor(
            visitor_id=uuid.uuid4().hex,
            name=clean_name,
            status=STATUS_PENDING,
            created_by=identity.uid,
            phone=str(phone or "").strip() or DEFAULT_PHONE,
            purpose=str(purpose or "").strip() or DEFAULT_PURPOSE,
            household_id=identity.household_id,
            created_at=_now_z(),
        )
        self._visitors.put_new(visitor)
        logger.info("[INFO] visitor %s created by %s", visitor.visitor_id, identity.uid)
        return visitor

    def record_created(self, visitor: Visitor) -> List[Tuple[str, str]]:
        """Side effects of a newly inserted pending visitor: audit, creator and admin notifications."""
        self._append_audit("visitor_created", visitor.created_by, VisitorEventPayload.for_visitor(visitor))
        notifications = [
            Notification(
                recipient_id=visitor.created_by,
                title="Visitor Request Created",
                body=f"Your request for {visitor.name} has been created and is pending approval.",
                data=_visitor_data(visitor, "visitor_created"),
            )
        ]
        template = Notification(
            recipient_id="",
            title="New Visitor Request",
            body=f"{visitor.name} ({visitor.household_label}) is awaiting approval.",
            data=_visitor_data(visitor, "new_pending_visitor"),
        )
        notifications.extend(template.with_recipient(uid) for uid in self._role_members(ADMIN_ROLE))
        return self._notify(notifications)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_visitors(self, identity: Identity, status: Any = "all") -> List[Visitor]:
        wanted = str(status or "all").strip().lower()
        if wanted not in LISTABLE_STATUSES:
            raise ValidationError(
                f"status must be one of: {', '.join(sorted(LISTABLE_STATUSES))}"
            )
        status_filter = None if wanted == "all" else wanted

        if identity.role not in VALID_ROLES:
            raise Forbidden("Unknown role")
        if identity.role == RESIDENT_ROLE:
            if not identity.household_id:
                return []
            return self._visitors.list(status=status_filter, household_id=identity.household_id)
        return self._visitors.list(status=status_filter)

    def recent_events(self, identity: Identity, limit: Any = None) -> List[AuditEvent]:
        if identity.role != ADMIN_ROLE:
            raise Forbidden("Only admins can view the audit log")
        return self._audit.recent(limit)

    def list_users(self, identity: Identity) -> List[Dict[str, Any]]:
        if identity.role != ADMIN_ROLE:
            raise Forbidden("Only admins can list users")
        return self._users.list_users()

    def register_push_token(self, identity: Identity, token: Any) -> None:
        clean = str(token or "").strip()
        if not clean:
            raise ValidationError("token is required")
        try:
            self._users.set_push_token(identity.uid, clean)
        except ClientError as exc:
            if _is_conditional_check_failed(exc):
                raise NotFound(f"User profile not found: {identity.uid}")
            raise
        logger.info("[INFO] push token registered for %s", identity.uid)

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def _transition_notifications(self, rule: TransitionRule, visitor: Visitor) -> List[Notification]:
        creator = visitor.created_by
        if rule.operation == "approve":
            notifications = [
                Notification(
                    recipient_id=creator,
                    title="Visitor Approved",
                    body=f"{visitor.name} has been approved.",
                    data=_visitor_data(visitor, "visitor_approved"),
                )
            ]
            template = Notification(
                recipient_id="",
                title="New Approved Visitor",
                body=f"{visitor.name} ({visitor.household_label}) is approved and ready for check-in.",
                data=_visitor_data(visitor, "approved_visitor_ready"),
            )
            notifications.extend(template.with_recipient(uid) for uid in self._role_members(GUARD_ROLE))
            return notifications
        if rule.operation == "deny":
            reason = visitor.denial_reason or DEFAULT_DENIAL_REASON
            return [
                Notification(
                    recipient_id=creator,
                    title="Visitor Denied",
                    body=f"Your request for {visitor.name} was denied. Reason: {reason}",
                    data=_visitor_data(visitor, "visitor_denied", reason=reason),
                )
            ]
        if rule.operation == "checkin":
            return [
                Notification(
                    recipient_id=creator,
                    title="Visitor Checked In",
                    body=f"{visitor.name} has checked in at the gate.",
                    data=_visitor_data(visitor, "visitor_checked_in"),
                )
            ]
        return []

    def _role_members(self, role: str) -> List[str]:
        try:
            return self._users.ids_with_role(role)
        except Exception as exc:
            logger.warning("[WARNING] could not resolve %s recipients: %s", role, exc)
            return []

    def _append_audit(self, event_type: str, actor_id: str, payload: Any) -> None:
        try:
            self._audit.append(event_type, actor_id, payload)
        except Exception as exc:
            logger.error(
                "[ERROR] audit append failed after write (type=%s visitor=%s): %s",
                event_type,
                getattr(payload, "visitor_id", ""),
                exc,
            )
            _emit_structured_observability(
                component="visitor_lifecycle",
                event="dependency_failure",
                visitor_id=getattr(payload, "visitor_id", ""),
                actor_id=actor_id,
                error_code="audit_append_failed",
                extra={"event_type": event_type},
            )

    def _notify(self, notifications: List[Notification]) -> List[Tuple[str, str]]:
        try:
            return self._notifier.fan_out(notifications)
        except Exception as exc:
            logger.error("[ERROR] notification fan-out failed after write: %s", exc)
            return []
