"""conftest.py — In-memory stand-ins for the DynamoDB stores, audit log and SNS."""
from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional

import pytest
from botocore.exceptions import ClientError

from visitor_api.audit import _clamp_page_size
from visitor_api.lifecycle import VisitorLifecycle
from visitor_api.models import AuditEvent, Identity, TransitionRule, Visitor
from visitor_api.notifications import NotificationDispatcher


def client_error(code: str, operation: str = "UpdateItem") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def endpoint_arn(user_id: str) -> str:
    return f"arn:aws:sns:us-west-2:123456789012:endpoint/GCM/gate-app/{user_id}"


class FakeVisitorStore:
    """Dict-backed VisitorStore with a lock-guarded compare-and-swap."""

    def __init__(self):
        self.records: Dict[str, Visitor] = {}
        self.transition_calls = 0
        self._lock = threading.Lock()
        self._barrier: Optional[threading.Barrier] = None
        self._barrier_uses = 0

    def hold_first_reads(self, parties: int) -> None:
        """Make the next ``parties`` reads wait for each other before returning."""
        self._barrier = threading.Barrier(parties)
        self._barrier_uses = parties

    def seed(self, visitor_id: str, status: str, **fields: Any) -> Visitor:
        fields.setdefault("name", f"Guest {visitor_id}")
        fields.setdefault("created_by", "resident-1")
        fields.setdefault("household_id", "A-101")
        fields.setdefault("created_at", "2026-10-01T09:00:00Z")
        visitor = Visitor(visitor_id=visitor_id, status=status, **fields)
        self.records[visitor_id] = visitor
        return visitor

    def get(self, visitor_id: str) -> Optional[Visitor]:
        with self._lock:
            wait = self._barrier is not None and self._barrier_uses > 0
            if wait:
                self._barrier_uses -= 1
            current = self.records.get(visitor_id)
            snapshot = Visitor.from_item(current.to_item()) if current else None
        if wait:
            self._barrier.wait(timeout=5)
        return snapshot

    def put_new(self, visitor: Visitor) -> None:
        with self._lock:
            if visitor.visitor_id in self.records:
                raise client_error("ConditionalCheckFailedException", "PutItem")
            self.records[visitor.visitor_id] = visitor

    def transition(
        self,
        visitor_id: str,
        rule: TransitionRule,
        actor_id: str,
        *,
        timestamp: Optional[str] = None,
        extra: Optional[Dict[str, str]] = None,
    ) -> Optional[Visitor]:
        with self._lock:
            self.transition_calls += 1
            current = self.records.get(visitor_id)
            if current is None or current.status != rule.from_status:
                return None
            item = current.to_item()
            if item.get(rule.actor_field):
                return None
            item.update(
                {
                    "status": rule.to_status,
                    rule.actor_field: actor_id,
                    rule.time_field: timestamp or "2026-10-01T10:00:00Z",
                }
            )
            item.update(extra or {})
            updated = Visitor.from_item(item)
            self.records[visitor_id] = updated
            return Visitor.from_item(updated.to_item())

    def list(self, *, status: Optional[str] = None, household_id: Optional[str] = None) -> List[Visitor]:
        visitors = [
            v
            for v in self.records.values()
            if (status is None or v.status == status) and (household_id is None or v.household_id == household_id)
        ]
        return sorted(visitors, key=lambda v: v.created_at or "", reverse=True)


class FakeUserStore:
    def __init__(self, users: Optional[Dict[str, Dict[str, Any]]] = None):
        self.users: Dict[str, Dict[str, Any]] = users or {}
        self.clear_calls = 0
        self._lock = threading.Lock()

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        user = self.users.get(user_id)
        return dict(user, user_id=user_id) if user else None

    def ids_with_role(self, role: str) -> List[str]:
        return sorted(uid for uid, user in self.users.items() if user.get("role") == role)

    def push_token(self, user_id: str) -> Optional[str]:
        return (self.users.get(user_id) or {}).get("pushToken") or None

    def set_push_token(self, user_id: str, token: str) -> None:
        if user_id not in self.users:
            raise client_error("ConditionalCheckFailedException")
        self.users[user_id]["pushToken"] = token

    def clear_push_token(self, user_id: str, stale_token: str) -> bool:
        with self._lock:
            self.clear_calls += 1
            user = self.users.get(user_id) or {}
            if user.get("pushToken") != stale_token:
                return False
            del user["pushToken"]
            return True

    def list_users(self) -> List[Dict[str, Any]]:
        out = []
        for uid, user in sorted(self.users.items()):
            public = {k: v for k, v in user.items() if k not in ("password", "pushToken")}
            public["userId"] = uid
            public["notificationsEnabled"] = bool(user.get("pushToken"))
            out.append(public)
        return out


class FakeAuditLog:
    def __init__(self):
        self.events: List[AuditEvent] = []
        self.fail_with: Optional[Exception] = None

    def append(self, event_type: str, actor_id: str, payload) -> AuditEvent:
        if self.fail_with is not None:
            raise self.fail_with
        event = AuditEvent(
            event_type=event_type,
            actor_id=actor_id,
            payload=payload,
            timestamp=f"2026-10-01T10:{len(self.events):02d}:00Z",
            event_id=f"EVT-{len(self.events) + 1}",
        )
        self.events.append(event)
        return event

    def recent(self, limit=None) -> List[AuditEvent]:
        return list(reversed(self.events))[: _clamp_page_size(limit)]

    def of_type(self, event_type: str) -> List[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type]


class FakeSns:
    """Records publishes; ``errors`` maps a TargetArn to the error code it raises."""

    def __init__(self):
        self.published: List[Dict[str, Any]] = []
        self.errors: Dict[str, str] = {}
        self._lock = threading.Lock()

    def publish(self, **kwargs: Any) -> Dict[str, Any]:
        code = self.errors.get(kwargs.get("TargetArn"))
        if code:
            raise client_error(code, "Publish")
        with self._lock:
            self.published.append(kwargs)
        return {"MessageId": f"msg-{len(self.published)}"}

    def targets(self) -> List[str]:
        return sorted(p["TargetArn"] for p in self.published)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def users() -> FakeUserStore:
    return FakeUserStore(
        {
            "admin-1": {"role": "admin", "email": "admin1@gate.test", "pushToken": endpoint_arn("admin-1")},
            "admin-2": {"role": "admin", "email": "admin2@gate.test"},
            "guard-1": {"role": "guard", "email": "guard1@gate.test", "pushToken": endpoint_arn("guard-1")},
            "guard-2": {"role": "guard", "email": "guard2@gate.test", "pushToken": endpoint_arn("guard-2")},
            "resident-1": {
                "role": "resident",
                "email": "res1@gate.test",
                "householdId": "A-101",
                "pushToken": endpoint_arn("resident-1"),
            },
            "resident-2": {"role": "resident", "email": "res2@gate.test", "householdId": "B-202"},
        }
    )


@pytest.fixture
def visitors() -> FakeVisitorStore:
    return FakeVisitorStore()


@pytest.fixture
def audit() -> FakeAuditLog:
    return FakeAuditLog()


@pytest.fixture
def sns() -> FakeSns:
    return FakeSns()


@pytest.fixture
def dispatcher(users, sns) -> NotificationDispatcher:
    return NotificationDispatcher(users, sns, max_workers=4, fanout_timeout=5)


@pytest.fixture
def engine(visitors, users, audit, dispatcher) -> VisitorLifecycle:
    return VisitorLifecycle(visitors, users, audit, dispatcher)


@pytest.fixture
def admin() -> Identity:
    return Identity(uid="admin-1", role="admin", email="admin1@gate.test")


@pytest.fixture
def guard() -> Identity:
    return Identity(uid="guard-1", role="guard", email="guard1@gate.test")


@pytest.fixture
def resident() -> Identity:
    return Identity(uid="resident-1", role="resident", household_id="A-101", email="res1@gate.test")
