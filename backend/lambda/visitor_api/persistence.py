"""persistence.py — Visitor and user DynamoDB persistence helpers.

Both stores wrap a low-level DynamoDB client handed in by the caller, so the
Lambda wires the shared singleton and tests can hand in a fake.
"""
from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional

from botocore.exceptions import ClientError

from gate_shared.serialization import _deserialize, _now_z, _serialize, _serialize_item
from visitor_api.config import (
    USERS_GSI_ROLE,
    USERS_TABLE,
    VISITORS_GSI_HOUSEHOLD,
    VISITORS_GSI_STATUS,
    VISITORS_TABLE,
    logger,
)
from visitor_api.models import TransitionRule, Visitor

__all__ = [
    "UserStore",
    "VisitorStore",
    "_is_conditional_check_failed",
]

# Never returned to callers, even if a legacy record still carries them.
_USER_PRIVATE_FIELDS = {"password", "passwordHash", "pushToken"}


def _is_conditional_check_failed(exc: Exception) -> bool:
    if not isinstance(exc, ClientError):
        return False
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _paginate(call, **kwargs: Any) -> Iterator[Dict[str, Any]]:
    """Yield deserialized items across LastEvaluatedKey pages."""
    while True:
        resp = call(**kwargs)
        for raw in resp.get("Items") or []:
            yield _deserialize(raw)
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            return
        kwargs["ExclusiveStartKey"] = last_key


# ---------------------------------------------------------------------------
# Visitors
# ---------------------------------------------------------------------------


class VisitorStore:
    def __init__(self, ddb, table_name: str = VISITORS_TABLE):
        self._ddb = ddb
        self._table = table_name

    @staticmethod
    def _key(visitor_id: str) -> Dict[str, Any]:
        return {"visitor_id": _serialize(visitor_id)}

    def get(self, visitor_id: str) -> Optional[Visitor]:
        resp = self._ddb.get_item(TableName=self._table, Key=self._key(visitor_id), ConsistentRead=True)
        raw = resp.get("Item")
        if not raw:
            return None
        return Visitor.from_item(_deserialize(raw))

    def put_new(self, visitor: Visitor) -> None:
        self._ddb.put_item(
            TableName=self._table,
            Item=_serialize_item(visitor.to_item()),
            ConditionExpression="attribute_not_exists(visitor_id)",
        )

    def transition(
        self,
        visitor_id: str,
        rule: TransitionRule,
        actor_id: str,
        *,
        timestamp: Optional[str] = None,
        extra: Optional[Dict[str, str]] = None,
    ) -> Optional[Visitor]:
        """Compare-and-swap the visitor's status along ``rule``.

        The write only lands while the stored status still equals
        ``rule.from_status`` and the rule's stamp is unset. Returns the updated
        visitor, or None when the condition failed (caller re-reads to report).
        """
        stamp_values = {rule.actor_field: actor_id, rule.time_field: timestamp or _now_z()}
        stamp_values.update(extra or {})

        names = {"#status": "status"}
        values = {
            ":next": _serialize(rule.to_status),
            ":expected": _serialize(rule.from_status),
        }
        assignments = ["#status = :next"]
        for idx, (attr, value) in enumerate(sorted(stamp_values.items())):
            names[f"#f{idx}"] = attr
            values[f":v{idx}"] = _serialize(value)
            assignments.append(f"#f{idx} = :v{idx}")
        names["#stamp"] = rule.actor_field

        try:
            resp = self._ddb.update_item(
                TableName=self._table,
                Key=self._key(visitor_id),
                UpdateExpression="SET " + ", ".join(assignments),
                ConditionExpression=(
                    "attribute_exists(visitor_id) AND #status = :expected AND attribute_not_exists(#stamp)"
                ),
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except ClientError as exc:
            if _is_conditional_check_failed(exc):
                logger.info(
                    "[INFO] conditional %s rejected for visitor %s (expected status %s)",
                    rule.operation,
                    visitor_id,
                    rule.from_status,
                )
                return None
            raise
        return Visitor.from_item(_deserialize(resp.get("Attributes") or {}))

    def list(self, *, status: Optional[str] = None, household_id: Optional[str] = None) -> List[Visitor]:
        if household_id:
            kwargs: Dict[str, Any] = {
                "TableName": self._table,
                "IndexName": VISITORS_GSI_HOUSEHOLD,
                "KeyConditionExpression": "householdId = :hid",
                "ExpressionAttributeValues": {":hid": _serialize(household_id)},
            }
            if status:
                kwargs["FilterExpression"] = "#status = :status"
                kwargs["ExpressionAttributeNames"] = {"#status": "status"}
                kwargs["ExpressionAttributeValues"][":status"] = _serialize(status)
            items = _paginate(self._ddb.query, **kwargs)
        elif status:
            items = _paginate(
                self._ddb.query,
                TableName=self._table,
                IndexName=VISITORS_GSI_STATUS,
                KeyConditionExpression="#status = :status",
                ExpressionAttributeNames={"#status": "status"},
                ExpressionAttributeValues={":status": _serialize(status)},
            )
        else:
            items = _paginate(self._ddb.scan, TableName=self._table)

        visitors = [Visitor.from_item(item) for item in items]
        visitors.sort(key=lambda v: v.created_at or "", reverse=True)
        return visitors


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    def __init__(self, ddb, table_name: str = USERS_TABLE):
        self._ddb = ddb
        self._table = table_name

    @staticmethod
    def _key(user_id: str) -> Dict[str, Any]:
        return {"user_id": _serialize(user_id)}

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        resp = self._ddb.get_item(TableName=self._table, Key=self._key(user_id), ConsistentRead=True)
        raw = resp.get("Item")
        if not raw:
            return None
        return _deserialize(raw)

    def ids_with_role(self, role: str) -> List[str]:
        items = _paginate(
            self._ddb.query,
            TableName=self._table,
            IndexName=USERS_GSI_ROLE,
            KeyConditionExpression="#role = :role",
            ExpressionAttributeNames={"#role": "role"},
            ExpressionAttributeValues={":role": _serialize(role)},
        )
        return [str(item["user_id"]) for item in items if item.get("user_id")]

    def push_token(self, user_id: str) -> Optional[str]:
        user = self.get(user_id)
        if not user:
            return None
        token = str(user.get("pushToken") or "").strip()
        return token or None

    def set_push_token(self, user_id: str, token: str) -> None:
        self._ddb.update_item(
            TableName=self._table,
            Key=self._key(user_id),
            UpdateExpression="SET pushToken = :token, pushTokenUpdatedAt = :ts",
            ConditionExpression="attribute_exists(user_id)",
            ExpressionAttributeValues={
                ":token": _serialize(token),
                ":ts": _serialize(_now_z()),
            },
        )

    def clear_push_token(self, user_id: str, stale_token: str) -> bool:
        """Remove ``stale_token`` if it is still the stored token.

        Returns False (no-op) when the token was already cleared or has been
        replaced by a fresh registration.
        """
        try:
            self._ddb.update_item(
                TableName=self._table,
                Key=self._key(user_id),
                UpdateExpression="REMOVE pushToken, pushTokenUpdatedAt",
                ConditionExpression="pushToken = :stale",
                ExpressionAttributeValues={":stale": _serialize(stale_token)},
            )
        except ClientError as exc:
            if _is_conditional_check_failed(exc):
                return False
            raise
        return True

    def list_users(self) -> List[Dict[str, Any]]:
        users = []
        for item in _paginate(self._ddb.scan, TableName=self._table):
            public = {k: v for k, v in item.items() if k not in _USER_PRIVATE_FIELDS}
            public["userId"] = public.pop("user_id", "")
            public["notificationsEnabled"] = bool(item.get("pushToken"))
            users.append(public)
        users.sort(key=lambda u: str(u.get("email") or ""))
        return users
