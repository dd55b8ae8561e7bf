"""audit.py — Append-only audit event log.

Events are written with a server-assigned millisecond timestamp and never
updated. The recent-first read pages through a GSI whose partition key is
the constant ``stream`` attribute and whose sort key is ``sortKey``
(``<timestamp>#<event_id>``), so events in the same millisecond still come
back in one stable order.
"""
from __future__ import annotations

import uuid
from typing import List, Optional

from gate_shared.serialization import _deserialize, _now_ms_z, _serialize, _serialize_item, _unix_now
from visitor_api.config import AUDIT_PAGE_DEFAULT, AUDIT_PAGE_MAX, AUDIT_STREAM_KEY, EVENTS_GSI_RECENT, EVENTS_TABLE, logger
from visitor_api.models import AuditEvent
from visitor_api.observability import _emit_structured_observability

__all__ = ["AuditLog", "_clamp_page_size"]


def _clamp_page_size(raw: Optional[object]) -> int:
    try:
        value = int(raw) if raw not in (None, "") else AUDIT_PAGE_DEFAULT
    except (TypeError, ValueError):
        value = AUDIT_PAGE_DEFAULT
    return max(1, min(AUDIT_PAGE_MAX, value))


class AuditLog:
    def __init__(self, ddb, table_name: str = EVENTS_TABLE):
        self._ddb = ddb
        self._table = table_name

    def append(self, event_type: str, actor_id: str, payload) -> AuditEvent:
        """Write one immutable event. Raises ValueError for an unknown type or a payload of the wrong shape."""
        event = AuditEvent(
            event_type=event_type,
            actor_id=actor_id,
            payload=payload,
            timestamp=_now_ms_z(),
            event_id=f"EVT-{uuid.uuid4().hex[:20].upper()}",
        )
        item = {
            "event_id": event.event_id,
            "stream": AUDIT_STREAM_KEY,
            "type": event.event_type,
            "actorUserId": event.actor_id,
            "payload": event.payload.to_item(),
            "timestamp": event.timestamp,
            "sortKey": f"{event.timestamp}#{event.event_id}",
            "timestamp_epoch": _unix_now(),
        }
        self._ddb.put_item(
            TableName=self._table,
            Item=_serialize_item(item),
            ConditionExpression="attribute_not_exists(event_id)",
        )
        _emit_structured_observability(
            component="audit_log",
            event="audit_append",
            visitor_id=item["payload"].get("visitorId"),
            actor_id=actor_id,
            extra={"event_type": event_type, "event_id": event.event_id},
        )
        return event

    def recent(self, limit: Optional[object] = None) -> List[AuditEvent]:
        page_size = _clamp_page_size(limit)
        resp = self._ddb.query(
            TableName=self._table,
            IndexName=EVENTS_GSI_RECENT,
            KeyConditionExpression="#stream = :stream",
            ExpressionAttributeNames={"#stream": "stream"},
            ExpressionAttributeValues={":stream": _serialize(AUDIT_STREAM_KEY)},
            ScanIndexForward=False,
            Limit=page_size,
        )
        events: List[AuditEvent] = []
        for raw in resp.get("Items") or []:
            try:
                events.append(AuditEvent.from_item(_deserialize(raw)))
            except ValueError as exc:
                logger.warning("Skipping unreadable audit event: %s", exc)
        return events
