"""notifications.py — Best-effort push delivery with self-healing token cleanup.

Delivery tokens are SNS mobile-push platform endpoint ARNs stored on the
user record. A send never raises: every failure is folded into a
``DeliveryOutcome`` and logged. When SNS reports the endpoint as disabled
or gone, the stored token is cleared so later fan-outs skip it.
"""
from __future__ import annotations

import json
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Dict, List, Sequence, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from visitor_api.config import NOTIFICATION_FANOUT_TIMEOUT_SECONDS, NOTIFICATION_FANOUT_WORKERS, logger
from visitor_api.models import DeliveryOutcome, Notification
from visitor_api.observability import _emit_structured_observability

__all__ = [
    "NotificationDispatcher",
    "_STALE_TOKEN_ERROR_CODES",
    "_build_push_message",
]

_STALE_TOKEN_ERROR_CODES = {
    "EndpointDisabled",
    "EndpointDisabledException",
    "NotFound",
    "NotFoundException",
}


def _build_push_message(notification: Notification) -> str:
    data = {str(k): str(v) for k, v in notification.data.items()}
    gcm = {
        "notification": {"title": notification.title, "body": notification.body},
        "data": data,
    }
    apns = {
        "aps": {"alert": {"title": notification.title, "body": notification.body}},
        **data,
    }
    return json.dumps(
        {
            "default": notification.body,
            "GCM": json.dumps(gcm),
            "APNS": json.dumps(apns),
        }
    )


class NotificationDispatcher:
    def __init__(
        self,
        users,
        sns,
        *,
        max_workers: int = NOTIFICATION_FANOUT_WORKERS,
        fanout_timeout: float = NOTIFICATION_FANOUT_TIMEOUT_SECONDS,
    ):
        self._users = users
        self._sns = sns
        self._max_workers = max(1, max_workers)
        self._fanout_timeout = fanout_timeout

    def send(self, notification: Notification) -> str:
        recipient = notification.recipient_id
        started = time.perf_counter()
        try:
            token = self._users.push_token(recipient)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("[NOTIFY] token lookup failed for %s: %s", recipient, exc)
            return self._record(notification, DeliveryOutcome.FAILED, started, error_code="token_lookup_failed")
        if not token:
            return self._record(notification, DeliveryOutcome.SKIPPED, started)

        try:
            self._sns.publish(
                TargetArn=token,
                Message=_build_push_message(notification),
                MessageStructure="json",
            )
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "ClientError")
            if code in _STALE_TOKEN_ERROR_CODES:
                self._invalidate_token(recipient, token)
                return self._record(notification, DeliveryOutcome.TOKEN_INVALIDATED, started, error_code=code)
            logger.warning("[NOTIFY] delivery to %s failed (%s): %s", recipient, code, exc)
            return self._record(notification, DeliveryOutcome.FAILED, started, error_code=code)
        except BotoCoreError as exc:
            logger.warning("[NOTIFY] delivery to %s failed: %s", recipient, exc)
            return self._record(notification, DeliveryOutcome.FAILED, started, error_code=exc.__class__.__name__)

        return self._record(notification, DeliveryOutcome.DELIVERED, started)

    def _invalidate_token(self, recipient: str, token: str) -> None:
        try:
            cleared = self._users.clear_push_token(recipient, token)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("[NOTIFY] failed clearing stale token for %s: %s", recipient, exc)
            return
        if cleared:
            logger.info("[NOTIFY] cleared stale push token for %s", recipient)

    def _record(self, notification: Notification, outcome: str, started: float, error_code: str = "") -> str:
        _emit_structured_observability(
            component="notification_dispatcher",
            event="push_send",
            visitor_id=notification.data.get("visitorId"),
            latency_ms=int((time.perf_counter() - started) * 1000),
            error_code=error_code,
            extra={
                "recipient_id": notification.recipient_id,
                "outcome": outcome,
                "notification_type": notification.data.get("type", ""),
            },
        )
        return outcome

    def fan_out(self, notifications: Sequence[Notification]) -> List[Tuple[str, str]]:
        """Send concurrently; returns (recipient_id, outcome) pairs.

        Duplicate (recipient, title) pairs are sent once. Sends still running
        when the fan-out deadline passes are reported as ``failed``.
        """
        unique: Dict[Tuple[str, str], Notification] = {}
        for notification in notifications:
            if notification.recipient_id:
                unique.setdefault((notification.recipient_id, notification.title), notification)
        if not unique:
            return []

        results: List[Tuple[str, str]] = []
        collected = set()
        pool = ThreadPoolExecutor(max_workers=min(len(unique), self._max_workers))
        futures = {pool.submit(self.send, n): n for n in unique.values()}
        try:
            for future in as_completed(futures, timeout=self._fanout_timeout):
                collected.add(future)
                results.append((futures[future].recipient_id, future.result()))
        except FuturesTimeoutError:
            pending = [n.recipient_id for f, n in futures.items() if f not in collected]
            logger.warning("[NOTIFY] fan-out deadline exceeded; %d sends abandoned: %s", len(pending), pending)
            results.extend((recipient, DeliveryOutcome.FAILED) for recipient in pending)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return results
