"""completion.py — Minimal Anthropic Messages API client for the chat assistant.

The API key lives in Secrets Manager (plain string or a JSON object with an
``api_key`` field) and is cached for the life of the container. Every failure
surfaces as ``DependencyFailure`` so the route layer renders a 502.
"""
from __future__ import annotations

import json
import ssl
import time
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

import certifi
from botocore.exceptions import BotoCoreError, ClientError

from visitor_api.config import (
    ANTHROPIC_API_BASE_URL,
    ANTHROPIC_API_KEY_SECRET_ID,
    ANTHROPIC_API_TIMEOUT_SECONDS,
    ANTHROPIC_API_VERSION,
    ANTHROPIC_MODEL,
    CHAT_MAX_TOKENS,
    logger,
)
from visitor_api.errors import DependencyFailure
from visitor_api.observability import _emit_structured_observability

__all__ = ["CompletionClient", "_extract_api_key"]

_CERT_BUNDLE = certifi.where()


def _extract_api_key(secret_string: str) -> Optional[str]:
    raw = str(secret_string or "").strip()
    if not raw:
        return None
    if raw.startswith("{") and raw.endswith("}"):
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(payload, dict):
            return None
        for field in ("api_key", "anthropic_api_key", "key"):
            value = payload.get(field)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None
    return raw


class CompletionClient:
    def __init__(
        self,
        secretsmanager,
        *,
        secret_id: str = ANTHROPIC_API_KEY_SECRET_ID,
        model: str = ANTHROPIC_MODEL,
        max_tokens: int = CHAT_MAX_TOKENS,
        base_url: str = ANTHROPIC_API_BASE_URL,
        timeout: float = ANTHROPIC_API_TIMEOUT_SECONDS,
    ):
        self._secretsmanager = secretsmanager
        self._secret_id = secret_id
        self._model = model
        self._max_tokens = max_tokens
        self._endpoint = f"{base_url.rstrip('/')}/v1/messages"
        self._timeout = timeout
        self._api_key: Optional[str] = None

    def _key(self) -> str:
        if self._api_key:
            return self._api_key
        try:
            secret_string = self._secretsmanager.get_secret_value(SecretId=self._secret_id).get("SecretString") or ""
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "ClientError")
            raise DependencyFailure(f"Assistant credentials unavailable ({code})") from exc
        except BotoCoreError as exc:
            raise DependencyFailure(f"Assistant credentials unavailable ({exc.__class__.__name__})") from exc
        api_key = _extract_api_key(secret_string)
        if not api_key:
            raise DependencyFailure("Assistant credentials unavailable (empty secret)")
        self._api_key = api_key
        return api_key

    def create(
        self,
        *,
        system: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """POST one Messages API request and return the decoded response body."""
        body: Dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "system": system,
            "messages": messages,
        }
        if tools:
            body["tools"] = tools

        req = urllib.request.Request(
            url=self._endpoint,
            method="POST",
            data=json.dumps(body).encode("utf-8"),
            headers={
                "x-api-key": self._key(),
                "anthropic-version": ANTHROPIC_API_VERSION,
                "content-type": "application/json",
            },
        )
        context = ssl.create_default_context(cafile=_CERT_BUNDLE)
        started = time.perf_counter()
        try:
            with urllib.request.urlopen(req, timeout=self._timeout, context=context) as resp:
                raw_body = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:400]
            self._observe(started, f"http_{exc.code}")
            logger.error("[ERROR] assistant request failed (http_%s): %s", exc.code, detail)
            raise DependencyFailure(f"Assistant request failed (http_{exc.code})") from exc
        except (urllib.error.URLError, TimeoutError) as exc:
            self._observe(started, "url_error")
            raise DependencyFailure(f"Assistant request failed: {getattr(exc, 'reason', exc)}") from exc

        try:
            payload = json.loads(raw_body)
        except json.JSONDecodeError as exc:
            self._observe(started, "invalid_json")
            raise DependencyFailure("Assistant returned an unreadable response") from exc
        if not isinstance(payload, dict):
            self._observe(started, "invalid_json")
            raise DependencyFailure("Assistant returned an unreadable response")

        self._observe(started, "", stop_reason=payload.get("stop_reason"))
        return payload

    def _observe(self, started: float, error_code: str, **extra: Any) -> None:
        _emit_structured_observability(
            component="completion_client",
            event="messages_create",
            latency_ms=int((time.perf_counter() - started) * 1000),
            error_code=error_code,
            extra={"model": self._model, **extra},
        )
