"""gate_shared.auth — Cognito ID-token authentication for the Gate Lambdas.

Callers present a Cognito ID token as ``Authorization: Bearer <jwt>`` or in
the ``gate_id_token`` cookie (Cookie header or the HTTP API ``cookies``
array). Signatures are checked against the user pool's JWKS, fetched over a
certifi-verified connection and cached per container.

Trusted internal callers may skip the token by sending ``X-Gate-Internal-Key``
and naming the acting user in ``X-Gate-Actor-Id``.

Environment:
    COGNITO_USER_POOL_ID            pool whose JWKS signs the tokens (region_poolid)
    COGNITO_CLIENT_ID               expected ``aud`` claim
    GATE_INTERNAL_API_KEY           optional internal key
    GATE_INTERNAL_API_KEY_PREVIOUS  still accepted while a rotation is in flight
    GATE_INTERNAL_API_KEYS          optional comma-separated allowlist
"""

from __future__ import annotations

import hmac
import json
import logging
import os
import ssl
import time
import urllib.request
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

import certifi
import jwt
from jwt.algorithms import RSAAlgorithm

logger = logging.getLogger(__name__)

TOKEN_COOKIE_NAME = "gate_id_token"
INTERNAL_KEY_HEADER = "x-gate-internal-key"
ACTOR_HEADER = "x-gate-actor-id"

ErrorFn = Callable[[int, str], Dict[str, Any]]


def _normalize_api_keys(*sources: str) -> tuple[str, ...]:
    """Flatten scalar and comma-separated key sources, keeping first-seen order."""
    ordered: Dict[str, None] = {}
    for source in sources:
        for candidate in str(source or "").split(","):
            candidate = candidate.strip()
            if candidate:
                ordered.setdefault(candidate, None)
    return tuple(ordered)


COGNITO_USER_POOL_ID: str = os.environ.get("COGNITO_USER_POOL_ID", "")
COGNITO_CLIENT_ID: str = os.environ.get("COGNITO_CLIENT_ID", "")
INTERNAL_API_KEYS: tuple[str, ...] = _normalize_api_keys(
    os.environ.get("GATE_INTERNAL_API_KEYS", ""),
    os.environ.get("GATE_INTERNAL_API_KEY", ""),
    os.environ.get("GATE_INTERNAL_API_KEY_PREVIOUS", ""),
)

JWKS_TTL_SECONDS = 3600.0
JWKS_FETCH_TIMEOUT_SECONDS = 5

# kid -> public key, refreshed once the TTL lapses.
_signing_keys: Dict[str, Any] = {}
_signing_keys_loaded_at = 0.0


# ---------------------------------------------------------------------------
# Request inspection
# ---------------------------------------------------------------------------


def _header(event: Dict[str, Any], name: str) -> str:
    """Case-insensitive header lookup; returns '' when absent."""
    wanted = name.lower()
    for key, value in (event.get("headers") or {}).items():
        if str(key).lower() == wanted:
            return str(value or "")
    return ""


def _cookie_pairs(event: Dict[str, Any]) -> Iterator[str]:
    for chunk in _header(event, "cookie").split(";"):
        if chunk.strip():
            yield chunk.strip()
    cookies = event.get("cookies")
    if isinstance(cookies, str):
        cookies = [cookies]
    for chunk in cookies or []:
        if isinstance(chunk, str) and chunk.strip():
            yield chunk.strip()


def _extract_token(event: Dict[str, Any]) -> Optional[str]:
    """Bearer header wins; otherwise the first ``gate_id_token`` cookie."""
    scheme, _, credential = _header(event, "authorization").strip().partition(" ")
    if scheme.lower() == "bearer" and credential.strip():
        return credential.strip()

    for pair in _cookie_pairs(event):
        name, sep, value = pair.partition("=")
        if sep and name.strip() == TOKEN_COOKIE_NAME:
            return value or None
    return None


# ---------------------------------------------------------------------------
# Token verification
# ---------------------------------------------------------------------------


def _jwks_url() -> str:
    if not COGNITO_USER_POOL_ID:
        raise ValueError("COGNITO_USER_POOL_ID not set")
    region = COGNITO_USER_POOL_ID.split("_", 1)[0]
    return f"https://cognito-idp.{region}.amazonaws.com/{COGNITO_USER_POOL_ID}/.well-known/jwks.json"


def _signing_key(kid: Optional[str]) -> Any:
    global _signing_keys, _signing_keys_loaded_at
    fresh = _signing_keys and (time.time() - _signing_keys_loaded_at) < JWKS_TTL_SECONDS
    if not fresh:
        context = ssl.create_default_context(cafile=certifi.where())
        with urllib.request.urlopen(_jwks_url(), timeout=JWKS_FETCH_TIMEOUT_SECONDS, context=context) as resp:
            document = json.loads(resp.read())
        _signing_keys = {
            jwk["kid"]: RSAAlgorithm.from_jwk(json.dumps(jwk)) for jwk in document.get("keys", []) if jwk.get("kid")
        }
        _signing_keys_loaded_at = time.time()
    return _signing_keys.get(kid or "")


def _verify_token(token: str) -> Dict[str, Any]:
    """Validate a Cognito ID token and return its claims.

    Raises ValueError with a caller-safe message on any failure.
    """
    try:
        unverified = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise ValueError(f"Malformed token: {exc}") from exc
    if unverified.get("alg", "RS256") != "RS256":
        raise ValueError(f"Unsupported token algorithm: {unverified.get('alg')}")

    try:
        key = _signing_key(unverified.get("kid"))
    except OSError as exc:
        raise ValueError(f"Signing keys unavailable: {exc}") from exc
    if key is None:
        raise ValueError("Token signed with an unknown key")

    try:
        claims = jwt.decode(token, key, algorithms=["RS256"], audience=COGNITO_CLIENT_ID)
    except jwt.ExpiredSignatureError as exc:
        raise ValueError("Session expired. Please sign in again.") from exc
    except jwt.InvalidAudienceError as exc:
        raise ValueError("Token was issued for a different client.") from exc
    except jwt.PyJWTError as exc:
        raise ValueError(f"Token rejected: {exc}") from exc

    if claims.get("token_use", "id") != "id":
        raise ValueError("An ID token is required.")
    return claims


def _internal_key_matches(presented: str) -> bool:
    return any(hmac.compare_digest(presented, key) for key in INTERNAL_API_KEYS)


def _default_error(status_code: int, message: str) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps({"success": False, "error": message}),
    }


def _authenticate(
    event: Dict[str, Any],
    *,
    error_fn: Optional[ErrorFn] = None,
) -> Tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """Return ``(claims, None)`` for an authenticated caller, else ``(None, error_response)``.

    Internal-key callers get ``{"auth_mode": "internal-key", "actor_id": ...}``
    in place of token claims.
    """
    render = error_fn or _default_error

    presented_key = _header(event, INTERNAL_KEY_HEADER)
    if INTERNAL_API_KEYS and presented_key and _internal_key_matches(presented_key):
        return {"auth_mode": "internal-key", "actor_id": _header(event, ACTOR_HEADER).strip()}, None

    token = _extract_token(event)
    if not token:
        return None, render(401, "Authentication required. Please sign in.")
    try:
        return _verify_token(token), None
    except ValueError as exc:
        logger.info("[INFO] token rejected: %s", exc)
        return None, render(401, str(exc))
