"""config.py — Environment variables, roles, record defaults and logging."""
from __future__ import annotations

import logging
import os

__all__ = [
    "ADMIN_ROLE",
    "ANTHROPIC_API_BASE_URL",
    "ANTHROPIC_API_KEY_SECRET_ID",
    "ANTHROPIC_API_TIMEOUT_SECONDS",
    "ANTHROPIC_API_VERSION",
    "ANTHROPIC_MODEL",
    "API_PREFIX",
    "AUDIT_PAGE_DEFAULT",
    "AUDIT_PAGE_MAX",
    "AUDIT_STREAM_KEY",
    "CHAT_HISTORY_MAX_TURNS",
    "CHAT_MAX_TOKENS",
    "DEFAULT_DENIAL_REASON",
    "DEFAULT_PHONE",
    "DEFAULT_PURPOSE",
    "EVENTS_GSI_RECENT",
    "EVENTS_TABLE",
    "GUARD_ROLE",
    "MAX_NAME_LENGTH",
    "MAX_REASON_LENGTH",
    "NO_HOUSEHOLD",
    "NOTIFICATION_FANOUT_TIMEOUT_SECONDS",
    "NOTIFICATION_FANOUT_WORKERS",
    "RESIDENT_ROLE",
    "USERS_GSI_ROLE",
    "USERS_TABLE",
    "VALID_ROLES",
    "VISITORS_GSI_HOUSEHOLD",
    "VISITORS_GSI_STATUS",
    "VISITORS_TABLE",
    "logger",
]

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

VISITORS_TABLE = os.environ.get("VISITORS_TABLE", "gate-visitors")
USERS_TABLE = os.environ.get("USERS_TABLE", "gate-users")
EVENTS_TABLE = os.environ.get("EVENTS_TABLE", "gate-events")
VISITORS_GSI_HOUSEHOLD = os.environ.get("VISITORS_GSI_HOUSEHOLD", "householdId-index")
VISITORS_GSI_STATUS = os.environ.get("VISITORS_GSI_STATUS", "status-index")
USERS_GSI_ROLE = os.environ.get("USERS_GSI_ROLE", "role-index")
EVENTS_GSI_RECENT = os.environ.get("EVENTS_GSI_RECENT", "stream-sortKey-index")

API_PREFIX = os.environ.get("API_PREFIX", "/api").rstrip("/")

NOTIFICATION_FANOUT_WORKERS = int(os.environ.get("NOTIFICATION_FANOUT_WORKERS", "8"))
NOTIFICATION_FANOUT_TIMEOUT_SECONDS = float(os.environ.get("NOTIFICATION_FANOUT_TIMEOUT_SECONDS", "10"))

AUDIT_PAGE_DEFAULT = int(os.environ.get("AUDIT_PAGE_DEFAULT", "15"))
AUDIT_PAGE_MAX = int(os.environ.get("AUDIT_PAGE_MAX", "100"))
# Every event shares one partition on the recent-first index.
AUDIT_STREAM_KEY = "events"

ANTHROPIC_API_BASE_URL = os.environ.get("ANTHROPIC_API_BASE_URL", "https://api.anthropic.com")
ANTHROPIC_API_VERSION = os.environ.get("ANTHROPIC_API_VERSION", "2023-06-01")
ANTHROPIC_API_KEY_SECRET_ID = os.environ.get("ANTHROPIC_API_KEY_SECRET_ID", "gate/anthropic-api-key")
ANTHROPIC_MODEL = os.environ.get("ANTHROPIC_MODEL", "claude-sonnet-4-20250514")
ANTHROPIC_API_TIMEOUT_SECONDS = int(os.environ.get("ANTHROPIC_API_TIMEOUT_SECONDS", "20"))
CHAT_MAX_TOKENS = int(os.environ.get("CHAT_MAX_TOKENS", "1024"))
CHAT_HISTORY_MAX_TURNS = int(os.environ.get("CHAT_HISTORY_MAX_TURNS", "20"))

# ---------------------------------------------------------------------------
# Roles and record defaults
# ---------------------------------------------------------------------------

ADMIN_ROLE = "admin"
GUARD_ROLE = "guard"
RESIDENT_ROLE = "resident"
VALID_ROLES = frozenset({ADMIN_ROLE, GUARD_ROLE, RESIDENT_ROLE})

DEFAULT_PHONE = "N/A"
DEFAULT_PURPOSE = "General visit"
DEFAULT_DENIAL_REASON = "No reason provided"
NO_HOUSEHOLD = "N/A"

MAX_NAME_LENGTH = 200
MAX_REASON_LENGTH = 500

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)
