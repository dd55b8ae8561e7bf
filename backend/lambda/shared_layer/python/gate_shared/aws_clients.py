"""gate_shared.aws_clients — Lazy-singleton AWS service clients.

Clients are created on first call and cached for the life of the Lambda
container. Every client carries explicit connect/read timeouts so that a
slow dependency fails the call instead of hanging the invocation.
"""

from __future__ import annotations

import os
from typing import Optional

import boto3
from botocore.config import Config

# ---------------------------------------------------------------------------
# Defaults (overridable via env)
# ---------------------------------------------------------------------------

DYNAMODB_REGION: str = os.environ.get("DYNAMODB_REGION", "us-west-2")
SNS_REGION: str = os.environ.get("SNS_REGION", os.environ.get("DYNAMODB_REGION", "us-west-2"))
SECRETS_REGION: str = os.environ.get("SECRETS_REGION", os.environ.get("DYNAMODB_REGION", "us-west-2"))
CONNECT_TIMEOUT_SECONDS: float = float(os.environ.get("AWS_CONNECT_TIMEOUT_SECONDS", "2"))
READ_TIMEOUT_SECONDS: float = float(os.environ.get("AWS_READ_TIMEOUT_SECONDS", "5"))

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_ddb = None
_sns = None
_secretsmanager = None


def _client_config(max_attempts: int) -> Config:
    return Config(
        retries={"max_attempts": max_attempts, "mode": "standard"},
        connect_timeout=CONNECT_TIMEOUT_SECONDS,
        read_timeout=READ_TIMEOUT_SECONDS,
    )


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=region or DYNAMODB_REGION,
            config=_client_config(5),
        )
    return _ddb


def _get_sns(region: Optional[str] = None):
    """Get (or create) the SNS client singleton used for mobile push."""
    global _sns
    if _sns is None:
        # Stale-endpoint errors must surface on the first attempt.
        _sns = boto3.client(
            "sns",
            region_name=region or SNS_REGION,
            config=_client_config(2),
        )
    return _sns


def _get_secretsmanager(region: Optional[str] = None):
    """Get (or create) the Secrets Manager client singleton."""
    global _secretsmanager
    if _secretsmanager is None:
        _secretsmanager = boto3.client(
            "secretsmanager",
            region_name=region or SECRETS_REGION,
            config=_client_config(3),
        )
    return _secretsmanager
