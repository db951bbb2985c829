"""
API token resolution — a literal token from the environment, or a secret
stored in AWS Secrets Manager.
"""

from __future__ import annotations

import json
import logging

import boto3

log = logging.getLogger(__name__)


def resolve_token(token: str = "", secret_arn: str = "", region: str = "us-east-1", client=None) -> str:
    """Return ``token`` if set, else fetch ``secret_arn`` from Secrets Manager.

    Secrets may be a bare string or a JSON object with a ``token`` key.
    """
    if token:
        return token
    if not secret_arn:
        raise ValueError("No API token configured (set a token or a secret ARN)")

    log.info("Retrieving API token from Secrets Manager: %s", secret_arn)
    client = client or boto3.client("secretsmanager", region_name=region)
    response = client.get_secret_value(SecretId=secret_arn)
    secret = response.get("SecretString") or ""
    if not secret:
        raise ValueError(f"Secret {secret_arn} is empty")

    try:
        parsed = json.loads(secret)
    except json.JSONDecodeError:
        return secret
    if isinstance(parsed, dict) and parsed.get("token"):
        return parsed["token"]
    return secret
