"""
Request authentication for machine-to-machine routes.

- Settlement webhooks: HMAC SHA-256 over "<timestamp>.<raw body>" with replay
  protection through the X-Timestamp header.
- Internal jobs and the notification dispatcher: "Authorization: Bearer <secret>".
- Monitoring endpoint: X-Monitoring-Key header.

Secrets come from the loaded AppConfig; a route whose secret is not configured
denies every request.
"""

import hmac
import hashlib
import time
from fastapi import Request, Header
from orderledger.core.config import get_config
from orderledger.core.exceptions import SecurityError
import logging

logger = logging.getLogger(__name__)


async def verify_hmac_signature(
    request: Request,
    x_signature: str = Header(None),
    x_timestamp: str = Header(None),
):
    """
    Verify the HMAC SHA-256 signature of a settlement webhook.

    Args:
        request: FastAPI request object
        x_signature: X-Signature header (hex digest, optionally prefixed with 'sha256=')
        x_timestamp: X-Timestamp header (Unix timestamp as string)

    Raises:
        SecurityError: If signature is missing, invalid, or the request is too old
    """
    security = get_config().security
    secret = security.hmac_secret_key

    if not secret:
        logger.error("HMAC_SECRET_KEY is not configured; denying webhook request")
        raise SecurityError("Webhook verification not configured", "webhook_authentication")

    if not x_signature:
        logger.warning("Missing signature header in webhook request")
        raise SecurityError("Missing signature header", "webhook_authentication")

    if not x_timestamp:
        logger.warning("Missing timestamp header in webhook request")
        raise SecurityError("Missing timestamp header", "webhook_authentication")

    try:
        request_timestamp = int(x_timestamp)
    except (ValueError, TypeError):
        raise SecurityError("Invalid timestamp format", "webhook_authentication")

    current_time = int(time.time())
    if request_timestamp > current_time + 5:
        raise SecurityError("Request timestamp is in the future", "webhook_authentication")

    age = current_time - request_timestamp
    if age > security.max_webhook_age_seconds:
        logger.warning(f"Webhook request too old: {age}s (max: {security.max_webhook_age_seconds}s)")
        raise SecurityError("Request timestamp expired", "webhook_authentication")

    body = getattr(request.state, "body", None)
    if body is None:
        body = await request.body()

    signed_payload = f"{x_timestamp}.".encode() + body
    expected_signature = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()

    provided_signature = x_signature
    if provided_signature.startswith("sha256="):
        provided_signature = provided_signature[7:]

    if not hmac.compare_digest(expected_signature, provided_signature):
        logger.warning("Invalid signature in webhook request")
        raise SecurityError("Invalid signature", "webhook_authentication")

    return True


async def verify_internal_secret(authorization: str = Header(None)):
    """Require 'Authorization: Bearer <INTERNAL_API_SECRET>'."""
    secret = get_config().security.internal_api_secret
    if not secret:
        logger.error("INTERNAL_API_SECRET is not configured; denying internal request")
        raise SecurityError("Internal API not configured", "internal_authentication")

    provided = (authorization or "").removeprefix("Bearer ").strip()
    if not provided or not hmac.compare_digest(provided, secret):
        logger.warning("Unauthorized access attempt to internal endpoint")
        raise SecurityError("Invalid or missing API secret", "internal_authentication")

    return True


async def verify_monitoring_key(x_monitoring_key: str = Header(None)):
    """Require the X-Monitoring-Key header to match MONITORING_API_KEY."""
    key = get_config().security.monitoring_api_key
    if not key:
        raise SecurityError("Monitoring endpoint not configured", "monitoring_authentication")

    if not x_monitoring_key or not hmac.compare_digest(x_monitoring_key, key):
        logger.warning("Unauthorized access attempt to monitoring endpoint")
        raise SecurityError("Invalid monitoring key", "monitoring_authentication")

    return True
