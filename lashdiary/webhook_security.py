"""
Payment callback verification

M-Pesa callbacks are unsigned, so authenticity rests on:
- a shared token embedded in the registered CallBackURL (?token=...)
- an optional allowlist of provider source IPs
"""

import hmac
import logging
from typing import Optional

from fastapi import Request

from .config import MPESA_ALLOWED_IPS, MPESA_CALLBACK_TOKEN
from .rate_limiter import client_ip

logger = logging.getLogger(__name__)


class WebhookVerificationError(Exception):
    """Raised when a callback fails verification"""

    pass


def constant_time_compare(a: Optional[str], b: Optional[str]) -> bool:
    """Compare two strings in constant time"""
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def verify_callback_token(provided: Optional[str], expected: Optional[str]) -> bool:
    """Token check is skipped when no token is configured (local development)"""
    if not expected:
        logger.warning("⚠️ MPESA_CALLBACK_TOKEN not set - callback token check skipped")
        return True
    return constant_time_compare(provided, expected)


def verify_source_ip(ip: str, allowed: Optional[list[str]] = None) -> bool:
    allowed = MPESA_ALLOWED_IPS if allowed is None else allowed
    if not allowed:
        return True
    return ip in allowed


def verify_mpesa_callback(request: Request) -> None:
    """
    Verify an incoming M-Pesa callback

    Raises:
        WebhookVerificationError: token or source IP rejected
    """
    ip = client_ip(request)
    if not verify_source_ip(ip):
        logger.warning(f"🔒 M-Pesa callback from unlisted IP {ip}")
        raise WebhookVerificationError(f"Source IP {ip} not allowed")
    if not verify_callback_token(request.query_params.get("token"), MPESA_CALLBACK_TOKEN):
        logger.warning(f"🔒 M-Pesa callback with invalid token from {ip}")
        raise WebhookVerificationError("Invalid callback token")
