"""
Utility functions for the sync service.
"""

import hmac
import hashlib
import logging
import re
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

RETRY_BACKOFF_START = 0.5
MAX_RETRY_DELAY = 8.0

_JID_SUFFIXES = ("@s.whatsapp.net", "@c.us")


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Body length: {len(body)} bytes, signature: {signature[:8]}...")

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def backoff_delays(start: float = RETRY_BACKOFF_START, maximum: float = MAX_RETRY_DELAY) -> Iterator[float]:
    """Yield exponential retry delays in seconds, capped at ``maximum``."""
    delay = start
    while True:
        yield delay
        delay = min(delay * 2, maximum)


def jid_to_number(jid: Optional[object]) -> Optional[str]:
    """
    Turn a WhatsApp JID or loosely formatted phone number into digits.

    '5511999999999@s.whatsapp.net' -> '5511999999999'
    '+55 (11) 99999-9999'          -> '5511999999999'
    Returns None when nothing usable remains.
    """
    if jid is None:
        return None
    value = str(jid).strip()
    for suffix in _JID_SUFFIXES:
        if value.endswith(suffix):
            value = value[: -len(suffix)]
            break
    # Multi-device JIDs look like 5511999999999:12@s.whatsapp.net
    value = value.split(":", 1)[0]
    digits = re.sub(r"\D", "", value)
    return digits or None


def is_group_jid(jid: Optional[object]) -> bool:
    return isinstance(jid, str) and jid.endswith("@g.us")


def is_broadcast_jid(jid: Optional[object]) -> bool:
    return isinstance(jid, str) and jid.endswith("@broadcast")
