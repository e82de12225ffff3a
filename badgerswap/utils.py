"""
Utility functions for the chat service.
"""

import hashlib
import hmac
import logging
import threading
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_clock_lock = threading.Lock()
_last_timestamp: datetime | None = None


def sign_identity(user_id: str, secret: str) -> str:
    """
    Compute the HMAC-SHA256 assertion for a user id.

    The identity provider hands this to clients alongside their user id;
    both travel in the X-User-Id / X-Signature headers.
    """
    return hmac.new(
        secret.encode("utf-8"),
        user_id.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()


def verify_identity_signature(user_id: str, signature: str, secret: str) -> bool:
    """
    Verify an identity assertion.

    Args:
        user_id: Value of the X-User-Id header
        signature: Hex-encoded signature from the X-Signature header
        secret: IDENTITY_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying identity signature for user {user_id}, signature: {signature[:8]}...")

    expected_signature = sign_identity(user_id, secret)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    if not is_valid:
        logger.info(f"Identity signature rejected for user {user_id}")

    return is_valid


def server_timestamp() -> str:
    """
    Return a server-assigned ISO-8601 UTC timestamp.

    Values are strictly increasing within the process, so two writes in the
    same microsecond still order by time. The fixed-width format keeps
    lexicographic order equal to time order.
    """
    global _last_timestamp

    with _clock_lock:
        now = datetime.now(timezone.utc)
        if _last_timestamp is not None and now <= _last_timestamp:
            now = _last_timestamp + timedelta(microseconds=1)
        _last_timestamp = now

    return now.strftime(TIMESTAMP_FORMAT)


def conversation_key(buyer_id: str, seller_id: str, product_id: str) -> str:
    """
    Deterministic conversation id for a (buyer, seller, product) triple.

    Creating the same triple twice collides on the primary key instead of
    producing a second conversation.
    """
    raw = "\x1f".join((buyer_id, seller_id, product_id))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]
