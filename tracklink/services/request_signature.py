from __future__ import annotations

import hashlib
import hmac
from time import time

SIGNATURE_VERSION = "v0"
DEFAULT_MAX_AGE_SECONDS = 300


def compute_slack_signature(*, signing_secret: str, timestamp: str, body: bytes) -> str:
    base = f"{SIGNATURE_VERSION}:{timestamp}:".encode() + body
    digest = hmac.new(signing_secret.encode("utf-8"), base, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_VERSION}={digest}"


def verify_slack_signature(
    *,
    signing_secret: str,
    timestamp: str | None,
    body: bytes,
    signature: str | None,
    max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    now: float | None = None,
) -> bool:
    if not timestamp or not signature:
        return False
    try:
        sent_at = int(timestamp.strip())
    except ValueError:
        return False
    current = time() if now is None else now
    if abs(current - sent_at) > max_age_seconds:
        return False
    expected = compute_slack_signature(
        signing_secret=signing_secret,
        timestamp=timestamp.strip(),
        body=body,
    )
    return hmac.compare_digest(expected, signature.strip())
