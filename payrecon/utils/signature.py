"""HMAC-SHA256 webhook signatures of the form ``t=<unix>,v1=<hex>``.

The signed message is ``"{t}." + raw_body`` where ``t`` is the
header text as received. Verification must run on the exact bytes received:
re-serializing the JSON changes the digest.
"""

from __future__ import annotations

import hashlib
import hmac
import time

# Maximum allowed distance between the signed timestamp and now, in seconds.
SIGNATURE_TOLERANCE_SECONDS = 300


def compute_signature(secret: str, raw_payload: bytes, timestamp: int | str) -> str:
    message = f"{timestamp}.".encode("utf-8") + raw_payload
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def build_signature_header(secret: str, raw_payload: bytes, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else int(timestamp)
    return f"t={ts},v1={compute_signature(secret, raw_payload, ts)}"


def _parse_header(header: str) -> tuple[str | None, list[str]]:
    timestamp: str | None = None
    signatures: list[str] = []
    for element in header.split(","):
        key, sep, value = element.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1" and value.strip():
            signatures.append(value.strip().lower())
    return timestamp, signatures


def verify_signature(
    signature_header: str | None,
    secret: str | None,
    raw_payload: bytes,
    now: float | None = None,
) -> bool:
    """Return True only for a fresh, correctly signed payload. Never raises."""

    if not signature_header or not secret:
        return False
    try:
        raw_timestamp, candidates = _parse_header(signature_header)
        if not raw_timestamp or not candidates:
            return False
        # int() alone would also accept signs and digit separators.
        if not (raw_timestamp.isascii() and raw_timestamp.isdigit()):
            return False
        timestamp = int(raw_timestamp)
        current = time.time() if now is None else now
        if abs(current - timestamp) > SIGNATURE_TOLERANCE_SECONDS:
            return False
        expected = compute_signature(secret, raw_payload, raw_timestamp)
        matches = [hmac.compare_digest(expected, candidate) for candidate in candidates]
        return any(matches)
    except (TypeError, ValueError, UnicodeError):
        return False
