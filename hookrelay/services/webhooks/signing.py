from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import hashlib
import hmac
from threading import Lock
from typing import Mapping, Protocol


SIGNATURE_ALGORITHM = "sha256"

HEADER_EVENT_TYPE = "X-Event-Type"
HEADER_EVENT_ID = "X-Event-ID"
HEADER_SIGNATURE = "X-Signature"
HEADER_TIMESTAMP = "X-Timestamp"
HEADER_DELIVERY_ID = "X-Delivery-ID"
HEADER_DELIVERY_ATTEMPT = "X-Delivery-Attempt"

DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class ParsedSignature:
    algorithm: str
    digest_hex: str


@dataclass(frozen=True)
class VerificationResult:
    # Carry a machine-readable reason so receivers can map failures to status codes.
    ok: bool
    reason: str
    event_id: str | None = None
    timestamp: int | None = None


def _as_bytes(payload: bytes | str) -> bytes:
    if isinstance(payload, bytes):
        return payload
    return payload.encode("utf-8")


def signing_input(payload: bytes | str, timestamp: int) -> bytes:
    # "{timestamp}.{payload}" over the exact body bytes sent on the wire.
    return f"{int(timestamp)}.".encode("utf-8") + _as_bytes(payload)


def compute_hmac_sha256_hex(payload: bytes | str, secret: str, timestamp: int) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        signing_input(payload, timestamp),
        hashlib.sha256,
    ).hexdigest()


def compute_signature(payload: bytes | str, secret: str, timestamp: int) -> str:
    return f"{SIGNATURE_ALGORITHM}={compute_hmac_sha256_hex(payload, secret, timestamp)}"


def parse_signature(value: str) -> ParsedSignature:
    # Accept only the canonical "sha256=<64 hex chars>" form.
    normalized = (value or "").strip()
    if "=" not in normalized:
        raise ValueError("invalid_signature_format")
    algorithm, digest_hex = normalized.split("=", 1)
    algorithm = algorithm.strip().lower()
    digest_hex = digest_hex.strip().lower()
    if algorithm != SIGNATURE_ALGORITHM:
        raise ValueError("unsupported_signature_algorithm")
    if len(digest_hex) != 64 or any(ch not in "0123456789abcdef" for ch in digest_hex):
        raise ValueError("invalid_signature_format")
    return ParsedSignature(algorithm=algorithm, digest_hex=digest_hex)


def verify_signature(payload: bytes | str, secret: str, timestamp: int, received_signature: str) -> bool:
    """Recompute the signature and compare it in constant time."""
    try:
        parsed = parse_signature(received_signature)
    except ValueError:
        return False
    expected = compute_hmac_sha256_hex(payload, secret, timestamp)
    return hmac.compare_digest(expected.encode("ascii"), parsed.digest_hex.encode("ascii"))


def _header(headers: Mapping[str, str], name: str) -> str | None:
    lowered = name.lower()
    for key, value in headers.items():
        if str(key).lower() == lowered:
            stripped = str(value).strip()
            return stripped or None
    return None


def verify_webhook_request(
    headers: Mapping[str, str],
    body: bytes,
    secret: str | None,
    *,
    now: datetime,
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
) -> VerificationResult:
    """Validate an inbound delivery the way a receiver should.

    Checks header presence, timestamp freshness (to bound replay) and the HMAC
    signature over ``"{timestamp}.{body}"``.
    """
    event_id = _header(headers, HEADER_EVENT_ID)
    if not secret:
        return VerificationResult(ok=False, reason="secret_missing", event_id=event_id)
    raw_signature = _header(headers, HEADER_SIGNATURE)
    if raw_signature is None:
        return VerificationResult(ok=False, reason="missing_signature", event_id=event_id)
    raw_timestamp = _header(headers, HEADER_TIMESTAMP)
    if raw_timestamp is None:
        return VerificationResult(ok=False, reason="missing_timestamp", event_id=event_id)
    try:
        timestamp = int(raw_timestamp)
    except ValueError:
        return VerificationResult(ok=False, reason="invalid_timestamp", event_id=event_id)
    if abs(int(now.timestamp()) - timestamp) > max(1, int(tolerance_seconds)):
        return VerificationResult(
            ok=False, reason="timestamp_out_of_tolerance", event_id=event_id, timestamp=timestamp
        )
    try:
        parse_signature(raw_signature)
    except ValueError as exc:
        return VerificationResult(ok=False, reason=str(exc), event_id=event_id, timestamp=timestamp)
    if not verify_signature(body, secret, timestamp, raw_signature):
        return VerificationResult(ok=False, reason="signature_mismatch", event_id=event_id, timestamp=timestamp)
    return VerificationResult(ok=True, reason="ok", event_id=event_id, timestamp=timestamp)


class EventDedupeStore(Protocol):
    def mark_seen(self, event_id: str) -> bool: ...


class InMemoryEventDedupeStore:
    # Thread-safe first-seen tracking for receivers deduplicating at-least-once deliveries.
    def __init__(self) -> None:
        self._seen: set[str] = set()
        self._lock = Lock()

    def has_seen(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self._seen

    def mark_seen(self, event_id: str) -> bool:
        # Return whether this event id was observed for the first time.
        with self._lock:
            if event_id in self._seen:
                return False
            self._seen.add(event_id)
            return True
