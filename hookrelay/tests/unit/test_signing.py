from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from hookrelay.services.webhooks.signing import (
    InMemoryEventDedupeStore,
    compute_hmac_sha256_hex,
    compute_signature,
    parse_signature,
    signing_input,
    verify_signature,
    verify_webhook_request,
)


NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
TS = int(NOW.timestamp())
BODY = b'{"amount":42,"order_id":"o-1"}'
SECRET = "whsec-unit"


def _headers(signature: str, timestamp: int = TS) -> dict[str, str]:
    return {
        "X-Event-Type": "order.created",
        "X-Event-ID": "evt-1",
        "X-Signature": signature,
        "X-Timestamp": str(timestamp),
    }


def test_signing_input_prefixes_timestamp() -> None:
    assert signing_input(BODY, TS) == f"{TS}.".encode() + BODY
    assert signing_input("abc", 7) == b"7.abc"


def test_signature_is_deterministic_and_prefixed() -> None:
    first = compute_signature(BODY, SECRET, TS)
    second = compute_signature(BODY, SECRET, TS)
    assert first == second
    assert first == f"sha256={compute_hmac_sha256_hex(BODY, SECRET, TS)}"
    assert len(first.split("=", 1)[1]) == 64


def test_single_byte_change_changes_signature() -> None:
    # Flipping one payload byte must invalidate the signature.
    tampered = BODY.replace(b"42", b"43")
    assert compute_signature(BODY, SECRET, TS) != compute_signature(tampered, SECRET, TS)
    assert compute_signature(BODY, SECRET, TS) != compute_signature(BODY, SECRET, TS + 1)
    assert compute_signature(BODY, SECRET, TS) != compute_signature(BODY, "other", TS)


def test_verify_signature_accepts_match_and_rejects_tamper() -> None:
    signature = compute_signature(BODY, SECRET, TS)
    assert verify_signature(BODY, SECRET, TS, signature) is True
    assert verify_signature(BODY + b" ", SECRET, TS, signature) is False
    assert verify_signature(BODY, SECRET, TS, "not-a-signature") is False


@pytest.mark.parametrize(
    ("value", "reason"),
    [
        ("deadbeef", "invalid_signature_format"),
        ("md5=" + "a" * 64, "unsupported_signature_algorithm"),
        ("sha256=" + "z" * 64, "invalid_signature_format"),
        ("sha256=abc", "invalid_signature_format"),
    ],
)
def test_parse_signature_rejects_malformed_values(value: str, reason: str) -> None:
    with pytest.raises(ValueError, match=reason):
        parse_signature(value)


def test_verify_webhook_request_accepts_fresh_signed_request() -> None:
    result = verify_webhook_request(_headers(compute_signature(BODY, SECRET, TS)), BODY, SECRET, now=NOW)
    assert result.ok is True
    assert result.reason == "ok"
    assert result.event_id == "evt-1"
    assert result.timestamp == TS


def test_verify_webhook_request_headers_are_case_insensitive() -> None:
    headers = {key.lower(): value for key, value in _headers(compute_signature(BODY, SECRET, TS)).items()}
    assert verify_webhook_request(headers, BODY, SECRET, now=NOW).ok is True


@pytest.mark.parametrize(
    ("headers", "secret", "reason"),
    [
        (_headers(compute_signature(BODY, SECRET, TS)), None, "secret_missing"),
        ({"X-Timestamp": str(TS)}, SECRET, "missing_signature"),
        ({"X-Signature": compute_signature(BODY, SECRET, TS)}, SECRET, "missing_timestamp"),
        ({"X-Signature": compute_signature(BODY, SECRET, TS), "X-Timestamp": "soon"}, SECRET, "invalid_timestamp"),
        (_headers("sha256=" + "0" * 64), SECRET, "signature_mismatch"),
        (_headers("sha1=abc"), SECRET, "unsupported_signature_algorithm"),
    ],
)
def test_verify_webhook_request_failure_reasons(headers: dict[str, str], secret: str | None, reason: str) -> None:
    result = verify_webhook_request(headers, BODY, secret, now=NOW)
    assert result.ok is False
    assert result.reason == reason


def test_verify_webhook_request_enforces_replay_window() -> None:
    # A correctly signed but stale request is still rejected.
    stale_ts = int((NOW - timedelta(seconds=301)).timestamp())
    headers = _headers(compute_signature(BODY, SECRET, stale_ts), stale_ts)
    result = verify_webhook_request(headers, BODY, SECRET, now=NOW)
    assert result.reason == "timestamp_out_of_tolerance"

    within_ts = int((NOW - timedelta(seconds=299)).timestamp())
    headers = _headers(compute_signature(BODY, SECRET, within_ts), within_ts)
    assert verify_webhook_request(headers, BODY, SECRET, now=NOW).ok is True


def test_in_memory_dedupe_store_marks_first_seen_once() -> None:
    store = InMemoryEventDedupeStore()
    assert store.has_seen("evt-1") is False
    assert store.mark_seen("evt-1") is True
    assert store.mark_seen("evt-1") is False
    assert store.has_seen("evt-1") is True
