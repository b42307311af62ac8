from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
import json
import logging
import os
from threading import Lock
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from hookrelay.core.clock import Clock, utc_now
from hookrelay.services.webhooks.signing import (
    DEFAULT_TOLERANCE_SECONDS,
    HEADER_DELIVERY_ATTEMPT,
    HEADER_DELIVERY_ID,
    HEADER_EVENT_ID,
    HEADER_EVENT_TYPE,
    HEADER_SIGNATURE,
    EventDedupeStore,
    InMemoryEventDedupeStore,
    verify_webhook_request,
)


logger = logging.getLogger("hookrelay.receiver")

FAIL_MODES = ("never", "always", "first_n")


@dataclass(frozen=True)
class ReceiverSettings:
    # Explicit runtime knobs so local runs and tests share one config surface.
    shared_secret: str | None
    require_signature: bool
    tolerance_seconds: int
    fail_mode: str
    fail_n: int
    port: int
    max_receipts: int = 500


class ReceiverHealth(BaseModel):
    status: str
    require_signature: bool
    tolerance_seconds: int
    fail_mode: str
    fail_n: int


class ReceiverError(BaseModel):
    accepted: bool = False
    reason: str


class ReceiverWebhookResponse(BaseModel):
    accepted: bool
    duplicate: bool = False
    event_id: str | None = None


class ReceiptItem(BaseModel):
    event_id: str | None = None
    event_type: str | None = None
    delivery_id: str | None = None
    attempt: int | None = None
    received_at: str
    response_status: int
    signature_valid: bool
    duplicate: bool = False
    failure_reason: str | None = None


class ReceivedResponse(BaseModel):
    items: list[ReceiptItem]


class ReceiverStats(BaseModel):
    total_requests: int
    accepted_count: int
    rejected_count: int
    forced_failure_count: int
    dedupe_hits: int
    duplicates_ratio: float = Field(ge=0.0, le=1.0)
    last_event_at: str | None = None


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    try:
        parsed = int(value or str(default))
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, parsed)


def load_receiver_settings() -> ReceiverSettings:
    fail_mode = (os.getenv("RECEIVER_FAIL_MODE") or "never").strip().lower()
    if fail_mode not in FAIL_MODES:
        fail_mode = "never"
    return ReceiverSettings(
        shared_secret=(os.getenv("RECEIVER_SHARED_SECRET") or "").strip() or None,
        require_signature=_parse_bool(os.getenv("RECEIVER_REQUIRE_SIGNATURE"), default=True),
        tolerance_seconds=_parse_int(
            os.getenv("RECEIVER_TOLERANCE_SECONDS"),
            default=DEFAULT_TOLERANCE_SECONDS,
            minimum=1,
        ),
        fail_mode=fail_mode,
        fail_n=_parse_int(os.getenv("RECEIVER_FAIL_N"), default=0),
        port=_parse_int(os.getenv("RECEIVER_PORT"), default=9001, minimum=1),
    )


def _log_event(event: str, **fields: Any) -> None:
    # Structured JSON lines so receiver outcomes aggregate without free-form parsing.
    logger.info(json.dumps({"event": event, **fields}, sort_keys=True, default=str))


def _status_for_reason(reason: str) -> int:
    if reason in {"missing_signature", "signature_mismatch", "timestamp_out_of_tolerance"}:
        return 401
    if reason == "secret_missing":
        return 500
    return 400


class ReceiptLog:
    # Bounded in-memory receipt history plus per-event forced-failure counters.
    def __init__(self, max_items: int) -> None:
        self._max_items = max(1, int(max_items))
        self._items: list[ReceiptItem] = []
        self._failures: Counter[str] = Counter()
        self._lock = Lock()

    def record(self, item: ReceiptItem) -> None:
        with self._lock:
            self._items.append(item)
            if len(self._items) > self._max_items:
                del self._items[: len(self._items) - self._max_items]

    def increment_failure(self, key: str) -> int:
        with self._lock:
            self._failures[key] += 1
            return self._failures[key]

    def recent(self, limit: int) -> list[ReceiptItem]:
        with self._lock:
            return list(reversed(self._items))[: max(1, int(limit))]

    def stats(self) -> ReceiverStats:
        with self._lock:
            items = list(self._items)
        total = len(items)
        dedupe_hits = sum(1 for item in items if item.duplicate)
        return ReceiverStats(
            total_requests=total,
            accepted_count=sum(1 for item in items if item.response_status == 200),
            rejected_count=sum(1 for item in items if item.failure_reason not in (None, "forced_failure")),
            forced_failure_count=sum(1 for item in items if item.failure_reason == "forced_failure"),
            dedupe_hits=dedupe_hits,
            duplicates_ratio=(dedupe_hits / total) if total else 0.0,
            last_event_at=items[-1].received_at if items else None,
        )


def _optional_int(value: str | None) -> int | None:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


def create_app(
    settings: ReceiverSettings | None = None,
    *,
    dedupe_store: EventDedupeStore | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    """Reference receiver that verifies signatures and dedupes on the event id."""
    resolved = settings or load_receiver_settings()
    store = dedupe_store or InMemoryEventDedupeStore()
    now_fn = clock or utc_now
    receipts = ReceiptLog(resolved.max_receipts)
    app = FastAPI(
        title="hookrelay reference receiver",
        version="1.0.0",
        description="Verifies signed webhook deliveries and acknowledges them idempotently.",
    )
    app.state.receipts = receipts

    @app.get("/health", response_model=ReceiverHealth)
    async def health() -> ReceiverHealth:
        return ReceiverHealth(
            status="ok",
            require_signature=resolved.require_signature,
            tolerance_seconds=resolved.tolerance_seconds,
            fail_mode=resolved.fail_mode,
            fail_n=resolved.fail_n,
        )

    @app.get("/received", response_model=ReceivedResponse)
    async def received(limit: int = 50) -> ReceivedResponse:
        return ReceivedResponse(items=receipts.recent(limit))

    @app.get("/stats", response_model=ReceiverStats)
    async def stats() -> ReceiverStats:
        return receipts.stats()

    @app.post(
        "/webhook",
        response_model=ReceiverWebhookResponse,
        responses={
            400: {"model": ReceiverError},
            401: {"model": ReceiverError},
            500: {"model": ReceiverError},
            503: {"model": ReceiverError},
        },
    )
    async def webhook(request: Request) -> JSONResponse:
        # Read the raw body once so verification sees the exact signed bytes.
        raw_body = await request.body()
        now = now_fn()
        event_id = request.headers.get(HEADER_EVENT_ID)
        base = {
            "event_id": event_id,
            "event_type": request.headers.get(HEADER_EVENT_TYPE),
            "delivery_id": request.headers.get(HEADER_DELIVERY_ID),
            "attempt": _optional_int(request.headers.get(HEADER_DELIVERY_ATTEMPT)),
            "received_at": now.isoformat(),
        }

        signature_valid = False
        if resolved.require_signature or request.headers.get(HEADER_SIGNATURE):
            verification = verify_webhook_request(
                request.headers,
                raw_body,
                resolved.shared_secret,
                now=now,
                tolerance_seconds=resolved.tolerance_seconds,
            )
            if not verification.ok:
                status_code = _status_for_reason(verification.reason)
                receipts.record(
                    ReceiptItem(
                        **base,
                        response_status=status_code,
                        signature_valid=False,
                        failure_reason=verification.reason,
                    )
                )
                _log_event("receiver_webhook_rejected", reason=verification.reason, event_id=event_id)
                return JSONResponse(
                    status_code=status_code,
                    content=ReceiverError(reason=verification.reason).model_dump(),
                )
            signature_valid = True

        if not event_id:
            receipts.record(
                ReceiptItem(
                    **base,
                    response_status=400,
                    signature_valid=signature_valid,
                    failure_reason="missing_event_id",
                )
            )
            return JSONResponse(status_code=400, content=ReceiverError(reason="missing_event_id").model_dump())

        if _should_force_failure(resolved, receipts, event_id):
            receipts.record(
                ReceiptItem(
                    **base,
                    response_status=503,
                    signature_valid=signature_valid,
                    failure_reason="forced_failure",
                )
            )
            _log_event("receiver_webhook_forced_failure", event_id=event_id)
            return JSONResponse(status_code=503, content=ReceiverError(reason="forced_failure").model_dump())

        first_seen = store.mark_seen(event_id)
        receipts.record(
            ReceiptItem(
                **base,
                response_status=200,
                signature_valid=signature_valid,
                duplicate=not first_seen,
            )
        )
        _log_event(
            "receiver_webhook_duplicate" if not first_seen else "receiver_webhook_accepted",
            event_id=event_id,
            attempt=base["attempt"],
        )
        return JSONResponse(
            status_code=200,
            content=ReceiverWebhookResponse(accepted=True, duplicate=not first_seen, event_id=event_id).model_dump(),
        )

    return app


def _should_force_failure(settings: ReceiverSettings, receipts: ReceiptLog, event_id: str) -> bool:
    if settings.fail_mode == "always":
        return True
    if settings.fail_mode == "first_n" and settings.fail_n > 0:
        return receipts.increment_failure(event_id) <= settings.fail_n
    return False
