from hookrelay.services.webhooks.signing import (
    EventDedupeStore,
    InMemoryEventDedupeStore,
    ParsedSignature,
    VerificationResult,
    compute_hmac_sha256_hex,
    compute_signature,
    parse_signature,
    verify_signature,
    verify_webhook_request,
)
from hookrelay.services.webhooks.executor import (
    RETRY_BACKOFF_SECONDS,
    DeliveryExecutor,
    DeliveryOutcome,
    retry_delay_seconds,
)
from hookrelay.services.webhooks.scheduler import DeliveryScheduler, DeliverySubmitter, DelayQueue
from hookrelay.services.webhooks.service import WebhookDeliveryService, build_webhook_service

__all__ = [
    "EventDedupeStore",
    "InMemoryEventDedupeStore",
    "ParsedSignature",
    "VerificationResult",
    "compute_hmac_sha256_hex",
    "compute_signature",
    "parse_signature",
    "verify_signature",
    "verify_webhook_request",
    "RETRY_BACKOFF_SECONDS",
    "DeliveryExecutor",
    "DeliveryOutcome",
    "retry_delay_seconds",
    "DeliveryScheduler",
    "DeliverySubmitter",
    "DelayQueue",
    "WebhookDeliveryService",
    "build_webhook_service",
]
