from __future__ import annotations


class HookRelayError(Exception):
    """Base error for hookrelay."""


class DeliveryNotFoundError(HookRelayError):
    """Delivery id does not exist."""


class DeliveryStateError(HookRelayError):
    """Delivery is not in a state that allows the requested operation."""


class SubscriptionNotFoundError(HookRelayError):
    """Subscription id does not exist or is not usable."""


class PayloadTooLargeError(HookRelayError):
    """Event payload exceeds the configured delivery size bound."""
