"""Typed errors raised by the proximity and overlap engine."""

from typing import Optional


class ProximityError(Exception):
    """Base error; ``kind`` lets callers branch without parsing messages."""

    kind = "error"
    status_code = 500


class NotFoundError(ProximityError):
    kind = "not_found"
    status_code = 404


class ValidationError(ProximityError):
    kind = "validation"
    status_code = 400


class AccessDeniedError(ProximityError):
    kind = "access_denied"
    status_code = 403


class StaleDataError(ProximityError):
    kind = "stale"
    status_code = 409


class LookupTimeoutError(ProximityError):
    kind = "timeout"
    status_code = 504


class DeliveryError(ProximityError):
    kind = "delivery_failure"
    status_code = 502

    def __init__(self, channel: str, recipient: Optional[str], cause: object):
        self.channel = channel
        self.recipient = recipient
        self.cause = cause
        super().__init__(f"{channel} delivery to {recipient or 'unknown'} failed: {cause}")


__all__ = [
    "AccessDeniedError",
    "DeliveryError",
    "LookupTimeoutError",
    "NotFoundError",
    "ProximityError",
    "StaleDataError",
    "ValidationError",
]
