from __future__ import annotations

import logging
import time
from collections.abc import Callable

import stripe

from app.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


def parse_signature_header(header: str) -> dict[str, list[str]]:
    """Split `t=...,v1=...,v1=...` into a mapping of scheme to values."""
    parts: dict[str, list[str]] = {}
    for element in header.split(","):
        key, sep, value = element.strip().partition("=")
        if not sep or not key:
            continue
        parts.setdefault(key, []).append(value)
    return parts


class SignatureVerifier:
    """Checks the provider's `t=<ts>,v1=<hex hmac>` webhook signature.

    The signature itself is checked by `stripe.WebhookSignature`. A timestamp
    further than `tolerance_seconds` from now in either direction is rejected;
    the library only rejects old ones.
    """

    def __init__(
        self,
        secret: str | None,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ConfigurationError("Stripe webhook secret not configured")
        self._secret = secret
        self._tolerance = tolerance_seconds
        self._clock = clock

    def verify(self, body: bytes | str, header: str | None) -> bool:
        if not header:
            return False
        try:
            stripe.WebhookSignature.verify_header(body, header, self._secret, tolerance=None)
        except (stripe.SignatureVerificationError, TypeError, ValueError):
            # TypeError: non-ASCII signature values fail compare_digest
            return False

        timestamps = parse_signature_header(header).get("t") or []
        try:
            timestamp = int(timestamps[0])
        except (IndexError, ValueError):
            return False
        if abs(int(self._clock()) - timestamp) > self._tolerance:
            logger.warning("Webhook timestamp %s outside tolerance", timestamp)
            return False
        return True
