"""
Webhook authenticity checks, one strategy per provider.

* ``CardSignatureStrategy``: HMAC-SHA256 hex over the verbatim request bytes,
  signature accepted under several header names with an optional ``sha256=``
  prefix.
* ``AggregatorSignatureStrategy``: HMAC-SHA512 hex over the verbatim request
  bytes under ``x-paystack-signature``.
* ``ReferenceTrustStrategy``: the mobile-money gateway sends no signature;
  an event is trusted when its reference resolves in the status cache.

Signatures are always computed over the raw body. Re-serializing the parsed
JSON changes the byte layout and would invalidate a correct signature.
"""
import hashlib
import hmac
from typing import Mapping, Optional, Sequence

import structlog

from payhooks.config import Settings
from payhooks.errors import AuthenticityError, ValidationError

logger = structlog.get_logger(__name__)

CARD_SIGNATURE_HEADERS = (
    "x-intasend-signature",
    "intasend-signature",
    "x-signature",
    "x-hub-signature",
    "x-hub-signature-256",
    "x-webhook-signature",
)
AGGREGATOR_SIGNATURE_HEADER = "x-paystack-signature"


def constant_time_equals(expected: str, received: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


def hmac_hexdigest(secret: str, payload: bytes, digestmod) -> str:
    return hmac.new(secret.encode("utf-8"), payload, digestmod).hexdigest()


class SignatureStrategy:
    name = "signature"
    header_names: Sequence[str] = ()
    digestmod = hashlib.sha256

    def __init__(self, secret: Optional[str], test_signature: Optional[str] = None):
        self.secret = secret
        self.test_signature = test_signature

    def extract_signature(self, headers: Mapping[str, str]) -> str:
        for name in self.header_names:
            value = headers.get(name)
            if value:
                return self.normalize(value)
        return ""

    def normalize(self, value: str) -> str:
        return value.strip()

    def expected_signature(self, payload: bytes) -> str:
        return hmac_hexdigest(self.secret, payload, self.digestmod)

    def matches(self, payload: bytes, signature: str) -> bool:
        return constant_time_equals(self.expected_signature(payload), signature.lower())


class CardSignatureStrategy(SignatureStrategy):
    name = "card"
    header_names = CARD_SIGNATURE_HEADERS
    digestmod = hashlib.sha256

    def normalize(self, value: str) -> str:
        value = value.strip()
        if value.lower().startswith("sha256="):
            value = value[len("sha256="):]
        return value.strip()


class AggregatorSignatureStrategy(SignatureStrategy):
    name = "aggregator"
    header_names = (AGGREGATOR_SIGNATURE_HEADER,)
    digestmod = hashlib.sha512


class WebhookVerifier:
    """Applies the verification policy around a signature strategy.

    Verification runs when strict mode is on and both a secret and a signature
    are present. In strict production mode a missing signature is a validation
    error. Everything else is accepted with a warning unless the settings fail
    closed (``allow_unverified`` is false), in which case it is rejected.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def strategy_for(self, provider: str) -> SignatureStrategy:
        if provider == "card":
            return CardSignatureStrategy(
                self.settings.card_webhook_secret,
                test_signature=self.settings.card_webhook_test_signature,
            )
        if provider == "aggregator":
            return AggregatorSignatureStrategy(self.settings.aggregator_webhook_secret)
        raise ValueError(f"No signature strategy for provider {provider!r}")

    def verify(self, strategy: SignatureStrategy, payload: bytes, headers: Mapping[str, str]) -> bool:
        """Return True when the signature was checked, False when accepted unverified."""
        signature = strategy.extract_signature(headers)
        strict = self.settings.webhook_strict
        production = self.settings.is_production

        if (
            signature
            and strategy.test_signature
            and signature == strategy.test_signature
            and not production
        ):
            logger.info("webhook_test_signature_accepted", strategy=strategy.name)
            return True

        if signature and strategy.secret and strict:
            if not strategy.matches(payload, signature):
                logger.error("webhook_signature_mismatch", strategy=strategy.name)
                raise AuthenticityError("Invalid signature")
            logger.info("webhook_signature_verified", strategy=strategy.name)
            return True

        if strict and production and not signature:
            logger.error("webhook_signature_missing", strategy=strategy.name)
            raise ValidationError("Missing signature header", required=True)

        if not self.settings.allow_unverified:
            logger.error(
                "webhook_unverified_rejected",
                strategy=strategy.name,
                has_signature=bool(signature),
                has_secret=bool(strategy.secret),
                strict=strict,
            )
            raise AuthenticityError("Webhook could not be verified")

        logger.warning(
            "webhook_accepted_unverified",
            strategy=strategy.name,
            has_signature=bool(signature),
            has_secret=bool(strategy.secret),
            strict=strict,
            production=production,
        )
        return False


class ReferenceTrustStrategy:
    name = "mobile_money"

    def __init__(self, status_cache):
        self.status_cache = status_cache

    def verify(self, reference: str, invoice_id: Optional[str] = None) -> bool:
        record = self.status_cache.resolve(reference, invoice_id)
        if record is None:
            logger.warning("webhook_reference_untrusted", reference=reference, invoice_id=invoice_id)
            return False
        return True
