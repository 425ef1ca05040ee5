"""
Provider payloads and their normalization into a ``CanonicalEvent``.

Each provider has its own payload model with a single ``to_event`` method.
Status strings go through a fixed per-provider table; anything not in the
table becomes ``unknown`` (and an ``UnknownProviderStatus`` warning) so the
event is still recorded instead of silently dropped.
"""
import warnings
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from payhooks.errors import UnknownProviderStatus, ValidationError

logger = structlog.get_logger(__name__)

CARD = "card"
MOBILE_MONEY = "mobile_money"
AGGREGATOR = "aggregator"
PROVIDERS = (CARD, MOBILE_MONEY, AGGREGATOR)

CARD_STATUSES = {
    "pending": "pending",
    "processing": "processing",
    "complete": "completed",
    "completed": "completed",
    "failed": "failed",
    "refunded": "refunded",
    "disputed": "disputed",
    "chargeback": "disputed",
}

MOBILE_MONEY_STATUSES = {
    "pending": "pending",
    "processing": "processing",
    "complete": "completed",
    "completed": "completed",
    "failed": "failed",
}

AGGREGATOR_EVENTS = {
    "charge.success": "completed",
    "charge.failed": "failed",
    "refund.processed": "refunded",
    "charge.dispute.create": "disputed",
}


def first_non_empty(*values: Any) -> Optional[str]:
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def parse_amount(value: Any, scale: int = 1) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning("webhook_amount_unparseable", value=value)
        return None
    return amount / scale if scale != 1 else amount


def map_status(provider: str, raw_status: Optional[str], table: Dict[str, str]) -> str:
    key = (raw_status or "").strip().lower()
    status = table.get(key)
    if status is None:
        logger.warning("provider_status_unknown", provider=provider, raw_status=raw_status)
        warnings.warn(
            UnknownProviderStatus(f"{provider} status {raw_status!r} has no mapping"),
            stacklevel=2,
        )
        return "unknown"
    return status


class CanonicalEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    reference: str
    status: str
    invoice_id: Optional[str] = None
    tracking_id: Optional[str] = None
    amount: Optional[Decimal] = None
    provider_tag: Optional[str] = None
    channel: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class InvoiceRef(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: Optional[str] = None
    invoice_id: Optional[str] = None
    api_ref: Optional[str] = None
    state: Optional[str] = None


class _IntaSendPayload(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    api_ref: Optional[str] = None
    reference: Optional[str] = None
    invoice: Optional[InvoiceRef] = None
    order_id: Optional[str] = Field(default=None, alias="orderId")
    invoice_id: Optional[str] = None
    state: Optional[str] = None
    status: Optional[str] = None
    provider: Optional[str] = None
    channel: Optional[str] = None
    value: Optional[Any] = None
    amount: Optional[Any] = None
    failed_reason: Optional[str] = None

    def resolve_reference(self) -> Optional[str]:
        return first_non_empty(
            self.api_ref,
            self.reference,
            self.invoice.api_ref if self.invoice else None,
            self.order_id,
        )

    def resolve_invoice_id(self) -> Optional[str]:
        invoice = self.invoice
        return first_non_empty(
            self.invoice_id,
            invoice.id if invoice else None,
            invoice.invoice_id if invoice else None,
        )

    def raw_status(self) -> Optional[str]:
        return first_non_empty(self.state, self.status, self.invoice.state if self.invoice else None)


class CardWebhookPayload(_IntaSendPayload):
    def to_event(self, raw: Dict[str, Any]) -> CanonicalEvent:
        reference = self.resolve_reference()
        if not reference:
            raise ValidationError("Missing api_ref in webhook data", provider=CARD)
        invoice_id = self.resolve_invoice_id()
        return CanonicalEvent(
            provider=CARD,
            reference=reference,
            status=map_status(CARD, self.raw_status(), CARD_STATUSES),
            invoice_id=invoice_id,
            tracking_id=invoice_id,
            amount=parse_amount(first_non_empty(self.value, self.amount)),
            provider_tag=self.provider or CARD,
            channel=first_non_empty(self.provider, self.channel),
            raw=raw,
        )


class MobileMoneyWebhookPayload(_IntaSendPayload):
    account: Optional[str] = None
    mpesa_reference: Optional[str] = None

    def to_event(self, raw: Dict[str, Any]) -> CanonicalEvent:
        reference = self.resolve_reference()
        if not reference:
            raise ValidationError("Missing payment reference", provider=MOBILE_MONEY)
        if "card" in (self.provider or "").lower():
            logger.warning("webhook_misrouted", provider_tag=self.provider, reference=reference)
        return CanonicalEvent(
            provider=MOBILE_MONEY,
            reference=reference,
            status=map_status(MOBILE_MONEY, self.raw_status(), MOBILE_MONEY_STATUSES),
            invoice_id=self.resolve_invoice_id(),
            amount=parse_amount(first_non_empty(self.value, self.amount)),
            provider_tag=self.provider or "M-PESA",
            channel=first_non_empty(self.provider, self.channel) or "mpesa",
            raw=raw,
        )


class AggregatorChargeData(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: Optional[str] = None
    reference: Optional[str] = None
    status: Optional[str] = None
    amount: Optional[Any] = None
    currency: Optional[str] = None
    channel: Optional[str] = None
    # sent as 0 or "" when the charge was created without metadata
    metadata: Optional[Any] = None


class AggregatorWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: str
    data: AggregatorChargeData = Field(default_factory=AggregatorChargeData)

    def to_event(self, raw: Dict[str, Any]) -> CanonicalEvent:
        data = self.data
        meta = data.metadata if isinstance(data.metadata, dict) else {}
        invoice = meta.get("invoice") if isinstance(meta.get("invoice"), dict) else {}
        reference = first_non_empty(
            data.reference,
            meta.get("api_ref"),
            invoice.get("api_ref"),
            meta.get("order_id") or meta.get("orderId"),
        )
        if not reference:
            raise ValidationError("Missing payment reference", provider=AGGREGATOR)
        return CanonicalEvent(
            provider=AGGREGATOR,
            reference=reference,
            status=map_status(AGGREGATOR, self.event, AGGREGATOR_EVENTS),
            invoice_id=first_non_empty(data.id),
            tracking_id=reference,
            # amounts arrive in the currency's subunit
            amount=parse_amount(data.amount, scale=100),
            provider_tag="paystack",
            channel=data.channel,
            raw=raw,
        )


PAYLOAD_MODELS = {
    CARD: CardWebhookPayload,
    MOBILE_MONEY: MobileMoneyWebhookPayload,
    AGGREGATOR: AggregatorWebhookPayload,
}


def normalize(provider: str, payload: Any) -> CanonicalEvent:
    if provider not in PAYLOAD_MODELS:
        raise ValueError(f"Unknown provider {provider!r}")
    if not isinstance(payload, dict) or not payload:
        raise ValidationError("No event data", provider=provider)
    try:
        parsed = PAYLOAD_MODELS[provider].model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            "Malformed webhook payload", provider=provider, errors=e.errors(include_url=False, include_context=False, include_input=False)
        ) from e
    return parsed.to_event(payload)
