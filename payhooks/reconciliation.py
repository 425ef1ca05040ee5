"""
Reconciliation of canonical webhook events against stored payments.

Lookup is an exact match on ``Payment.api_ref``. For the mobile-money
provider a miss falls back to the status cache (order id, then transaction
id, then invoice id). Nothing found is a ``NotFoundError`` so the provider
retries later.

The Payment write is the durable fact. The Order cascade only refreshes a
denormalized copy, so a cascade failure is logged and swallowed.

Status changes are last-write-wins by default. With transition enforcement on,
an event outside ``ALLOWED_TRANSITIONS`` is acknowledged but not written. The
table treats ``unknown`` as reachable from and leading to any status, so a
blocked move can still land in two steps through ``unknown``.

There is no lock around read-decide-write: two concurrent events for the
same reference race and the store keeps the last write.
"""
import time
from typing import Optional

import structlog
from pydantic import BaseModel

from payhooks.errors import NotFoundError, ReconcileError
from payhooks.normalizer import AGGREGATOR, CARD, MOBILE_MONEY, CanonicalEvent
from payhooks.status_cache import StatusCache, StatusRecord

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS = {
    "pending": {"pending", "processing", "completed", "failed"},
    "processing": {"processing", "completed", "failed"},
    "completed": {"completed", "refunded", "disputed"},
    "failed": {"failed"},
    "refunded": {"refunded"},
    "disputed": {"disputed", "completed", "refunded"},
}

# ordered: first substring hit wins
CHANNEL_METHODS = (
    ("mobile money", "mobile_money"),
    ("mpesa", "mpesa"),
    ("m-pesa", "mpesa"),
    ("apple", "apple_pay"),
    ("google", "google_pay"),
    ("bank", "bank_transfer"),
    ("ussd", "ussd"),
)

DEFAULT_METHODS = {
    CARD: "card",
    MOBILE_MONEY: "mpesa",
    AGGREGATOR: "card",
}


def is_transition_allowed(current: Optional[str], new: str) -> bool:
    if new == "unknown" or not current or current == "unknown":
        return True
    return new in ALLOWED_TRANSITIONS.get(current, ())


def payment_method_for(provider: str, channel: Optional[str]) -> str:
    text = (channel or "").lower().replace("_", " ")
    for needle, method in CHANNEL_METHODS:
        if needle in text:
            return method
    return DEFAULT_METHODS.get(provider, "card")


class ReconcileResult(BaseModel):
    reference: str
    status: str
    previous_status: Optional[str] = None
    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    applied: bool = True
    order_updated: bool = False
    tracked: bool = False


class ReconciliationEngine:
    def __init__(self, payments, orders, status_cache: StatusCache, enforce_transitions: bool = False):
        self.payments = payments
        self.orders = orders
        self.status_cache = status_cache
        self.enforce_transitions = enforce_transitions

    def find_payment(self, reference: str):
        found = self.payments.find_by_field("api_ref", reference, limit=2)
        if len(found) > 1:
            logger.warning("payment_reference_ambiguous", api_ref=reference, using=found[0].id)
        return found[0] if found else None

    def reconcile(self, event: CanonicalEvent) -> ReconcileResult:
        payment = self.find_payment(event.reference)
        record: Optional[StatusRecord] = None

        if event.provider == MOBILE_MONEY:
            record = self.status_cache.resolve(event.reference, event.invoice_id)
            if payment is None and record is not None and record.payment_id:
                payment = self.payments.get(record.payment_id)

        if payment is None and record is None:
            logger.warning("payment_not_found", api_ref=event.reference, provider=event.provider)
            raise NotFoundError("Payment not found", api_ref=event.reference)

        if payment is not None:
            result = self.apply(payment, event)
        else:
            result = ReconcileResult(
                reference=event.reference,
                status=event.status,
                previous_status=record.status,
                applied=self._check_transition(record.status, event, subject=record.order_id),
            )

        if record is not None and result.applied and not (payment is not None and self.status_cache.durable):
            self.track(record, event)
            result.tracked = True
        return result

    def _check_transition(self, current: Optional[str], event: CanonicalEvent, subject: str) -> bool:
        if is_transition_allowed(current, event.status):
            return True
        logger.warning(
            "payment_transition_disallowed",
            subject=subject,
            current=current,
            requested=event.status,
            enforced=self.enforce_transitions,
        )
        return not self.enforce_transitions

    def apply(self, payment, event: CanonicalEvent) -> ReconcileResult:
        previous = payment.status
        result = ReconcileResult(
            reference=event.reference,
            status=event.status,
            previous_status=previous,
            payment_id=payment.id,
            order_id=payment.order_id,
        )
        if not self._check_transition(previous, event, subject=payment.id):
            result.applied = False
            result.status = previous
            return result

        patch = {
            "status": event.status,
            "provider": event.provider_tag or event.provider,
            "processor_response": event.raw,
        }
        if event.invoice_id:
            patch["invoice_id"] = event.invoice_id
        if event.tracking_id:
            patch["tracking_id"] = event.tracking_id

        payment = self.payments.update_by_id(payment.id, patch)
        logger.info(
            "payment_reconciled",
            payment_id=payment.id,
            api_ref=event.reference,
            previous=previous,
            status=event.status,
        )
        result.order_updated = self.cascade(payment, event)
        return result

    def cascade(self, payment, event: CanonicalEvent) -> bool:
        if not payment.order_id:
            return False
        method = payment_method_for(event.provider, event.channel)
        try:
            self.orders.update_by_id(
                payment.order_id,
                {"payment_status": event.status, "payment_method": method},
            )
        except ReconcileError as e:
            logger.error(
                "order_cascade_failed",
                order_id=payment.order_id,
                payment_id=payment.id,
                error=e.message,
            )
            return False
        logger.info("order_payment_status_updated", order_id=payment.order_id, status=event.status, method=method)
        return True

    def track(self, record: StatusRecord, event: CanonicalEvent) -> StatusRecord:
        raw = event.raw
        updated = record.model_copy(
            update={
                "status": event.status,
                "invoice_id": event.invoice_id or record.invoice_id,
                "provider": event.provider_tag,
                "mpesa_reference": raw.get("mpesa_reference") or record.mpesa_reference,
                "failed_reason": raw.get("failed_reason") or record.failed_reason,
                "webhook_data": raw,
                "updated_at": int(time.time() * 1000),
            }
        )
        return self.status_cache.put(updated)
