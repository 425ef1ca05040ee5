"""
Transient payment status for the mobile-money (push payment) flow.

Records are keyed by order id (the ``api_ref`` sent to the provider) and can
also be found by the provider transaction id or invoice id. Two backends share
the ``StatusCache`` interface:

* ``InMemoryStatusCache`` keeps records in a process-local dict. Updates are
  only visible inside the instance that received them and are lost on
  restart, so it is suitable for single-instance deployments only.
* ``PaymentStoreStatusCache`` reads and writes the durable Payment rows
  through their ``api_ref`` / ``tracking_id`` / ``invoice_id`` indexes.
"""
import threading
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

SECONDARY_KEYS = ("transaction_id", "invoice_id")


def _now_ms() -> int:
    return int(time.time() * 1000)


class StatusRecord(BaseModel):
    order_id: str
    transaction_id: Optional[str] = None
    invoice_id: Optional[str] = None
    status: str = "pending"
    amount: Optional[Decimal] = None
    payment_id: Optional[str] = None
    provider: Optional[str] = None
    failed_reason: Optional[str] = None
    mpesa_reference: Optional[str] = None
    webhook_data: Optional[Dict[str, Any]] = None
    created_at: int = Field(default_factory=_now_ms)
    updated_at: Optional[int] = None

    def to_public(self) -> Dict[str, Any]:
        data = {
            "status": self.status,
            "orderId": self.order_id,
            "transactionId": self.transaction_id,
            "invoiceId": self.invoice_id,
            "amount": self.amount,
            "timestamp": self.updated_at or self.created_at,
        }
        if self.failed_reason:
            data["error"] = self.failed_reason
            data["failed_reason"] = self.failed_reason
        return data


class StatusCache(ABC):
    durable = False

    @abstractmethod
    def get(self, order_id: str) -> Optional[StatusRecord]:
        ...

    @abstractmethod
    def put(self, record: StatusRecord) -> StatusRecord:
        ...

    @abstractmethod
    def find_by_secondary_key(self, key: str, value: str) -> Optional[StatusRecord]:
        ...

    def resolve(self, reference: str, invoice_id: Optional[str] = None) -> Optional[StatusRecord]:
        """Order id, then transaction id, then invoice id."""
        record = self.get(reference)
        if record is None:
            record = self.find_by_secondary_key("transaction_id", reference)
        if record is None and invoice_id:
            record = self.find_by_secondary_key("invoice_id", invoice_id)
        if record is None:
            record = self.find_by_secondary_key("invoice_id", reference)
        return record


class InMemoryStatusCache(StatusCache):
    def __init__(self):
        self._records: Dict[str, StatusRecord] = {}
        self._lock = threading.Lock()

    def get(self, order_id: str) -> Optional[StatusRecord]:
        with self._lock:
            return self._records.get(order_id)

    def put(self, record: StatusRecord) -> StatusRecord:
        with self._lock:
            self._records[record.order_id] = record
        return record

    def find_by_secondary_key(self, key: str, value: str) -> Optional[StatusRecord]:
        if key not in SECONDARY_KEYS:
            raise ValueError(f"Unsupported secondary key: {key}")
        with self._lock:
            for record in self._records.values():
                if getattr(record, key) == value:
                    return record
        return None

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


class PaymentStoreStatusCache(StatusCache):
    durable = True
    _columns = {"transaction_id": "tracking_id", "invoice_id": "invoice_id"}

    def __init__(self, payment_store):
        self.payments = payment_store

    @staticmethod
    def _to_record(payment) -> StatusRecord:
        meta = payment.meta or {}
        return StatusRecord(
            order_id=payment.api_ref,
            transaction_id=payment.tracking_id,
            invoice_id=payment.invoice_id,
            status=payment.status or "pending",
            amount=payment.amount,
            payment_id=payment.id,
            provider=payment.provider,
            failed_reason=meta.get("failed_reason"),
            mpesa_reference=meta.get("mpesa_reference"),
            created_at=int(payment.created_at.timestamp() * 1000) if payment.created_at else _now_ms(),
            updated_at=int(payment.updated_at.timestamp() * 1000) if payment.updated_at else None,
        )

    def get(self, order_id: str) -> Optional[StatusRecord]:
        found = self.payments.find_by_field("api_ref", order_id, limit=1)
        return self._to_record(found[0]) if found else None

    def put(self, record: StatusRecord) -> StatusRecord:
        payment_id = record.payment_id
        if payment_id is None:
            existing = self.payments.find_by_field("api_ref", record.order_id, limit=1)
            if not existing:
                raise ValueError(f"No payment row for order {record.order_id}")
            payment_id = existing[0].id
        meta = {
            key: value
            for key, value in (
                ("failed_reason", record.failed_reason),
                ("mpesa_reference", record.mpesa_reference),
            )
            if value is not None
        }
        patch: Dict[str, Any] = {"status": record.status}
        if record.transaction_id:
            patch["tracking_id"] = record.transaction_id
        if record.invoice_id:
            patch["invoice_id"] = record.invoice_id
        if meta:
            patch["meta"] = meta
        self.payments.update_by_id(payment_id, patch)
        return record.model_copy(update={"payment_id": payment_id})

    def find_by_secondary_key(self, key: str, value: str) -> Optional[StatusRecord]:
        if key not in self._columns:
            raise ValueError(f"Unsupported secondary key: {key}")
        found = self.payments.find_by_field(self._columns[key], value, limit=1)
        return self._to_record(found[0]) if found else None
