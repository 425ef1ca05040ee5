"""
Order and Payment initialization, plus the sweep for orders left without a
payment.

Both rows are written in one transaction, so a failed Payment insert never
leaves an orphan Order behind. An order-number collision at insert time is
absorbed by regenerating the number.
"""
import secrets
import string
import time
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from payhooks.errors import ConflictError, DependencyError
from payhooks.models import Order, Payment
from payhooks.order_numbers import OrderNumberGenerator
from payhooks.status_cache import StatusCache, StatusRecord

logger = structlog.get_logger(__name__)

INSERT_ATTEMPTS = 3
ABANDONED_NOTE = "abandoned: no payment linked before timeout"
_REF_ALPHABET = string.ascii_lowercase + string.digits


def new_api_ref() -> str:
    suffix = "".join(secrets.choice(_REF_ALPHABET) for _ in range(6))
    return f"order_{int(time.time())}_{suffix}"


def new_payment_id() -> str:
    return f"pay_{int(time.time() * 1000)}_{secrets.randbelow(10_000)}"


def new_order_id() -> str:
    return f"ord_{uuid.uuid4().hex}"


class CheckoutService:
    def __init__(self, session_factory, orders, payments, order_numbers: Optional[OrderNumberGenerator] = None):
        self._session_factory = session_factory
        self.orders = orders
        self.payments = payments
        self.order_numbers = order_numbers or OrderNumberGenerator(orders)

    def initiate(
        self,
        *,
        user_id: str,
        provider: str,
        currency: str,
        subtotal: Decimal,
        tax_amount: Decimal,
        shipping_cost: Decimal,
        total_amount: Decimal,
        payment_method: Optional[str] = None,
        shipping_type: str = "standard",
        shipping_info: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create a pending Order and its pending Payment in one transaction."""
        for attempt in range(1, INSERT_ATTEMPTS + 1):
            order_number = self.order_numbers.generate()
            order = Order(
                id=new_order_id(),
                order_number=order_number,
                user_id=user_id,
                status="pending",
                payment_status="pending",
                payment_method=payment_method,
                subtotal=subtotal,
                tax_amount=tax_amount,
                shipping_cost=shipping_cost,
                total_amount=total_amount,
                shipping_type=shipping_type,
                shipping_info=shipping_info or {},
            )
            payment = Payment(
                id=new_payment_id(),
                order_id=order.id,
                api_ref=new_api_ref(),
                amount=total_amount,
                currency=currency,
                status="pending",
                provider=provider,
                meta={**(metadata or {}), "processed_at": datetime.now(timezone.utc).isoformat()},
            )

            db = self._session_factory()
            try:
                self.orders.insert(order, db=db)
                self.payments.insert(payment, db=db)
                db.commit()
                result = {
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "payment_id": payment.id,
                    "api_ref": payment.api_ref,
                    "amount": payment.amount,
                    "currency": payment.currency,
                    "status": payment.status,
                }
            except ConflictError:
                db.rollback()
                logger.warning("order_insert_conflict", order_number=order_number, attempt=attempt)
                continue
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

            logger.info(
                "checkout_initiated",
                order_id=result["order_id"],
                order_number=result["order_number"],
                payment_id=result["payment_id"],
                api_ref=result["api_ref"],
                provider=provider,
            )
            return result

        raise DependencyError("Could not allocate a unique order number")

    def initiate_mobile_money(self, status_cache: StatusCache, phone_number: str, **kwargs) -> Dict[str, Any]:
        digits = "".join(ch for ch in phone_number if ch.isdigit())
        kwargs.setdefault("payment_method", "mpesa")
        kwargs["metadata"] = {**(kwargs.get("metadata") or {}), "customer_phone": digits}
        result = self.initiate(provider="mobile_money", **kwargs)

        stamp = int(time.time() * 1000)
        record = StatusRecord(
            order_id=result["api_ref"],
            transaction_id=f"txn_{stamp}",
            invoice_id=f"inv_{stamp}",
            status="pending",
            amount=result["amount"],
            payment_id=result["payment_id"],
            provider="M-PESA",
        )
        record = status_cache.put(record)
        result.update(
            transaction_id=record.transaction_id,
            invoice_id=record.invoice_id,
            phone_number=digits,
        )
        return result

    def sweep_abandoned_orders(self, older_than: timedelta, limit: int = 100) -> List[str]:
        """Flag pending orders with no linked payment as cancelled."""
        cutoff = datetime.now(timezone.utc) - older_than
        swept = []
        for order in self.orders.find_unpaid_before(cutoff, limit=limit):
            self.orders.update_by_id(order.id, {"status": "cancelled", "notes": ABANDONED_NOTE})
            logger.info("order_abandoned", order_id=order.id, order_number=order.order_number)
            swept.append(order.id)
        return swept
