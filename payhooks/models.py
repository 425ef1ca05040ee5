from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, JSON, Numeric, String, Text

from payhooks.database import Base

ORDER_STATUSES = ("pending", "processing", "completed", "cancelled")
PAYMENT_STATUSES = ("pending", "processing", "completed", "failed", "refunded", "disputed", "unknown")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)                   # ord_<hex>
    order_number = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(String, index=True)
    status = Column(String, default="pending")              # pending | processing | completed | cancelled
    payment_status = Column(String, default="pending")      # mirrors the last reconciled Payment.status
    payment_method = Column(String)

    subtotal = Column(Numeric(12, 2), default=0)
    tax_amount = Column(Numeric(12, 2), default=0)
    shipping_cost = Column(Numeric(12, 2), default=0)
    total_amount = Column(Numeric(12, 2), default=0)
    shipping_type = Column(String, default="standard")
    shipping_info = Column(JSON, default=dict)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True)                   # pay_<ms>_<rand>
    order_id = Column(String, ForeignKey("orders.id"), nullable=True, index=True)
    api_ref = Column(String, index=True)                    # correlation key echoed by the provider
    amount = Column(Numeric(12, 2))
    currency = Column(String)
    status = Column(String, default="pending")
    provider = Column(String)
    invoice_id = Column(String, index=True, nullable=True)
    tracking_id = Column(String, index=True, nullable=True)
    meta = Column("metadata", JSON, default=dict)
    processor_response = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
