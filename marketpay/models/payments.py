from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, DateTime, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..extensions import db
from ..utils.time import isoformat, utcnow

PENDING = "pending"
SUCCEEDED = "succeeded"
FAILED = "failed"
CANCELLED = "cancelled"

PAYMENT_STATUSES = (PENDING, SUCCEEDED, FAILED, CANCELLED)

# failure_reason written by the expiration sweeper
EXPIRED = "expired"


class Payment(db.Model):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="GHS")
    # NULL for invoice rows created by the gateway
    provider_reference: Mapped[Optional[str]] = mapped_column(
        String(100), unique=True
    )
    provider_payment_id: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(20), default=PENDING, index=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(255))
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    subscription = relationship(
        "PlanSubscription", back_populates="payment", uselist=False
    )

    @property
    def plan_id(self):
        return (self.meta or {}).get("plan_id")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount": float(self.amount),
            "currency": self.currency,
            "provider_reference": self.provider_reference,
            "provider_payment_id": self.provider_payment_id,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "metadata": self.meta or {},
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
