from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..extensions import db
from ..utils.time import isoformat, utcnow

ACTIVE = "active"
EXPIRED = "expired"
CANCELLED = "cancelled"


class PlanSubscription(db.Model):
    """An ad package granted to a user by one successful payment."""

    __tablename__ = "user_plan_subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # unique: one grant per payment, whichever of verify/webhook gets there first
    payment_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("payments.id"), unique=True
    )
    plan_type: Mapped[str] = mapped_column(String(50), nullable=False)
    plan_name: Mapped[str] = mapped_column(String(120), nullable=False)
    plan_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False)
    ads_allowed: Mapped[Optional[int]] = mapped_column(Integer)
    ads_used: Mapped[int] = mapped_column(Integer, default=0)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), default=ACTIVE, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    payment = relationship("Payment", back_populates="subscription")

    @classmethod
    def grant(cls, plan, user_id, payment_id=None, purchased_with_ad=False, start=None):
        start = start or utcnow()
        return cls(
            user_id=user_id,
            payment_id=payment_id,
            plan_type=plan["id"],
            plan_name=plan["name"],
            plan_price=plan["price"],
            duration_days=plan["duration_days"],
            ads_allowed=plan["ads_allowed"],
            ads_used=1 if purchased_with_ad else 0,
            start_date=start,
            end_date=start + timedelta(days=plan["duration_days"]),
            status=ACTIVE,
        )

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "payment_id": self.payment_id,
            "plan_type": self.plan_type,
            "plan_name": self.plan_name,
            "plan_price": float(self.plan_price),
            "duration_days": self.duration_days,
            "ads_allowed": self.ads_allowed,
            "ads_used": self.ads_used,
            "start_date": isoformat(self.start_date),
            "end_date": isoformat(self.end_date),
            "status": self.status,
        }


class GatewaySubscription(db.Model):
    """Recurring plan managed on the gateway side, mirrored from webhooks."""

    __tablename__ = "gateway_subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    subscription_code: Mapped[Optional[str]] = mapped_column(String(100), unique=True)
    plan_code: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    email_token: Mapped[Optional[str]] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(20), default=ACTIVE)
    next_payment_date: Mapped[Optional[str]] = mapped_column(String(40))
    event_data: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )
