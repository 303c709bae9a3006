import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Payment, PlanSubscription
from ..models import payments as payment_status
from ..models import subscriptions as subscription_status
from ..utils.time import utcnow

logger = logging.getLogger(__name__)


class PaymentExpiry:
    """Fails checkout payments nobody finished within ``threshold``.

    Only payments opened through Initialize (they carry a provider reference)
    are swept; gateway invoice rows wait for their own charge events.
    """

    def __init__(self, threshold, clock=utcnow):
        self.threshold = threshold
        self.clock = clock

    @classmethod
    def from_app(cls, app=None, clock=utcnow):
        app = app or current_app
        return cls(timedelta(seconds=app.config["PAYMENT_EXPIRATION_SECONDS"]), clock=clock)

    def _expire(self, *criteria):
        now = self.clock()
        try:
            result = db.session.execute(
                update(Payment)
                .where(
                    Payment.status == payment_status.PENDING,
                    Payment.provider_reference.isnot(None),
                    Payment.created_at <= now - self.threshold,
                    *criteria,
                )
                .values(
                    status=payment_status.FAILED,
                    failure_reason=payment_status.EXPIRED,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise
        return result.rowcount

    def expire_stale(self):
        expired = self._expire()
        if expired:
            logger.info("Expired %s pending payments", expired)
        return expired

    def expire_one(self, payment_id):
        expired = self._expire(Payment.id == payment_id) == 1
        if expired:
            logger.info("Payment %s expired and marked as failed", payment_id)
        return expired


def expire_lapsed_subscriptions(clock=utcnow):
    now = clock()
    try:
        result = db.session.execute(
            update(PlanSubscription)
            .where(
                PlanSubscription.status == subscription_status.ACTIVE,
                PlanSubscription.end_date <= now,
            )
            .values(status=subscription_status.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise
    if result.rowcount:
        logger.info("Marked %s plan subscriptions expired", result.rowcount)
    return result.rowcount
