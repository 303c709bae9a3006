import logging

from celery import shared_task
from celery.signals import worker_ready
from kombu.exceptions import OperationalError

from ..services import payments as payment_service
from ..services.expiration import PaymentExpiry
from ..services.expiration import expire_lapsed_subscriptions as expire_lapsed

logger = logging.getLogger(__name__)


@shared_task(ignore_result=True)
def expire_pending_payments():
    return PaymentExpiry.from_app().expire_stale()


@shared_task(ignore_result=True)
def expire_payment(payment_id):
    return PaymentExpiry.from_app().expire_one(payment_id)


@shared_task(ignore_result=True)
def retry_subscription_provisioning():
    return payment_service.retry_pending()


@shared_task(ignore_result=True)
def expire_lapsed_subscriptions():
    return expire_lapsed()


@worker_ready.connect
def sweep_on_startup(sender=None, **kwargs):
    # First sweep right away instead of waiting for the first beat tick
    expire_pending_payments.delay()


def schedule_payment_expiration(payment_id, countdown):
    """Queue the one-off check for a freshly initialized payment.

    The periodic sweep covers the payment anyway, so a broker outage is only
    logged.
    """
    try:
        expire_payment.apply_async(args=[payment_id], countdown=countdown)
    except OperationalError:
        logger.warning(
            "Could not schedule expiration for payment %s, leaving it to the sweep",
            payment_id,
            exc_info=True,
        )
        return False
    return True
