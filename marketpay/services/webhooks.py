import logging
from decimal import Decimal, InvalidOperation

from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import GatewaySubscription, Payment, WebhookEvent
from ..models import payments as payment_status
from ..models import subscriptions as subscription_status
from ..utils.time import utcnow
from . import payments as payment_service

logger = logging.getLogger(__name__)

PROVIDER = "paystack"


class WebhookPayloadError(ValueError):
    pass


def _customer_user_id(data):
    customer = data.get("customer") or {}
    metadata = customer.get("metadata") or {}
    user_id = metadata.get("user_id") if isinstance(metadata, dict) else None
    if user_id is None:
        tx_meta = data.get("metadata")
        if isinstance(tx_meta, dict):
            user_id = tx_meta.get("user_id")
    return str(user_id) if user_id is not None else None


def handle_charge_success(data):
    reference = data.get("reference")
    if not reference:
        raise WebhookPayloadError("charge.success without reference")

    payment = Payment.query.filter_by(provider_reference=reference).first()
    if payment is None:
        logger.warning("charge.success for unknown reference %s", reference)
        return

    transaction = dict(data, status="success")
    payment_service.finalize(payment, transaction, source="webhook")


def handle_subscription_create(data):
    plan_code = (data.get("plan") or {}).get("plan_code")
    if not plan_code:
        raise WebhookPayloadError("subscription.create without plan code")

    code = data.get("subscription_code")
    user_id = _customer_user_id(data)
    if code:
        query = GatewaySubscription.query.filter_by(subscription_code=code)
    else:
        # No code to key on, so a redelivery matches the same plan for the same customer
        query = GatewaySubscription.query.filter_by(
            subscription_code=None, plan_code=plan_code, user_id=user_id
        )
    subscription = query.first()
    if subscription is None:
        subscription = GatewaySubscription(subscription_code=code)
        db.session.add(subscription)

    subscription.user_id = user_id or subscription.user_id
    subscription.plan_code = plan_code
    subscription.email_token = data.get("email_token")
    subscription.next_payment_date = data.get("next_payment_date")
    subscription.status = subscription_status.ACTIVE
    subscription.event_data = data
    db.session.commit()
    logger.info("Recurring subscription %s active for plan %s", code, plan_code)


def handle_subscription_disable(data):
    code = data.get("subscription_code")
    plan_code = (data.get("plan") or {}).get("plan_code")

    if code:
        query = GatewaySubscription.query.filter_by(subscription_code=code)
    elif plan_code:
        query = GatewaySubscription.query.filter_by(plan_code=plan_code)
        user_id = _customer_user_id(data)
        if user_id:
            query = query.filter_by(user_id=user_id)
    else:
        raise WebhookPayloadError("subscription.disable without subscription or plan code")

    cancelled = 0
    for subscription in query.all():
        subscription.status = subscription_status.CANCELLED
        cancelled += 1
    db.session.commit()
    logger.info("Cancelled %s recurring subscription(s) for %s", cancelled, code or plan_code)


def handle_invoice_create(data):
    user_id = _customer_user_id(data)
    if not user_id:
        raise WebhookPayloadError("invoice.create without customer user id")

    try:
        amount = Decimal(str(data.get("amount") or 0)) / 100
    except InvalidOperation:
        raise WebhookPayloadError(f"invoice.create with invalid amount {data.get('amount')!r}")
    if not amount.is_finite() or amount < 0:
        raise WebhookPayloadError(f"invoice.create with invalid amount {data.get('amount')!r}")

    payment = Payment(
        user_id=user_id,
        amount=amount,
        currency=data.get("currency") or "GHS",
        status=payment_status.PENDING,
        provider_payment_id=str(data["id"]) if data.get("id") is not None else None,
        meta=dict(data, type="invoice"),
    )
    db.session.add(payment)
    db.session.commit()
    logger.info("Invoice %s recorded as pending payment %s", data.get("id"), payment.id)


HANDLERS = {
    "charge.success": handle_charge_success,
    "subscription.create": handle_subscription_create,
    "subscription.disable": handle_subscription_disable,
    "invoice.create": handle_invoice_create,
}


def record_event(event):
    webhook_event = WebhookEvent(
        provider=PROVIDER,
        event_type=event.get("event"),
        event_data=event,
    )
    db.session.add(webhook_event)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise
    return webhook_event


def process_event(webhook_event):
    """Dispatch a stored event. Returns True when it was handled without error."""
    event = webhook_event.event_data
    event_type = event.get("event")
    data = event.get("data") or {}
    event_id = webhook_event.id

    handler = HANDLERS.get(event_type)
    try:
        if handler is None:
            logger.info("Unhandled webhook event type: %s", event_type)
        else:
            handler(data)
    except (WebhookPayloadError, SQLAlchemyError, ArithmeticError, AttributeError, KeyError, TypeError, ValueError) as e:
        db.session.rollback()
        logger.exception("Webhook %s (%s) processing failed", event_id, event_type)
        webhook_event = db.session.get(WebhookEvent, event_id)
        webhook_event.error = str(e)
        db.session.commit()
        return False

    webhook_event = db.session.get(WebhookEvent, event_id)
    webhook_event.processed = True
    webhook_event.processed_at = utcnow()
    webhook_event.error = None
    db.session.commit()
    return True
