"""Payment finalization and subscription provisioning.

Verify and the ``charge.success`` webhook both land here. A payment leaves
``pending`` through a conditional UPDATE, so when both paths race only one of
them wins the transition, and only the winner writes the provisioning outbox
row. Provisioning itself runs as a separate step: a failure leaves the outbox
row pending for ``retry_pending`` instead of undoing the payment.
"""
import logging

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..extensions import db
from ..models import Payment, PlanSubscription, ProvisioningTask
from ..models import payments as payment_status
from ..models import provisioning as task_status
from ..plans import get_plan
from ..utils.time import isoformat, utcnow
from .paystack import to_minor_units

logger = logging.getLogger(__name__)

# Gateway statuses that close a transaction for good; anything else but
# "success" may still turn into a charge
FINAL_FAILURES = ("failed", "reversed")


def purchased_with_ad(metadata):
    metadata = metadata or {}
    flag = metadata.get("purchased_with_ad", metadata.get("purchasedWithAd"))
    if isinstance(flag, str):
        return flag.strip().lower() in ("1", "true", "yes")
    return bool(flag)


def resolve_plan_context(payment, transaction):
    """Plan id and ad flag, preferring what the gateway echoed back."""
    tx_meta = (transaction or {}).get("metadata")
    if not isinstance(tx_meta, dict):
        tx_meta = {}
    stored = payment.meta or {}
    plan_id = tx_meta.get("plan_id") or stored.get("plan_id")
    with_ad = purchased_with_ad(tx_meta) or purchased_with_ad(stored)
    return plan_id, with_ad


def charge_matches_plan(plan, transaction, currency):
    """True when the charge covers exactly the plan's price in the plan currency."""
    amount = transaction.get("amount")
    if amount is None or isinstance(amount, bool):
        return False
    try:
        amount = int(amount)
    except (TypeError, ValueError):
        return False
    charged_currency = (transaction.get("currency") or "").upper()
    return (
        amount == to_minor_units(plan["price"])
        and charged_currency == currency.upper()
    )


def _transition(payment, new_status, values):
    if new_status == payment_status.SUCCEEDED:
        # Money the gateway confirms wins over any earlier failure
        allowed = Payment.status.in_((payment_status.PENDING, payment_status.FAILED))
    else:
        allowed = Payment.status == payment_status.PENDING

    result = db.session.execute(
        update(Payment)
        .where(Payment.id == payment.id, allowed)
        .values(status=new_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _provisioning_task(payment, transaction):
    plan_id, with_ad = resolve_plan_context(payment, transaction)
    if not plan_id:
        return None
    task = ProvisioningTask(
        payment_id=payment.id,
        user_id=payment.user_id,
        plan_id=str(plan_id),
        purchased_with_ad=with_ad,
    )
    plan = get_plan(plan_id)
    currency = current_app.config["DEFAULT_CURRENCY"]
    if plan is not None and not charge_matches_plan(plan, transaction, currency):
        logger.error(
            "Payment %s paid %s %s for plan %s priced %s %s, not provisioning",
            payment.provider_reference or payment.id, transaction.get("amount"),
            transaction.get("currency"), plan["id"], to_minor_units(plan["price"]), currency,
        )
        task.status = task_status.ABANDONED
        task.last_error = "Amount paid does not match plan price"
    return task


def record_transaction(payment, transaction, source):
    """Apply the gateway's verdict for ``payment``.

    Returns ``(transitioned, task)``: whether this call moved the payment to its
    terminal state, and the outbox row it wrote, if any. A status the gateway
    has not settled yet (``abandoned``, ``ongoing``...) only updates the stored
    transaction and leaves the payment pending. Commits.
    """
    status = transaction.get("status")
    succeeded = status == "success"

    meta = dict(payment.meta or {})
    meta["transaction"] = transaction
    meta[f"{source}_at"] = isoformat(utcnow())

    if not succeeded and status not in FINAL_FAILURES:
        return _record_unsettled(payment, status, meta, source), None

    new_status = payment_status.SUCCEEDED if succeeded else payment_status.FAILED
    values = {"meta": meta}
    if transaction.get("id") is not None:
        values["provider_payment_id"] = str(transaction["id"])
    if succeeded:
        values["failure_reason"] = None
    else:
        reason = transaction.get("gateway_response") or status or "failed"
        values["failure_reason"] = str(reason)[:255]

    task = None
    try:
        transitioned = _transition(payment, new_status, values)
        if transitioned and succeeded:
            task = _provisioning_task(payment, transaction)
            if task is not None:
                db.session.add(task)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise

    if transitioned:
        logger.info("Payment %s %s via %s", payment.provider_reference or payment.id, new_status, source)
    else:
        db.session.refresh(payment)
        logger.info(
            "Payment %s already %s, %s result ignored",
            payment.provider_reference or payment.id, payment.status, source,
        )
    return transitioned, task


def _record_unsettled(payment, status, meta, source):
    try:
        db.session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == payment_status.PENDING)
            .values(meta=meta, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise
    db.session.refresh(payment)
    logger.info(
        "Payment %s still %r at the gateway (%s), left %s",
        payment.provider_reference or payment.id, status, source, payment.status,
    )
    return False


def fail_payment(payment, reason):
    """Fail a pending payment. Returns True when this call changed it."""
    try:
        changed = _transition(payment, payment_status.FAILED, {"failure_reason": str(reason)[:255]})
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        raise
    return changed


def _max_attempts():
    return current_app.config.get("PROVISIONING_MAX_ATTEMPTS", 5)


def provision(task, now=None):
    """Grant the plan owed by an outbox row.

    Never raises on database errors: they are recorded on the row, which stays
    pending until it runs out of attempts.
    """
    task_id, payment_id = task.id, task.payment_id
    plan = get_plan(task.plan_id)
    if plan is None:
        logger.error("Unknown plan %r for payment %s, not provisioning", task.plan_id, task.payment_id)
        task.status = task_status.ABANDONED
        task.last_error = f"Unknown plan: {task.plan_id}"
        task.attempts += 1
        db.session.commit()
        return None

    try:
        subscription = PlanSubscription.grant(
            plan,
            user_id=task.user_id,
            payment_id=task.payment_id,
            purchased_with_ad=task.purchased_with_ad,
            start=now,
        )
        db.session.add(subscription)
        task.status = task_status.COMPLETED
        task.completed_at = utcnow()
        task.attempts += 1
        db.session.commit()
        logger.info(
            "Subscription %s (%s) granted to %s for payment %s",
            subscription.id, plan["id"], subscription.user_id, subscription.payment_id,
        )
        return subscription
    except IntegrityError:
        db.session.rollback()
        task = db.session.get(ProvisioningTask, task_id)
        existing = PlanSubscription.query.filter_by(payment_id=task.payment_id).first()
        if existing is not None:
            logger.info("Payment %s already has subscription %s", task.payment_id, existing.id)
            task.status = task_status.COMPLETED
            task.completed_at = utcnow()
            db.session.commit()
            return existing
        _record_failure(task, "integrity error while granting subscription")
        return None
    except SQLAlchemyError as e:
        logger.exception("Subscription provisioning failed for payment %s", payment_id)
        db.session.rollback()
        _record_failure(db.session.get(ProvisioningTask, task_id), str(e))
        return None


def _record_failure(task, error):
    task.attempts += 1
    task.last_error = error
    if task.attempts >= _max_attempts():
        task.status = task_status.ABANDONED
        logger.error(
            "Giving up on subscription for payment %s after %s attempts",
            task.payment_id, task.attempts,
        )
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not record provisioning failure for payment %s", task.payment_id)


def retry_pending(limit=100):
    """Retry outbox rows that have not been provisioned yet."""
    tasks = (
        ProvisioningTask.query.filter_by(status=task_status.PENDING)
        .order_by(ProvisioningTask.created_at.asc())
        .limit(limit)
        .all()
    )
    granted = 0
    for task in tasks:
        if provision(task) is not None:
            granted += 1
    if tasks:
        logger.info("Provisioning retry: %s of %s granted", granted, len(tasks))
    return granted


def finalize(payment, transaction, source):
    """Record the transaction and provision right away when owed.

    Returns ``(transitioned, subscription)``.
    """
    transitioned, task = record_transaction(payment, transaction, source)
    subscription = None
    if task is not None and task.status == task_status.PENDING:
        subscription = provision(task)
    if subscription is None:
        subscription = PlanSubscription.query.filter_by(payment_id=payment.id).first()
    return transitioned, subscription
