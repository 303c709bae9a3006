import secrets
import time
from decimal import Decimal, InvalidOperation

from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import jwt_required
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Payment, PlanSubscription
from ..models import payments as payment_status
from ..models import subscriptions as subscription_status
from ..plans import get_plan, list_plans
from ..security import current_user_id
from ..services import payments as payment_service
from ..services.paystack import (
    DEFAULT_CHANNELS,
    GatewayError,
    GatewayNotConfigured,
    PaystackClient,
)
from ..utils.time import utcnow
from ..workers.tasks import schedule_payment_expiration

bp = Blueprint("payments", __name__)


def generate_reference():
    return f"ref_{int(time.time() * 1000)}_{secrets.token_hex(5)}"


def _parse_amount(raw):
    if raw is None or isinstance(raw, bool):
        raise ValueError("Amount is required")
    try:
        amount = Decimal(str(raw))
    except InvalidOperation:
        raise ValueError("Invalid amount")
    if not amount.is_finite() or amount <= 0:
        raise ValueError("Invalid amount")
    return amount.quantize(Decimal("0.01"))


@bp.route("/plans", methods=["GET"])
def get_plans():
    """List the ad packages on sale.
    ---
    tags:
      - payments
    responses:
      200:
        description: Plans ordered by price
    """
    return jsonify({"plans": list_plans()}), 200


@bp.route("/initialize", methods=["POST"])
@jwt_required()
def initialize_payment():
    """Open a gateway checkout for the current user.
    ---
    tags:
      - payments
    security:
      - Bearer: []
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required: [email, amount]
          properties:
            email: {type: string}
            amount: {type: number, description: Major currency units}
            currency: {type: string, default: GHS}
            reference: {type: string}
            callback_url: {type: string}
            metadata: {type: object}
            channels: {type: array, items: {type: string}}
    responses:
      200:
        description: Checkout created, payment recorded as pending
      400:
        description: Invalid input or gateway rejection
      401:
        description: Missing or invalid bearer token
    """
    user_id = current_user_id()
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return jsonify({"error": "Invalid JSON payload"}), 400

    email = (data.get("email") or "").strip()
    if not email:
        return jsonify({"error": "Email is required"}), 400

    try:
        amount = _parse_amount(data.get("amount"))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        return jsonify({"error": "metadata must be an object"}), 400

    channels = data.get("channels") or DEFAULT_CHANNELS
    if not isinstance(channels, list):
        return jsonify({"error": "channels must be a list"}), 400

    currency = (data.get("currency") or current_app.config["DEFAULT_CURRENCY"]).upper()
    plan_id = metadata.get("plan_id")
    if plan_id:
        plan = get_plan(plan_id)
        if plan is None:
            return jsonify({"error": f"Unknown plan: {plan_id}"}), 400
        # Plans are sold at their listed price only
        if amount != plan["price"] or currency != current_app.config["DEFAULT_CURRENCY"]:
            return jsonify({"error": "Amount does not match plan price"}), 400

    reference = (data.get("reference") or "").strip() or generate_reference()

    try:
        gateway = PaystackClient.from_app()
    except GatewayNotConfigured:
        return jsonify({"error": "Paystack configuration missing"}), 500

    try:
        response = gateway.initialize(
            email=email,
            amount=amount,
            reference=reference,
            currency=currency,
            metadata=dict(metadata, user_id=user_id),
            callback_url=data.get("callback_url"),
            channels=channels,
        )
    except GatewayError as e:
        return jsonify({"error": e.message or "Payment initialization failed"}), 400
    except Exception as e:
        current_app.logger.exception("Paystack initialize failed")
        return jsonify({"error": str(e)}), 500

    gateway_data = response.get("data") or {}
    reference = gateway_data.get("reference") or reference

    # Only written once the gateway accepted the checkout
    payment = Payment(
        user_id=user_id,
        amount=amount,
        currency=currency,
        provider_reference=reference,
        status=payment_status.PENDING,
        meta=metadata,
    )
    try:
        db.session.add(payment)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to record payment %s", reference)
        return jsonify({"error": "Failed to create payment record"}), 500

    payment_id = payment.id
    current_app.logger.info("Payment initialized successfully: %s", reference)
    schedule_payment_expiration(
        payment_id, countdown=current_app.config["PAYMENT_EXPIRATION_SECONDS"]
    )

    return (
        jsonify(
            dict(
                response,
                data=dict(
                    gateway_data,
                    reference=reference,
                    public_key=gateway.public_key,
                ),
            )
        ),
        200,
    )


@bp.route("/verify", methods=["POST"])
@jwt_required()
def verify_payment():
    """Confirm a checkout with the gateway and grant the purchased plan.
    ---
    tags:
      - payments
    security:
      - Bearer: []
    parameters:
      - in: body
        name: body
        required: true
        schema:
          type: object
          required: [reference]
          properties:
            reference: {type: string}
    responses:
      200:
        description: Gateway verification payload plus subscription_created
      400:
        description: Missing reference or gateway rejection
      404:
        description: No payment with this reference for the current user
    """
    user_id = current_user_id()
    data = request.get_json(silent=True) or {}
    reference = (data.get("reference") or "").strip() if isinstance(data, dict) else ""
    if not reference:
        return jsonify({"error": "Reference is required"}), 400

    payment = db.session.execute(
        db.select(Payment).filter_by(provider_reference=reference, user_id=user_id)
    ).scalar_one_or_none()
    if not payment:
        return jsonify({"error": "Payment not found"}), 404

    try:
        gateway = PaystackClient.from_app()
    except GatewayNotConfigured:
        return jsonify({"error": "Paystack configuration missing"}), 500

    try:
        response = gateway.verify(reference)
    except GatewayError as e:
        try:
            payment_service.fail_payment(payment, e.message)
        except SQLAlchemyError:
            current_app.logger.exception("Failed to mark payment %s failed", reference)
            return jsonify({"error": "Failed to update payment record"}), 500
        return jsonify({"error": e.message or "Payment verification failed"}), 400
    except Exception as e:
        current_app.logger.exception("Paystack verify failed")
        return jsonify({"error": str(e)}), 500

    transaction = response.get("data") or {}
    try:
        _, subscription = payment_service.finalize(payment, transaction, source="verified")
    except SQLAlchemyError:
        current_app.logger.exception("Database update error for payment %s", reference)
        return jsonify({"error": "Failed to update payment record"}), 500

    current_app.logger.info("Payment verified: %s (%s)", reference, transaction.get("status"))
    return jsonify(dict(response, subscription_created=subscription is not None)), 200


@bp.route("/history", methods=["GET"])
@jwt_required()
def payment_history():
    user_id = current_user_id()
    try:
        payments = (
            Payment.query.filter_by(user_id=user_id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .all()
        )
        out = []
        for p in payments:
            item = p.to_dict()
            item["subscription"] = p.subscription.to_dict() if p.subscription else None
            out.append(item)
        return jsonify({"payments": out}), 200
    except Exception as e:
        current_app.logger.exception("Error fetching payment history")
        return jsonify({"error": "database error", "detail": str(e)}), 500


@bp.route("/subscriptions/active", methods=["GET"])
@jwt_required()
def active_subscription():
    """Latest-ending plan subscription that is still running, or null."""
    user_id = current_user_id()
    try:
        subscription = (
            PlanSubscription.query.filter(
                PlanSubscription.user_id == user_id,
                PlanSubscription.status == subscription_status.ACTIVE,
                PlanSubscription.end_date > utcnow(),
            )
            .order_by(PlanSubscription.end_date.desc())
            .first()
        )
        return (
            jsonify({"subscription": subscription.to_dict() if subscription else None}),
            200,
        )
    except Exception as e:
        current_app.logger.exception("Error fetching active subscription")
        return jsonify({"error": "database error", "detail": str(e)}), 500
