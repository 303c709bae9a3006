import json

from flask import Blueprint, request, current_app
from sqlalchemy.exc import SQLAlchemyError

from ..services import webhooks as webhook_service
from ..services.paystack import verify_signature

bp = Blueprint("webhooks", __name__)


@bp.route("/paystack", methods=["POST"])
def paystack_webhook():
    """Gateway callback. Acknowledged with 200 once the signature checks out.
    ---
    tags:
      - webhooks
    parameters:
      - in: header
        name: x-paystack-signature
        type: string
        required: true
        description: hex HMAC-SHA-512 of the raw body, keyed with the secret key
    responses:
      200:
        description: Event received
      400:
        description: Invalid signature or payload
    """
    body = request.get_data()
    signature = request.headers.get("x-paystack-signature")
    if not verify_signature(body, signature, current_app.config.get("PAYSTACK_SECRET_KEY")):
        current_app.logger.warning("Invalid webhook signature")
        return "Invalid signature", 400

    try:
        event = json.loads(body)
    except ValueError:
        return "Invalid payload", 400
    if not isinstance(event, dict):
        return "Invalid payload", 400

    current_app.logger.info("Webhook event received: %s", event.get("event"))

    try:
        webhook_event = webhook_service.record_event(event)
    except SQLAlchemyError:
        # Not acknowledged, so the gateway redelivers it
        current_app.logger.exception("Error storing webhook event")
        return "Error storing webhook", 500

    webhook_service.process_event(webhook_event)
    return "OK", 200
