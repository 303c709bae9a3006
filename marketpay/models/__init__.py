from .payments import Payment
from .subscriptions import PlanSubscription, GatewaySubscription
from .webhooks import WebhookEvent
from .provisioning import ProvisioningTask

__all__ = [
    "Payment",
    "PlanSubscription",
    "GatewaySubscription",
    "WebhookEvent",
    "ProvisioningTask",
]
