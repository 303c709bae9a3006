"""Ad packages a user can buy.

This table is the only source of plan terms: Verify and the webhook provision
from it and ``GET /payments/plans`` serves it to the client, so displayed and
granted durations cannot drift apart.
"""
from decimal import Decimal

# ads_allowed=None means unlimited
PLANS = {
    "starter": {
        "name": "Starter Plan",
        "price": Decimal("15.00"),
        "duration_days": 7,
        "ads_allowed": 5,
    },
    "standard": {
        "name": "Standard Plan",
        "price": Decimal("30.00"),
        "duration_days": 30,
        "ads_allowed": 10,
    },
    "rising": {
        "name": "Rising Seller Plan",
        "price": Decimal("50.00"),
        "duration_days": 14,
        "ads_allowed": 25,
    },
    "pro": {
        "name": "Pro Seller Plan",
        "price": Decimal("100.00"),
        "duration_days": 30,
        "ads_allowed": 50,
    },
    "business": {
        "name": "Business Plan",
        "price": Decimal("250.00"),
        "duration_days": 90,
        "ads_allowed": 150,
    },
    "premium": {
        "name": "Premium Brand Plan",
        "price": Decimal("500.00"),
        "duration_days": 30,
        "ads_allowed": None,
    },
}


def get_plan(plan_id):
    if not plan_id:
        return None
    plan = PLANS.get(str(plan_id).strip().lower())
    if plan is None:
        return None
    return dict(plan, id=str(plan_id).strip().lower())


def serialize_plan(plan_id, plan):
    return {
        "id": plan_id,
        "name": plan["name"],
        "price": float(plan["price"]),
        "duration_days": plan["duration_days"],
        "ads_allowed": plan["ads_allowed"],
    }


def list_plans():
    ordered = sorted(PLANS.items(), key=lambda item: item[1]["price"])
    return [serialize_plan(plan_id, plan) for plan_id, plan in ordered]
