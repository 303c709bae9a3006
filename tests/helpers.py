from datetime import timedelta

USER_ID = "5f0c7a3e-user-one"
OTHER_USER_ID = "9b21d4f0-user-two"


def initialize_response(reference, status=True, message="Authorization URL created"):
    return {
        "status": status,
        "message": message,
        "data": {
            "authorization_url": f"https://checkout.paystack.com/{reference}",
            "access_code": "0peioxfhpn",
            "reference": reference,
        },
    }


def verify_response(reference, status="success", metadata=None, transaction_id=4099260516,
                    amount=5000, currency="GHS"):
    return {
        "status": True,
        "message": "Verification successful",
        "data": {
            "id": transaction_id,
            "status": status,
            "reference": reference,
            "amount": amount,
            "currency": currency,
            "gateway_response": "Successful" if status == "success" else "Declined",
            "paid_at": "2026-10-19T10:00:00.000Z",
            "metadata": {"plan_id": "rising"} if metadata is None else metadata,
        },
    }


def minutes(n):
    return timedelta(minutes=n)
