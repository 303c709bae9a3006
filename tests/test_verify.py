from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
import requests
from sqlalchemy.exc import OperationalError

from marketpay.extensions import db
from marketpay.models import Payment, PlanSubscription, ProvisioningTask
from marketpay.services import payments as payment_service

from helpers import initialize_response, verify_response

pytestmark = pytest.mark.payment


def post_verify(client, headers, reference):
    return client.post("/payments/verify", json={"reference": reference}, headers=headers)


def test_verified_rising_purchase_grants_fourteen_days(client, auth_headers, paystack, make_payment):
    payment = make_payment(reference="ref_abc")
    paystack.transaction.verify.return_value = verify_response("ref_abc")

    resp = post_verify(client, auth_headers, "ref_abc")

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["subscription_created"] is True
    assert body["data"]["status"] == "success"
    paystack.transaction.verify.assert_called_once_with(reference="ref_abc")

    db.session.refresh(payment)
    assert payment.status == "succeeded"
    assert payment.provider_payment_id == "4099260516"
    assert payment.failure_reason is None
    assert payment.meta["transaction"]["reference"] == "ref_abc"
    assert "verified_at" in payment.meta

    subscriptions = PlanSubscription.query.filter_by(payment_id=payment.id).all()
    assert len(subscriptions) == 1
    subscription = subscriptions[0]
    assert subscription.plan_type == "rising"
    assert subscription.plan_name == "Rising Seller Plan"
    assert subscription.ads_allowed == 25
    assert subscription.ads_used == 0
    assert subscription.status == "active"
    assert subscription.end_date - subscription.start_date == timedelta(days=14)


def test_purchased_with_ad_counts_one_ad(client, auth_headers, paystack, make_payment):
    make_payment(reference="ref_ad", metadata={"plan_id": "rising", "purchasedWithAd": True})
    paystack.transaction.verify.return_value = verify_response(
        "ref_ad", metadata={"plan_id": "rising", "purchased_with_ad": True}
    )

    post_verify(client, auth_headers, "ref_ad")

    assert PlanSubscription.query.one().ads_used == 1


def test_plan_falls_back_to_stored_metadata(client, auth_headers, paystack, make_payment):
    make_payment(reference="ref_meta", metadata={"plan_id": "starter"})
    paystack.transaction.verify.return_value = verify_response("ref_meta", metadata="", amount=1500)

    resp = post_verify(client, auth_headers, "ref_meta")

    assert resp.get_json()["subscription_created"] is True
    assert PlanSubscription.query.one().plan_type == "starter"


def test_second_verify_does_not_grant_twice(client, auth_headers, paystack, make_payment):
    payment = make_payment(reference="ref_twice")
    paystack.transaction.verify.return_value = verify_response("ref_twice")

    first = post_verify(client, auth_headers, "ref_twice")
    second = post_verify(client, auth_headers, "ref_twice")

    assert first.status_code == second.status_code == 200
    assert second.get_json()["subscription_created"] is True
    assert PlanSubscription.query.filter_by(payment_id=payment.id).count() == 1
    assert ProvisioningTask.query.count() == 1


def test_failed_transaction_fails_payment(client, auth_headers, paystack, make_payment):
    payment = make_payment(reference="ref_declined")
    paystack.transaction.verify.return_value = verify_response("ref_declined", status="failed")

    resp = post_verify(client, auth_headers, "ref_declined")

    assert resp.status_code == 200
    assert resp.get_json()["subscription_created"] is False
    db.session.refresh(payment)
    assert payment.status == "failed"
    assert payment.failure_reason == "Declined"
    assert PlanSubscription.query.count() == 0


def test_payment_without_plan_succeeds_without_subscription(client, auth_headers, paystack, make_payment):
    payment = make_payment(reference="ref_plain", metadata={})
    paystack.transaction.verify.return_value = verify_response("ref_plain", metadata={})

    resp = post_verify(client, auth_headers, "ref_plain")

    assert resp.get_json()["subscription_created"] is False
    db.session.refresh(payment)
    assert payment.status == "succeeded"
    assert ProvisioningTask.query.count() == 0


def test_gateway_rejection_fails_pending_payment(client, auth_headers, paystack, make_payment):
    payment = make_payment(reference="ref_unknown_at_gateway")
    error_response = MagicMock()
    error_response.json.return_value = {"status": False, "message": "Transaction reference not found"}
    paystack.transaction.verify.side_effect = requests.HTTPError(response=error_response)

    resp = post_verify(client, auth_headers, "ref_unknown_at_gateway")

    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Transaction reference not found"
    db.session.refresh(payment)
    assert payment.status == "failed"
    assert payment.failure_reason == "Transaction reference not found"


def test_other_users_reference_is_not_found(client, other_auth_headers, paystack, make_payment):
    payment = make_payment(reference="ref_mine")

    resp = post_verify(client, other_auth_headers, "ref_mine")

    assert resp.status_code == 404
    paystack.transaction.verify.assert_not_called()
    db.session.refresh(payment)
    assert payment.status == "pending"


def test_missing_reference(client, auth_headers, paystack):
    resp = client.post("/payments/verify", json={}, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Reference is required"


def test_verify_requires_token(client, paystack):
    resp = post_verify(client, {}, "ref_abc")
    assert resp.status_code == 401


def test_late_success_overrides_expiry(client, auth_headers, paystack, make_payment):
    payment = make_payment(reference="ref_late", status="failed", failure_reason="expired")
    paystack.transaction.verify.return_value = verify_response("ref_late")

    resp = post_verify(client, auth_headers, "ref_late")

    assert resp.get_json()["subscription_created"] is True
    db.session.refresh(payment)
    assert payment.status == "succeeded"
    assert payment.failure_reason is None


def test_confirmed_charge_overrides_earlier_failure(client, auth_headers, paystack, make_payment):
    payment = make_payment(reference="ref_closed", status="failed", failure_reason="Transaction reference not found")
    paystack.transaction.verify.return_value = verify_response("ref_closed")

    resp = post_verify(client, auth_headers, "ref_closed")

    assert resp.get_json()["subscription_created"] is True
    db.session.refresh(payment)
    assert payment.status == "succeeded"
    assert payment.failure_reason is None


def test_cancelled_payment_is_not_reopened(client, auth_headers, paystack, make_payment):
    payment = make_payment(reference="ref_cancelled", status="cancelled")
    paystack.transaction.verify.return_value = verify_response("ref_cancelled")

    resp = post_verify(client, auth_headers, "ref_cancelled")

    assert resp.get_json()["subscription_created"] is False
    db.session.refresh(payment)
    assert payment.status == "cancelled"
    assert PlanSubscription.query.count() == 0


def test_provisioning_failure_keeps_payment_and_retries(client, auth_headers, paystack, make_payment):
    payment = make_payment(reference="ref_flaky")
    paystack.transaction.verify.return_value = verify_response("ref_flaky")

    with patch.object(PlanSubscription, "grant", side_effect=OperationalError("INSERT", {}, Exception("db gone"))):
        resp = post_verify(client, auth_headers, "ref_flaky")

    assert resp.status_code == 200
    assert resp.get_json()["subscription_created"] is False
    db.session.refresh(payment)
    assert payment.status == "succeeded"
    task = ProvisioningTask.query.one()
    assert task.status == "pending"
    assert task.attempts == 1
    assert "db gone" in task.last_error

    assert payment_service.retry_pending() == 1

    task = ProvisioningTask.query.one()
    assert task.status == "completed"
    assert PlanSubscription.query.filter_by(payment_id=payment.id).count() == 1


def test_provisioning_gives_up_after_max_attempts(app, make_payment):
    app.config["PROVISIONING_MAX_ATTEMPTS"] = 2
    payment = make_payment(reference="ref_doomed", status="succeeded")
    db.session.add(ProvisioningTask(payment_id=payment.id, user_id=payment.user_id, plan_id="rising"))
    db.session.commit()

    with patch.object(PlanSubscription, "grant", side_effect=OperationalError("INSERT", {}, Exception("db gone"))):
        payment_service.retry_pending()
        payment_service.retry_pending()
        payment_service.retry_pending()

    task = ProvisioningTask.query.one()
    assert task.status == "abandoned"
    assert task.attempts == 2


def test_unknown_plan_is_abandoned(client, auth_headers, paystack, make_payment):
    payment = make_payment(reference="ref_gold", metadata={"plan_id": "gold"})
    paystack.transaction.verify.return_value = verify_response("ref_gold", metadata={"plan_id": "gold"})

    resp = post_verify(client, auth_headers, "ref_gold")

    assert resp.get_json()["subscription_created"] is False
    db.session.refresh(payment)
    assert payment.status == "succeeded"
    task = ProvisioningTask.query.one()
    assert task.status == "abandoned"
    assert task.last_error == "Unknown plan: gold"


def test_record_transaction_only_transitions_once(app, make_payment):
    payment = make_payment(reference="ref_race")
    transaction = verify_response("ref_race")["data"]

    first, task = payment_service.record_transaction(payment, transaction, source="webhook")
    second, again = payment_service.record_transaction(payment, transaction, source="verified")

    assert first is True and task is not None
    assert second is False and again is None
    assert db.session.get(Payment, payment.id).status == "succeeded"


def test_initialize_then_verify_grants_rising_plan(client, auth_headers, paystack):
    paystack.transaction.initialize.return_value = initialize_response("ref_e2e")
    paystack.transaction.verify.return_value = verify_response("ref_e2e")

    init = client.post(
        "/payments/initialize",
        json={"email": "a@b.com", "amount": 50, "currency": "GHS", "metadata": {"plan_id": "rising"},
              "reference": "ref_e2e"},
        headers=auth_headers,
    )
    assert init.status_code == 200
    payment = Payment.query.filter_by(provider_reference="ref_e2e").one()
    assert payment.status == "pending"

    resp = post_verify(client, auth_headers, "ref_e2e")

    assert resp.status_code == 200
    assert resp.get_json()["subscription_created"] is True
    db.session.refresh(payment)
    assert payment.status == "succeeded"
    subscription = PlanSubscription.query.filter_by(payment_id=payment.id).one()
    assert subscription.plan_type == "rising"
    assert subscription.duration_days == 14
    assert subscription.ads_allowed == 25
    assert subscription.ads_used == 0


def test_underpaid_charge_does_not_grant_plan(client, auth_headers, paystack, make_payment):
    payment = make_payment(reference="ref_cheap", amount=1, metadata={"plan_id": "premium"})
    paystack.transaction.verify.return_value = verify_response(
        "ref_cheap", metadata={"plan_id": "premium"}, amount=100
    )

    resp = post_verify(client, auth_headers, "ref_cheap")

    assert resp.get_json()["subscription_created"] is False
    db.session.refresh(payment)
    assert payment.status == "succeeded"
    assert PlanSubscription.query.count() == 0
    task = ProvisioningTask.query.one()
    assert task.status == "abandoned"
    assert task.last_error == "Amount paid does not match plan price"
    assert payment_service.retry_pending() == 0


def test_charge_in_other_currency_does_not_grant_plan(client, auth_headers, paystack, make_payment):
    make_payment(reference="ref_ngn")
    paystack.transaction.verify.return_value = verify_response("ref_ngn", currency="NGN")

    resp = post_verify(client, auth_headers, "ref_ngn")

    assert resp.get_json()["subscription_created"] is False
    assert ProvisioningTask.query.one().status == "abandoned"


@pytest.mark.parametrize("status", ["abandoned", "ongoing", "pending"])
def test_unsettled_verify_leaves_payment_pending(client, auth_headers, paystack, make_payment, status):
    payment = make_payment(reference="ref_unsettled")
    paystack.transaction.verify.return_value = verify_response("ref_unsettled", status=status)

    resp = post_verify(client, auth_headers, "ref_unsettled")

    assert resp.status_code == 200
    assert resp.get_json()["subscription_created"] is False
    db.session.refresh(payment)
    assert payment.status == "pending"
    assert payment.failure_reason is None
    assert payment.meta["transaction"]["status"] == status
    assert ProvisioningTask.query.count() == 0
