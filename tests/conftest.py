from unittest.mock import patch

import pytest
from flask_jwt_extended import create_access_token

from marketpay import create_app
from marketpay.extensions import db
from marketpay.models import Payment
from marketpay.services.paystack import compute_signature
from marketpay.utils.time import utcnow

from helpers import OTHER_USER_ID, USER_ID


def pytest_configure(config):
    config.addinivalue_line("markers", "payment: payment lifecycle tests")
    config.addinivalue_line("markers", "webhook: gateway webhook tests")


@pytest.fixture
def app():
    app = create_app("testing")
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    token = create_access_token(identity=USER_ID)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def other_auth_headers(app):
    token = create_access_token(identity=OTHER_USER_ID)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def paystack():
    """The paystackapi client as seen by the service."""
    with patch("marketpay.services.paystack.Paystack") as paystack_cls:
        yield paystack_cls.return_value


@pytest.fixture
def make_payment(app):
    def _make(reference="ref_test_1", user_id=USER_ID, amount=50, status="pending",
              metadata=None, age=None, failure_reason=None):
        payment = Payment(
            user_id=user_id,
            amount=amount,
            currency="GHS",
            provider_reference=reference,
            status=status,
            failure_reason=failure_reason,
            meta={"plan_id": "rising"} if metadata is None else metadata,
        )
        if age is not None:
            payment.created_at = utcnow() - age
        db.session.add(payment)
        db.session.commit()
        return payment

    return _make


@pytest.fixture
def sign(app):
    def _sign(body):
        return compute_signature(body, app.config["PAYSTACK_SECRET_KEY"])

    return _sign
