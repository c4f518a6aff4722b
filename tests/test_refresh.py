"""Real-time refresh against mocked provider APIs."""

from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
import stripe

from conftest import add_discount, add_payment

from confpay.common.config import settings
from confpay.common.state_machine import PaymentStatus
from confpay.services.reconciliation.errors import ProviderError, RecordNotFoundError
from confpay.services.reconciliation.models import RecordKind
from confpay.services.reconciliation.provider import PayPalClient


def _stripe_session(**overrides):
    values = {
        "id": "cs_live_1",
        "object": "checkout.session",
        "status": "complete",
        "payment_status": "paid",
        "customer_email": "attendee@example.org",
        "customer_details": None,
        "payment_intent": "pi_live_1",
        "amount_total": 52000,
        "currency": "eur",
        "created": 1760000000,
        "expires_at": 1760086400,
        "metadata": {},
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_refresh_session_applies_provider_state(service, session_factory, mocker):
    add_payment(session_factory, "cs_live_1", amount_total=Decimal("450.00"))
    retrieve = mocker.patch("stripe.checkout.Session.retrieve", return_value=_stripe_session())

    record = service.refresh_session("optics", RecordKind.PAYMENT, "cs_live_1")

    retrieve.assert_called_once()
    assert retrieve.call_args.args[0] == "cs_live_1"
    assert record.status == PaymentStatus.COMPLETED
    assert record.payment_status == "paid"
    assert record.amount_total == Decimal("520.00")
    assert record.payment_intent_id == "pi_live_1"


def test_refresh_session_runs_cross_record_sync(service, session_factory, mocker):
    add_payment(session_factory, "cs_live_1")
    add_discount(session_factory, "cs_live_1")
    mocker.patch("stripe.checkout.Session.retrieve", return_value=_stripe_session(status="expired", payment_status="unpaid"))

    service.refresh_session("optics", RecordKind.DISCOUNT, "cs_live_1")

    assert service.get_record("optics", RecordKind.PAYMENT, "cs_live_1").status == PaymentStatus.EXPIRED


def test_refresh_open_session_keeps_pending(service, session_factory, mocker):
    add_payment(session_factory, "cs_live_1")
    mocker.patch(
        "stripe.checkout.Session.retrieve",
        return_value=_stripe_session(status="open", payment_status=None, payment_intent=None),
    )

    record = service.refresh_session("optics", RecordKind.PAYMENT, "cs_live_1")

    assert record.status == PaymentStatus.PENDING
    assert record.payment_status == "unpaid"


def test_refresh_missing_record(service, mocker):
    retrieve = mocker.patch("stripe.checkout.Session.retrieve")

    with pytest.raises(RecordNotFoundError):
        service.refresh_session("optics", RecordKind.PAYMENT, "cs_nowhere")
    retrieve.assert_not_called()


def test_provider_failure_is_a_provider_error(service, session_factory, mocker):
    add_payment(session_factory, "cs_live_1")
    mocker.patch("stripe.checkout.Session.retrieve", side_effect=stripe.APIConnectionError("network down"))

    with pytest.raises(ProviderError):
        service.refresh_session("optics", RecordKind.PAYMENT, "cs_live_1")
    assert service.get_record("optics", RecordKind.PAYMENT, "cs_live_1").status == PaymentStatus.PENDING


def test_refresh_payment_intent_locates_by_intent(service, session_factory, mocker):
    add_payment(session_factory, "cs_live_1", payment_intent_id="pi_live_1")
    intent = SimpleNamespace(
        id="pi_live_1",
        object="payment_intent",
        status="canceled",
        receipt_email=None,
        amount=45000,
        currency="eur",
        created=1760000000,
        metadata={},
    )
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent)

    record = service.refresh_payment_intent("optics", RecordKind.PAYMENT, "pi_live_1")

    assert record.status == PaymentStatus.CANCELLED
    assert record.session_id == "cs_live_1"


def test_paypal_ids_use_the_paypal_client(service, session_factory, mocker):
    add_payment(session_factory, "PAYPAL_5O190127TN364715T")
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21AA", "token_type": "Bearer"})
        assert request.headers["Authorization"] == "Bearer A21AA"
        return httpx.Response(
            200,
            json={
                "id": "5O190127TN364715T",
                "status": "COMPLETED",
                "payer": {"email_address": "buyer@example.org"},
                "purchase_units": [{"amount": {"currency_code": "EUR", "value": "450.00"}}],
            },
        )

    service.paypal = PayPalClient(settings, transport=httpx.MockTransport(handler))
    stripe_retrieve = mocker.patch("stripe.checkout.Session.retrieve")

    record = service.refresh_session("optics", RecordKind.PAYMENT, "PAYPAL_5O190127TN364715T")

    stripe_retrieve.assert_not_called()
    assert calls == ["/v1/oauth2/token", "/v2/checkout/orders/5O190127TN364715T"]
    assert record.status == PaymentStatus.COMPLETED
    assert record.payment_status == "paid"
    assert record.customer_email == "buyer@example.org"


def test_refresh_endpoint_maps_errors(client, session_factory, mocker):
    add_payment(session_factory, "cs_live_1")
    mocker.patch("stripe.checkout.Session.retrieve", side_effect=stripe.APIConnectionError("network down"))

    assert client.post("/records/optics/payment/cs_live_1/refresh").status_code == 502
    assert client.post("/records/optics/payment/cs_missing/refresh").status_code == 404
    assert client.post("/records/optics/coupon/cs_live_1/refresh").status_code == 404


def test_expire_session_expires_at_provider(client, session_factory, mocker):
    add_payment(session_factory, "cs_live_1")
    expire = mocker.patch(
        "stripe.checkout.Session.expire",
        return_value=_stripe_session(status="expired", payment_status="unpaid", payment_intent=None),
    )

    resp = client.post("/records/optics/payment/cs_live_1/expire")

    assert resp.status_code == 200
    assert resp.json()["status"] == "EXPIRED"
    assert expire.call_args.args[0] == "cs_live_1"


def test_expire_paid_session_is_a_provider_error(client, session_factory, mocker):
    add_payment(session_factory, "cs_live_1", status=PaymentStatus.COMPLETED, payment_status="paid")
    mocker.patch("stripe.checkout.Session.expire", side_effect=stripe.InvalidRequestError("session is complete", None))

    assert client.post("/records/optics/payment/cs_live_1/expire").status_code == 502
    assert client.get("/records/optics/payment/cs_live_1").json()["status"] == "COMPLETED"


def test_expire_paypal_record_is_local(service, session_factory, mocker):
    add_payment(session_factory, "PAYPAL_5O190127TN364715T")
    expire = mocker.patch("stripe.checkout.Session.expire")

    record = service.expire_session("optics", RecordKind.PAYMENT, "PAYPAL_5O190127TN364715T")

    assert record.status == PaymentStatus.EXPIRED
    expire.assert_not_called()
