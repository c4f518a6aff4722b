"""PayPal order creation, capture and lookups against a mocked Orders API."""

import json
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select

from conftest import add_payment, add_pricing

from confpay.common.config import settings
from confpay.common.state_machine import PaymentStatus
from confpay.services.reconciliation.errors import ProviderError
from confpay.services.reconciliation.models import PaymentRecord, RecordKind, StatusTimeline
from confpay.services.reconciliation.provider import PayPalClient


ORDER_ID = "5O190127TN364715T"


def _order(status: str = "CREATED", value: str = "450.00", **extra) -> dict:
    order = {
        "id": ORDER_ID,
        "status": status,
        "purchase_units": [{"amount": {"currency_code": "EUR", "value": value}}],
        "links": [
            {"rel": "self", "href": f"https://api-m.sandbox.paypal.com/v2/checkout/orders/{ORDER_ID}"},
            {"rel": "approve", "href": f"https://www.sandbox.paypal.com/checkoutnow?token={ORDER_ID}"},
        ],
    }
    order.update(extra)
    return order


class FakePayPal:
    """Answers the token call and hands out queued order responses."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21AA", "token_type": "Bearer"})
        self.requests.append(request)
        return self.responses.pop(0)


def _use(service, fake: FakePayPal) -> None:
    service.paypal = PayPalClient(settings, transport=httpx.MockTransport(fake))


def test_create_order_stores_pending_record_with_pricing_amount(client, service, session_factory):
    pricing = add_pricing(session_factory, total="450.00")
    fake = FakePayPal(httpx.Response(201, json=_order()))
    _use(service, fake)

    resp = client.post(
        "/paypal/optics/orders",
        json={"customer_email": "attendee@example.org", "pricing_config_id": pricing.id},
    )

    assert resp.status_code == 200
    assert resp.json()["session_id"] == f"PAYPAL_{ORDER_ID}"
    assert resp.json()["url"].endswith(f"token={ORDER_ID}")
    sent = json.loads(fake.requests[0].content)
    assert sent["intent"] == "CAPTURE"
    assert sent["purchase_units"][0]["amount"] == {"currency_code": "EUR", "value": "450.00"}
    with session_factory() as db:
        record = db.execute(select(PaymentRecord)).scalar_one()
        reasons = [t.reason for t in db.execute(select(StatusTimeline)).scalars()]
    assert record.status == PaymentStatus.PENDING
    assert record.amount_total == Decimal("450.00")
    assert record.pricing_config_id == pricing.id
    assert reasons == ["paypal_order_created"]


def test_create_order_rejects_amount_that_contradicts_pricing(client, service, session_factory):
    pricing = add_pricing(session_factory, total="450.00")
    fake = FakePayPal()
    _use(service, fake)

    resp = client.post(
        "/paypal/optics/orders",
        json={"customer_email": "attendee@example.org", "pricing_config_id": pricing.id, "amount": "10.00"},
    )

    assert resp.status_code == 400
    assert fake.requests == []


def test_create_order_needs_an_amount(client, service):
    _use(service, FakePayPal())

    resp = client.post("/paypal/optics/orders", json={"customer_email": "attendee@example.org"})

    assert resp.status_code == 400


def test_capture_completes_the_record(client, service, session_factory):
    add_payment(session_factory, f"PAYPAL_{ORDER_ID}", payment_status="unpaid")
    captured = _order(status="COMPLETED", payer={"email_address": "buyer@example.org"})
    fake = FakePayPal(httpx.Response(201, json=captured))
    _use(service, fake)

    resp = client.post(f"/paypal/optics/orders/{ORDER_ID}/capture")

    assert resp.status_code == 200
    assert resp.json()["status"] == "COMPLETED"
    assert fake.requests[0].url.path == f"/v2/checkout/orders/{ORDER_ID}/capture"
    record = service.get_record("optics", RecordKind.PAYMENT, f"PAYPAL_{ORDER_ID}")
    assert record.payment_status == "paid"
    assert record.customer_email == "buyer@example.org"


def test_capture_that_does_not_complete_marks_failed(service, session_factory):
    add_payment(session_factory, f"PAYPAL_{ORDER_ID}", payment_status="unpaid")
    _use(service, FakePayPal(httpx.Response(201, json=_order(status="PAYER_ACTION_REQUIRED"))))

    record = service.capture_paypal_order("optics", ORDER_ID)

    assert record.status == PaymentStatus.FAILED
    assert record.payment_status == "failed"


def test_capture_unknown_order_is_404(client, service):
    fake = FakePayPal()
    _use(service, fake)

    assert client.post(f"/paypal/optics/orders/{ORDER_ID}/capture").status_code == 404
    assert fake.requests == []


def test_non_json_order_response_is_a_provider_error(service, session_factory):
    add_payment(session_factory, "PAYPAL_ABC")
    html = httpx.Response(200, text="<html>maintenance</html>", headers={"content-type": "text/html"})
    _use(service, FakePayPal(html))

    with pytest.raises(ProviderError):
        service.paypal.retrieve_order("PAYPAL_ABC")


def test_non_json_token_response_is_a_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>bad gateway</html>")

    paypal = PayPalClient(settings, transport=httpx.MockTransport(handler))

    with pytest.raises(ProviderError):
        paypal.retrieve_order("PAYPAL_ABC")


def test_non_json_refresh_answers_502(client, service, session_factory):
    add_payment(session_factory, "PAYPAL_ABC")
    _use(service, FakePayPal(httpx.Response(200, text="<html>maintenance</html>")))

    assert client.post("/records/optics/payment/PAYPAL_ABC/refresh").status_code == 502
