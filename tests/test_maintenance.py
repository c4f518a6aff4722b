"""Stale-record expiry, amount anomalies, statistics and checkout creation."""

from decimal import Decimal
from types import SimpleNamespace

from sqlalchemy import select

from conftest import add_discount, add_payment, add_pricing, ago

from confpay.common.state_machine import PaymentStatus
from confpay.services.reconciliation.models import DiscountRecord, PaymentRecord, StatusTimeline


def test_expire_stale_only_touches_past_due_pending(client, session_factory):
    add_payment(session_factory, "sess_old", provider_expires_at=ago(hours=2))
    add_payment(session_factory, "sess_fresh", provider_expires_at=ago(hours=-2))
    add_payment(session_factory, "sess_paid", status=PaymentStatus.COMPLETED, provider_expires_at=ago(hours=2))
    add_discount(session_factory, "sess_disc", provider_expires_at=ago(minutes=1))

    resp = client.post("/maintenance/expire-stale", params={"vertical": "optics"})

    assert resp.status_code == 200
    assert resp.json()["expired"] == {"optics": {"payment": 1, "discount": 1}}
    with session_factory() as db:
        statuses = {r.session_id: r.status for r in db.execute(select(PaymentRecord)).scalars()}
        discount = db.execute(select(DiscountRecord)).scalar_one()
        reasons = [t.reason for t in db.execute(select(StatusTimeline)).scalars()]
    assert statuses == {
        "sess_old": PaymentStatus.EXPIRED,
        "sess_fresh": PaymentStatus.PENDING,
        "sess_paid": PaymentStatus.COMPLETED,
    }
    assert discount.status == PaymentStatus.EXPIRED
    assert reasons == ["expired_by_sweep", "expired_by_sweep"]


def test_expire_stale_is_repeatable(service, session_factory):
    add_payment(session_factory, "sess_old", provider_expires_at=ago(hours=2))

    assert service.expire_stale("optics")["optics"]["payment"] == 1
    assert service.expire_stale("optics")["optics"]["payment"] == 0


def test_amount_mismatch_report(client, session_factory):
    pricing = add_pricing(session_factory, total="450.00")
    add_payment(session_factory, "sess_ok", pricing_config_id=pricing.id, amount_total=Decimal("450.00"))
    add_payment(session_factory, "sess_off", pricing_config_id=pricing.id, amount_total=Decimal("400.00"))
    add_payment(session_factory, "sess_unpriced", amount_total=Decimal("1.00"))

    resp = client.get("/anomalies/optics/amount-mismatch")

    assert resp.status_code == 200
    rows = resp.json()
    assert [row["session_id"] for row in rows] == ["sess_off"]
    assert Decimal(rows[0]["pricing_total"]) == Decimal("450.00")


def test_statistics(client, session_factory):
    add_payment(session_factory, "sess_1", status=PaymentStatus.COMPLETED, amount_total=Decimal("450.00"))
    add_payment(session_factory, "sess_2", status=PaymentStatus.COMPLETED, amount_total=Decimal("50.50"))
    add_payment(session_factory, "sess_3", status=PaymentStatus.FAILED)
    add_discount(session_factory, "sess_4", vertical="nursing")

    stats = client.get("/statistics").json()

    optics = stats["optics"]["payment"]
    assert optics["total"] == 3
    assert optics["by_status"]["COMPLETED"] == 2
    assert optics["by_status"]["FAILED"] == 1
    assert optics["completed_amount"] == "500.50"
    assert stats["nursing"]["discount"]["by_status"]["PENDING"] == 1
    assert stats["polymers"]["payment"]["total"] == 0


def test_checkout_creates_pending_payment_record(client, session_factory, mocker):
    pricing = add_pricing(session_factory, total="450.00")
    create = mocker.patch(
        "stripe.checkout.Session.create",
        return_value=SimpleNamespace(
            id="cs_new_1",
            url="https://checkout.stripe.com/c/pay/cs_new_1",
            payment_intent=None,
            payment_status="unpaid",
            status="open",
            customer_email="attendee@example.org",
            amount_total=45000,
            currency="eur",
            created=1760000000,
            expires_at=1760086400,
            metadata={"vertical": "optics"},
        ),
    )

    resp = client.post(
        "/checkout/optics",
        params={"pricing_config_id": pricing.id},
        json={"customer_email": "attendee@example.org"},
    )

    assert resp.status_code == 200
    assert resp.json()["session_id"] == "cs_new_1"
    assert resp.json()["status"] == "PENDING"
    line_item = create.call_args.kwargs["line_items"][0]
    assert line_item["price_data"]["unit_amount"] == 45000
    with session_factory() as db:
        record = db.execute(select(PaymentRecord)).scalar_one()
    assert record.pricing_config_id == pricing.id
    assert record.pricing_total_snapshot == Decimal("450.00")
    assert record.provider_expires_at is not None


def test_checkout_with_unknown_pricing_is_404(client, mocker):
    create = mocker.patch("stripe.checkout.Session.create")

    resp = client.post("/checkout/optics", params={"pricing_config_id": 999}, json={"customer_email": "a@b.org"})

    assert resp.status_code == 404
    create.assert_not_called()


def test_discount_session_is_tagged_for_discount_webhooks(client, session_factory, mocker):
    create = mocker.patch(
        "stripe.checkout.Session.create",
        return_value=SimpleNamespace(id="cs_disc_1", url="https://checkout.stripe.com/c/pay/cs_disc_1", metadata={}),
    )

    resp = client.post(
        "/discounts/optics",
        json={
            "customer_email": "student@example.org",
            "unit_amount": "120.00",
            "product_name": "Student discount",
            "name": "Ada",
            "country": "NL",
        },
    )

    assert resp.status_code == 200
    metadata = create.call_args.kwargs["metadata"]
    assert metadata["source"] == "discount-api"
    assert metadata["paymentType"] == "discount-registration"
    with session_factory() as db:
        record = db.execute(select(DiscountRecord)).scalar_one()
    assert record.session_id == "cs_disc_1"
    assert record.amount_total == Decimal("120.00")
    assert record.status == PaymentStatus.PENDING
    assert record.country == "NL"


def test_list_records_by_email_and_status(client, session_factory):
    add_payment(session_factory, "sess_1", customer_email="ada@example.org", status=PaymentStatus.COMPLETED)
    add_payment(session_factory, "sess_2", customer_email="Ada@Example.org")
    add_payment(session_factory, "sess_3", customer_email="bob@example.org", status=PaymentStatus.COMPLETED)
    add_payment(session_factory, "sess_4", vertical="nursing", customer_email="ada@example.org")

    by_email = client.get("/records/optics/payment", params={"customer_email": "ada@example.org"})
    by_status = client.get("/records/optics/payment", params={"status": "COMPLETED"})
    recent = client.get("/records/optics/payment", params={"limit": 2})

    assert sorted(r["session_id"] for r in by_email.json()) == ["sess_1", "sess_2"]
    assert sorted(r["session_id"] for r in by_status.json()) == ["sess_1", "sess_3"]
    assert [r["session_id"] for r in recent.json()] == ["sess_3", "sess_2"]
    assert client.get("/records/optics/payment", params={"status": "REFUNDED"}).status_code == 422
    assert client.get("/records/astronomy/payment").status_code == 404
