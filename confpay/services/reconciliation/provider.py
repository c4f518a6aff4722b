"""Outbound payment-provider calls.

Every call is a single synchronous attempt bounded by the configured timeout.
Failures surface as `ProviderError`; retry policy belongs to the caller.
"""

import time
from decimal import Decimal, InvalidOperation

import httpx
import stripe

from confpay.common.config import CommonSettings
from confpay.common.logging import logger
from confpay.common.metrics import provider_refresh_seconds
from confpay.services.reconciliation.decoder import CheckoutSessionObject, PaymentIntentObject
from confpay.services.reconciliation.errors import ProviderError
from confpay.services.reconciliation.locator import PAYPAL_PREFIX
from confpay.services.reconciliation.schemas import CHECKOUT_SESSION, PAYMENT_INTENT, ExtractedFields
from confpay.services.reconciliation.store import to_minor_units


_SESSION_ATTRS = (
    "id",
    "customer_email",
    "payment_intent",
    "payment_status",
    "status",
    "amount_total",
    "currency",
    "created",
    "expires_at",
)
_INTENT_ATTRS = ("id", "receipt_email", "status", "amount", "currency", "created")


def _attrs(obj, names) -> dict:
    data = {name: getattr(obj, name, None) for name in names}
    return {key: value for key, value in data.items() if value is not None}


def _metadata(obj) -> dict:
    metadata = getattr(obj, "metadata", None)
    if not metadata:
        return {}
    return {str(key): metadata[key] for key in metadata.keys()}


def session_fields(session) -> ExtractedFields:
    data = _attrs(session, _SESSION_ATTRS)
    intent = data.get("payment_intent")
    if intent is not None and not isinstance(intent, str):
        data["payment_intent"] = getattr(intent, "id", None)
    details = getattr(session, "customer_details", None)
    if details is not None and getattr(details, "email", None):
        data["customer_details"] = {"email": details.email}
    data["metadata"] = _metadata(session)
    data["object"] = CHECKOUT_SESSION
    return CheckoutSessionObject.model_validate(data).to_fields("stripe_session")


def payment_intent_fields(intent) -> ExtractedFields:
    data = _attrs(intent, _INTENT_ATTRS)
    data["metadata"] = _metadata(intent)
    data["object"] = PAYMENT_INTENT
    return PaymentIntentObject.model_validate(data).to_fields("stripe_payment_intent")


class StripeProvider:
    """Stripe checkout sessions and payment intents."""

    name = "stripe"

    def __init__(self, config: CommonSettings) -> None:
        self.config = config

    def _observe(self, started: float) -> None:
        provider_refresh_seconds.labels(service=self.config.service_name, provider=self.name).observe(
            time.perf_counter() - started
        )

    def retrieve_session(self, session_id: str) -> ExtractedFields:
        started = time.perf_counter()
        try:
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.config.stripe_secret_key)
        except stripe.StripeError as exc:
            logger.error("stripe_session_lookup_failed session_id=%s error=%s", session_id, type(exc).__name__)
            raise ProviderError(f"stripe session lookup failed for {session_id}") from exc
        finally:
            self._observe(started)
        return session_fields(session)

    def retrieve_payment_intent(self, intent_id: str) -> ExtractedFields:
        started = time.perf_counter()
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.config.stripe_secret_key)
        except stripe.StripeError as exc:
            logger.error("stripe_intent_lookup_failed payment_intent_id=%s error=%s", intent_id, type(exc).__name__)
            raise ProviderError(f"stripe payment intent lookup failed for {intent_id}") from exc
        finally:
            self._observe(started)
        return payment_intent_fields(intent)

    def expire_session(self, session_id: str) -> ExtractedFields:
        """Expire an open checkout session so it can no longer be paid."""

        started = time.perf_counter()
        try:
            session = stripe.checkout.Session.expire(session_id, api_key=self.config.stripe_secret_key)
        except stripe.StripeError as exc:
            logger.error("stripe_session_expire_failed session_id=%s error=%s", session_id, type(exc).__name__)
            raise ProviderError(f"stripe session expiry failed for {session_id}") from exc
        finally:
            self._observe(started)
        return session_fields(session)

    def create_checkout_session(
        self,
        amount_minor: int,
        currency: str,
        product_name: str,
        customer_email: str,
        success_url: str,
        cancel_url: str,
        description: str | None = None,
        metadata: dict | None = None,
    ) -> tuple[ExtractedFields, str | None]:
        """Create a one-line-item hosted checkout; returns the session fields and its URL."""

        product_data = {"name": product_name}
        if description:
            product_data["description"] = description
        started = time.perf_counter()
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                payment_method_types=["card"],
                line_items=[
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "unit_amount": amount_minor,
                            "product_data": product_data,
                        },
                        "quantity": 1,
                    }
                ],
                customer_email=customer_email,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata or {},
                api_key=self.config.stripe_secret_key,
            )
        except stripe.StripeError as exc:
            logger.error("stripe_checkout_create_failed error=%s", type(exc).__name__)
            raise ProviderError("stripe checkout session creation failed") from exc
        finally:
            self._observe(started)
        return session_fields(session), getattr(session, "url", None)


# PayPal order status -> checkout-session vocabulary used by the reconciler.
_PAYPAL_ORDER_STATUS = {
    "COMPLETED": "complete",
    "VOIDED": "canceled",
}


def paypal_session_id(order_id: str) -> str:
    return order_id if order_id.startswith(PAYPAL_PREFIX) else f"{PAYPAL_PREFIX}{order_id}"


def paypal_order_id(session_id: str) -> str:
    return session_id[len(PAYPAL_PREFIX):] if session_id.startswith(PAYPAL_PREFIX) else session_id


class PayPalClient:
    """PayPal Orders v2 for `PAYPAL_`-prefixed session ids."""

    name = "paypal"

    def __init__(self, config: CommonSettings, transport: httpx.BaseTransport | None = None) -> None:
        self.config = config
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.config.paypal_base_url,
            timeout=self.config.provider_timeout_seconds,
            transport=self.transport,
        )

    def _json(self, resp: httpx.Response, what: str) -> dict:
        if resp.status_code == 404:
            raise ProviderError(f"paypal {what}: not found")
        if resp.status_code >= 400:
            raise ProviderError(f"paypal {what} failed (status={resp.status_code})")
        try:
            body = resp.json()
        except ValueError as exc:
            logger.error(
                "paypal_response_not_json what=%s status=%s content_type=%s",
                what,
                resp.status_code,
                resp.headers.get("content-type"),
            )
            raise ProviderError(f"paypal {what} returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise ProviderError(f"paypal {what} returned an unexpected body")
        return body

    def _access_token(self, client: httpx.Client) -> str:
        resp = client.post(
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.config.paypal_client_id, self.config.paypal_client_secret),
        )
        token = self._json(resp, "token request").get("access_token")
        if not isinstance(token, str):
            raise ProviderError("paypal token response malformed")
        return token

    def _call(self, method: str, path: str, what: str, session_id: str, json: dict | None = None) -> dict:
        started = time.perf_counter()
        try:
            with self._client() as client:
                token = self._access_token(client)
                headers = {"Authorization": f"Bearer {token}"}
                if method == "POST":
                    headers["Prefer"] = "return=representation"
                resp = client.request(method, path, headers=headers, json=json)
        except httpx.HTTPError as exc:
            logger.error("paypal_call_failed what=%s session_id=%s error=%s", what, session_id, type(exc).__name__)
            raise ProviderError(f"paypal {what} failed for {session_id}") from exc
        finally:
            provider_refresh_seconds.labels(service=self.config.service_name, provider=self.name).observe(
                time.perf_counter() - started
            )
        return self._json(resp, what)

    def retrieve_order(self, session_id: str) -> ExtractedFields:
        order_id = paypal_order_id(session_id)
        order = self._call("GET", f"/v2/checkout/orders/{order_id}", "order lookup", session_id)
        return self._order_fields(session_id, order)

    def create_order(
        self,
        amount: Decimal,
        currency: str,
        customer_email: str,
        description: str,
        reference_id: str,
        return_url: str,
        cancel_url: str,
        brand_name: str | None = None,
    ) -> tuple[ExtractedFields, str]:
        """Create a CAPTURE-intent order; returns its fields and the payer approval URL."""

        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": reference_id,
                    "custom_id": reference_id,
                    "description": f"{description} - {customer_email}",
                    "amount": {"currency_code": currency.upper(), "value": f"{amount:.2f}"},
                }
            ],
            "application_context": {
                "return_url": f"{return_url}?paymentMethod=paypal",
                "cancel_url": f"{cancel_url}?paymentMethod=paypal&cancelled=true",
                "brand_name": brand_name or description,
                "landing_page": "BILLING",
                "user_action": "PAY_NOW",
            },
        }
        order = self._call("POST", "/v2/checkout/orders", "order creation", reference_id, json=body)
        order_id = order.get("id")
        if not isinstance(order_id, str) or not order_id:
            raise ProviderError("paypal order creation returned no order id")
        approval_url = None
        for link in order.get("links") or []:
            if link.get("rel") in ("approve", "payer-action"):
                approval_url = link.get("href")
                break
        if approval_url is None:
            raise ProviderError(f"paypal order {order_id} has no approval link")
        fields = self._order_fields(paypal_session_id(order_id), order)
        if fields.customer_email is None:
            fields = fields.model_copy(update={"customer_email": customer_email})
        return fields, approval_url

    def capture_order(self, session_id: str) -> ExtractedFields:
        order_id = paypal_order_id(session_id)
        order = self._call("POST", f"/v2/checkout/orders/{order_id}/capture", "order capture", session_id, json={})
        return self._order_fields(session_id, order)

    def _order_fields(self, session_id: str, order: dict) -> ExtractedFields:
        raw_status = str(order.get("status") or "").upper()
        amount_minor = None
        currency = None
        units = order.get("purchase_units") or []
        if units:
            amount = units[0].get("amount")
            if amount is None:
                captures = (units[0].get("payments") or {}).get("captures") or []
                amount = captures[0].get("amount") if captures else None
            amount = amount or {}
            currency = amount.get("currency_code")
            try:
                if amount.get("value") is not None:
                    amount_minor = to_minor_units(Decimal(str(amount["value"])), currency)
            except InvalidOperation:
                logger.warning("paypal_amount_unparseable session_id=%s value=%s", session_id, amount.get("value"))
        payer = order.get("payer") or {}
        return ExtractedFields(
            object_type=CHECKOUT_SESSION,
            session_id=session_id,
            customer_email=payer.get("email_address"),
            payment_status="paid" if raw_status == "COMPLETED" else "unpaid",
            status=_PAYPAL_ORDER_STATUS.get(raw_status, "open"),
            amount_minor=amount_minor,
            currency=currency.lower() if currency else None,
            decoded_by=self.name,
        )
