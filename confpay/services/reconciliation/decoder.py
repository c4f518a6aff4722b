"""Webhook payload decoding.

Two decoders share one contract, `decode(event) -> ExtractedFields | None`,
and `decode_event` tries them in order. The structured decoder validates the
whole envelope with pydantic; the text scraper reads the fields straight out of
the raw body and still works when the JSON is truncated or has an unexpected
shape.
"""

import json
import re
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from confpay.common.config import settings
from confpay.common.logging import logger
from confpay.common.metrics import event_decode_total
from confpay.services.reconciliation.schemas import (
    CHECKOUT_SESSION,
    DISCOUNT_PAYMENT_TYPE,
    DISCOUNT_SOURCE,
    PAYMENT_INTENT,
    ExtractedFields,
    VerifiedEvent,
)


def _metadata_as_strings(value: Any) -> dict[str, str]:
    if not value:
        return {}
    return {str(k): str(v) for k, v in dict(value).items() if v is not None}


class CustomerDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str | None = None


class CheckoutSessionObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: Literal["checkout.session"]
    id: str
    customer_email: str | None = None
    customer_details: CustomerDetails | None = None
    payment_intent: str | None = None
    payment_status: str | None = None
    status: str | None = None
    amount_total: int | None = None
    currency: str | None = None
    created: datetime | None = None
    expires_at: datetime | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("payment_intent", mode="before")
    @classmethod
    def _expanded_intent(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("id")
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata(cls, value: Any) -> dict[str, str]:
        return _metadata_as_strings(value)

    def to_fields(self, decoded_by: str) -> ExtractedFields:
        email = self.customer_email
        if not email and self.customer_details is not None:
            email = self.customer_details.email
        return ExtractedFields(
            object_type=CHECKOUT_SESSION,
            session_id=self.id,
            payment_intent_id=self.payment_intent,
            customer_email=email,
            payment_status=self.payment_status,
            status=self.status,
            amount_minor=self.amount_total,
            currency=self.currency,
            created=self.created,
            expires_at=self.expires_at,
            metadata=self.metadata,
            decoded_by=decoded_by,
        )


class PaymentIntentObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: Literal["payment_intent"]
    id: str
    receipt_email: str | None = None
    status: str | None = None
    amount: int | None = None
    currency: str | None = None
    created: datetime | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata(cls, value: Any) -> dict[str, str]:
        return _metadata_as_strings(value)

    def to_fields(self, decoded_by: str) -> ExtractedFields:
        return ExtractedFields(
            object_type=PAYMENT_INTENT,
            payment_intent_id=self.id,
            customer_email=self.receipt_email,
            status=self.status,
            amount_minor=self.amount,
            currency=self.currency,
            created=self.created,
            metadata=self.metadata,
            decoded_by=decoded_by,
        )


ProviderObject = Annotated[Union[CheckoutSessionObject, PaymentIntentObject], Field(discriminator="object")]


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: ProviderObject


class EventEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    data: EventData


class StructuredDecoder:
    name = "structured"

    def decode(self, event: VerifiedEvent) -> ExtractedFields | None:
        envelope = EventEnvelope.model_validate_json(event.payload)
        return envelope.data.object.to_fields(self.name)


_DATA_OBJECT = re.compile(r'"data"\s*:\s*\{[^{]*?"object"\s*:\s*(\{)', re.DOTALL)
_DISCOUNT_SOURCE = re.compile(r'"source"\s*:\s*"' + re.escape(DISCOUNT_SOURCE) + '"')
_DISCOUNT_PAYMENT_TYPE = re.compile(r'"paymentType"\s*:\s*"' + re.escape(DISCOUNT_PAYMENT_TYPE) + '"')


def _balanced_region(text: str, start: int) -> str:
    """Slice from the brace at `start` to its match, or to the end if truncated."""

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        ch = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return text[start:]


def _top_level_only(region: str) -> str:
    """Blank out nested objects and arrays so only first-level keys can match."""

    out = []
    depth = 0
    in_string = False
    escaped = False
    for ch in region:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            out.append(ch if depth <= 1 else " ")
            continue
        if ch == '"':
            in_string = True
            out.append(ch if depth <= 1 else " ")
        elif ch in "{[":
            depth += 1
            out.append(ch if depth <= 2 else " ")
        elif ch in "}]":
            out.append(ch if depth <= 2 else " ")
            depth -= 1
        else:
            out.append(ch if depth <= 1 else " ")
    return "".join(out)


def _scrape_string(region: str, key: str) -> str | None:
    match = re.search(r'"' + re.escape(key) + r'"\s*:\s*"((?:[^"\\]|\\.)*)"', region)
    if match is None:
        return None
    raw = match.group(1)
    try:
        return json.loads(f'"{raw}"')
    except ValueError:
        return raw


def _scrape_int(region: str, key: str) -> int | None:
    match = re.search(r'"' + re.escape(key) + r'"\s*:\s*(-?\d+)', region)
    return int(match.group(1)) if match else None


def _scrape_timestamp(region: str, key: str) -> datetime | None:
    value = _scrape_int(region, key)
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _object_type_from_event_type(event_type: str) -> str | None:
    if event_type.startswith(CHECKOUT_SESSION + "."):
        return CHECKOUT_SESSION
    if event_type.startswith(PAYMENT_INTENT + "."):
        return PAYMENT_INTENT
    return None


class TextScrapeDecoder:
    name = "text_scrape"

    def decode(self, event: VerifiedEvent) -> ExtractedFields | None:
        text = event.payload
        match = _DATA_OBJECT.search(text)
        if match is None:
            return None
        object_text = _balanced_region(text, match.start(1))
        region = _top_level_only(object_text)

        object_type = _scrape_string(region, "object") or _object_type_from_event_type(event.event_type)
        object_id = _scrape_string(region, "id")
        session_id = None
        intent_id = _scrape_string(region, "payment_intent")
        if object_type == CHECKOUT_SESSION:
            session_id = object_id
        elif object_type == PAYMENT_INTENT:
            intent_id = object_id

        amount = _scrape_int(region, "amount_total")
        if amount is None:
            amount = _scrape_int(region, "amount")

        metadata = {}
        if _DISCOUNT_SOURCE.search(object_text):
            metadata["source"] = DISCOUNT_SOURCE
        if _DISCOUNT_PAYMENT_TYPE.search(object_text):
            metadata["paymentType"] = DISCOUNT_PAYMENT_TYPE

        return ExtractedFields(
            object_type=object_type,
            session_id=session_id,
            payment_intent_id=intent_id,
            customer_email=_scrape_string(region, "customer_email") or _scrape_string(region, "receipt_email"),
            payment_status=_scrape_string(region, "payment_status"),
            status=_scrape_string(region, "status"),
            amount_minor=amount,
            currency=_scrape_string(region, "currency"),
            created=_scrape_timestamp(region, "created"),
            expires_at=_scrape_timestamp(region, "expires_at"),
            metadata=metadata,
            discount_marked=bool(metadata),
            decoded_by=self.name,
        )


DEFAULT_DECODERS = (StructuredDecoder(), TextScrapeDecoder())


def decode_event(event: VerifiedEvent, decoders=DEFAULT_DECODERS) -> ExtractedFields | None:
    """Run the decoders in order; the first correlatable result wins.

    Returns None when no decoder yields a session or payment-intent id.
    Never raises.
    """

    for decoder in decoders:
        try:
            fields = decoder.decode(event)
        except Exception as exc:
            logger.warning(
                "decoder_failed decoder=%s event_id=%s event_type=%s error=%s",
                decoder.name,
                event.event_id,
                event.event_type,
                type(exc).__name__,
            )
            continue
        if fields is None or not fields.correlatable:
            logger.info("decoder_no_ids decoder=%s event_id=%s", decoder.name, event.event_id)
            continue
        event_decode_total.labels(service=settings.service_name, decoder=decoder.name).inc()
        logger.info(
            "event_decoded decoder=%s event_id=%s session_id=%s payment_intent_id=%s",
            decoder.name,
            event.event_id,
            fields.session_id,
            fields.payment_intent_id,
        )
        return fields
    event_decode_total.labels(service=settings.service_name, decoder="none").inc()
    logger.warning("event_uncorrelatable event_id=%s event_type=%s", event.event_id, event.event_type)
    return None
