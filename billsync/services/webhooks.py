"""Billing-provider webhook dispatch.

A delivery is verified first and only then routed by event type. Handlers
are idempotent, so a failed delivery is reported back to the provider which
redelivers the whole event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Union

from billsync.errors import InvalidPayloadError, LookupMissError, VerificationError
from billsync.metrics import record_webhook
from billsync.services.checkout import handle_checkout_completed
from billsync.services.gateway import object_id
from billsync.services.identity import back_reference, ensure_billing_customer_id, resolve_customer_owner
from billsync.services.projection import apply_subscription

logger = logging.getLogger(__name__)


class EventCategory(str, Enum):
    SUBSCRIPTION = "subscription"
    CUSTOMER = "customer"
    CHECKOUT = "checkout"
    INVOICE_PAID = "invoice_paid"
    INFORMATIONAL = "informational"
    UNKNOWN = "unknown"


EVENT_CATEGORIES: Dict[str, EventCategory] = {
    "customer.subscription.created": EventCategory.SUBSCRIPTION,
    "customer.subscription.updated": EventCategory.SUBSCRIPTION,
    "customer.subscription.deleted": EventCategory.SUBSCRIPTION,
    "customer.created": EventCategory.CUSTOMER,
    "customer.updated": EventCategory.CUSTOMER,
    "checkout.session.completed": EventCategory.CHECKOUT,
    "invoice.paid": EventCategory.INVOICE_PAID,
    "invoice.payment_succeeded": EventCategory.INVOICE_PAID,
    "invoice_payment.paid": EventCategory.INVOICE_PAID,
    "invoice.created": EventCategory.INFORMATIONAL,
    "invoice.finalized": EventCategory.INFORMATIONAL,
    "invoice.upcoming": EventCategory.INFORMATIONAL,
    "charge.succeeded": EventCategory.INFORMATIONAL,
    "payment_intent.created": EventCategory.INFORMATIONAL,
    "payment_intent.succeeded": EventCategory.INFORMATIONAL,
    "payment_method.attached": EventCategory.INFORMATIONAL,
    "setup_intent.succeeded": EventCategory.INFORMATIONAL,
}


def categorize(event_type: Optional[str]) -> EventCategory:
    return EVENT_CATEGORIES.get(event_type or "", EventCategory.UNKNOWN)


@dataclass
class WebhookEvent:
    id: str
    type: str
    category: EventCategory
    object: Mapping[str, Any]
    raw: Any = None

    @classmethod
    def from_stripe(cls, event: Any) -> "WebhookEvent":
        data = event.get("data") or {}
        obj = data.get("object")
        if not isinstance(obj, Mapping):
            raise InvalidPayloadError(f"Event {event.get('id')} carries no data object")
        return cls(
            id=event.get("id") or "",
            type=event.get("type") or "",
            category=categorize(event.get("type")),
            object=obj,
            raw=event,
        )


@dataclass
class WebhookOutcome:
    success: bool
    event: Optional[WebhookEvent] = None
    error: Optional[str] = None
    failure: Optional[str] = None  # verification|invalid_payload|handler
    deduped: bool = False

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "deduped": self.deduped}
        if self.event is not None:
            out["event_id"] = self.event.id
            out["event_type"] = self.event.type
        if self.error:
            out["error"] = self.error
        if self.failure:
            out["failure"] = self.failure
        return out


# Handlers

def handle_subscription_event(ctx, event: WebhookEvent) -> None:
    # Event payloads are snapshots and may arrive out of order; project the current state.
    subscription_id = event.object.get("id")
    if not subscription_id:
        raise InvalidPayloadError(f"Event {event.id} carries no subscription id")
    subscription = ctx.gateway.retrieve_subscription(subscription_id, expand=["items.data.price.product"])
    apply_subscription(ctx, subscription)


def handle_customer_event(ctx, event: WebhookEvent) -> None:
    customer = event.object
    customer_id = customer.get("id")
    user_id = back_reference(customer)
    if not user_id:
        logger.info("No directory user tag on billing customer %s", customer_id)
        return
    ensure_billing_customer_id(ctx, user_id, customer_id, customer=customer)
    logger.info("Linked billing customer %s to user %s", customer_id, user_id)


def handle_checkout_event(ctx, event: WebhookEvent) -> None:
    handle_checkout_completed(ctx, event.object)


def handle_invoice_paid_event(ctx, event: WebhookEvent) -> None:
    invoice = event.object
    customer_id = object_id(invoice.get("customer"))
    if not customer_id:
        raise InvalidPayloadError(f"No customer on invoice {invoice.get('id')}")

    owner = resolve_customer_owner(ctx, customer_id)
    if owner is None:
        logger.info("No directory user found for billing customer %s", customer_id)
        return

    ensure_billing_customer_id(ctx, owner.user.id, customer_id, customer=owner.customer)
    logger.info(
        "Invoice payment succeeded: invoice=%s amount=%s currency=%s customer=%s user=%s",
        invoice.get("id"),
        invoice.get("amount_paid"),
        invoice.get("currency"),
        customer_id,
        owner.user.id,
    )


def handle_informational_event(ctx, event: WebhookEvent) -> None:
    obj = event.object
    logger.info(
        "Billing event %s: object=%s customer=%s amount=%s",
        event.type,
        obj.get("id"),
        object_id(obj.get("customer")),
        obj.get("amount"),
    )


def handle_unknown_event(ctx, event: WebhookEvent) -> None:
    logger.info("Unhandled billing event type %s", event.type)


Handler = Callable[[Any, WebhookEvent], None]

HANDLERS: Dict[EventCategory, Handler] = {
    EventCategory.SUBSCRIPTION: handle_subscription_event,
    EventCategory.CUSTOMER: handle_customer_event,
    EventCategory.CHECKOUT: handle_checkout_event,
    EventCategory.INVOICE_PAID: handle_invoice_paid_event,
    EventCategory.INFORMATIONAL: handle_informational_event,
    EventCategory.UNKNOWN: handle_unknown_event,
}


def _release(ctx, event_id: str) -> None:
    try:
        ctx.ledger.release(event_id)
    except Exception:
        logger.exception("Could not release webhook ledger claim for %s", event_id)


def dispatch_webhook(
    ctx,
    payload: Union[bytes, str],
    signature: Optional[str],
    secret: str,
    *,
    handlers: Optional[Mapping[EventCategory, Handler]] = None,
) -> WebhookOutcome:
    """Verify a delivery and run the handler for its event type.

    Never raises. Lookup misses inside a handler count as success, any other
    handler error is reported as a failed delivery.
    """
    table = HANDLERS if handlers is None else handlers

    try:
        event = WebhookEvent.from_stripe(ctx.gateway.construct_event(payload, signature, secret))
    except VerificationError as exc:
        logger.warning("Rejected billing webhook: %s", exc)
        record_webhook(EventCategory.UNKNOWN.value, "rejected")
        return WebhookOutcome(success=False, error=str(exc), failure="verification")
    except InvalidPayloadError as exc:
        logger.warning("Malformed billing webhook: %s", exc)
        record_webhook(EventCategory.UNKNOWN.value, "invalid_payload")
        return WebhookOutcome(success=False, error=str(exc), failure="invalid_payload")

    category = event.category.value
    claimed = False
    if ctx.ledger is not None and event.id:
        try:
            claimed = ctx.ledger.claim(event.id)
        except Exception:
            logger.exception("Webhook ledger unavailable for event %s; processing anyway", event.id)
        else:
            if not claimed:
                logger.info("Duplicate billing event %s (%s) acknowledged", event.id, event.type)
                record_webhook(category, "deduped")
                return WebhookOutcome(success=True, event=event, deduped=True)

    try:
        table.get(event.category, handle_unknown_event)(ctx, event)
    except LookupMissError as exc:
        logger.warning("Billing event %s (%s): %s", event.id, event.type, exc)
        record_webhook(category, "lookup_miss")
        return WebhookOutcome(success=True, event=event)
    except InvalidPayloadError as exc:
        logger.error("Billing event %s (%s) has an unusable payload: %s", event.id, event.type, exc)
        if claimed:
            _release(ctx, event.id)
        record_webhook(category, "invalid_payload")
        return WebhookOutcome(success=False, event=event, error=str(exc), failure="invalid_payload")
    except Exception as exc:
        logger.exception("Error handling billing event %s (%s)", event.id, event.type)
        if claimed:
            _release(ctx, event.id)
        record_webhook(category, "failed")
        return WebhookOutcome(success=False, event=event, error=str(exc) or type(exc).__name__, failure="handler")

    record_webhook(category, "handled")
    return WebhookOutcome(success=True, event=event)
