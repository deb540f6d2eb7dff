"""Read-only billing views for the signed-in user.

Everything here reads the ids stored in the user's metadata and never
writes. Provider failures are logged and degrade to an empty result.
"""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional

from billsync.core.time import to_millis
from billsync.errors import UpstreamError
from billsync.models import (
    CardOut,
    PaymentHistoryItemOut,
    PaymentMethodOut,
    SubscriptionDetailsOut,
    UpcomingPaymentOut,
)
from billsync.services.directory import PLAN_NAME, DirectoryUser
from billsync.services.gateway import object_id
from billsync.services.projection import UNKNOWN_PLAN, first_price

logger = logging.getLogger(__name__)


def _period_field(subscription: Mapping[str, Any], name: str) -> Optional[int]:
    # Newer API versions only carry billing periods on the subscription items.
    value = subscription.get(name)
    if value is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            value = items[0].get(name)
    return to_millis(value)


def _invoice_description(invoice: Mapping[str, Any]) -> str:
    return invoice.get("description") or f"Invoice {invoice.get('number') or invoice.get('id')}"


def get_subscription_details(ctx, user: DirectoryUser) -> Optional[SubscriptionDetailsOut]:
    subscription_id = user.billing_subscription_id
    if not subscription_id:
        return None

    try:
        subscription = ctx.gateway.retrieve_subscription(subscription_id, expand=["items.data.price.product"])
        price = first_price(subscription)
        if not price:
            return None
        product = price.get("product")
        if isinstance(product, str):
            product = ctx.gateway.retrieve_product(product)
    except UpstreamError:
        logger.exception("Error fetching subscription details for user %s", user.id)
        return None

    recurring = price.get("recurring") or {}
    return SubscriptionDetailsOut(
        id=subscription["id"],
        status=subscription.get("status") or "",
        current_period_start=_period_field(subscription, "current_period_start"),
        current_period_end=_period_field(subscription, "current_period_end"),
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        plan_name=(product or {}).get("name") or user.metadata.get(PLAN_NAME) or UNKNOWN_PLAN,
        amount=price.get("unit_amount") or 0,
        currency=price.get("currency") or "usd",
        interval=recurring.get("interval") or "month",
        trial_end=to_millis(subscription.get("trial_end")),
    )


def get_payment_history(ctx, user: DirectoryUser, limit: int = 20) -> List[PaymentHistoryItemOut]:
    """Paid invoices plus succeeded one-off payments, newest first."""
    customer_id = user.billing_customer_id
    if not customer_id:
        return []

    try:
        invoices = ctx.gateway.list_invoices(customer_id, limit=limit)
        intents = ctx.gateway.list_payment_intents(customer_id, limit=limit)
    except UpstreamError:
        logger.exception("Error fetching payment history for user %s", user.id)
        return []

    history: List[PaymentHistoryItemOut] = []
    covered = set()
    for invoice in invoices:
        if invoice.get("status") != "paid" or not (invoice.get("amount_paid") or 0) > 0:
            continue
        history.append(
            PaymentHistoryItemOut(
                id=invoice["id"],
                amount=invoice["amount_paid"],
                currency=invoice.get("currency") or "usd",
                status="paid",
                date=to_millis(invoice.get("created")) or 0,
                description=_invoice_description(invoice),
                invoice_url=invoice.get("hosted_invoice_url"),
            )
        )
        covered.add(invoice["id"])
        intent_id = object_id(invoice.get("payment_intent"))
        if intent_id:
            covered.add(intent_id)

    for intent in intents:
        if intent.get("status") != "succeeded" or not (intent.get("amount") or 0) > 0:
            continue
        if intent["id"] in covered:
            continue
        history.append(
            PaymentHistoryItemOut(
                id=intent["id"],
                amount=intent["amount"],
                currency=intent.get("currency") or "usd",
                status="succeeded",
                date=to_millis(intent.get("created")) or 0,
                description=intent.get("description") or "Payment",
            )
        )

    history.sort(key=lambda item: item.date, reverse=True)
    return history[:limit]


def get_payment_methods(ctx, user: DirectoryUser) -> List[PaymentMethodOut]:
    customer_id = user.billing_customer_id
    if not customer_id:
        return []

    try:
        methods = ctx.gateway.list_card_payment_methods(customer_id)
        customer = ctx.gateway.retrieve_customer(customer_id)
    except UpstreamError:
        logger.exception("Error fetching payment methods for user %s", user.id)
        return []

    default_id = None
    if customer and not customer.get("deleted"):
        default_id = object_id((customer.get("invoice_settings") or {}).get("default_payment_method"))

    out = []
    for pm in methods:
        card = pm.get("card")
        out.append(
            PaymentMethodOut(
                id=pm["id"],
                type=pm.get("type") or "card",
                card=CardOut(
                    brand=card.get("brand"),
                    last4=card.get("last4"),
                    exp_month=card.get("exp_month"),
                    exp_year=card.get("exp_year"),
                )
                if card
                else None,
                is_default=pm["id"] == default_id,
            )
        )
    return out


def get_upcoming_payments(ctx, user: DirectoryUser) -> List[UpcomingPaymentOut]:
    customer_id = user.billing_customer_id
    if not customer_id:
        return []

    try:
        invoices = ctx.gateway.list_invoices(customer_id, limit=10, status="open")
    except UpstreamError:
        logger.exception("Error fetching upcoming payments for user %s", user.id)
        return []

    upcoming = [
        UpcomingPaymentOut(
            id=invoice["id"],
            amount=invoice.get("amount_due") or 0,
            currency=invoice.get("currency") or "usd",
            due_date=to_millis(invoice.get("due_date") or invoice.get("created")) or 0,
            description=_invoice_description(invoice),
            status=invoice.get("status") or "open",
            invoice_url=invoice.get("hosted_invoice_url"),
        )
        for invoice in invoices
        if invoice.get("id")
    ]
    upcoming.sort(key=lambda item: item.due_date)
    return upcoming
