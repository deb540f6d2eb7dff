from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from billsync.errors import InvalidPayloadError, LookupMissError
from billsync.metrics import record_projection
from billsync.services.directory import (
    BILLING_CUSTOMER_ID,
    BILLING_PRODUCT_ID,
    BILLING_SUBSCRIPTION_ID,
    PLAN_NAME,
    SUBSCRIPTION_STATUS,
    DirectoryUser,
)
from billsync.services.gateway import object_id
from billsync.services.identity import ensure_billing_customer_id, resolve_customer_owner

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"active", "trialing"})
CLEARED_STATUSES = frozenset({"canceled", "unpaid"})
UNKNOWN_PLAN = "Unknown Plan"


@dataclass
class ProjectionResult:
    user_id: Optional[str]
    status: Optional[str]
    fragment: Optional[Dict[str, Any]] = None
    applied: bool = False


def first_price(subscription: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return items[0].get("price")


def project_subscription(
    subscription: Mapping[str, Any],
    customer_id: str,
    current_metadata: Mapping[str, Any],
    product: Optional[Mapping[str, Any]] = None,
) -> Optional[Dict[str, Any]]:
    """Reduce a subscription to the metadata fields stored on its user.

    Returns None for statuses that have no projection (``past_due``,
    ``incomplete`` and friends).
    """
    status = subscription.get("status")

    if status in ACTIVE_STATUSES:
        price = first_price(subscription)
        if not price:
            raise InvalidPayloadError(f"No price found for subscription {subscription.get('id')}")
        product_ref = price.get("product")
        product_id = object_id(product_ref)
        if not product_id:
            raise InvalidPayloadError(f"No product found for subscription {subscription.get('id')}")
        if product is None and isinstance(product_ref, dict):
            product = product_ref
        plan_name = (product or {}).get("name") or current_metadata.get(PLAN_NAME) or UNKNOWN_PLAN
        return {
            BILLING_CUSTOMER_ID: customer_id,
            BILLING_SUBSCRIPTION_ID: subscription.get("id"),
            BILLING_PRODUCT_ID: product_id,
            PLAN_NAME: plan_name,
            SUBSCRIPTION_STATUS: status,
        }

    if status in CLEARED_STATUSES:
        # Keep the customer so a later checkout reuses it.
        return {
            BILLING_CUSTOMER_ID: customer_id,
            BILLING_SUBSCRIPTION_ID: None,
            BILLING_PRODUCT_ID: None,
            PLAN_NAME: None,
            SUBSCRIPTION_STATUS: status,
        }

    return None


def _owner_for(ctx, customer_id: str, user_id: Optional[str]) -> Optional[DirectoryUser]:
    if user_id:
        user = ctx.directory.get_user(user_id)
        if user is None:
            raise LookupMissError(f"Directory user {user_id} not found")
        return user

    owner = resolve_customer_owner(ctx, customer_id)
    if owner is None:
        return None
    ensure_billing_customer_id(ctx, owner.user.id, customer_id, customer=owner.customer)
    return owner.user


def apply_subscription(ctx, subscription: Mapping[str, Any], *, user_id: Optional[str] = None) -> ProjectionResult:
    """Project ``subscription`` onto its owner's metadata.

    The owner is found through the customer's back-reference tag and linked.
    A caller that already linked the owner (the checkout path) passes
    ``user_id`` instead.
    """
    customer_id = object_id(subscription.get("customer"))
    status = subscription.get("status")
    if not customer_id:
        raise InvalidPayloadError(f"Subscription {subscription.get('id')} has no customer")

    user = _owner_for(ctx, customer_id, user_id)
    if user is None:
        logger.warning("No directory user found for billing customer %s", customer_id)
        record_projection("no_user")
        return ProjectionResult(user_id=None, status=status)

    if status not in ACTIVE_STATUSES and status not in CLEARED_STATUSES:
        logger.warning(
            "No projection for subscription %s in status %s (user %s); metadata left unchanged",
            subscription.get("id"),
            status,
            user.id,
        )
        record_projection("unsupported_status")
        return ProjectionResult(user_id=user.id, status=status)

    stored_subscription_id = user.metadata.get(BILLING_SUBSCRIPTION_ID)
    if status in CLEARED_STATUSES and stored_subscription_id and stored_subscription_id != subscription.get("id"):
        logger.info(
            "Skipping %s subscription %s for user %s; current subscription is %s",
            status,
            subscription.get("id"),
            user.id,
            stored_subscription_id,
        )
        record_projection("superseded")
        return ProjectionResult(user_id=user.id, status=status)

    product = None
    if status in ACTIVE_STATUSES:
        price = first_price(subscription)
        if price and isinstance(price.get("product"), str):
            product = ctx.gateway.retrieve_product(price["product"])

    fragment = project_subscription(subscription, customer_id, user.metadata, product)
    ctx.directory.merge(user.id, fragment)
    record_projection("applied")
    logger.info(
        "Projected subscription %s (%s) onto user %s", subscription.get("id"), status, user.id
    )
    return ProjectionResult(user_id=user.id, status=status, fragment=fragment, applied=True)
