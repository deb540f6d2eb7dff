"""Links directory users to billing-provider customers.

The forward link (``billingCustomerId`` in the user's metadata) is the
authoritative one. The back-reference tag on the customer's own metadata is
only a search aid, so writing it is best-effort.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from billsync.errors import UpstreamError
from billsync.metrics import record_link_write
from billsync.services.directory import BILLING_CUSTOMER_ID, DirectoryUser

logger = logging.getLogger(__name__)

DIRECTORY_USER_TAG = "directoryUserId"
LEGACY_USER_TAGS = ("directory_user_id", "app_user_id")


@dataclass
class CustomerOwner:
    user: DirectoryUser
    customer: Any


def back_reference(customer: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not customer:
        return None
    metadata = customer.get("metadata") or {}
    for key in (DIRECTORY_USER_TAG,) + LEGACY_USER_TAGS:
        value = metadata.get(key)
        if value:
            return str(value)
    return None


def is_live(customer: Optional[Mapping[str, Any]]) -> bool:
    return bool(customer) and not customer.get("deleted")


def _tag_customer(ctx, customer_id: str, user_id: str, customer: Optional[Mapping[str, Any]]) -> None:
    try:
        if customer is None:
            customer = ctx.gateway.retrieve_customer(customer_id)
            if not is_live(customer):
                logger.warning("Not tagging missing or deleted billing customer %s", customer_id)
                return
        if (customer.get("metadata") or {}).get(DIRECTORY_USER_TAG) == user_id:
            return
        ctx.gateway.update_customer_metadata(customer_id, {DIRECTORY_USER_TAG: user_id})
        record_link_write("billing")
    except UpstreamError as exc:
        logger.warning("Could not tag billing customer %s with user %s: %s", customer_id, user_id, exc)


def ensure_billing_customer_id(
    ctx,
    user_id: str,
    customer_id: str,
    *,
    customer: Optional[Mapping[str, Any]] = None,
) -> bool:
    """Bind ``customer_id`` to ``user_id`` on both sides.

    Returns True when the user's metadata had to be written. Raises
    LookupMissError when the directory user does not exist and UpstreamError
    when the forward write fails.
    """
    metadata = ctx.directory.get(user_id)
    current = metadata.get(BILLING_CUSTOMER_ID)

    wrote = False
    if current != customer_id:
        ctx.directory.merge(user_id, {BILLING_CUSTOMER_ID: customer_id})
        record_link_write("directory")
        wrote = True
        if current:
            logger.info("Updated billing customer for user %s: %s -> %s", user_id, current, customer_id)
        else:
            logger.info("Set billing customer for user %s: %s", user_id, customer_id)

    _tag_customer(ctx, customer_id, user_id, customer)
    return wrote


def resolve_billing_customer(ctx, user_id: str, known_customer_id: Optional[str] = None) -> Optional[str]:
    """Return a verified billing customer id for ``user_id`` or None.

    Never creates customers.
    """
    if known_customer_id:
        customer = ctx.gateway.retrieve_customer(known_customer_id)
        if is_live(customer):
            return known_customer_id
        logger.warning(
            "Stored billing customer %s for user %s is missing or deleted", known_customer_id, user_id
        )

    matches = [c for c in ctx.gateway.search_customers_by_metadata(DIRECTORY_USER_TAG, user_id) if is_live(c)]
    if not matches:
        return None
    if len(matches) > 1:
        logger.warning(
            "Found %d billing customers tagged with user %s; using %s",
            len(matches),
            user_id,
            matches[0]["id"],
        )

    customer = matches[0]
    ensure_billing_customer_id(ctx, user_id, customer["id"], customer=customer)
    return customer["id"]


def resolve_customer_owner(ctx, customer_id: str) -> Optional[CustomerOwner]:
    """Find the directory user owning ``customer_id`` through its back-reference tag."""
    customer = ctx.gateway.retrieve_customer(customer_id)
    if not is_live(customer):
        logger.warning("Billing customer %s is missing or deleted", customer_id)
        return None

    user_id = back_reference(customer)
    if not user_id:
        logger.warning("Billing customer %s carries no directory user tag", customer_id)
        return None

    user = ctx.directory.get_user(user_id)
    if user is None:
        logger.warning("Directory user %s referenced by customer %s not found", user_id, customer_id)
        return None
    return CustomerOwner(user=user, customer=customer)


def get_or_create_customer(ctx, user: DirectoryUser) -> str:
    customer_id = resolve_billing_customer(ctx, user.id, user.billing_customer_id)
    if customer_id:
        return customer_id

    customer = ctx.gateway.create_customer(email=user.email, metadata={DIRECTORY_USER_TAG: user.id})
    logger.info("Created billing customer %s for user %s", customer["id"], user.id)
    ensure_billing_customer_id(ctx, user.id, customer["id"], customer=customer)
    return customer["id"]
