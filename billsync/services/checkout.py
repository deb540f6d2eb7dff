from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from billsync.errors import InvalidPayloadError
from billsync.services.directory import DirectoryUser
from billsync.services.gateway import object_id
from billsync.services.identity import (
    DIRECTORY_USER_TAG,
    ensure_billing_customer_id,
    get_or_create_customer,
    resolve_customer_owner,
)
from billsync.services.projection import ProjectionResult, apply_subscription

logger = logging.getLogger(__name__)

CHECKOUT_RETURN_PATH = "/api/stripe/checkout"


@dataclass
class CheckoutResult:
    session_id: str
    user_id: str
    customer_id: str
    subscription_id: str
    projection: ProjectionResult


def link_checkout_session(ctx, session_id: str) -> CheckoutResult:
    """Bind the customer of a completed subscription checkout to its user and
    project the subscription onto the user's metadata.

    Shared by the browser return path and the ``checkout.session.completed``
    webhook. Every step is idempotent, so steps that succeeded before a
    failure are left in place.
    """
    session = ctx.gateway.retrieve_checkout_session(session_id, expand=["customer", "subscription"])

    customer = session.get("customer")
    if not isinstance(customer, dict) or not customer.get("id") or customer.get("deleted"):
        raise InvalidPayloadError(f"Invalid customer data from checkout session {session_id}")
    customer_id = customer["id"]

    subscription_id = object_id(session.get("subscription"))
    if not subscription_id:
        raise InvalidPayloadError(f"No subscription found for checkout session {session_id}")

    user_id = session.get("client_reference_id")
    if not user_id:
        raise InvalidPayloadError(f"No user reference found on checkout session {session_id}")

    ensure_billing_customer_id(ctx, user_id, customer_id, customer=customer)

    subscription = ctx.gateway.retrieve_subscription(subscription_id, expand=["items.data.price.product"])
    projection = apply_subscription(ctx, subscription, user_id=user_id)

    return CheckoutResult(
        session_id=session_id,
        user_id=user_id,
        customer_id=customer_id,
        subscription_id=subscription_id,
        projection=projection,
    )


def complete_checkout(ctx, session_id: str) -> str:
    """Run the checkout linkage for a returning browser and pick the redirect target."""
    settings = ctx.settings
    try:
        link_checkout_session(ctx, session_id)
    except Exception:
        logger.exception("Error handling successful checkout for session %s", session_id)
        return settings.absolute_url(settings.checkout_error_path)
    return settings.absolute_url(settings.checkout_success_path)


def handle_checkout_completed(ctx, session: Mapping[str, Any]) -> Optional[CheckoutResult]:
    """Webhook counterpart of ``complete_checkout``.

    Subscription checkouts go through ``link_checkout_session``. Other modes
    only carry a customer, which is linked to the referenced user, or to the
    user named by the customer's own tag.
    """
    session_id = session.get("id")
    if session.get("mode", "subscription") == "subscription" and session.get("subscription"):
        return link_checkout_session(ctx, session_id)

    customer_id = object_id(session.get("customer"))
    if not customer_id:
        logger.info("No customer on checkout session %s", session_id)
        return None

    user_id = session.get("client_reference_id")
    if user_id and ctx.directory.get_user(user_id) is not None:
        customer = session.get("customer")
        ensure_billing_customer_id(
            ctx, user_id, customer_id, customer=customer if isinstance(customer, dict) else None
        )
        logger.info("Linked customer %s to user %s from checkout session %s", customer_id, user_id, session_id)
        return None

    owner = resolve_customer_owner(ctx, customer_id)
    if owner is not None:
        ensure_billing_customer_id(ctx, owner.user.id, customer_id, customer=owner.customer)
        logger.info(
            "Linked customer %s to user %s from checkout session %s (customer tag)",
            customer_id,
            owner.user.id,
            session_id,
        )
        return None

    logger.warning("No directory user found for checkout session %s", session_id)
    return None


def create_checkout_session(ctx, user: DirectoryUser, price_id: str) -> str:
    """Start a hosted subscription checkout for ``user`` and return its URL."""
    if not price_id:
        raise InvalidPayloadError("price_id is required")

    settings = ctx.settings
    customer_id = get_or_create_customer(ctx, user)

    params: Dict[str, Any] = {
        "mode": "subscription",
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": settings.absolute_url(CHECKOUT_RETURN_PATH) + "?session_id={CHECKOUT_SESSION_ID}",
        "cancel_url": settings.absolute_url(settings.pricing_path),
        "customer": customer_id,
        "client_reference_id": user.id,
        "allow_promotion_codes": True,
        "metadata": {DIRECTORY_USER_TAG: user.id},
    }
    if settings.stripe_trial_period_days > 0:
        params["subscription_data"] = {"trial_period_days": settings.stripe_trial_period_days}

    session = ctx.gateway.create_checkout_session(**params)
    logger.info("Created checkout session %s for user %s", session.get("id"), user.id)
    return session["url"]
