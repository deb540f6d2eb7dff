from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from billsync.errors import InvalidPayloadError, LookupMissError
from billsync.services.directory import BILLING_PRODUCT_ID
from billsync.services.identity import resolve_billing_customer

logger = logging.getLogger(__name__)

PORTAL_HEADLINE = "Manage your subscription"
CANCELLATION_REASONS = ["too_expensive", "missing_features", "switched_service", "unused", "other"]


def _portal_products(ctx, product_id: Optional[str]) -> List[Dict[str, Any]]:
    if product_id:
        product = ctx.gateway.retrieve_product(product_id)
        if not product.get("active"):
            raise InvalidPayloadError(f"Product {product_id} is not active")
        products = [product]
    else:
        products = ctx.gateway.list_active_products()

    entries = []
    for product in products:
        prices = [
            p["id"] for p in ctx.gateway.list_active_prices(product["id"]) if p.get("recurring")
        ]
        if prices:
            entries.append({"product": product["id"], "prices": prices})
    return entries


def portal_configuration_params(products: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "business_profile": {"headline": PORTAL_HEADLINE},
        "features": {
            "subscription_update": {
                "enabled": True,
                "default_allowed_updates": ["price", "quantity", "promotion_code"],
                "proration_behavior": "create_prorations",
                "products": products,
            },
            "subscription_cancel": {
                "enabled": True,
                "mode": "at_period_end",
                "cancellation_reason": {"enabled": True, "options": list(CANCELLATION_REASONS)},
            },
            "payment_method_update": {"enabled": True},
        },
    }


def get_or_create_portal_configuration(ctx, product_id: Optional[str] = None) -> str:
    """Return the id of a customer-portal configuration, creating one if none exists.

    Concurrent callers may both create a configuration. Later calls pick the
    first listed one, so the duplicate is harmless.
    """
    configured = ctx.settings.stripe_portal_configuration_id
    if configured:
        if ctx.gateway.retrieve_portal_configuration(configured) is not None:
            return configured
        logger.warning("Configured portal configuration %s not found; falling back", configured)

    existing = ctx.gateway.list_portal_configurations(limit=1)
    if existing:
        return existing[0]["id"]

    products = _portal_products(ctx, product_id)
    if not products:
        raise LookupMissError("No active products with recurring prices for the billing portal")

    configuration = ctx.gateway.create_portal_configuration(**portal_configuration_params(products))
    logger.info("Created portal configuration %s covering %d products", configuration["id"], len(products))
    return configuration["id"]


def create_portal_session(ctx, user_id: str, return_url: Optional[str] = None) -> str:
    user = ctx.directory.get_user(user_id)
    if user is None:
        raise LookupMissError(f"Directory user {user_id} not found")

    customer_id = resolve_billing_customer(ctx, user.id, user.billing_customer_id)
    if not customer_id:
        raise LookupMissError(f"No billing customer for user {user_id}")

    configuration_id = get_or_create_portal_configuration(ctx, user.metadata.get(BILLING_PRODUCT_ID))
    session = ctx.gateway.create_portal_session(
        customer_id=customer_id,
        return_url=return_url or ctx.settings.absolute_url(ctx.settings.checkout_success_path),
        configuration_id=configuration_id,
    )
    return session["url"]
