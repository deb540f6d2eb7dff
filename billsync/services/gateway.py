from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Union

import stripe

from billsync.errors import InvalidPayloadError, UpstreamError, VerificationError


def object_id(value: Any) -> Optional[str]:
    """Return the id of an expandable field that may be a bare id or an object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


def is_missing(exc: Exception) -> bool:
    return isinstance(exc, stripe.InvalidRequestError) and (
        getattr(exc, "http_status", None) == 404 or getattr(exc, "code", None) == "resource_missing"
    )


class StripeGateway:
    """Billing-provider calls bound to one explicitly configured API key."""

    def __init__(self, api_key: str, *, api_version: str = "") -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self.api_key = api_key
        self.api_version = api_version

    def _opts(self) -> Dict[str, Any]:
        opts: Dict[str, Any] = {"api_key": self.api_key}
        if self.api_version:
            opts["stripe_version"] = self.api_version
        return opts

    def _call(self, what: str, fn: Callable[..., Any], *args: Any, **params: Any) -> Any:
        try:
            return fn(*args, **params, **self._opts())
        except stripe.StripeError as exc:
            code = getattr(exc, "code", None)
            raise UpstreamError(
                f"Stripe {what} failed: {exc.user_message or exc}",
                service="billing",
                code=code,
                cause=exc,
            ) from exc

    def _retrieve_or_none(self, what: str, fn: Callable[..., Any], object_id_: str, **params: Any) -> Any:
        try:
            return fn(object_id_, **params, **self._opts())
        except stripe.StripeError as exc:
            if is_missing(exc):
                return None
            raise UpstreamError(
                f"Stripe {what} failed: {exc.user_message or exc}",
                service="billing",
                code=getattr(exc, "code", None),
                cause=exc,
            ) from exc

    # Webhooks

    def construct_event(self, payload: Union[bytes, str], signature: Optional[str], secret: str) -> Any:
        if not secret:
            raise VerificationError("Webhook secret not configured")
        if not signature:
            raise VerificationError("Missing Stripe-Signature header")
        try:
            return stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=secret)
        except stripe.SignatureVerificationError as exc:
            raise VerificationError(f"Webhook signature verification failed: {exc}", cause=exc) from exc
        except ValueError as exc:
            raise VerificationError(f"Invalid webhook payload: {exc}", cause=exc) from exc

    # Customers

    def retrieve_customer(self, customer_id: str) -> Any:
        return self._retrieve_or_none("customer retrieve", stripe.Customer.retrieve, customer_id)

    def search_customers_by_metadata(self, key: str, value: str, *, limit: int = 10) -> List[Any]:
        escaped = value.replace("\\", "\\\\").replace("'", "\\'")
        result = self._call(
            "customer search",
            stripe.Customer.search,
            query=f"metadata['{key}']:'{escaped}'",
            limit=limit,
        )
        return list(result.get("data") or [])

    def create_customer(self, *, email: Optional[str], metadata: Dict[str, str]) -> Any:
        params: Dict[str, Any] = {"metadata": metadata}
        if email:
            params["email"] = email
        return self._call("customer create", stripe.Customer.create, **params)

    def update_customer_metadata(self, customer_id: str, metadata: Dict[str, str]) -> Any:
        return self._call("customer update", stripe.Customer.modify, customer_id, metadata=metadata)

    # Subscriptions, prices, products

    def retrieve_subscription(self, subscription_id: str, *, expand: Optional[List[str]] = None) -> Any:
        return self._call(
            "subscription retrieve",
            stripe.Subscription.retrieve,
            subscription_id,
            expand=expand or ["items.data.price.product"],
        )

    def list_subscriptions(self, customer_id: str, *, status: str = "all", limit: int = 10) -> List[Any]:
        result = self._call(
            "subscription list", stripe.Subscription.list, customer=customer_id, status=status, limit=limit
        )
        return list(result.get("data") or [])

    def retrieve_product(self, product_id: str) -> Any:
        return self._call("product retrieve", stripe.Product.retrieve, product_id)

    def list_active_products(self, *, limit: int = 100) -> List[Any]:
        result = self._call("product list", stripe.Product.list, active=True, limit=limit)
        return list(result.get("data") or [])

    def list_active_prices(self, product_id: str, *, limit: int = 100) -> List[Any]:
        result = self._call("price list", stripe.Price.list, product=product_id, active=True, limit=limit)
        return list(result.get("data") or [])

    # Checkout

    def create_checkout_session(self, **params: Any) -> Any:
        return self._call("checkout session create", stripe.checkout.Session.create, **params)

    def retrieve_checkout_session(self, session_id: str, *, expand: Optional[List[str]] = None) -> Any:
        if not session_id:
            raise InvalidPayloadError("Checkout session id is required")
        return self._call(
            "checkout session retrieve",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=expand or ["customer", "subscription"],
        )

    # Billing portal

    def list_portal_configurations(self, *, limit: int = 10) -> List[Any]:
        result = self._call("portal configuration list", stripe.billing_portal.Configuration.list, limit=limit)
        return list(result.get("data") or [])

    def retrieve_portal_configuration(self, configuration_id: str) -> Any:
        return self._retrieve_or_none(
            "portal configuration retrieve", stripe.billing_portal.Configuration.retrieve, configuration_id
        )

    def create_portal_configuration(self, **params: Any) -> Any:
        return self._call("portal configuration create", stripe.billing_portal.Configuration.create, **params)

    def create_portal_session(self, *, customer_id: str, return_url: str, configuration_id: str) -> Any:
        return self._call(
            "portal session create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
            configuration=configuration_id,
        )

    # Read model

    def list_invoices(self, customer_id: str, *, limit: int = 20, status: Optional[str] = None) -> List[Any]:
        params: Dict[str, Any] = {"customer": customer_id, "limit": limit}
        if status:
            params["status"] = status
        result = self._call("invoice list", stripe.Invoice.list, **params)
        return list(result.get("data") or [])

    def list_payment_intents(self, customer_id: str, *, limit: int = 20) -> List[Any]:
        result = self._call("payment intent list", stripe.PaymentIntent.list, customer=customer_id, limit=limit)
        return list(result.get("data") or [])

    def list_card_payment_methods(self, customer_id: str) -> List[Any]:
        result = self._call("payment method list", stripe.PaymentMethod.list, customer=customer_id, type="card")
        return list(result.get("data") or [])
