from __future__ import annotations

import copy
import hashlib
import hmac
import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest
from botocore.exceptions import ClientError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from billsync.core.settings import Settings
from billsync.errors import UpstreamError
from billsync.services.context import BillingContext
from billsync.services.directory import CognitoDirectory
from billsync.services.gateway import StripeGateway

POOL_ID = "us-east-1_test"
METADATA_ATTR = "custom:app_metadata"
WEBHOOK_SECRET = "whsec_test_secret"


def client_error(code: str, operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeCognitoClient:
    def __init__(self) -> None:
        self.users: Dict[str, Dict[str, str]] = {}
        self.updates: List[Tuple[str, List[Dict[str, str]]]] = []
        self.fail_updates_with: Optional[str] = None

    def add_user(self, user_id: str, metadata: Optional[Dict[str, Any]] = None, email: Optional[str] = None) -> None:
        attrs = {"sub": user_id, "email": email or f"{user_id}@example.com"}
        if metadata is not None:
            attrs[METADATA_ATTR] = json.dumps(metadata)
        self.users[user_id] = attrs

    def metadata(self, user_id: str) -> Dict[str, Any]:
        raw = self.users[user_id].get(METADATA_ATTR)
        return json.loads(raw) if raw else {}

    def admin_get_user(self, *, UserPoolId: str, Username: str) -> Dict[str, Any]:
        attrs = self.users.get(Username)
        if attrs is None:
            raise client_error("UserNotFoundException", "AdminGetUser")
        return {
            "Username": Username,
            "UserAttributes": [{"Name": k, "Value": v} for k, v in attrs.items()],
        }

    def admin_update_user_attributes(
        self, *, UserPoolId: str, Username: str, UserAttributes: List[Dict[str, str]]
    ) -> Dict[str, Any]:
        if self.fail_updates_with:
            raise client_error(self.fail_updates_with, "AdminUpdateUserAttributes")
        if Username not in self.users:
            raise client_error("UserNotFoundException", "AdminUpdateUserAttributes")
        self.updates.append((Username, UserAttributes))
        for attr in UserAttributes:
            self.users[Username][attr["Name"]] = attr["Value"]
        return {}


class FakeGateway(StripeGateway):
    """In-memory billing provider. Webhook verification is the real one."""

    def __init__(self) -> None:
        super().__init__("sk_test_fake")
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.products: Dict[str, Dict[str, Any]] = {}
        self.prices: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.portal_configurations: List[Dict[str, Any]] = []
        self.invoices: List[Dict[str, Any]] = []
        self.payment_intents: List[Dict[str, Any]] = []
        self.payment_methods: List[Dict[str, Any]] = []

        self.searches: List[Tuple[str, str]] = []
        self.customer_updates: List[Tuple[str, Dict[str, str]]] = []
        self.created_sessions: List[Dict[str, Any]] = []
        self.created_portal_configurations: List[Dict[str, Any]] = []
        self.portal_sessions: List[Dict[str, Any]] = []
        self.fail: Dict[str, UpstreamError] = {}

    def _maybe_fail(self, what: str) -> None:
        if what in self.fail:
            raise self.fail[what]

    # fixtures

    def add_customer(self, customer_id: str, metadata: Optional[Dict[str, str]] = None, **extra: Any) -> Dict[str, Any]:
        customer = {"id": customer_id, "object": "customer", "metadata": dict(metadata or {}), **extra}
        self.customers[customer_id] = customer
        return customer

    def add_product(self, product_id: str, name: str, *, active: bool = True) -> Dict[str, Any]:
        product = {"id": product_id, "object": "product", "name": name, "active": active}
        self.products[product_id] = product
        return product

    def add_price(self, price_id: str, product_id: str, *, amount: int = 1500, interval: Optional[str] = "month") -> Dict[str, Any]:
        price = {
            "id": price_id,
            "object": "price",
            "product": product_id,
            "unit_amount": amount,
            "currency": "usd",
            "active": True,
            "recurring": {"interval": interval} if interval else None,
        }
        self.prices[price_id] = price
        return price

    def add_subscription(
        self,
        subscription_id: str,
        customer_id: str,
        status: str = "active",
        *,
        price_id: Optional[str] = "price_pro",
        expand_product: bool = True,
        **extra: Any,
    ) -> Dict[str, Any]:
        items: List[Dict[str, Any]] = []
        if price_id:
            price = dict(self.prices[price_id])
            if expand_product:
                price["product"] = dict(self.products[price["product"]])
            items.append({"id": f"si_{subscription_id}", "price": price})
        subscription = {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer_id,
            "status": status,
            "items": {"object": "list", "data": items},
            **extra,
        }
        self.subscriptions[subscription_id] = subscription
        return subscription

    def add_session(self, session_id: str, **fields: Any) -> Dict[str, Any]:
        session = {"id": session_id, "object": "checkout.session", "mode": "subscription", **fields}
        self.sessions[session_id] = session
        return session

    # gateway surface

    def retrieve_customer(self, customer_id: str) -> Any:
        self._maybe_fail("retrieve_customer")
        customer = self.customers.get(customer_id)
        return copy.deepcopy(customer) if customer else None

    def search_customers_by_metadata(self, key: str, value: str, *, limit: int = 10) -> List[Any]:
        self._maybe_fail("search_customers_by_metadata")
        self.searches.append((key, value))
        found = [c for c in self.customers.values() if (c.get("metadata") or {}).get(key) == value]
        return copy.deepcopy(found[:limit])

    def create_customer(self, *, email: Optional[str], metadata: Dict[str, str]) -> Any:
        customer_id = f"cus_new{len(self.customers) + 1}"
        return copy.deepcopy(self.add_customer(customer_id, metadata, email=email))

    def update_customer_metadata(self, customer_id: str, metadata: Dict[str, str]) -> Any:
        self._maybe_fail("update_customer_metadata")
        self.customer_updates.append((customer_id, dict(metadata)))
        customer = self.customers[customer_id]
        customer["metadata"].update(metadata)
        return copy.deepcopy(customer)

    def retrieve_subscription(self, subscription_id: str, *, expand: Optional[List[str]] = None) -> Any:
        self._maybe_fail("retrieve_subscription")
        if subscription_id not in self.subscriptions:
            raise UpstreamError(f"No such subscription: {subscription_id}", service="billing", code="resource_missing")
        return copy.deepcopy(self.subscriptions[subscription_id])

    def list_subscriptions(self, customer_id: str, *, status: str = "all", limit: int = 10) -> List[Any]:
        return [copy.deepcopy(s) for s in self.subscriptions.values() if s["customer"] == customer_id][:limit]

    def retrieve_product(self, product_id: str) -> Any:
        self._maybe_fail("retrieve_product")
        return copy.deepcopy(self.products[product_id])

    def list_active_products(self, *, limit: int = 100) -> List[Any]:
        return [copy.deepcopy(p) for p in self.products.values() if p.get("active")][:limit]

    def list_active_prices(self, product_id: str, *, limit: int = 100) -> List[Any]:
        return [copy.deepcopy(p) for p in self.prices.values() if p["product"] == product_id and p.get("active")][:limit]

    def create_checkout_session(self, **params: Any) -> Any:
        self._maybe_fail("create_checkout_session")
        self.created_sessions.append(params)
        session_id = f"cs_new{len(self.created_sessions)}"
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def retrieve_checkout_session(self, session_id: str, *, expand: Optional[List[str]] = None) -> Any:
        self._maybe_fail("retrieve_checkout_session")
        if session_id not in self.sessions:
            raise UpstreamError(f"No such checkout session: {session_id}", service="billing", code="resource_missing")
        session = copy.deepcopy(self.sessions[session_id])
        expand = expand or []
        if "customer" in expand and isinstance(session.get("customer"), str):
            session["customer"] = self.retrieve_customer(session["customer"])
        if "subscription" in expand and isinstance(session.get("subscription"), str):
            session["subscription"] = copy.deepcopy(self.subscriptions.get(session["subscription"]))
        return session

    def list_portal_configurations(self, *, limit: int = 10) -> List[Any]:
        return copy.deepcopy(self.portal_configurations[:limit])

    def retrieve_portal_configuration(self, configuration_id: str) -> Any:
        for configuration in self.portal_configurations:
            if configuration["id"] == configuration_id:
                return copy.deepcopy(configuration)
        return None

    def create_portal_configuration(self, **params: Any) -> Any:
        configuration = {"id": f"bpc_new{len(self.created_portal_configurations) + 1}", **params}
        self.created_portal_configurations.append(configuration)
        self.portal_configurations.append(configuration)
        return copy.deepcopy(configuration)

    def create_portal_session(self, *, customer_id: str, return_url: str, configuration_id: str) -> Any:
        session = {
            "id": f"bps_{len(self.portal_sessions) + 1}",
            "customer": customer_id,
            "return_url": return_url,
            "configuration": configuration_id,
            "url": f"https://billing.stripe.test/session/{customer_id}",
        }
        self.portal_sessions.append(session)
        return session

    def list_invoices(self, customer_id: str, *, limit: int = 20, status: Optional[str] = None) -> List[Any]:
        self._maybe_fail("list_invoices")
        found = [i for i in self.invoices if i["customer"] == customer_id and (not status or i.get("status") == status)]
        return copy.deepcopy(found[:limit])

    def list_payment_intents(self, customer_id: str, *, limit: int = 20) -> List[Any]:
        return copy.deepcopy([p for p in self.payment_intents if p["customer"] == customer_id][:limit])

    def list_card_payment_methods(self, customer_id: str) -> List[Any]:
        self._maybe_fail("list_card_payment_methods")
        return copy.deepcopy([p for p in self.payment_methods if p["customer"] == customer_id])


class FakeLedgerTable:
    def __init__(self) -> None:
        self.items: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.deleted: List[Tuple[str, str]] = []

    def put_item(self, *, Item: Dict[str, Any], ConditionExpression: Optional[str] = None, **_: Any) -> None:
        key = (Item["pk"], Item["sk"])
        if ConditionExpression == "attribute_not_exists(pk)" and key in self.items:
            raise client_error("ConditionalCheckFailedException", "PutItem")
        self.items[key] = Item

    def delete_item(self, *, Key: Dict[str, str]) -> None:
        self.deleted.append((Key["pk"], Key["sk"]))
        self.items.pop((Key["pk"], Key["sk"]), None)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def event_payload(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> str:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "api_version": "2024-06-20",
            "created": int(time.time()),
            "data": {"object": obj},
        }
    )


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "cognito_user_pool_id": POOL_ID,
        "cognito_app_client_id": "",
        "cognito_metadata_attribute": METADATA_ATTR,
        "stripe_secret_key": "sk_test_fake",
        "stripe_publishable_key": "pk_test_fake",
        "stripe_webhook_secret": WEBHOOK_SECRET,
        "stripe_portal_configuration_id": "",
        "stripe_trial_period_days": 14,
        "public_base_url": "https://app.example.com",
        "checkout_success_path": "/dashboard",
        "checkout_error_path": "/error",
        "pricing_path": "/pricing",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def cognito() -> FakeCognitoClient:
    return FakeCognitoClient()


@pytest.fixture
def gateway() -> FakeGateway:
    gw = FakeGateway()
    gw.add_product("prod_pro", "Pro")
    gw.add_price("price_pro", "prod_pro")
    return gw


@pytest.fixture
def ctx(cognito: FakeCognitoClient, gateway: FakeGateway) -> BillingContext:
    return BillingContext(
        gateway=gateway,
        directory=CognitoDirectory(cognito, POOL_ID, METADATA_ATTR),
        settings=make_settings(),
    )
