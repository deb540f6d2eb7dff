from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from typing import Any, Dict

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from billsync.errors import ConfigurationError
from billsync.models import BillingCheckoutReq, PortalSessionReq
from billsync.routers import billing as billing_router
from billsync.services.identity import DIRECTORY_USER_TAG
from conftest import event_payload, sign_payload


def run_async(coro):
    return asyncio.run(coro)


def build_request(*, body: bytes = b"", headers: Dict[str, str] | None = None) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/stripe/webhook",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "scheme": "http",
        "server": ("testserver", 80),
    }

    async def receive() -> Dict[str, Any]:
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


def _webhook(ctx, payload: str, signature: str):
    req = build_request(body=payload.encode(), headers={"Stripe-Signature": signature})
    return run_async(billing_router.stripe_webhook(req, ctx=ctx))


def test_webhook_acknowledges_handled_event(ctx):
    payload = event_payload("product.created", {"id": "prod_x"})
    assert _webhook(ctx, payload, sign_payload(payload)) == {"received": True, "deduped": False}


def test_webhook_rejects_bad_signature_with_400(ctx):
    payload = event_payload("product.created", {"id": "prod_x"})
    resp = _webhook(ctx, payload, sign_payload(payload, "whsec_wrong"))
    assert resp.status_code == 400
    assert json.loads(resp.body)["failure"] == "verification"


def test_webhook_reports_invalid_payload_with_422(ctx, gateway):
    gateway.subscriptions["sub_1"] = {"id": "sub_1", "status": "active", "items": {"data": []}}
    payload = event_payload("customer.subscription.updated", {"id": "sub_1", "status": "active"})
    resp = _webhook(ctx, payload, sign_payload(payload))
    assert resp.status_code == 422


def test_webhook_reports_handler_failure_with_500(ctx, cognito, gateway):
    cognito.add_user("u1", {})
    gateway.add_customer("cus_1", {DIRECTORY_USER_TAG: "u1"})
    cognito.fail_updates_with = "InternalErrorException"
    payload = event_payload("customer.updated", gateway.customers["cus_1"])
    resp = _webhook(ctx, payload, sign_payload(payload))
    assert resp.status_code == 500


def test_checkout_return_redirects(ctx, cognito, gateway):
    cognito.add_user("u1", {})
    gateway.add_customer("cus_1")
    gateway.add_subscription("sub_1", "cus_1")
    gateway.add_session("cs_1", customer="cus_1", subscription="sub_1", client_reference_id="u1")

    ok = billing_router.stripe_checkout_return(session_id="cs_1", ctx=ctx)
    failed = billing_router.stripe_checkout_return(session_id="cs_missing", ctx=ctx)
    missing = billing_router.stripe_checkout_return(session_id=None, ctx=ctx)

    assert (ok.status_code, ok.headers["location"]) == (303, "https://app.example.com/dashboard")
    assert failed.headers["location"] == "https://app.example.com/error"
    assert missing.headers["location"] == "https://app.example.com/pricing"


def test_current_user_must_exist(ctx, cognito):
    with pytest.raises(HTTPException) as exc:
        billing_router.get_current_user(user_sub="ghost", ctx=ctx)
    assert exc.value.status_code == 404
    cognito.add_user("u1", {})
    assert billing_router.get_current_user(user_sub="u1", ctx=ctx).id == "u1"


def test_checkout_session_route(ctx, cognito):
    cognito.add_user("u1", {})
    user = ctx.directory.get_user("u1")
    resp = billing_router.billing_checkout_session(BillingCheckoutReq(priceId="price_pro"), user=user, ctx=ctx)
    assert resp.url.startswith("https://checkout.stripe.test/")


def test_portal_session_route_without_customer_is_404(ctx, cognito):
    cognito.add_user("u1", {})
    with pytest.raises(HTTPException) as exc:
        billing_router.billing_portal_session(PortalSessionReq(), user=ctx.directory.get_user("u1"), ctx=ctx)
    assert exc.value.status_code == 404


def test_billing_config(ctx):
    assert billing_router.billing_config(ctx=ctx) == {"publishable_key": "pk_test_fake"}
    with pytest.raises(HTTPException) as exc:
        billing_router.billing_config(ctx=replace(ctx, settings=replace(ctx.settings, stripe_publishable_key="")))
    assert exc.value.status_code == 501


def test_context_not_configured_is_501(monkeypatch):
    def broken():
        raise ConfigurationError("STRIPE_SECRET_KEY is not configured")

    monkeypatch.setattr(billing_router, "_cached_context", broken)
    with pytest.raises(HTTPException) as exc:
        billing_router.get_context()
    assert exc.value.status_code == 501
