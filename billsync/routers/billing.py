from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from billsync.auth.deps import get_authenticated_user_sub
from billsync.errors import ConfigurationError, InvalidPayloadError, LookupMissError, UpstreamError
from billsync.models import (
    BillingCheckoutReq,
    BillingConfigOut,
    PaymentHistoryItemOut,
    PaymentMethodsOut,
    PortalSessionReq,
    SubscriptionDetailsOut,
    UpcomingPaymentOut,
    UrlResp,
)
from billsync.services import account
from billsync.services.checkout import complete_checkout, create_checkout_session
from billsync.services.context import BillingContext, build_context
from billsync.services.directory import DirectoryUser
from billsync.services.portal import create_portal_session
from billsync.services.webhooks import dispatch_webhook

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])

FAILURE_STATUS = {"verification": 400, "invalid_payload": 422, "handler": 500}


@lru_cache(maxsize=1)
def _cached_context() -> BillingContext:
    return build_context()


def get_context() -> BillingContext:
    try:
        return _cached_context()
    except ConfigurationError as exc:
        raise HTTPException(501, str(exc)) from exc


def get_current_user(
    user_sub: str = Depends(get_authenticated_user_sub),
    ctx: BillingContext = Depends(get_context),
) -> DirectoryUser:
    try:
        user = ctx.directory.get_user(user_sub)
    except UpstreamError as exc:
        raise HTTPException(502, "Directory unavailable") from exc
    if user is None:
        raise HTTPException(404, "User not found")
    return user


@router.post("/api/stripe/webhook")
async def stripe_webhook(req: Request, ctx: BillingContext = Depends(get_context)):
    payload = await req.body()
    signature = req.headers.get("stripe-signature")
    outcome = await run_in_threadpool(
        dispatch_webhook, ctx, payload, signature, ctx.settings.stripe_webhook_secret
    )
    if outcome.success:
        return {"received": True, "deduped": outcome.deduped}
    return JSONResponse(
        status_code=FAILURE_STATUS.get(outcome.failure or "handler", 500),
        content={"received": False, "error": outcome.error, "failure": outcome.failure},
    )


@router.get("/api/stripe/checkout")
def stripe_checkout_return(
    session_id: Optional[str] = Query(default=None),
    ctx: BillingContext = Depends(get_context),
):
    settings = ctx.settings
    if not session_id:
        return RedirectResponse(settings.absolute_url(settings.pricing_path), status_code=303)
    return RedirectResponse(complete_checkout(ctx, session_id), status_code=303)


@router.post("/api/billing/checkout_session", response_model=UrlResp)
def billing_checkout_session(
    body: BillingCheckoutReq,
    user: DirectoryUser = Depends(get_current_user),
    ctx: BillingContext = Depends(get_context),
) -> UrlResp:
    try:
        url = create_checkout_session(ctx, user, body.price_id)
    except InvalidPayloadError as exc:
        raise HTTPException(400, str(exc)) from exc
    except UpstreamError as exc:
        logger.error("Checkout session creation failed for user %s: %s", user.id, exc)
        raise HTTPException(502, "Billing provider error") from exc
    return UrlResp(url=url)


@router.post("/api/billing/portal_session", response_model=UrlResp)
def billing_portal_session(
    body: PortalSessionReq,
    user: DirectoryUser = Depends(get_current_user),
    ctx: BillingContext = Depends(get_context),
) -> UrlResp:
    try:
        url = create_portal_session(ctx, user.id, body.return_url)
    except LookupMissError as exc:
        raise HTTPException(404, str(exc)) from exc
    except InvalidPayloadError as exc:
        raise HTTPException(400, str(exc)) from exc
    except UpstreamError as exc:
        logger.error("Portal session creation failed for user %s: %s", user.id, exc)
        raise HTTPException(502, "Billing provider error") from exc
    return UrlResp(url=url)


@router.get("/api/billing/subscription", response_model=Optional[SubscriptionDetailsOut])
def billing_subscription(
    user: DirectoryUser = Depends(get_current_user),
    ctx: BillingContext = Depends(get_context),
):
    return account.get_subscription_details(ctx, user)


@router.get("/api/billing/payment-history", response_model=List[PaymentHistoryItemOut])
def billing_payment_history(
    limit: int = Query(default=20, ge=1, le=100),
    user: DirectoryUser = Depends(get_current_user),
    ctx: BillingContext = Depends(get_context),
):
    return account.get_payment_history(ctx, user, limit)


@router.get("/api/billing/payment-methods", response_model=PaymentMethodsOut)
def billing_payment_methods(
    user: DirectoryUser = Depends(get_current_user),
    ctx: BillingContext = Depends(get_context),
) -> PaymentMethodsOut:
    return PaymentMethodsOut(payment_methods=account.get_payment_methods(ctx, user))


@router.get("/api/billing/upcoming", response_model=List[UpcomingPaymentOut])
def billing_upcoming(
    user: DirectoryUser = Depends(get_current_user),
    ctx: BillingContext = Depends(get_context),
):
    return account.get_upcoming_payments(ctx, user)


@router.get("/api/billing/config", response_model=BillingConfigOut)
def billing_config(ctx: BillingContext = Depends(get_context)) -> Dict[str, Any]:
    key = ctx.settings.stripe_publishable_key
    if not key:
        raise HTTPException(501, "Stripe publishable key not configured")
    return {"publishable_key": key}
