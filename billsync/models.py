from __future__ import annotations

from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class BillingCheckoutReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    price_id: str = Field(min_length=1, validation_alias=AliasChoices("price_id", "priceId"))

class PortalSessionReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    return_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("return_url", "returnUrl"))

class UrlResp(BaseModel):
    url: str

class BillingConfigOut(BaseModel):
    publishable_key: str

class WebhookAckOut(BaseModel):
    received: bool = True
    deduped: bool = False


class SubscriptionDetailsOut(BaseModel):
    id: str
    status: str
    current_period_start: Optional[int] = None  # ms
    current_period_end: Optional[int] = None  # ms
    cancel_at_period_end: bool = False
    plan_name: str
    amount: int = 0
    currency: str = "usd"
    interval: str = "month"
    trial_end: Optional[int] = None  # ms


class PaymentHistoryItemOut(BaseModel):
    id: str
    amount: int
    currency: str
    status: str
    date: int  # ms
    description: str
    invoice_url: Optional[str] = None


class CardOut(BaseModel):
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None

class PaymentMethodOut(BaseModel):
    id: str
    type: str
    card: Optional[CardOut] = None
    is_default: bool = False

class PaymentMethodsOut(BaseModel):
    payment_methods: List[PaymentMethodOut] = Field(default_factory=list)


class UpcomingPaymentOut(BaseModel):
    id: str
    amount: int
    currency: str
    due_date: int  # ms
    description: str
    status: str = "open"
    invoice_url: Optional[str] = None
