from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from billsync.core.aws import cognito_client
from billsync.core.settings import S, Settings
from billsync.core.tables import build_tables
from billsync.errors import ConfigurationError
from billsync.services.directory import CognitoDirectory
from billsync.services.event_ledger import WebhookEventLedger
from billsync.services.gateway import StripeGateway


@dataclass(frozen=True)
class BillingContext:
    """Collaborators shared by every reconciliation operation.

    ``gateway`` talks to the billing provider, ``directory`` reads and merges
    directory-user metadata, ``ledger`` (optional) dedupes webhook deliveries.
    """

    gateway: Any
    directory: Any
    settings: Settings = S
    ledger: Optional[WebhookEventLedger] = None


def build_context(settings: Settings = S) -> BillingContext:
    if not settings.stripe_secret_key:
        raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
    if not settings.cognito_user_pool_id:
        raise ConfigurationError("COGNITO_USER_POOL_ID is not configured")

    tables = build_tables(settings)
    ledger = None
    if tables.webhook_events is not None:
        ledger = WebhookEventLedger(
            tables.webhook_events,
            ttl_seconds=settings.webhook_event_ttl_seconds,
            ttl_attr=settings.ddb_ttl_attr,
        )

    return BillingContext(
        gateway=StripeGateway(settings.stripe_secret_key, api_version=settings.stripe_api_version),
        directory=CognitoDirectory(
            cognito_client(),
            settings.cognito_user_pool_id,
            settings.cognito_metadata_attribute,
        ),
        settings=settings,
        ledger=ledger,
    )
