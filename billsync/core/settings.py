from __future__ import annotations

import os
from dataclasses import dataclass

@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")

    # Cognito (directory service)
    cognito_user_pool_id: str = os.environ.get("COGNITO_USER_POOL_ID", "")
    cognito_region: str = os.environ.get("COGNITO_REGION", "")
    cognito_app_client_id: str = os.environ.get("COGNITO_APP_CLIENT_ID", "")
    cognito_expected_token_use: str = os.environ.get("COGNITO_EXPECTED_TOKEN_USE", "access")
    # Custom attribute holding the JSON metadata document (max 2048 chars in Cognito)
    cognito_metadata_attribute: str = os.environ.get("COGNITO_METADATA_ATTRIBUTE", "custom:app_metadata")

    # Stripe
    stripe_secret_key: str = os.environ.get("STRIPE_SECRET_KEY", "")
    stripe_publishable_key: str = os.environ.get("STRIPE_PUBLISHABLE_KEY", "")
    stripe_webhook_secret: str = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    stripe_api_version: str = os.environ.get("STRIPE_API_VERSION", "")
    stripe_portal_configuration_id: str = os.environ.get("STRIPE_PORTAL_CONFIGURATION_ID", "")
    stripe_trial_period_days: int = int(os.environ.get("STRIPE_TRIAL_PERIOD_DAYS", "14"))

    # Redirect targets
    public_base_url: str = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
    checkout_success_path: str = os.environ.get("CHECKOUT_SUCCESS_PATH", "/dashboard")
    checkout_error_path: str = os.environ.get("CHECKOUT_ERROR_PATH", "/error")
    pricing_path: str = os.environ.get("PRICING_PATH", "/pricing")

    # Webhook delivery ledger (DynamoDB); empty table name disables dedupe
    webhook_events_table_name: str = os.environ.get("WEBHOOK_EVENTS_TABLE_NAME", "")
    webhook_event_ttl_seconds: int = int(os.environ.get("WEBHOOK_EVENT_TTL_SECONDS", str(7 * 24 * 3600)))
    ddb_ttl_attr: str = os.environ.get("DDB_TTL_ATTR", "ttl_epoch")

    metrics_enabled: bool = os.environ.get("METRICS_ENABLED", "1") not in ("0", "false", "False")

    def absolute_url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.public_base_url}/{path.lstrip('/')}"


S = Settings()
