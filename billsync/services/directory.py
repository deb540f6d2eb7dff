"""Directory-user metadata storage backed by a Cognito user pool.

Each user's application metadata lives as a single JSON document in one
custom attribute. Writes are always read-modify-write merges of a fragment
into that document, so keys owned by other parts of the application are
carried through untouched.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from botocore.exceptions import ClientError

from billsync.errors import InvalidPayloadError, LookupMissError, UpstreamError

logger = logging.getLogger(__name__)

BILLING_CUSTOMER_ID = "billingCustomerId"
BILLING_SUBSCRIPTION_ID = "billingSubscriptionId"
BILLING_PRODUCT_ID = "billingProductId"
PLAN_NAME = "planName"
SUBSCRIPTION_STATUS = "subscriptionStatus"

# Cognito custom attribute values are capped at 2048 characters.
MAX_METADATA_LENGTH = 2048

BILLING_KEYS = (
    BILLING_CUSTOMER_ID,
    BILLING_SUBSCRIPTION_ID,
    BILLING_PRODUCT_ID,
    PLAN_NAME,
    SUBSCRIPTION_STATUS,
)


@dataclass
class DirectoryUser:
    id: str
    email: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def billing_customer_id(self) -> Optional[str]:
        value = self.metadata.get(BILLING_CUSTOMER_ID)
        return value if isinstance(value, str) and value else None

    @property
    def billing_subscription_id(self) -> Optional[str]:
        value = self.metadata.get(BILLING_SUBSCRIPTION_ID)
        return value if isinstance(value, str) and value else None


def _attributes_to_dict(attributes: List[Dict[str, str]]) -> Dict[str, str]:
    return {a["Name"]: a.get("Value", "") for a in attributes or []}


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


class CognitoDirectory:
    def __init__(self, client: Any, user_pool_id: str, attribute: str = "custom:app_metadata") -> None:
        self.client = client
        self.user_pool_id = user_pool_id
        self.attribute = attribute

    def _decode(self, user_id: str, raw: Optional[str]) -> Dict[str, Any]:
        if not raw:
            return {}
        try:
            doc = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring malformed metadata document for user %s", user_id)
            return {}
        if not isinstance(doc, dict):
            logger.warning("Ignoring non-object metadata document for user %s", user_id)
            return {}
        return doc

    def get_user(self, user_id: str) -> Optional[DirectoryUser]:
        if not user_id:
            return None
        try:
            resp = self.client.admin_get_user(UserPoolId=self.user_pool_id, Username=user_id)
        except ClientError as exc:
            code = _error_code(exc)
            if code == "UserNotFoundException":
                return None
            raise UpstreamError(
                f"Directory lookup failed for user {user_id}: {code or exc}",
                service="directory",
                code=code,
                cause=exc,
            ) from exc

        attrs = _attributes_to_dict(resp.get("UserAttributes", []))
        return DirectoryUser(
            id=user_id,
            email=attrs.get("email"),
            metadata=self._decode(user_id, attrs.get(self.attribute)),
        )

    def get(self, user_id: str) -> Dict[str, Any]:
        user = self.get_user(user_id)
        if user is None:
            raise LookupMissError(f"Directory user {user_id} not found")
        return user.metadata

    def merge(self, user_id: str, fragment: Mapping[str, Any]) -> Dict[str, Any]:
        current = self.get(user_id)
        merged = {**current, **fragment}
        if merged == current:
            return current

        value = json.dumps(merged, separators=(",", ":"), sort_keys=True)
        if len(value) > MAX_METADATA_LENGTH:
            raise InvalidPayloadError(
                f"Metadata for user {user_id} would be {len(value)} characters (limit {MAX_METADATA_LENGTH})"
            )
        try:
            self.client.admin_update_user_attributes(
                UserPoolId=self.user_pool_id,
                Username=user_id,
                UserAttributes=[{"Name": self.attribute, "Value": value}],
            )
        except ClientError as exc:
            code = _error_code(exc)
            if code == "UserNotFoundException":
                raise LookupMissError(f"Directory user {user_id} not found") from exc
            raise UpstreamError(
                f"Directory update failed for user {user_id}: {code or exc}",
                service="directory",
                code=code,
                cause=exc,
            ) from exc

        logger.debug("Merged metadata keys %s for user %s", sorted(fragment), user_id)
        return merged
