from __future__ import annotations

from typing import Any, Dict

from botocore.exceptions import ClientError

from billsync.core.time import now_ts
from billsync.errors import UpstreamError


def with_ttl(item: Dict[str, Any], ttl_epoch: int, *, attr: str = "ttl_epoch") -> Dict[str, Any]:
    item[attr] = int(ttl_epoch)
    return item


class WebhookEventLedger:
    """Records processed webhook delivery ids so redeliveries can be acknowledged early."""

    def __init__(self, table: Any, *, ttl_seconds: int = 7 * 24 * 3600, ttl_attr: str = "ttl_epoch") -> None:
        self.table = table
        self.ttl_seconds = ttl_seconds
        self.ttl_attr = ttl_attr

    def claim(self, event_id: str) -> bool:
        """Return False when the delivery id was already recorded."""
        ts = now_ts()
        item = with_ttl(
            {"pk": "STRIPE_EVENT", "sk": event_id, "ts": ts},
            ttl_epoch=ts + self.ttl_seconds,
            attr=self.ttl_attr,
        )
        try:
            self.table.put_item(Item=item, ConditionExpression="attribute_not_exists(pk)")
            return True
        except ClientError as exc:
            if exc.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise UpstreamError(
                f"Webhook ledger write failed for {event_id}",
                service="ledger",
                code=exc.response["Error"].get("Code"),
                cause=exc,
            ) from exc

    def release(self, event_id: str) -> None:
        self.table.delete_item(Key={"pk": "STRIPE_EVENT", "sk": event_id})
