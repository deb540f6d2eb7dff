from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from .aws import ddb
from .settings import S, Settings

@dataclass(frozen=True)
class Tables:
    webhook_events: Optional[Any]


def build_tables(settings: Settings = S) -> Tables:
    name = settings.webhook_events_table_name
    return Tables(
        webhook_events=ddb().Table(name) if name else None,
    )
