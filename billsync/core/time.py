from __future__ import annotations

import time
from typing import Optional


def now_ts() -> int:
    return int(time.time())


def to_millis(epoch_seconds) -> Optional[int]:
    if epoch_seconds is None:
        return None
    return int(epoch_seconds) * 1000
