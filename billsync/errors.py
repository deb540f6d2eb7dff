from __future__ import annotations

from typing import Optional


class BillingSyncError(Exception):
    """Base class for failures raised by the reconciliation engine."""

    kind = "error"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        return self.message


class ConfigurationError(BillingSyncError):
    kind = "configuration"


class VerificationError(BillingSyncError):
    """Webhook payload could not be authenticated."""

    kind = "verification"


class LookupMissError(BillingSyncError):
    """A user or customer that was expected to exist does not."""

    kind = "lookup_miss"


class UpstreamError(BillingSyncError):
    """The directory service or the billing provider rejected a call."""

    kind = "upstream"

    def __init__(
        self,
        message: str,
        *,
        service: str,
        code: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.service = service
        self.code = code


class InvalidPayloadError(BillingSyncError):
    """Provider data does not have the shape this operation needs.

    Retrying the same data will not help.
    """

    kind = "invalid_payload"
