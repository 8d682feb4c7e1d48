from __future__ import annotations

from typing import Optional


class CoinLedgerError(Exception):
    """Base class for failures surfaced to callers. Never retried inside the service."""

    code = "ERROR"
    status_code = 400

    def __init__(self, detail: str, *, extra: Optional[dict] = None):
        super().__init__(detail)
        self.detail = detail
        self.extra = extra or {}

    def to_dict(self) -> dict:
        body = {"detail": self.detail, "code": self.code}
        body.update(self.extra)
        return body


class ValidationFailed(CoinLedgerError):
    code = "VALIDATION"
    status_code = 400


class NotFound(CoinLedgerError):
    code = "NOT_FOUND"
    status_code = 404


class FeatureDisabled(CoinLedgerError):
    code = "FEATURE_DISABLED"
    status_code = 403


class InsufficientBalance(CoinLedgerError):
    code = "INSUFFICIENT_BALANCE"
    status_code = 409


class AlreadyProcessed(CoinLedgerError):
    code = "ALREADY_PROCESSED"
    status_code = 409


class OverrideCreateFailed(CoinLedgerError):
    code = "OVERRIDE_CREATE_FAILED"
    status_code = 500


class StoreUnavailable(CoinLedgerError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
