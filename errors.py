"""Error kinds raised by the ledger services.

Every service failure surfaces as one of these. The HTTP layer renders
them as ``{"success": false, "error": {"kind": ..., "message": ...}}``.
"""


class LedgerError(Exception):
    kind = "unexpected"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class Unauthorized(LedgerError):
    kind = "unauthorized"
    status_code = 401


class NotFound(LedgerError):
    kind = "not_found"
    status_code = 404


class ValidationFailed(LedgerError):
    kind = "validation"
    status_code = 400


class Conflict(LedgerError):
    kind = "conflict"
    status_code = 409


class RateUnavailable(LedgerError):
    kind = "rate_unavailable"
    status_code = 422

    def __init__(self, from_currency: str, to_currency: str) -> None:
        super().__init__(
            f"Exchange rate not available for {from_currency} to {to_currency}"
        )
        self.from_currency = from_currency
        self.to_currency = to_currency


class CannotDelete(LedgerError):
    kind = "cannot_delete"
    status_code = 409


class Unexpected(LedgerError):
    kind = "unexpected"
    status_code = 500
