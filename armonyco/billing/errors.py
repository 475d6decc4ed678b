from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base for every error the ledger surfaces to callers.

    `status_code` is the HTTP status the JSON surface answers with and
    `error` a stable machine-readable code.
    """

    status_code = 500
    error = "billing_error"

    def __init__(self, message: str, *, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.error, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(BillingError):
    status_code = 400
    error = "validation_error"


class NotFoundError(BillingError):
    status_code = 404
    error = "not_found"


class ProviderAuthError(BillingError):
    status_code = 401
    error = "provider_auth_error"


class ProviderRequestError(BillingError):
    status_code = 400
    error = "provider_request_error"


class ProviderUnavailableError(BillingError):
    status_code = 502
    error = "provider_unavailable"


class InsufficientBalance(BillingError):
    status_code = 402
    error = "insufficient_balance"

    def __init__(self, message: str, *, requested: int = 0, available: int = 0):
        super().__init__(message, details={"requested": requested, "available": available})
        self.requested = requested
        self.available = available


class ConflictError(BillingError):
    status_code = 409
    error = "conflict"


class EntitlementRequired(BillingError):
    status_code = 403
    error = "entitlement_required"


def require_fields(data: Dict[str, Any], *names: str) -> None:
    """Raise ValidationError listing every missing/blank field in `data`."""
    missing = [n for n in names if data.get(n) in (None, "")]
    if missing:
        raise ValidationError(
            "Missing required fields",
            details=f"{', '.join(missing)} {'is' if len(missing) == 1 else 'are'} required",
        )


def parse_int(value: Any, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", details={"field": field, "value": value})
