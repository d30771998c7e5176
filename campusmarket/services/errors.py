from __future__ import annotations


class MarketError(Exception):
    """Base for failures surfaced to API callers as a JSON envelope.

    ``code`` is a stable machine token, ``message`` is safe to show to the
    user as-is, ``details`` is merged into the response body.
    """

    status = 400
    code = "MARKET_ERROR"

    def __init__(self, message: str, *, code: str | None = None, status: int | None = None, details: dict | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status is not None:
            self.status = int(status)
        self.details = dict(details or {})

    def to_payload(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.status),
        }
        payload.update(self.details)
        return payload


class ValidationFailed(MarketError):
    status = 400
    code = "VALIDATION_FAILED"


class AuthenticationRequired(MarketError):
    status = 401
    code = "UNAUTHORIZED"


class NotAuthorized(MarketError):
    status = 403
    code = "FORBIDDEN"


class NotFound(MarketError):
    status = 404
    code = "NOT_FOUND"


class PreconditionFailed(MarketError):
    status = 409
    code = "PRECONDITION_FAILED"


class CooldownActive(MarketError):
    status = 429
    code = "COOLDOWN_ACTIVE"


class GatewayError(MarketError):
    status = 502
    code = "GATEWAY_ERROR"
