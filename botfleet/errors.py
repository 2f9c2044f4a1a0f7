"""
Error taxonomy for the bot platform.

Every error carries an HTTP status and a message that is safe to show to
the caller. Infrastructure errors (crypto, provisioning, transport) keep the
full detail in ``str(exc)`` for the server log while ``public_message`` stays
generic.
"""

from typing import Any, Dict, List, Optional


class BotFleetError(Exception):
    status_code: int = 500
    public_message: str = "Internal server error"
    expose_detail: bool = False  # True → str(exc) is safe for the caller

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)

    def to_dict(self, debug: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "error": str(self) if (self.expose_detail or debug) else self.public_message
        }
        return body


class ValidationError(BotFleetError):
    status_code = 422
    public_message = "Validation error"
    expose_detail = True

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []

    def to_dict(self, debug: bool = False) -> Dict[str, Any]:
        body = super().to_dict(debug)
        if self.errors:
            body["errors"] = self.errors
        return body


class NotFound(BotFleetError):
    """Missing entity, or an entity owned by someone else."""
    status_code = 404
    public_message = "Not found"
    expose_detail = True


class InvalidBotState(BotFleetError):
    status_code = 409
    public_message = "Invalid bot state for this operation"
    expose_detail = True


class QuotaExceeded(BotFleetError):
    status_code = 403
    public_message = "Quota exceeded"
    expose_detail = True

    def __init__(self, message: str, limit: int):
        super().__init__(message)
        self.limit = limit

    def to_dict(self, debug: bool = False) -> Dict[str, Any]:
        body = super().to_dict(debug)
        body["limit"] = self.limit
        return body


class RateLimited(BotFleetError):
    status_code = 429
    public_message = "Too many requests, please try again later"
    expose_detail = True

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = max(1, int(retry_after))

    def to_dict(self, debug: bool = False) -> Dict[str, Any]:
        body = super().to_dict(debug)
        body["retry_after"] = self.retry_after
        return body


class CryptoError(BotFleetError):
    """Ciphertext failed authentication (tampered blob or wrong key)."""
    status_code = 500
    public_message = "Failed to decrypt stored credentials"


class ProvisionFailed(BotFleetError):
    status_code = 502
    public_message = "Deployment failed"


class ProvisionTimeout(BotFleetError):
    status_code = 504
    public_message = "Deployment did not become ready in time"


class ExternalUnavailable(BotFleetError):
    """Transient transport failure against an upstream API."""
    status_code = 503
    public_message = "Upstream service unavailable"
