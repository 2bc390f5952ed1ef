"""
Exception classes for the importer.

Expected, recoverable conditions (translation failures, a single bad product
record) are caught at the boundary that owns them; everything defined here
either aborts the current operation or is counted by the sync engine.
"""

from typing import Optional, Any


class ImporterError(Exception):
    """
    Base exception for all importer errors.

    Attributes:
        code: Error code (e.g., "UPSTREAM_ERROR")
        message: Human-readable message
        status_code: HTTP status the API layer answers with
        details: Additional context
    """

    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: str = "IMPORTER_ERROR",
        details: Optional[dict[str, Any]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to API response format."""
        return {
            "ok": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            },
        }


class ConfigurationError(ImporterError):
    """Missing or invalid configuration detected while building a service."""

    status_code = 400

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, code="CONFIGURATION_ERROR", details=details)


class UpstreamError(ImporterError):
    """Vendor or translation API failure: transport, non-2xx, bad JSON or Ok=false."""

    status_code = 502

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        url: Optional[str] = None,
        payload: Any = None,
    ):
        self.upstream_status = upstream_status
        self.url = url
        self.payload = payload
        super().__init__(
            message,
            code="UPSTREAM_ERROR",
            details={"status": upstream_status, "url": url},
        )


class TranslationError(ImporterError):
    """Raised by translation backends; the Translator never lets it escape."""

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message, code="TRANSLATION_ERROR", details={"service": service})


class PricingError(ImporterError):
    status_code = 422

    def __init__(self, message: str, code: str = "PRICING_ERROR", details: Optional[dict] = None):
        super().__init__(message, code=code, details=details)


class NegativePriceError(PricingError, ValueError):
    def __init__(self, price: float):
        super().__init__("Price cannot be negative", code="NEGATIVE_PRICE", details={"price": price})


class ExchangeRateNotFound(PricingError):
    def __init__(self, from_currency: str, to_currency: str):
        super().__init__(
            f"Exchange rate not found for {from_currency} to {to_currency}",
            code="EXCHANGE_RATE_NOT_FOUND",
            details={"from": from_currency, "to": to_currency},
        )


class SyncStateError(ImporterError):
    """Illegal state transition requested for a sync run."""

    status_code = 409

    def __init__(self, message: str, code: str = "SYNC_STATE_ERROR", details: Optional[dict] = None):
        super().__init__(message, code=code, details=details)


class SyncAlreadyRunning(SyncStateError):
    def __init__(self, sync_id: str, status: str):
        super().__init__(
            f"Sync {sync_id} is {status}; finish, resume or cancel it first",
            code="SYNC_ALREADY_RUNNING",
            details={"sync_id": sync_id, "status": status},
        )


class ConcurrentUpdateError(SyncStateError):
    def __init__(self, key: str):
        super().__init__(
            f"State record {key} kept changing underneath the writer",
            code="CONCURRENT_UPDATE",
            details={"key": key},
        )


class NotFoundError(ImporterError):
    status_code = 404

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            f"{resource} not found",
            code=f"{resource.upper()}_NOT_FOUND",
            details={"id": identifier},
        )


class ProfileError(ImporterError):
    status_code = 400

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, code="PROFILE_ERROR", details=details)


class ProfileNotFound(NotFoundError):
    def __init__(self, profile_id: Any):
        super().__init__("profile", profile_id)
