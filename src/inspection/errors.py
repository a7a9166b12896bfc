from __future__ import annotations


class InspectionError(Exception):
    """Base class for every typed failure raised by the inspection core."""

    code = "inspection_error"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


# ── Rejected requests ───────────────────────────────────────────────

class NotFound(InspectionError):
    code = "not_found"
    status_code = 404


class InvalidToken(InspectionError):
    code = "invalid_token"
    status_code = 403


class TokenExpired(InspectionError):
    code = "token_expired"
    status_code = 403


class MissingFile(InspectionError):
    code = "missing_file"
    status_code = 400


class PayloadTooLarge(InspectionError):
    code = "payload_too_large"
    status_code = 413


class InvalidTransition(InspectionError):
    code = "invalid_transition"
    status_code = 409


# ── Infrastructure ──────────────────────────────────────────────────

class StorageError(InspectionError):
    code = "storage_error"
    status_code = 503


# ── Enrichment ──────────────────────────────────────────────────────

class UnparsableFormat(InspectionError):
    code = "unparsable_format"
    status_code = 422


class UnreadableImage(InspectionError):
    code = "unreadable_image"
    status_code = 422


# ── Providers ───────────────────────────────────────────────────────

class NotConfigured(InspectionError):
    code = "not_configured"
    status_code = 503


class ProviderUnavailable(InspectionError):
    code = "provider_unavailable"
    status_code = 503


class ProviderError(InspectionError):
    code = "provider_error"
    status_code = 502
