"""
Error taxonomy shared by the catalog, checkout and reporting services.

Every business failure carries a machine-readable kind, a message suitable
for display, and structured details. Routes turn these into JSON with the
matching HTTP status; nothing else in the stack inspects status codes.
"""
from __future__ import annotations


class PosError(Exception):
    """Base class for errors that reach the API caller."""

    kind = "Error"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.kind,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(PosError, ValueError):
    """400-level input problem. Raised before any datastore access."""

    kind = "ValidationError"
    status_code = 400


class NotFoundError(PosError):
    """Referenced record does not exist (or is retired)."""

    kind = "NotFoundError"
    status_code = 404


class InsufficientStockError(PosError):
    """
    One or more lines ask for more than is on hand.

    details["items"] lists every failing line, not just the first.
    """

    kind = "InsufficientStockError"
    status_code = 409

    def __init__(self, items: list[dict]):
        parts = [
            f"{item['product_name']} (requested: {item['requested']}, available: {item['available']})"
            for item in items
        ]
        super().__init__(
            "Insufficient stock for " + "; ".join(parts),
            details={"items": items},
        )
        self.items = items


class ConflictError(PosError, ValueError):
    """409-level conflict (duplicate code, concurrent mutation). Retry as a new attempt."""

    kind = "ConflictError"
    status_code = 409


class AuthorizationError(PosError):
    kind = "AuthorizationError"
    status_code = 403


class StorageError(PosError):
    """Datastore failure unrelated to business rules. Never partially applied."""

    kind = "StorageError"
    status_code = 500

    def __init__(self, message: str = "Internal storage failure", details: dict | None = None):
        super().__init__(message, details)
