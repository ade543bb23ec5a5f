"""Exception hierarchy shared by the ledger, business, and artifact layers."""

from __future__ import annotations


class DeliveryLedgerError(Exception):
    """Base class for every domain error raised by the package."""


class ValidationError(DeliveryLedgerError):
    """Raised when caller input is malformed or violates a domain rule."""


class NotFoundError(DeliveryLedgerError):
    """Raised when an invoice id or artifact filename cannot be resolved."""


class UpstreamError(DeliveryLedgerError):
    """Raised when the ledger workbook is unreadable or structurally broken."""


class ArtifactIOError(DeliveryLedgerError):
    """Raised when the artifact directory cannot be read or written."""


__all__ = [
    "DeliveryLedgerError",
    "ValidationError",
    "NotFoundError",
    "UpstreamError",
    "ArtifactIOError",
]
