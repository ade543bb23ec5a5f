"""Enumerations and fixed tokens shared across the delivery ledger modules.

The ledger layer, the business layer, and the artifact manager all agree on
these values, so they live in one place. Filename tokens in particular are
part of the contract with the external accounting tooling that consumes the
generated text files and must not drift.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Prefix and zero-padding used for invoices derived from stock movements.
DEFAULT_INVOICE_PREFIX = "MOV"
DEFAULT_INVOICE_WIDTH = 4

# Supplier code stamped on invoices that come from an internal transfer.
INTERNAL_TRANSFER_CODE = "INTERNAL"

# Store code used when a store is missing from the store directory.
UNKNOWN_STORE_CODE = "UNKNOWN"

ARTIFACT_EXTENSION = ".txt"
ERROR_SUFFIX = "_ERRORI"
BACKUP_MARKER = ".backup"
DELETED_PREFIX = "DELETED_"
EXPORT_ARCHIVE_TEMPLATE = "TXT_Files_{date}.zip"


class InvoiceStatus(str, Enum):
    """Enumerate the lifecycle states of a supplier invoice."""

    PENDING = "pending"
    IN_DELIVERY = "in_delivery"
    DELIVERED = "delivered"


class MovementStatus(str, Enum):
    """Enumerate the states a stock movement can be recorded with."""

    REGISTERED = "registered"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    INVOICES = "Invoices"
    MOVEMENTS = "Movements"


class ArtifactOutcome(str, Enum):
    """Enumerate the results of an artifact generation attempt."""

    GENERATED = "generated"
    SKIPPED = "skipped"
    FAILED = "failed"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_INVOICE_PREFIX",
    "DEFAULT_INVOICE_WIDTH",
    "INTERNAL_TRANSFER_CODE",
    "UNKNOWN_STORE_CODE",
    "ARTIFACT_EXTENSION",
    "ERROR_SUFFIX",
    "BACKUP_MARKER",
    "DELETED_PREFIX",
    "EXPORT_ARCHIVE_TEMPLATE",
    "InvoiceStatus",
    "MovementStatus",
    "SheetName",
    "ArtifactOutcome",
]
