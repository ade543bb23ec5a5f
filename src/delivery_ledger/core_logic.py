"""Business logic layer for the delivery ledger.

This module holds the rules that sit between the request layer and the
ledger workbook: allocating numbers for invoices derived from stock
movements, recording movement batches, and moving invoices through their
delivery lifecycle. All I/O goes through :mod:`delivery_ledger.data_manager`
and :mod:`delivery_ledger.txt_artifacts`.

Writes are committed to disk as soon as each primary step succeeds, so a
later failure (a single invoice derivation, or artifact generation after a
delivery confirmation) never undoes work that was already reported as done.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from openpyxl.workbook import Workbook

from . import data_manager, log, txt_artifacts
from .constants import (
    DEFAULT_INVOICE_PREFIX,
    DEFAULT_INVOICE_WIDTH,
    EXPECTED_SCHEMA_VERSION,
    INTERNAL_TRANSFER_CODE,
    ArtifactOutcome,
    InvoiceStatus,
    MovementStatus,
)
from .errors import DeliveryLedgerError, NotFoundError, ValidationError


_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class MovementEntry:
    """One line of a stock transfer request."""

    product: str
    quantity: Union[Decimal, int, float, str]
    destination: str
    unit: str = ""
    destination_code: str = ""
    origin: Optional[str] = None
    origin_code: Optional[str] = None
    raw_text: str = ""
    raw_text_filename: str = ""


@dataclass(frozen=True)
class DerivationFailure:
    movement_id: str
    error: str


@dataclass(frozen=True)
class MovementBatchResult:
    """Granular outcome of :func:`record_movements`."""

    movements_inserted: int
    invoices_created: int
    invoices_failed: int
    invoice_numbers: List[str]
    movements: List[data_manager.MovementRow] = field(default_factory=list)
    failures: List[DerivationFailure] = field(default_factory=list)


@dataclass(frozen=True)
class InvoiceUpdateResult:
    """Outcome of an invoice update.

    ``updated`` reflects the committed row update only; ``artifact`` reports
    the post-commit artifact attempt, if one was made.
    """

    invoice_id: str
    updated: bool
    updated_fields: tuple[str, ...]
    snapshot: data_manager.InvoiceRow
    artifact: Optional[txt_artifacts.GenerationResult] = None


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_invoices_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the invoice cache bucket on demand.

    Duplicate ids collapse to the first row seen, matching the row that
    :func:`data_manager.update_row` targets. ``numbers`` keeps the number of
    every row, duplicates included, for allocation.
    """

    bucket = _get_cache_bucket(context, "invoices")
    if "all" not in bucket:
        by_id: Dict[str, data_manager.InvoiceRow] = {}
        numbers: List[str] = []
        duplicates = 0
        for invoice in data_manager.iter_invoices(context.workbook):
            numbers.append(invoice.number)
            if invoice.invoice_id in by_id:
                duplicates += 1
                continue
            by_id[invoice.invoice_id] = invoice
        bucket["all"] = list(by_id.values())
        bucket["by_id"] = by_id
        bucket["numbers"] = numbers
        log.debug(
            "Populated invoices cache with %d entries (%d duplicates dropped)",
            len(by_id),
            duplicates,
        )
    return bucket


def _ensure_movements_cache(context: RuntimeContext) -> Dict[str, Any]:
    bucket = _get_cache_bucket(context, "movements")
    if "all" not in bucket:
        bucket["all"] = list(data_manager.iter_movements(context.workbook))
        log.debug("Populated movements cache with %d entries", len(bucket["all"]))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.debug("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook and
            an empty cache.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def list_invoices(context: RuntimeContext, *, store: Optional[str] = None) -> List[data_manager.InvoiceRow]:
    """Return invoices in sheet order, optionally limited to one store.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        store (str | None): Destination store name to filter on. ``None``
            returns every store.

    Returns:
        list[data_manager.InvoiceRow]: One row per invoice id.
    """
    invoices = _ensure_invoices_cache(context)["all"]
    if store is None:
        return list(invoices)
    return [invoice for invoice in invoices if invoice.store == store]


def get_invoice(context: RuntimeContext, invoice_id: str) -> data_manager.InvoiceRow:
    """Resolve an invoice by id.

    Raises:
        NotFoundError: If no invoice carries ``invoice_id``.
    """
    cache = _ensure_invoices_cache(context)
    try:
        return cache["by_id"][str(invoice_id)]
    except KeyError as exc:
        log.warning("Invoice lookup failed for id '%s'", invoice_id)
        raise NotFoundError(f"Unknown invoice id: {invoice_id}") from exc


def list_movements(context: RuntimeContext, *, origin: Optional[str] = None) -> List[data_manager.MovementRow]:
    """Return movements newest first, optionally limited to one origin store."""
    movements = _ensure_movements_cache(context)["all"]
    if origin is not None:
        movements = [movement for movement in movements if movement.origin == origin]
    return sorted(movements, key=lambda movement: movement.timestamp_iso, reverse=True)


def allocate_invoice_number(
    existing_numbers: Iterable[str],
    *,
    prefix: str = DEFAULT_INVOICE_PREFIX,
    width: int = DEFAULT_INVOICE_WIDTH,
) -> str:
    """Compute the next number for a movement-derived invoice.

    Numbers that start with ``prefix`` and continue with digits only take
    part; anything else (other suppliers' numbering, malformed suffixes) is
    ignored. The highest sequence plus one is zero-padded to ``width``.

    Args:
        existing_numbers (Iterable[str]): Every invoice number in the ledger.
        prefix (str): Fixed textual prefix, ``MOV`` by default.
        width (int): Minimum number of digits after the prefix.

    Returns:
        str: For example ``MOV0001`` when no prefixed number exists yet.

    The result is recomputed from a full scan with no reservation, so two
    batches racing each other can compute the same number.
    """
    pattern = re.compile(rf"^{re.escape(prefix)}(\d+)$")
    highest = 0
    for number in existing_numbers:
        match = pattern.match((number or "").strip())
        if match:
            highest = max(highest, int(match.group(1)))
    return f"{prefix}{highest + 1:0{width}d}"


def next_invoice_number(context: RuntimeContext) -> str:
    """Allocate the next movement invoice number from every ledger row."""
    return allocate_invoice_number(
        _ensure_invoices_cache(context)["numbers"],
        prefix=context.settings.invoice_prefix,
        width=context.settings.invoice_width,
    )


def generate_invoice_id(
    *,
    when: Optional[datetime] = None,
    index: int = 0,
    taken: Iterable[str] = (),
) -> str:
    """Generate an invoice id as ``I{YYYYMMDDHHMMSSffffff}-{index}``.

    When that id is already in ``taken`` (two batches sharing one clock
    reading) a random suffix is appended until the id is free.
    """
    when = when or _resolve_timestamp(None)
    taken = set(taken)
    base = f"I{when.strftime('%Y%m%d%H%M%S%f')}-{index}"
    candidate = base
    while candidate in taken:
        candidate = f"{base}-{uuid.uuid4().hex[:8]}"
    return candidate


def require_text(value: Optional[str], message: str) -> str:
    """Return ``value`` stripped, or raise :class:`ValidationError` if blank."""
    text = "" if value is None else str(value).strip()
    if not text:
        log.error("Validation failed: %s", message)
        raise ValidationError(message)
    return text


def require_positive_quantity(quantity: object, *, position: int = 1) -> Decimal:
    """Parse ``quantity`` and require it to be a finite number above zero.

    Raises:
        ValidationError: If the value is missing, not numeric, or not
            strictly positive.
    """
    if quantity is None or isinstance(quantity, bool):
        raise ValidationError(f"Valid quantity required for movement {position}")
    try:
        value = Decimal(str(quantity).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"Valid quantity required for movement {position}") from exc
    if not value.is_finite() or value <= Decimal("0"):
        log.error("Quantity validation failed for movement %d: %s", position, quantity)
        raise ValidationError(f"Valid quantity required for movement {position}")
    return value


def _coerce_entry(raw: object, *, position: int) -> MovementEntry:
    if isinstance(raw, MovementEntry):
        return raw
    if not isinstance(raw, Mapping):
        log.error("Rejected movement %d of type %s", position, type(raw).__name__)
        raise ValidationError(f"Invalid movement {position}")
    return MovementEntry(
        product=raw.get("product") or "",
        quantity=raw.get("quantity"),  # type: ignore[arg-type]
        destination=raw.get("destination") or "",
        unit=raw.get("unit") or "",
        destination_code=raw.get("destination_code") or "",
        origin=raw.get("origin"),
        origin_code=raw.get("origin_code"),
        raw_text=raw.get("raw_text") or "",
        raw_text_filename=raw.get("raw_text_filename") or "",
    )


def validate_movement_entry(entry: MovementEntry, *, position: int) -> MovementEntry:
    """Validate one entry and return it with trimmed text and a Decimal quantity."""
    product = require_text(entry.product, f"Product required for movement {position}")
    quantity = require_positive_quantity(entry.quantity, position=position)
    destination = require_text(entry.destination, f"Destination required for movement {position}")
    return replace(
        entry,
        product=product,
        quantity=quantity,
        destination=destination,
        unit=(entry.unit or "").strip(),
        destination_code=(entry.destination_code or "").strip(),
    )


def build_movement_row(
    entry: MovementEntry,
    *,
    index: int,
    timestamp: datetime,
    origin: str,
    origin_code: str,
    created_by: str,
) -> data_manager.MovementRow:
    """Materialize a validated :class:`MovementEntry` into a ledger row.

    Per-entry origin values win over the batch origin. The id combines the
    batch timestamp with the entry position, which keeps ids unique within one
    append call.
    """
    timestamp_iso = timestamp.isoformat()
    return data_manager.MovementRow(
        movement_id=f"{timestamp_iso}-{index}",
        movement_date=timestamp.strftime("%d/%m/%Y"),
        timestamp_iso=timestamp_iso,
        origin=(entry.origin or "").strip() or origin,
        origin_code=(entry.origin_code or "").strip() or origin_code,
        product=entry.product,
        quantity=Decimal(str(entry.quantity)),
        unit=entry.unit,
        destination=entry.destination,
        destination_code=entry.destination_code,
        status=MovementStatus.REGISTERED.value,
        raw_text=entry.raw_text or "",
        raw_text_filename=entry.raw_text_filename or "",
        created_by=created_by,
    )


def build_pending_invoice(movement: data_manager.MovementRow, *, invoice_id: str, number: str, issue_date: str) -> data_manager.InvoiceRow:
    """Describe the pending invoice that accompanies a stock movement."""
    return data_manager.InvoiceRow(
        invoice_id=invoice_id,
        number=number,
        supplier=movement.origin,
        issue_date=issue_date,
        delivery_date="",
        status=InvoiceStatus.PENDING.value,
        store=movement.destination,
        confirmed_by="",
        notes="",
        raw_text=movement.raw_text or "",
        supplier_code=movement.origin_code or INTERNAL_TRANSFER_CODE,
    )


def derive_invoice_from_movement(
    context: RuntimeContext,
    movement: data_manager.MovementRow,
    *,
    when: datetime,
    index: int,
    issue_date: str,
) -> data_manager.InvoiceRow:
    """Append and commit the pending invoice for one recorded movement.

    When the save fails the appended row is discarded again, so a later
    successful save cannot commit an invoice reported as failed.
    """
    invoice_id = generate_invoice_id(
        when=when,
        index=index,
        taken=_ensure_invoices_cache(context)["by_id"],
    )
    number = next_invoice_number(context)
    invoice = build_pending_invoice(movement, invoice_id=invoice_id, number=number, issue_date=issue_date)
    data_manager.append_invoice(context.workbook, invoice)
    try:
        persist_context(context)
    except DeliveryLedgerError:
        data_manager.discard_trailing_rows(context.workbook, data_manager.INVOICES_SHEET, 1)
        log.warning("Discarded unsaved invoice '%s' (%s)", invoice.invoice_id, number)
        raise
    finally:
        _invalidate_cache(context, "invoices")
    log.info(
        "Derived invoice '%s' (%s) from movement '%s' for store '%s'",
        invoice.invoice_id,
        number,
        movement.movement_id,
        movement.destination,
    )
    return invoice


def record_movements(
    context: RuntimeContext,
    origin: str,
    entries: Sequence[Union[MovementEntry, Mapping[str, Any]]],
    *,
    origin_code: str = "",
    created_by: str = "",
    timestamp: Optional[datetime] = None,
) -> MovementBatchResult:
    """Record a batch of stock transfers and derive one pending invoice each.

    The whole batch is validated before the ledger is touched; one bad entry
    rejects every entry. Movements are then appended in a single call and
    committed. Invoice derivation runs per movement afterwards and each
    failure is recorded without stopping the remaining derivations.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        origin (str): Store the goods leave from.
        entries (Sequence[MovementEntry | Mapping]): Ordered transfer lines.
        origin_code (str): Code of the origin store, used as supplier code.
        created_by (str): Identity of the user recording the batch.
        timestamp (datetime | None): Batch timestamp, defaults to now (UTC).

    Returns:
        MovementBatchResult: Counts of inserted movements, derived and failed
            invoices, and the generated invoice numbers.

    Raises:
        ValidationError: If ``origin`` is blank, ``entries`` is empty, or any
            entry fails validation.
        UpstreamError: If the movement append cannot be committed.
    """
    origin = require_text(origin, "Origin store required")
    if not entries:
        log.error("Rejected empty movement batch from '%s'", origin)
        raise ValidationError("At least one movement is required")

    validated = [
        validate_movement_entry(_coerce_entry(entry, position=position), position=position)
        for position, entry in enumerate(entries, start=1)
    ]

    moment = _resolve_timestamp(timestamp)
    rows = [
        build_movement_row(
            entry,
            index=index,
            timestamp=moment,
            origin=origin,
            origin_code=(origin_code or "").strip(),
            created_by=created_by or "",
        )
        for index, entry in enumerate(validated)
    ]
    data_manager.append_movements(context.workbook, rows)
    try:
        persist_context(context)
    except DeliveryLedgerError:
        data_manager.discard_trailing_rows(context.workbook, data_manager.MOVEMENTS_SHEET, len(rows))
        raise
    finally:
        _invalidate_cache(context, "movements")
    log.info("Recorded %d movements from '%s'", len(rows), origin)

    numbers: List[str] = []
    failures: List[DerivationFailure] = []
    issue_date = moment.date().isoformat()
    for index, movement in enumerate(rows):
        try:
            invoice = derive_invoice_from_movement(
                context,
                movement,
                when=moment,
                index=index,
                issue_date=issue_date,
            )
        except (DeliveryLedgerError, OSError) as exc:
            log.error("Invoice derivation failed for movement '%s': %s", movement.movement_id, exc)
            failures.append(DerivationFailure(movement_id=movement.movement_id, error=str(exc)))
            continue
        numbers.append(invoice.number)

    return MovementBatchResult(
        movements_inserted=len(rows),
        invoices_created=len(numbers),
        invoices_failed=len(failures),
        invoice_numbers=numbers,
        movements=rows,
        failures=failures,
    )


def _normalize_patch(current: data_manager.InvoiceRow, patch: Mapping[str, Any]) -> Dict[str, str]:
    """Validate patch keys and render every value as ledger text."""
    if not patch:
        raise ValidationError("No fields to update")

    normalized: Dict[str, str] = {}
    for name, value in patch.items():
        if name not in data_manager.INVOICE_COLUMNS or name == "invoice_id":
            log.error("Rejected update of unknown invoice field '%s'", name)
            raise ValidationError(f"Unknown invoice field: {name}")
        if isinstance(value, InvoiceStatus):
            value = value.value
        normalized[name] = "" if value is None else str(value)

    if "status" in normalized:
        try:
            new_status = InvoiceStatus(normalized["status"])
        except ValueError as exc:
            raise ValidationError(f"Unknown invoice status: {normalized['status']}") from exc
        if current.status == InvoiceStatus.DELIVERED.value and new_status is not InvoiceStatus.DELIVERED:
            log.error("Invoice '%s' is delivered and cannot move to '%s'", current.invoice_id, new_status.value)
            raise ValidationError(f"Delivered invoice cannot move to {new_status.value}")
    return normalized


def _generate_after_commit(context: RuntimeContext, snapshot: data_manager.InvoiceRow) -> txt_artifacts.GenerationResult:
    """Attempt artifact generation; failures are logged and reported, never raised."""
    try:
        return txt_artifacts.generate_artifact(context, snapshot)
    except Exception as exc:  # noqa: BLE001 - must not undo the committed transition
        log.exception("Artifact generation failed for invoice '%s'", snapshot.invoice_id)
        return txt_artifacts.GenerationResult(outcome=ArtifactOutcome.FAILED, reason=str(exc))


def apply_invoice_update(context: RuntimeContext, invoice_id: str, patch: Mapping[str, Any]) -> InvoiceUpdateResult:
    """Apply ``patch`` to an invoice and run the delivered side effect.

    The snapshot handed to artifact generation is the current row overlaid
    with the patch, i.e. exactly the values committed by this call. The row
    update is committed first; artifact generation is attempted afterwards and
    its outcome is informational only.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        invoice_id (str): Identifier of the invoice to update.
        patch (Mapping[str, Any]): :class:`data_manager.InvoiceRow` field names
            mapped to new values.

    Returns:
        InvoiceUpdateResult: Commit status, snapshot, and artifact outcome.

    Raises:
        NotFoundError: If the invoice does not exist.
        ValidationError: For unknown fields, unknown statuses, or an attempt
            to move a delivered invoice back.
        UpstreamError: If the update cannot be committed.
    """
    current = get_invoice(context, invoice_id)
    normalized = _normalize_patch(current, patch)
    snapshot = replace(current, **normalized)

    data_manager.update_invoice(context.workbook, current.invoice_id, field_values=normalized)
    try:
        persist_context(context)
    except DeliveryLedgerError:
        previous = {name: getattr(current, name) for name in normalized}
        data_manager.update_invoice(context.workbook, current.invoice_id, field_values=previous)
        raise
    finally:
        _invalidate_cache(context, "invoices")
    log.info(
        "Updated invoice '%s' fields: %s",
        current.invoice_id,
        ", ".join(sorted(normalized)),
    )

    artifact = None
    if normalized.get("status") == InvoiceStatus.DELIVERED.value:
        artifact = _generate_after_commit(context, snapshot)

    return InvoiceUpdateResult(
        invoice_id=current.invoice_id,
        updated=True,
        updated_fields=tuple(normalized),
        snapshot=snapshot,
        artifact=artifact,
    )


def validate_delivery_date(value: Union[str, date], *, today: Optional[date] = None) -> str:
    """Return ``value`` as ``YYYY-MM-DD`` after checking it is not in the future.

    Raises:
        ValidationError: If the value is not an ISO date or lies after
            ``today``.
    """
    if isinstance(value, date):
        parsed = date(value.year, value.month, value.day)
    else:
        text = require_text(value, "Delivery date required")
        try:
            parsed = date.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f"Invalid delivery date: {text}") from exc
    today = today or _resolve_timestamp(None).date()
    if parsed > today:
        log.error("Rejected delivery date in the future: %s", parsed)
        raise ValidationError(f"Delivery date is in the future: {parsed.isoformat()}")
    return parsed.isoformat()


def validate_email(value: str) -> str:
    text = require_text(value, "E-mail address required")
    if not _EMAIL_PATTERN.match(text):
        raise ValidationError(f"Invalid e-mail address: {text}")
    return text


def confirm_delivery(
    context: RuntimeContext,
    invoice_id: str,
    *,
    delivery_date: Union[str, date],
    confirmed_by: str = "",
    error_notes: Optional[str] = None,
) -> InvoiceUpdateResult:
    """Mark an invoice as delivered, which triggers its text artifact.

    ``error_notes`` are stored only when non-blank; their presence flags the
    artifact as carrying a delivery discrepancy.
    """
    require_text(invoice_id, "Invoice id required")
    patch: Dict[str, Any] = {
        "status": InvoiceStatus.DELIVERED.value,
        "delivery_date": validate_delivery_date(delivery_date),
        "confirmed_by": (confirmed_by or "").strip(),
    }
    if error_notes and error_notes.strip():
        patch["notes"] = error_notes.strip()
    return apply_invoice_update(context, invoice_id, patch)


def edit_invoice(
    context: RuntimeContext,
    invoice_id: str,
    *,
    delivery_date: Optional[Union[str, date]] = None,
    confirmed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> InvoiceUpdateResult:
    """Edit the delivery fields of an invoice without changing its status.

    ``notes=""`` clears the notes; ``None`` leaves a field untouched.

    Raises:
        ValidationError: If nothing would change or a value is invalid.
    """
    require_text(invoice_id, "Invoice id required")
    patch: Dict[str, Any] = {}
    if delivery_date:
        patch["delivery_date"] = validate_delivery_date(delivery_date)
    if confirmed_by:
        patch["confirmed_by"] = validate_email(confirmed_by)
    if notes is not None:
        patch["notes"] = notes.strip()
    if not patch:
        raise ValidationError("No fields to update")
    return apply_invoice_update(context, invoice_id, patch)
