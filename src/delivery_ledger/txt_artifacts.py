"""Lifecycle management for the per-invoice text artifacts.

Every delivered invoice that carries text content gets one file in the
artifact directory, named

``{number}_{YYYY-MM-DD}_{supplier}_{storeCode}[_ERRORI].txt``

The filename grammar is shared with the accounting tooling that consumes the
files, so it is produced and parsed only here. Internally the error flag
travels on :class:`ArtifactRecord`; :func:`describe_artifact` is the single
place that reads it back from a filename.

Destructive operations (content updates and deletions) always copy the
current bytes to a backup file first and abort when that copy fails.
"""

from __future__ import annotations

import re
import zipfile
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Dict, List, Optional

from . import artifact_store, data_manager, log
from .artifact_store import FileStat
from .constants import (
    ARTIFACT_EXTENSION,
    BACKUP_MARKER,
    DELETED_PREFIX,
    ERROR_SUFFIX,
    EXPORT_ARCHIVE_TEMPLATE,
    ArtifactOutcome,
)
from .errors import ArtifactIOError, NotFoundError, ValidationError

if TYPE_CHECKING:
    from .core_logic import RuntimeContext


ISO_DATE_PATTERN = re.compile(r"\d{4}-\d{2}-\d{2}")
EXACT_ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_UNSAFE_CHARACTERS = re.compile(r'[\\/:*?"<>|\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")
_REPEATED_UNDERSCORES = re.compile(r"_+")


@dataclass(frozen=True)
class ArtifactRecord:
    """Tagged description of one artifact file.

    ``invoice_id`` links the file back to the ledger row whose notes explain
    the delivery discrepancy, when that link is known.
    """

    filename: str
    path: Path
    has_errors: bool
    delivery_date: Optional[str]
    invoice_id: Optional[str] = None
    size: Optional[int] = None


@dataclass(frozen=True)
class GenerationResult:
    """Outcome of :func:`generate_artifact`."""

    outcome: ArtifactOutcome
    record: Optional[ArtifactRecord] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class ArtifactContent:
    """Decoded artifact content plus any delivery-discrepancy details."""

    filename: str
    content: str
    size: int
    has_errors: bool
    error_details: Optional[str] = None
    invoice_id: Optional[str] = None

    @property
    def details_available(self) -> bool:
        return self.error_details is not None


@dataclass(frozen=True)
class ArtifactUpdate:
    filename: str
    size: int
    backup_name: str


@dataclass(frozen=True)
class ArtifactDeletion:
    filename: str
    backup_name: str


@dataclass(frozen=True)
class ExportResult:
    """Summary of an archive written by :func:`export_artifacts_zip`."""

    archive_name: str
    included: List[str]
    skipped: List[str]


@dataclass(frozen=True)
class DateGroup:
    date: str
    file_count: int
    total_size: int
    files: List[FileStat]


@dataclass(frozen=True)
class ArtifactStats:
    """Artifact statistics grouped by the date found in each filename."""

    total_files: int
    total_dates: int
    date_groups: List[DateGroup]
    unparsed: List[str] = field(default_factory=list)


def sanitize_component(value: str) -> str:
    """Make ``value`` safe for use inside an artifact filename.

    Path-unsafe characters and whitespace runs become ``_``, repeated
    underscores collapse to one, and leading/trailing underscores are trimmed.
    """

    cleaned = _UNSAFE_CHARACTERS.sub("_", (value or "").strip())
    cleaned = _WHITESPACE.sub("_", cleaned)
    cleaned = _REPEATED_UNDERSCORES.sub("_", cleaned)
    return cleaned.strip("_")


def extract_date(filename: str) -> Optional[str]:
    """Return the first ``YYYY-MM-DD`` substring of ``filename``, if any.

    Searching anywhere in the name keeps older naming conventions (which put
    the date first) groupable alongside the current one.
    """

    match = ISO_DATE_PATTERN.search(filename)
    return match.group(0) if match else None


def is_backup_name(filename: str) -> bool:
    return BACKUP_MARKER in filename


def build_filename(*, number: str, delivery_date: str, supplier: str, store_code: str, has_errors: bool) -> str:
    """Compose an artifact filename from already-validated parts."""

    parts = [
        sanitize_component(number),
        delivery_date,
        sanitize_component(supplier),
        sanitize_component(store_code),
    ]
    stem = "_".join(part for part in parts if part)
    if has_errors:
        stem += ERROR_SUFFIX
    return stem + ARTIFACT_EXTENSION


def describe_artifact(directory: Path, filename: str, *, size: Optional[int] = None, invoice_id: Optional[str] = None) -> ArtifactRecord:
    """Build the :class:`ArtifactRecord` for an existing filename."""

    stem = filename[: -len(ARTIFACT_EXTENSION)] if filename.endswith(ARTIFACT_EXTENSION) else filename
    return ArtifactRecord(
        filename=filename,
        path=Path(directory) / filename,
        has_errors=stem.endswith(ERROR_SUFFIX),
        delivery_date=extract_date(filename),
        invoice_id=invoice_id,
        size=size,
    )


def _artifact_dir(context: RuntimeContext) -> Path:
    return Path(context.settings.artifact_dir)


def _normalize_delivery_date(value: str) -> str:
    match = ISO_DATE_PATTERN.search(value or "")
    if match is None:
        raise ValidationError(f"Delivery date is not an ISO date: {value!r}")
    return match.group(0)


def _epoch_millis() -> int:
    return int(datetime.now(UTC).timestamp() * 1000)


def generate_artifact(context: RuntimeContext, snapshot: data_manager.InvoiceRow) -> GenerationResult:
    """Write the text artifact for a delivered invoice snapshot.

    Args:
        context (RuntimeContext): Runtime context carrying the artifact
            directory and the store directory.
        snapshot (data_manager.InvoiceRow): Invoice values as committed by the
            delivery confirmation.

    Returns:
        GenerationResult: ``GENERATED`` with the new record, or ``SKIPPED``
            when the invoice has no text content. Nothing is written when
            skipping.

    Raises:
        ValidationError: If the invoice number, delivery date, or supplier is
            missing. No file is written in that case.
        ArtifactIOError: If the artifact directory cannot be written.
    """

    missing = [
        label
        for label, value in (
            ("number", snapshot.number),
            ("delivery date", snapshot.delivery_date),
            ("supplier", snapshot.supplier),
        )
        if not (value or "").strip()
    ]
    if missing:
        log.warning("Artifact for invoice '%s' missing: %s", snapshot.invoice_id, ", ".join(missing))
        raise ValidationError(f"Cannot generate artifact, missing {', '.join(missing)}")

    if not (snapshot.raw_text or "").strip():
        log.info("Invoice '%s' has no text content, artifact skipped", snapshot.invoice_id)
        return GenerationResult(outcome=ArtifactOutcome.SKIPPED, reason="empty content")

    if not sanitize_component(snapshot.number):
        raise ValidationError(f"Invoice number unusable in a filename: {snapshot.number!r}")

    has_errors = bool((snapshot.notes or "").strip())
    filename = build_filename(
        number=snapshot.number,
        delivery_date=_normalize_delivery_date(snapshot.delivery_date),
        supplier=snapshot.supplier,
        store_code=context.settings.stores.code_for(snapshot.store),
        has_errors=has_errors,
    )

    directory = artifact_store.ensure_directory(_artifact_dir(context))
    path = directory / filename
    if path.exists():
        log.warning("Overwriting existing artifact '%s'", filename)
    size = artifact_store.write_bytes(path, snapshot.raw_text.encode("utf-8"))
    log.info(
        "Generated artifact '%s' for invoice '%s' (%d bytes, errors=%s)",
        filename,
        snapshot.invoice_id,
        size,
        has_errors,
    )
    record = describe_artifact(
        directory,
        filename,
        size=size,
        invoice_id=snapshot.invoice_id if has_errors else None,
    )
    return GenerationResult(outcome=ArtifactOutcome.GENERATED, record=record)


def _validated_path(context: RuntimeContext, filename: str) -> Path:
    """Reject names that are not plain artifact filenames."""

    if (
        not filename
        or not filename.endswith(ARTIFACT_EXTENSION)
        or ".." in filename
        or "/" in filename
        or "\\" in filename
    ):
        log.warning("Rejected artifact filename '%s'", filename)
        raise ValidationError(f"Invalid artifact filename: {filename!r}")
    return _artifact_dir(context) / filename


def _read_existing(path: Path) -> bytes:
    try:
        return artifact_store.read_bytes(path)
    except FileNotFoundError as exc:
        raise NotFoundError(f"Artifact not found: {path.name}") from exc


def _write_backup(path: Path, backup_name: str) -> str:
    """Copy the current bytes of ``path`` next to it under ``backup_name``."""

    original = _read_existing(path)
    artifact_store.write_bytes(path.with_name(backup_name), original)
    log.info("Backed up '%s' as '%s'", path.name, backup_name)
    return backup_name


def list_artifacts(context: RuntimeContext) -> List[FileStat]:
    """List artifact files, newest first, leaving backups out."""

    directory = _artifact_dir(context)
    files: List[FileStat] = []
    for name in artifact_store.list_names(directory):
        if not name.endswith(ARTIFACT_EXTENSION) or is_backup_name(name):
            continue
        try:
            files.append(artifact_store.stat(directory / name))
        except FileNotFoundError:
            log.warning("Artifact '%s' vanished while listing", name)
    files.sort(key=lambda item: item.created, reverse=True)
    return files


def _find_discrepancy_invoice(context: RuntimeContext, filename: str) -> Optional[data_manager.InvoiceRow]:
    best: Optional[data_manager.InvoiceRow] = None
    best_length = 0
    for invoice in data_manager.iter_invoices(context.workbook):
        if not invoice.notes.strip():
            continue
        token = sanitize_component(invoice.number)
        if token and filename.startswith(f"{token}_") and len(token) > best_length:
            best, best_length = invoice, len(token)
    return best


def read_artifact(context: RuntimeContext, filename: str) -> ArtifactContent:
    """Read an artifact and surface its delivery-discrepancy details.

    When the filename carries the error suffix the ledger is consulted
    (read-only) for the invoice whose number opens the filename. Any failure of
    that lookup leaves ``error_details`` empty instead of failing the read.

    Raises:
        ValidationError: If ``filename`` is not a plain artifact name.
        NotFoundError: If the file does not exist.
    """

    path = _validated_path(context, filename)
    data = _read_existing(path)
    record = describe_artifact(path.parent, filename, size=len(data))

    error_details: Optional[str] = None
    invoice_id: Optional[str] = None
    if record.has_errors:
        try:
            invoice = _find_discrepancy_invoice(context, filename)
        except Exception as exc:  # noqa: BLE001 - lookup is best effort
            log.warning("Discrepancy lookup failed for '%s': %s", filename, exc)
            invoice = None
        if invoice is not None:
            error_details = invoice.notes
            invoice_id = invoice.invoice_id

    return ArtifactContent(
        filename=filename,
        content=data.decode("utf-8", errors="replace"),
        size=len(data),
        has_errors=record.has_errors,
        error_details=error_details,
        invoice_id=invoice_id,
    )


def download_artifact(context: RuntimeContext, filename: str) -> bytes:
    """Return the raw bytes of an artifact."""

    return _read_existing(_validated_path(context, filename))


def update_artifact_content(context: RuntimeContext, filename: str, new_content: str) -> ArtifactUpdate:
    """Replace the content of an artifact after backing up the old bytes.

    Raises:
        ValidationError: For an invalid filename or non-text content.
        NotFoundError: If the artifact does not exist.
        ArtifactIOError: If the backup or the rewrite fails. A failed backup
            leaves the original untouched.
    """

    path = _validated_path(context, filename)
    if not isinstance(new_content, str):
        raise ValidationError("Artifact content must be text")

    backup_name = _write_backup(path, f"{filename}{BACKUP_MARKER}.{_epoch_millis()}")
    size = artifact_store.write_bytes(path, new_content.encode("utf-8"))
    log.info("Updated artifact '%s' (%d bytes)", filename, size)
    return ArtifactUpdate(filename=filename, size=size, backup_name=backup_name)


def delete_artifact(context: RuntimeContext, filename: str) -> ArtifactDeletion:
    """Delete an artifact, keeping a ``DELETED_`` backup of its content."""

    path = _validated_path(context, filename)
    backup_name = _write_backup(
        path, f"{DELETED_PREFIX}{filename}{BACKUP_MARKER}.{_epoch_millis()}")
    try:
        artifact_store.delete(path)
    except FileNotFoundError as exc:
        raise NotFoundError(f"Artifact not found: {filename}") from exc
    log.info("Deleted artifact '%s'", filename)
    return ArtifactDeletion(filename=filename, backup_name=backup_name)


def list_artifacts_by_date(context: RuntimeContext, day: str) -> List[str]:
    """Return the non-backup artifact names whose embedded date is ``day``."""

    return [
        name
        for name in artifact_store.list_names(_artifact_dir(context))
        if name.endswith(ARTIFACT_EXTENSION)
        and not is_backup_name(name)
        and extract_date(name) == day
    ]


def export_artifacts_zip(context: RuntimeContext, day: str, destination: BinaryIO) -> ExportResult:
    """Stream a maximum-compression ZIP of one day's artifacts to ``destination``.

    Unreadable members are logged and left out; they never abort the archive.

    Raises:
        ValidationError: If ``day`` is not ``YYYY-MM-DD``.
        NotFoundError: If no artifact carries that date. Nothing is written to
            ``destination`` in that case.
    """

    if not EXACT_ISO_DATE_PATTERN.match(day or ""):
        raise ValidationError(f"Invalid date, expected YYYY-MM-DD: {day!r}")

    names = list_artifacts_by_date(context, day)
    if not names:
        raise NotFoundError(f"No artifacts found for {day}")

    directory = _artifact_dir(context)
    included: List[str] = []
    skipped: List[str] = []
    with zipfile.ZipFile(destination, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for name in names:
            try:
                data = artifact_store.read_bytes(directory / name)
            except (FileNotFoundError, ArtifactIOError) as exc:
                log.warning("Skipping '%s' in export for %s: %s", name, day, exc)
                skipped.append(name)
                continue
            archive.writestr(name, data)
            included.append(name)

    archive_name = EXPORT_ARCHIVE_TEMPLATE.format(date=day)
    log.info("Exported %d artifacts for %s as '%s'", len(included), day, archive_name)
    return ExportResult(archive_name=archive_name, included=included, skipped=skipped)


def artifact_stats_by_date(context: RuntimeContext) -> ArtifactStats:
    """Group artifacts by embedded date, newest date first.

    Names without a recognisable date are reported in ``unparsed`` and logged.
    """

    directory = _artifact_dir(context)
    names = [
        name
        for name in artifact_store.list_names(directory)
        if name.endswith(ARTIFACT_EXTENSION) and not is_backup_name(name)
    ]

    by_date: Dict[str, List[FileStat]] = {}
    unparsed: List[str] = []
    for name in names:
        day = extract_date(name)
        if day is None:
            log.warning("Artifact '%s' has no recognisable date", name)
            unparsed.append(name)
            continue
        try:
            file_stat = artifact_store.stat(directory / name)
        except FileNotFoundError:
            log.warning("Artifact '%s' vanished while collecting stats", name)
            continue
        by_date.setdefault(day, []).append(file_stat)

    groups = [
        DateGroup(
            date=day,
            file_count=len(files),
            total_size=sum(item.size for item in files),
            files=sorted(files, key=lambda item: item.created, reverse=True),
        )
        for day, files in sorted(by_date.items(), reverse=True)
    ]
    return ArtifactStats(
        total_files=len(names),
        total_dates=len(groups),
        date_groups=groups,
        unparsed=unparsed,
    )
