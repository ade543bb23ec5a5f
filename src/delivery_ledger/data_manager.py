"""Data access layer for the delivery ledger.

This module provides low-level helpers that read from and write to the ledger
workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``, including the
   read-only store directory.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: reading every row of a sheet, appending rows, and
   updating a single row located by key, plus typed wrappers for the
   ``Invoices`` and ``Movements`` sheets.
"""


from __future__ import annotations

import configparser
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

import openpyxl
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .constants import (
    DEFAULT_INVOICE_PREFIX,
    DEFAULT_INVOICE_WIDTH,
    UNKNOWN_STORE_CODE,
    SheetName,
)
from .errors import NotFoundError, UpstreamError, ValidationError


CONFIG_FILE_NAME = "config.ini"
INVOICES_SHEET = SheetName.INVOICES.value
MOVEMENTS_SHEET = SheetName.MOVEMENTS.value

# Dataclass field -> worksheet header. Column order in the sheet is irrelevant;
# rows are always addressed through the header row.
INVOICE_COLUMNS: Mapping[str, str] = {
    "invoice_id": "InvoiceID",
    "number": "Number",
    "supplier": "Supplier",
    "issue_date": "IssueDate",
    "delivery_date": "DeliveryDate",
    "status": "Status",
    "store": "Store",
    "confirmed_by": "ConfirmedBy",
    "notes": "Notes",
    "raw_text": "RawText",
    "supplier_code": "SupplierCode",
}

MOVEMENT_COLUMNS: Mapping[str, str] = {
    "movement_id": "MovementID",
    "movement_date": "MovementDate",
    "timestamp_iso": "Timestamp",
    "origin": "Origin",
    "origin_code": "OriginCode",
    "product": "Product",
    "quantity": "Quantity",
    "unit": "Unit",
    "destination": "Destination",
    "destination_code": "DestinationCode",
    "status": "Status",
    "raw_text": "RawText",
    "raw_text_filename": "RawTextFilename",
    "created_by": "CreatedBy",
}


@dataclass(frozen=True)
class StoreDirectory:
    """Read-only lookup from store name to the short store code."""

    codes: Mapping[str, str] = field(default_factory=dict)

    def code_for(self, store_name: str) -> str:
        """Return the configured code for ``store_name`` or ``UNKNOWN``."""

        code = self.codes.get((store_name or "").strip())
        if not code:
            log.warning("No store code configured for '%s'", store_name)
            return UNKNOWN_STORE_CODE
        return code

    def names(self) -> list[str]:
        return list(self.codes)


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    artifact_dir: Path
    schema_version: str
    invoice_prefix: str = DEFAULT_INVOICE_PREFIX
    invoice_width: int = DEFAULT_INVOICE_WIDTH
    stores: StoreDirectory = field(default_factory=StoreDirectory)


@dataclass(frozen=True)
class InvoiceRow:
    """In-memory view of a row from the ``Invoices`` sheet."""

    invoice_id: str
    number: str
    supplier: str
    issue_date: str
    delivery_date: str
    status: str
    store: str
    confirmed_by: str
    notes: str
    raw_text: str
    supplier_code: str


@dataclass(frozen=True)
class MovementRow:
    """In-memory view of a row from the ``Movements`` sheet."""

    movement_id: str
    movement_date: str
    timestamp_iso: str
    origin: str
    origin_code: str
    product: str
    quantity: Decimal
    unit: str
    destination: str
    destination_code: str
    status: str
    raw_text: str
    raw_text_filename: str
    created_by: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match wins.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Option names keep their original case so that store names listed under
    ``[Stores]`` survive untouched. Validation of required entries happens in
    :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.optionxform = str  # type: ignore[assignment]
    parser.read(config_path, encoding="utf-8")
    return parser


def _anchor(raw: str, base_path: Optional[Path]) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        path = (base_path / path).resolve()
    return path


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``DataFile`` and ``ArtifactDir`` are mandatory under ``[System]`` together
    with ``SchemaVersion``. Relative paths are expanded against ``base_path``
    (or the current working directory). The ``[Invoices]`` section and the
    ``[Stores]`` directory are optional.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If ``NumberWidth`` is not a positive integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        artifact_dir_raw = parser.get("System", "ArtifactDir")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    prefix = parser.get("Invoices", "NumberPrefix", fallback=DEFAULT_INVOICE_PREFIX).strip()
    width = parser.getint("Invoices", "NumberWidth", fallback=DEFAULT_INVOICE_WIDTH)
    if width <= 0:
        raise ValueError(f"NumberWidth must be positive, got {width}")

    stores: dict[str, str] = {}
    if parser.has_section("Stores"):
        for name, code in parser.items("Stores"):
            stores[name.strip()] = code.strip()

    return ConfigSettings(
        data_file=_anchor(data_file_raw, base_path),
        artifact_dir=_anchor(artifact_dir_raw, base_path),
        schema_version=schema_version,
        invoice_prefix=prefix or DEFAULT_INVOICE_PREFIX,
        invoice_width=width,
        stores=StoreDirectory(codes=stores),
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the ledger workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
        UpstreamError: If the file exists but is not a readable workbook.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    try:
        return openpyxl.load_workbook(data_file)
    except (InvalidFileException, zipfile.BadZipFile, OSError) as exc:
        log.error("Unable to load workbook '%s': %s", data_file, exc)
        raise UpstreamError(f"Unable to load workbook {data_file}: {exc}") from exc


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Raises:
        UpstreamError: If the workbook cannot be written.
    """

    dest = Path(destination).expanduser().resolve()
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        workbook.save(dest)
    except OSError as exc:
        log.error("Unable to save workbook '%s': %s", dest, exc)
        raise UpstreamError(f"Unable to save workbook {dest}: {exc}") from exc


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _get_sheet(workbook: Workbook, sheet_name: str) -> Worksheet:
    try:
        return workbook[sheet_name]
    except KeyError as exc:
        raise UpstreamError(f"Worksheet not found: {sheet_name}") from exc


def _header_map(sheet: Worksheet) -> dict[str, int]:
    """Map header titles to their 1-based column index."""

    return {
        str(cell.value): idx + 1
        for idx, cell in enumerate(sheet[1])
        if cell.value is not None
    }


def read_all_rows(workbook: Workbook, sheet_name: str) -> list[dict[str, object]]:
    """Return every populated row of ``sheet_name`` keyed by header title.

    Header and completely empty rows are skipped. Cells under a header that
    the row does not reach are reported as ``None``.

    Raises:
        UpstreamError: If the sheet does not exist.
    """

    sheet = _get_sheet(workbook, sheet_name)
    headers = _header_map(sheet)
    rows: list[dict[str, object]] = []
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        if not any(cell is not None for cell in raw):
            continue
        rows.append({
            header: (raw[col - 1] if col - 1 < len(raw) else None)
            for header, col in headers.items()
        })
    return rows


def _check_cell_values(values: Mapping[str, object]) -> None:
    """Reject text that Excel cannot store (control characters)."""

    for column, value in values.items():
        if isinstance(value, str) and ILLEGAL_CHARACTERS_RE.search(value):
            log.warning("Rejected control characters in column '%s'", column)
            raise ValidationError(f"{column} contains characters that cannot be stored")


def append_rows(workbook: Workbook, sheet_name: str, rows: Sequence[Mapping[str, object]]) -> int:
    """Append ``rows`` to ``sheet_name`` in a single pass.

    Each mapping is laid out according to the sheet's header row; headers the
    mapping does not mention are left blank.

    Returns:
        int: Number of rows appended.

    Raises:
        UpstreamError: If the sheet or one of the referenced columns is
            missing. The check runs before anything is written.
        ValidationError: If a text value holds characters Excel cannot
            store. Checked before anything is written as well.
    """

    sheet = _get_sheet(workbook, sheet_name)
    headers = _header_map(sheet)
    for row in rows:
        unknown = [column for column in row if column not in headers]
        if unknown:
            raise UpstreamError(
                f"Worksheet {sheet_name} is missing columns: {', '.join(unknown)}")
        _check_cell_values(row)

    width = max(headers.values(), default=0)
    for row in rows:
        values: list[object] = [None] * width
        for column, value in row.items():
            values[headers[column] - 1] = value
        sheet.append(values)
    return len(rows)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find the first row whose ``key_column`` equals ``key_value``.

    Values are compared as text because spreadsheet tools happily turn
    numeric-looking identifiers into numbers.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        UpstreamError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = _get_sheet(workbook, sheet_name)
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise UpstreamError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    wanted = str(key_value)
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1] if key_col_index - 1 < len(row) else None
        if cell_value is not None and str(cell_value) == wanted:
            return row_idx

    return None


def update_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str, *, field_values: Mapping[str, Any]) -> None:
    """Update selected columns of the row identified by ``key_value``.

    Only the supplied columns are modified.

    Raises:
        NotFoundError: If no row carries ``key_value``.
        UpstreamError: If a referenced column is missing from the sheet.
        ValidationError: If a text value holds characters Excel cannot store.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise NotFoundError(f"No row with {key_column}={key_value} in {sheet_name}")

    sheet = _get_sheet(workbook, sheet_name)
    header_map = _header_map(sheet)
    unknown = [column for column in field_values if column not in header_map]
    if unknown:
        raise UpstreamError(
            f"Worksheet {sheet_name} is missing columns: {', '.join(unknown)}")
    _check_cell_values(field_values)

    for column, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[column], value=value)


def discard_trailing_rows(workbook: Workbook, sheet_name: str, count: int) -> None:
    """Remove the last ``count`` data rows, undoing an unsaved append.

    The header row is never removed.
    """

    sheet = _get_sheet(workbook, sheet_name)
    count = min(count, sheet.max_row - 1)
    if count <= 0:
        return
    sheet.delete_rows(sheet.max_row - count + 1, count)


def iter_invoices(workbook: Workbook) -> Iterable[InvoiceRow]:
    """Yield every invoice row in sheet order, duplicates included."""

    for raw in read_all_rows(workbook, INVOICES_SHEET):
        yield deserialize_invoice(raw)


def iter_movements(workbook: Workbook) -> Iterable[MovementRow]:
    """Yield every movement row in sheet order."""

    for raw in read_all_rows(workbook, MOVEMENTS_SHEET):
        yield deserialize_movement(raw)


def append_invoice(workbook: Workbook, record: InvoiceRow) -> None:
    """Append a single invoice record to the ``Invoices`` worksheet."""

    append_rows(workbook, INVOICES_SHEET, [serialize_invoice(record)])


def append_movements(workbook: Workbook, records: Sequence[MovementRow]) -> int:
    """Append a whole batch of movements in one call."""

    return append_rows(workbook, MOVEMENTS_SHEET, [serialize_movement(record) for record in records])


def update_invoice(workbook: Workbook, invoice_id: str, *, field_values: Mapping[str, Any]) -> None:
    """Update invoice columns addressed by :class:`InvoiceRow` field names.

    Raises:
        KeyError: If a field name is not an invoice attribute.
        NotFoundError: If the invoice does not exist.
    """

    columns: dict[str, Any] = {}
    for name, value in field_values.items():
        if name not in INVOICE_COLUMNS:
            raise KeyError(f"Unknown invoice field: {name}")
        columns[INVOICE_COLUMNS[name]] = value
    update_row(
        workbook,
        INVOICES_SHEET,
        INVOICE_COLUMNS["invoice_id"],
        invoice_id,
        field_values=columns,
    )


def _as_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _as_date_text(value: object) -> str:
    # Excel may hand dates back as datetimes; the ledger stores plain days.
    if isinstance(value, datetime):
        return value.date().isoformat()
    return _as_text(value)


def _as_decimal(value: object) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise UpstreamError(f"Malformed numeric cell: {value!r}") from exc


def serialize_invoice(record: InvoiceRow) -> dict[str, object]:
    """Convert an invoice dataclass into a header-keyed worksheet row."""

    return {
        header: getattr(record, name)
        for name, header in INVOICE_COLUMNS.items()
    }


def serialize_movement(record: MovementRow) -> dict[str, object]:
    """Convert a movement dataclass into a header-keyed worksheet row.

    The quantity remains a :class:`~decimal.Decimal` so Excel stores a number.
    """

    return {
        header: getattr(record, name)
        for name, header in MOVEMENT_COLUMNS.items()
    }


def deserialize_invoice(raw_row: Mapping[str, object]) -> InvoiceRow:
    """Convert a header-keyed worksheet row into an :class:`InvoiceRow`.

    Blank cells become empty strings; date columns are normalised to
    ``YYYY-MM-DD`` when Excel returns real dates.
    """

    values = {}
    for name, header in INVOICE_COLUMNS.items():
        cell = raw_row.get(header)
        if name in ("issue_date", "delivery_date"):
            values[name] = _as_date_text(cell)
        else:
            values[name] = _as_text(cell)
    return InvoiceRow(**values)


def deserialize_movement(raw_row: Mapping[str, object]) -> MovementRow:
    """Convert a header-keyed worksheet row into a :class:`MovementRow`."""

    values: dict[str, Any] = {}
    for name, header in MOVEMENT_COLUMNS.items():
        cell = raw_row.get(header)
        if name == "quantity":
            values[name] = _as_decimal(cell)
        else:
            values[name] = _as_text(cell)
    return MovementRow(**values)
