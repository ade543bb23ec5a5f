"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import openpyxl
import pytest

from delivery_ledger import constants, data_manager
from delivery_ledger.errors import NotFoundError, UpstreamError, ValidationError


def _invoice(invoice_id: str = "I1", number: str = "MOV0001", **overrides: str) -> data_manager.InvoiceRow:
    values = dict(
        invoice_id=invoice_id,
        number=number,
        supplier="Store A",
        issue_date="2025-03-14",
        delivery_date="",
        status=constants.InvoiceStatus.PENDING.value,
        store="Store B",
        confirmed_by="",
        notes="",
        raw_text="",
        supplier_code="A",
    )
    values.update(overrides)
    return data_manager.InvoiceRow(**values)


def _movement(movement_id: str = "M1", **overrides: object) -> data_manager.MovementRow:
    values: dict[str, object] = dict(
        movement_id=movement_id,
        movement_date="14/03/2025",
        timestamp_iso="2025-03-14T09:30:00+00:00",
        origin="Store A",
        origin_code="A",
        product="Mozzarella",
        quantity=Decimal("5"),
        unit="kg",
        destination="Store B",
        destination_code="B",
        status=constants.MovementStatus.REGISTERED.value,
        raw_text="",
        raw_text_filename="",
        created_by="ops@example.com",
    )
    values.update(overrides)
    return data_manager.MovementRow(**values)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Configuration handling
# ---------------------------------------------------------------------------


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    assert data_manager.find_config_file(config_file) == config_file


def test_find_config_file_discovers_in_parent_directory(tmp_path, monkeypatch):
    """Auto-discovery should walk up from the working directory."""

    config_file = tmp_path / "config.ini"
    config_file.write_text("[System]\nDataFile=ledger.xlsx\n")
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert data_manager.find_config_file() == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_preserves_store_name_case(config_file: Path):
    """Store names are keys in [Stores] and must keep their spelling."""

    parser = data_manager.read_config(config_file)
    assert parser.get("Stores", "Store B") == "B"


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile and ArtifactDir entries are anchored to the config location."""

    bundle = config_factory(make_relative=True)
    parser = data_manager.read_config(bundle.config_path)

    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)

    assert settings.data_file == bundle.workbook_path.resolve()
    assert settings.artifact_dir == (bundle.directory / "txt_files").resolve()
    assert settings.invoice_prefix == "MOV"
    assert settings.invoice_width == 4
    assert settings.stores.code_for("Store A") == "A"


def test_parse_settings_requires_system_entries():
    parser = configparser.ConfigParser()
    parser.read_string("[System]\nDataFile = ledger.xlsx\n")

    with pytest.raises(KeyError):
        data_manager.parse_settings(parser)


def test_parse_settings_rejects_non_positive_width():
    parser = configparser.ConfigParser()
    parser.read_string(
        "[System]\nDataFile = a.xlsx\nArtifactDir = out\nSchemaVersion = 1.0.0\n"
        "[Invoices]\nNumberWidth = 0\n"
    )

    with pytest.raises(ValueError):
        data_manager.parse_settings(parser)


def test_store_directory_falls_back_to_unknown(caplog):
    """Stores missing from the directory resolve to the UNKNOWN code."""

    stores = data_manager.StoreDirectory(codes={"Store A": "A"})

    caplog.set_level("WARNING")
    assert stores.code_for("Store A") == "A"
    assert stores.code_for("Store Z") == constants.UNKNOWN_STORE_CODE
    assert any("Store Z" in record.getMessage() for record in caplog.records)


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def test_open_workbook_raises_for_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_open_workbook_wraps_unreadable_files(tmp_path):
    """A file that is not a workbook surfaces as an upstream failure."""

    broken = tmp_path / "broken.xlsx"
    broken.write_text("not a spreadsheet")

    with pytest.raises(UpstreamError):
        data_manager.open_workbook(broken)


def test_save_and_refresh_round_trip(master_workbook):
    path, workbook = master_workbook
    data_manager.append_invoice(workbook, _invoice())
    data_manager.save_workbook(workbook, path)

    reloaded = data_manager.refresh_workbook(path)

    assert [row.invoice_id for row in data_manager.iter_invoices(reloaded)] == ["I1"]


@pytest.fixture
def master_workbook(workbook_factory):
    path = workbook_factory()
    return path, openpyxl.load_workbook(path)


# ---------------------------------------------------------------------------
# Sheet operations
# ---------------------------------------------------------------------------


def test_read_all_rows_returns_header_keyed_rows(master_workbook):
    _, workbook = master_workbook
    data_manager.append_invoice(workbook, _invoice(notes="two crates short"))

    rows = data_manager.read_all_rows(workbook, data_manager.INVOICES_SHEET)

    assert rows[0]["InvoiceID"] == "I1"
    assert rows[0]["Notes"] == "two crates short"


def test_read_all_rows_rejects_missing_sheet(master_workbook):
    _, workbook = master_workbook
    with pytest.raises(UpstreamError):
        data_manager.read_all_rows(workbook, "Nope")


def test_append_rows_checks_columns_before_writing(master_workbook):
    """A row with an unknown column aborts the whole append."""

    _, workbook = master_workbook
    rows = [{"InvoiceID": "I1"}, {"InvoiceID": "I2", "Bogus": "x"}]

    with pytest.raises(UpstreamError):
        data_manager.append_rows(workbook, data_manager.INVOICES_SHEET, rows)

    assert data_manager.read_all_rows(workbook, data_manager.INVOICES_SHEET) == []


def test_append_movements_writes_batch_in_order(master_workbook):
    _, workbook = master_workbook

    written = data_manager.append_movements(workbook, [_movement("M1"), _movement("M2", quantity=Decimal("2.5"))])

    movements = list(data_manager.iter_movements(workbook))
    assert written == 2
    assert [row.movement_id for row in movements] == ["M1", "M2"]
    assert movements[1].quantity == Decimal("2.5")


def test_locate_row_compares_as_text(master_workbook):
    """Numeric-looking ids typed by hand still match their text form."""

    _, workbook = master_workbook
    sheet = workbook[data_manager.INVOICES_SHEET]
    sheet.append([12345])

    assert data_manager.locate_row(workbook, data_manager.INVOICES_SHEET, "InvoiceID", "12345") == 2
    assert data_manager.locate_row(workbook, data_manager.INVOICES_SHEET, "InvoiceID", "999") is None


def test_locate_row_rejects_unknown_column(master_workbook):
    _, workbook = master_workbook
    with pytest.raises(UpstreamError):
        data_manager.locate_row(workbook, data_manager.INVOICES_SHEET, "Missing", "x")


def test_update_invoice_touches_only_supplied_fields(master_workbook):
    _, workbook = master_workbook
    data_manager.append_invoice(workbook, _invoice(raw_text="line 1"))

    data_manager.update_invoice(
        workbook,
        "I1",
        field_values={"status": "delivered", "delivery_date": "2025-03-14"},
    )

    (invoice,) = data_manager.iter_invoices(workbook)
    assert invoice.status == "delivered"
    assert invoice.delivery_date == "2025-03-14"
    assert invoice.raw_text == "line 1"


def test_update_invoice_targets_first_duplicate(master_workbook):
    _, workbook = master_workbook
    data_manager.append_invoice(workbook, _invoice(number="MOV0001"))
    data_manager.append_invoice(workbook, _invoice(number="MOV0002"))

    data_manager.update_invoice(workbook, "I1", field_values={"notes": "first"})

    first, second = data_manager.iter_invoices(workbook)
    assert first.notes == "first"
    assert second.notes == ""


def test_update_invoice_missing_row_raises(master_workbook):
    _, workbook = master_workbook
    with pytest.raises(NotFoundError):
        data_manager.update_invoice(workbook, "nope", field_values={"notes": "x"})


def test_update_invoice_rejects_unknown_field(master_workbook):
    _, workbook = master_workbook
    data_manager.append_invoice(workbook, _invoice())
    with pytest.raises(KeyError):
        data_manager.update_invoice(workbook, "I1", field_values={"colour": "red"})


def test_append_invoice_rejects_control_characters(master_workbook):
    _, workbook = master_workbook

    with pytest.raises(ValidationError, match="Notes"):
        data_manager.append_invoice(workbook, _invoice(notes="short by 2\x01kg"))

    assert data_manager.read_all_rows(workbook, data_manager.INVOICES_SHEET) == []


def test_append_movements_rejects_control_characters_in_any_row(master_workbook):
    _, workbook = master_workbook

    with pytest.raises(ValidationError):
        data_manager.append_movements(workbook, [_movement("M1"), _movement("M2", raw_text="Basil\x0b2")])

    assert list(data_manager.iter_movements(workbook)) == []


def test_update_invoice_rejects_control_characters(master_workbook):
    _, workbook = master_workbook
    data_manager.append_invoice(workbook, _invoice())

    with pytest.raises(ValidationError):
        data_manager.update_invoice(
            workbook,
            "I1",
            field_values={"status": "delivered", "notes": "short\x00"},
        )

    (invoice,) = data_manager.iter_invoices(workbook)
    assert invoice.status == constants.InvoiceStatus.PENDING.value
    assert invoice.notes == ""


def test_discard_trailing_rows_removes_last_rows_only(master_workbook):
    _, workbook = master_workbook
    data_manager.append_movements(workbook, [_movement("M1"), _movement("M2"), _movement("M3")])

    data_manager.discard_trailing_rows(workbook, data_manager.MOVEMENTS_SHEET, 2)

    assert [row.movement_id for row in data_manager.iter_movements(workbook)] == ["M1"]


def test_discard_trailing_rows_keeps_header(master_workbook):
    _, workbook = master_workbook
    data_manager.append_invoice(workbook, _invoice())

    data_manager.discard_trailing_rows(workbook, data_manager.INVOICES_SHEET, 5)

    sheet = workbook[data_manager.INVOICES_SHEET]
    assert sheet.max_row == 1
    assert sheet.cell(row=1, column=1).value == "InvoiceID"


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def test_deserialize_invoice_normalises_blank_and_date_cells():
    row = data_manager.deserialize_invoice(
        {"InvoiceID": "I9", "Number": "F-1", "IssueDate": datetime(2025, 3, 1, 0, 0), "Notes": None}
    )

    assert row.issue_date == "2025-03-01"
    assert row.notes == ""
    assert row.delivery_date == ""


def test_deserialize_movement_rejects_malformed_quantity():
    with pytest.raises(UpstreamError):
        data_manager.deserialize_movement({"MovementID": "M1", "Quantity": "a lot"})


def test_serialize_movement_uses_sheet_headers():
    row = data_manager.serialize_movement(_movement())

    assert row["MovementID"] == "M1"
    assert row["Quantity"] == Decimal("5")
    assert set(row) == set(data_manager.MOVEMENT_COLUMNS.values())
