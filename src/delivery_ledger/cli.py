"""Command-line entry points for the delivery ledger.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into calls on the business layer and the artifact
manager. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end that wants to expose
the package capabilities.
"""

from __future__ import annotations

import argparse
import io
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log, txt_artifacts
from .errors import DeliveryLedgerError, NotFoundError, ValidationError


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="delivery-ledger",
        description="Delivery confirmation, stock movements and invoice text files.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands."""
    specs = {
        "record-movements": _spec(
            "record-movements",
            "Record stock transfers and derive pending invoices.",
            _add_record_movements_arguments,
            run_record_movements,
        ),
        "confirm-delivery": _spec(
            "confirm-delivery",
            "Confirm delivery of an invoice and write its text file.",
            _add_confirm_delivery_arguments,
            run_confirm_delivery,
        ),
        "edit-invoice": _spec(
            "edit-invoice",
            "Edit delivery date, confirming user or notes of an invoice.",
            _add_edit_invoice_arguments,
            run_edit_invoice,
        ),
        "update-artifact": _spec(
            "update-artifact",
            "Replace the content of a text file (a backup is kept).",
            _add_update_artifact_arguments,
            run_update_artifact,
        ),
        "delete-artifact": _spec(
            "delete-artifact",
            "Delete a text file (a backup is kept).",
            _add_filename_argument,
            run_delete_artifact,
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "invoices": _spec(
            "invoices",
            "List invoices, optionally for one store.",
            _add_store_argument,
            run_list_invoices,
        ),
        "movements": _spec(
            "movements",
            "List stock movements, newest first.",
            _add_origin_argument,
            run_list_movements,
        ),
        "artifacts": _spec(
            "artifacts",
            "List generated text files.",
            None,
            run_list_artifacts,
        ),
        "show-artifact": _spec(
            "show-artifact",
            "Print a text file and any delivery discrepancy details.",
            _add_filename_argument,
            run_show_artifact,
        ),
        "export-artifacts": _spec(
            "export-artifacts",
            "Export every text file of one day as a ZIP archive.",
            _add_export_arguments,
            run_export_artifacts,
        ),
        "artifact-stats": _spec(
            "artifact-stats",
            "Summarise text files grouped by date.",
            None,
            run_artifact_stats,
        ),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _spec(
    name: str,
    help_text: str,
    add_arguments: Optional[Callable[[argparse.ArgumentParser], None]],
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        if add_arguments is not None:
            add_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def _add_record_movements_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--origin", required=True)
    parser.add_argument("--origin-code", default="")
    parser.add_argument("--created-by", default="")
    parser.add_argument(
        "--movement",
        dest="movements",
        action="append",
        nargs=4,
        metavar=("PRODUCT", "QUANTITY", "UNIT", "DESTINATION"),
        default=[],
    )
    parser.add_argument(
        "--entries-file",
        type=Path,
        default=None,
        help="JSON file holding a list of movement objects.",
    )


def _add_confirm_delivery_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--invoice-id", required=True)
    parser.add_argument("--delivery-date", required=True)
    parser.add_argument("--confirmed-by", default="")
    parser.add_argument("--error-notes", default=None)


def _add_edit_invoice_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--invoice-id", required=True)
    parser.add_argument("--delivery-date", default=None)
    parser.add_argument("--confirmed-by", default=None)
    parser.add_argument("--notes", default=None)


def _add_filename_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--filename", required=True)


def _add_update_artifact_arguments(parser: argparse.ArgumentParser) -> None:
    _add_filename_argument(parser)
    parser.add_argument("--content-file", type=Path, required=True)


def _add_store_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--store", default=None)


def _add_origin_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--origin", default=None)


def _add_export_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--date", required=True)
    parser.add_argument("--output", type=Path, default=None)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_movements(args: argparse.Namespace) -> List[Any]:
    """Collect movement entries from ``--movement`` and ``--entries-file``."""
    entries: List[Any] = [
        core_logic.MovementEntry(product=product, quantity=quantity, unit=unit, destination=destination)
        for product, quantity, unit, destination in (args.movements or [])
    ]
    if args.entries_file is not None:
        loaded = json.loads(Path(args.entries_file).read_text(encoding="utf-8"))
        if not isinstance(loaded, list):
            raise ValidationError("Entries file must contain a JSON list")
        entries.extend(loaded)
    return entries


def run_record_movements(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Record a movement batch via the BLL."""
    result = core_logic.record_movements(
        context,
        args.origin,
        translate_movements(args),
        origin_code=args.origin_code,
        created_by=args.created_by,
    )
    print(f"{result.movements_inserted} movements recorded")
    print(f"{result.invoices_created} invoices created: {', '.join(result.invoice_numbers) or '-'}")
    for failure in result.failures:
        print(f"invoice not created for movement {failure.movement_id}: {failure.error}")
    return 0 if result.invoices_failed == 0 else 5


def _report_update(result: core_logic.InvoiceUpdateResult) -> None:
    print(f"invoice {result.invoice_id} updated: {', '.join(result.updated_fields)}")
    if result.artifact is None:
        return
    if result.artifact.record is not None:
        print(f"text file {result.artifact.outcome.value}: {result.artifact.record.filename}")
    else:
        print(f"text file {result.artifact.outcome.value}: {result.artifact.reason}")


def run_confirm_delivery(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Confirm delivery of an invoice."""
    result = core_logic.confirm_delivery(
        context,
        args.invoice_id,
        delivery_date=args.delivery_date,
        confirmed_by=args.confirmed_by,
        error_notes=args.error_notes,
    )
    _report_update(result)
    return 0


def run_edit_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Edit the delivery fields of an invoice."""
    result = core_logic.edit_invoice(
        context,
        args.invoice_id,
        delivery_date=args.delivery_date,
        confirmed_by=args.confirmed_by,
        notes=args.notes,
    )
    _report_update(result)
    return 0


def run_update_artifact(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    content = Path(args.content_file).read_text(encoding="utf-8")
    result = txt_artifacts.update_artifact_content(context, args.filename, content)
    print(f"{result.filename} updated ({result.size} bytes), backup {result.backup_name}")
    return 0


def run_delete_artifact(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = txt_artifacts.delete_artifact(context, args.filename)
    print(f"{result.filename} deleted, backup {result.backup_name}")
    return 0


def run_list_invoices(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for invoice in core_logic.list_invoices(context, store=args.store):
        print(
            f"{invoice.invoice_id}\t{invoice.number}\t{invoice.supplier}\t"
            f"{invoice.store}\t{invoice.status}\t{invoice.delivery_date or '-'}"
        )
    return 0


def run_list_movements(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for movement in core_logic.list_movements(context, origin=args.origin):
        print(
            f"{movement.timestamp_iso}\t{movement.origin}\t{movement.destination}\t"
            f"{movement.product}\t{movement.quantity} {movement.unit}".rstrip()
        )
    return 0


def run_list_artifacts(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for item in txt_artifacts.list_artifacts(context):
        print(f"{item.name}\t{item.size}\t{item.created.isoformat()}")
    return 0


def run_show_artifact(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = txt_artifacts.read_artifact(context, args.filename)
    if result.has_errors:
        print(f"# delivery discrepancy: {result.error_details or 'no details available'}")
    print(result.content)
    return 0


def run_export_artifacts(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    buffer = io.BytesIO()
    result = txt_artifacts.export_artifacts_zip(context, args.date, buffer)
    output = args.output if args.output is not None else Path.cwd() / result.archive_name
    output.write_bytes(buffer.getvalue())
    print(f"{len(result.included)} files written to {output}")
    for name in result.skipped:
        print(f"skipped unreadable file {name}")
    return 0


def run_artifact_stats(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    stats = txt_artifacts.artifact_stats_by_date(context)
    print(f"{stats.total_files} files over {stats.total_dates} dates")
    for group in stats.date_groups:
        print(f"{group.date}\t{group.file_count}\t{group.total_size}")
    if stats.unparsed:
        print(f"{len(stats.unparsed)} files without a date: {', '.join(stats.unparsed)}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, ValidationError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, NotFoundError):
        log.error("%s", error)
        return 4
    if isinstance(error, DeliveryLedgerError):
        log.error("%s", error)
        return 1
    log.error("Unexpected error: %s", error, exc_info=error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:
        return handle_cli_error(error)
