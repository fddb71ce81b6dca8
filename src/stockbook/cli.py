"""Command-line entry points for the Stockbook toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into calls on the tabular store and the metrics cache.
Keeping the CLI thin ensures the same parser configuration can be reused by
tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .errors import StoreError
from .schema import SCHEMAS, get_schema
from .store import Record, json_default


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
        prog="stockbook-cli",
        description="Command-line tools for the Stockbook workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
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
        "add": register_add_command(subparsers),
        "edit": register_edit_command(subparsers),
        "remove": register_remove_command(subparsers),
        "refresh-metrics": register_refresh_metrics_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "list": register_list_command(subparsers),
        "show": register_show_command(subparsers),
        "page": register_page_command(subparsers),
        "search": register_search_command(subparsers),
        "metric": register_metric_command(subparsers),
        "metric-status": register_metric_status_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_table_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("table", help=f"Table name ({', '.join(SCHEMAS)}).")


def register_add_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add``."""
    name = "add"
    help_text = "Insert a record into a table."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_table_argument(parser)
        parser.add_argument("--set", dest="assignments", action="append", default=[], metavar="COLUMN=VALUE")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add)


def register_edit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit``."""
    name = "edit"
    help_text = "Update fields of an existing record."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_table_argument(parser)
        parser.add_argument("record_id")
        parser.add_argument(
            "--set",
            dest="assignments",
            action="append",
            default=[],
            required=True,
            metavar="COLUMN=VALUE",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit)


def register_remove_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``remove``."""
    name = "remove"
    help_text = "Archive a record, or delete its row with --hard."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_table_argument(parser)
        parser.add_argument("record_ids", nargs="+")
        parser.add_argument("--hard", action="store_true", help="Delete the physical row(s).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_remove)


def register_refresh_metrics_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``refresh-metrics``."""
    name = "refresh-metrics"
    help_text = "Recompute every dashboard metric."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_refresh_metrics)


def register_list_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``list``."""
    name = "list"
    help_text = "List the records of a table."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_table_argument(parser)
        parser.add_argument("--filter", dest="filters", action="append", default=[], metavar="COLUMN=TEXT")
        parser.add_argument("--no-cache", action="store_true", help="Bypass the record cache.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_list)


def register_show_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``show``."""
    name = "show"
    help_text = "Display a single record."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_table_argument(parser)
        parser.add_argument("record_id")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show)


def register_page_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``page``."""
    name = "page"
    help_text = "Display one page of a table."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_table_argument(parser)
        parser.add_argument("--page", type=int, default=1)
        parser.add_argument("--page-size", type=int, default=20)
        parser.add_argument("--reverse", action="store_true", help="Newest rows first.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_page)


def register_search_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``search``."""
    name = "search"
    help_text = "Search a table for text."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_table_argument(parser)
        parser.add_argument("query")
        parser.add_argument("--field", dest="fields", action="append", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_search)


def register_metric_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``metric``."""
    name = "metric"
    help_text = "Display cached metric values (dashboard metrics when no key is given)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("keys", nargs="*")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_metric)


def register_metric_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``metric-status``."""
    name = "metric-status"
    help_text = "Display the age and freshness of every cached metric."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_metric_status)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    context = core_logic.load_runtime_context(target)
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


def coerce_value(text: str) -> Any:
    """Interpret CLI text as an int or float when it looks like one."""
    for kind in (int, float):
        try:
            return kind(text)
        except ValueError:
            continue
    return text


def parse_assignments(assignments: Sequence[str], *, coerce: bool = True) -> Dict[str, Any]:
    """Translate ``COLUMN=VALUE`` arguments into a mapping."""
    values: Dict[str, Any] = {}
    for assignment in assignments:
        column, separator, raw = assignment.partition("=")
        if not separator or not column.strip():
            raise ValueError(f"Expected COLUMN=VALUE, got '{assignment}'")
        values[column.strip()] = coerce_value(raw) if coerce else raw
    return values


def format_record(record: Mapping[str, Any]) -> str:
    """Render a record as one line of JSON."""
    return json.dumps(dict(record), default=json_default)


def _print_records(records: Iterable[Record]) -> None:
    for record in records:
        print(format_record(record))


def run_add(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Insert one record."""
    schema = get_schema(args.table)
    record_id = context.store.insert(schema, parse_assignments(args.assignments))
    print(record_id)
    return 0


def run_edit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Update one record."""
    schema = get_schema(args.table)
    record = context.store.update(schema, args.record_id, parse_assignments(args.assignments))
    print(format_record(record))
    return 0


def run_remove(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Remove one or more records; any per-item failure yields exit code 2."""
    schema = get_schema(args.table)
    if len(args.record_ids) == 1:
        context.store.remove(schema, args.record_ids[0], hard_delete=args.hard)
        return 0
    result = context.store.batch_delete(schema, args.record_ids, hard_delete=args.hard)
    print(json.dumps(result.to_dict()))
    return 0 if not result.errors else 2


def run_refresh_metrics(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Recompute the dashboard metrics."""
    result = core_logic.refresh_dashboard(context)
    print(json.dumps(asdict(result)))
    return 0 if result.success else 1


def run_list(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List records, optionally filtered."""
    schema = get_schema(args.table)
    filters = parse_assignments(args.filters, coerce=False)
    _print_records(context.store.get_all(schema, use_cache=not args.no_cache, filters=filters))
    return 0


def run_show(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Display one record; unknown identifiers yield exit code 2."""
    schema = get_schema(args.table)
    record = context.store.get_by_id(schema, args.record_id)
    if record is None:
        log.error("Record '%s' not found in '%s'", args.record_id, schema.name)
        return 2
    print(format_record(record))
    return 0


def run_page(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Display one page of records followed by a summary line."""
    schema = get_schema(args.table)
    page = context.store.get_paginated(
        schema,
        page=args.page,
        page_size=args.page_size,
        reverse_order=args.reverse,
    )
    _print_records(page.items)
    print(f"page {page.page}/{page.total_pages} ({page.total} records)")
    return 0


def run_search(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Search a table."""
    schema = get_schema(args.table)
    _print_records(context.store.search(schema, args.query, args.fields))
    return 0


def run_metric(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Display metric values."""
    if args.keys:
        values = context.metrics.get_metrics(args.keys)
    else:
        values = core_logic.get_dashboard(context)
    print(json.dumps(values, default=json_default))
    return 0


def run_metric_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Display metric freshness."""
    for status in context.metrics.metric_status():
        print(json.dumps(asdict(status)))
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, StoreError):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
