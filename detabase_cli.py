#!/usr/bin/env python
"""
Deta Base Helper – Rich CLI
===========================
Command-line interface for managing Deta Base collections ("databases").

Usage
-----
    detabase auth <project-key>                     # store the project key
    detabase query users -q "{'age?gt': 18}" --json # show matching items
    detabase count users -q "{active: true}"
    detabase export users --filename users.json
    detabase put users --from-file users.json       # overwrite by key
    detabase insert users -i "[{key: 'a', n: 1}]"   # create-only
    detabase update users -q "{active: false}" --set "{archived: true}"
    detabase delete users some-key
    detabase clone users users_backup -f
    detabase create logs
    detabase truncate logs -y
"""

from __future__ import annotations

import argparse
import json
import logging
import re
import sys
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table
from tqdm import tqdm

from DetaBaseHelper import (
    CONFIG_FILE,
    BulkResult,
    DetaBaseError,
    DetaBaseService,
    NotFoundError,
    RemoteError,
    UnauthorizedError,
    Updates,
    clone_collection,
    create_collection,
    create_service_from_env,
    delete_by_query,
    fetch_all,
    insert_items,
    load_items_from_file,
    parse_items,
    parse_updates,
    put_items,
    resolve_query,
    save_project_key,
    truncate_collection,
    update_by_query,
)

console = Console()

QUERY_HELP = (
    "Query literal, e.g. \"{'age?gt': 18}\". Keys with an operator suffix "
    "must be quoted; a query that can't be parsed is skipped."
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _elapsed(start: float) -> str:
    return f"{time.perf_counter() - start:.3f}"


def _safe_name(name: str) -> str:
    """Strip characters that are not allowed in file names."""
    cleaned = re.sub(r'[\\/:*?"<>|\x00-\x1f]+', "_", name).strip(" .")
    return cleaned or "database"


def _file_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")


def _print_json(data: Any) -> None:
    console.print_json(json.dumps(data))


def _print_items_table(items: list[dict]) -> None:
    """Print items in a Rich table; columns are the union of item keys."""
    columns: list[str] = []
    for item in items:
        for name in item:
            if name not in columns:
                columns.append(name)

    table = Table(box=box.ROUNDED, show_lines=True)
    for name in columns:
        table.add_column(name, overflow="fold")
    for item in items:
        table.add_row(*(_cell(item.get(name)) for name in columns))
    console.print(table)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return escape(value)
    return escape(json.dumps(value))


def _print_bulk_report(result: BulkResult, action: str, start: float) -> None:
    """Pretty-print a BulkResult summary panel."""
    summary_style = "green" if result.ok else "yellow"
    console.print(
        Panel(
            f"[bold]Total:[/bold] {result.total}   "
            f"[green]{action}:[/green] {result.succeeded_count} ({result.percent}%)   "
            f"[red]Failed chunks:[/red] {result.failed_chunks}   "
            f"[dim]{_elapsed(start)} s[/dim]",
            title="Summary",
            style=summary_style,
        )
    )
    if result.last_error is not None:
        _print_error(result.last_error)


def _print_error(exc: BaseException) -> None:
    if isinstance(exc, RemoteError) and exc.status_code is not None:
        console.print(
            f"[bold red]Request error:[/bold red] {exc.status_code} "
            f"{exc.method} {exc.url}\n[dim]{escape(str(exc.detail))}[/dim]"
        )
    else:
        console.print(f"[bold red]{type(exc).__name__}: {escape(str(exc))}[/bold red]")


@contextmanager
def _bulk_progress(label: str) -> Iterator[dict]:
    """Yield bulk keyword arguments whose callback drives a tqdm bar."""
    with tqdm(desc=label, unit="item") as pbar:
        def _progress(attempted: int, total: int) -> None:
            pbar.total = total
            pbar.update(attempted - pbar.n)

        yield {"progress_callback": _progress, "fatal": (UnauthorizedError,)}


def _load_items(args: argparse.Namespace) -> list[dict]:
    if args.items:
        return parse_items(args.items)
    return load_items_from_file(args.from_file)


def _updates_from_args(args: argparse.Namespace) -> Updates:
    updates = parse_updates(
        set=args.set,
        increment=args.increment,
        append=args.append,
        prepend=args.prepend,
        delete=args.delete,
    )
    if not updates:
        raise DetaBaseError(
            "Nothing to update. Use --set, --increment, --append, --prepend or --delete."
        )
    return updates


def _confirm(args: argparse.Namespace, question: str) -> bool:
    return args.yes or Confirm.ask(question, console=console)


# ---------------------------------------------------------------------------
# CLI commands
# ---------------------------------------------------------------------------

def cmd_export(svc: DetaBaseService, args: argparse.Namespace) -> None:
    """Dump (matching) items of a database into a JSON file."""
    start = time.perf_counter()
    with console.status("[bold cyan]Exporting database …"):
        result = fetch_all(
            svc, args.database, resolve_query(args.query), limit=args.limit, last=args.last
        )
    if not result.items:
        console.print("[yellow]Nothing to export. Aborting...[/yellow]")
        return

    console.print(f"Database info: {result.paging}")
    if args.filename:
        path = Path(args.filename)
    else:
        path = Path(f"export_{_safe_name(args.database)}_{_file_timestamp()}.json")
    path = path.resolve()
    path.write_text(json.dumps(result.to_dict(), indent=2), encoding="utf-8")
    console.print(f"[green]Successfully exported into {path}.[/green]")
    console.print(f"[dim]Export took {_elapsed(start)} seconds.[/dim]")


def cmd_count(svc: DetaBaseService, args: argparse.Namespace) -> None:
    """Count items of a database with or without a query."""
    start = time.perf_counter()
    with console.status("[bold cyan]Counting …"):
        result = fetch_all(svc, args.database, resolve_query(args.query))
    matching = " matching the query" if args.query else ""
    console.print(f"There are [bold]{result.paging['size']}[/bold] items{matching}.")
    console.print(f"[dim]Query took {_elapsed(start)} seconds.[/dim]")


def cmd_query(svc: DetaBaseService, args: argparse.Namespace) -> None:
    """Show items matching a query."""
    start = time.perf_counter()
    with console.status("[bold cyan]Processing the query …"):
        result = fetch_all(
            svc, args.database, resolve_query(args.query), limit=args.limit, last=args.last
        )
    if result.items:
        if args.json:
            _print_json(result.items)
        else:
            _print_items_table(result.items)
    console.print(f"There are [bold]{result.paging['size']}[/bold] items matching the query.")
    if result.last:
        console.print(f"[dim]Last key seen: {result.last}[/dim]")
    console.print(f"[dim]Query took {_elapsed(start)} seconds.[/dim]")


def cmd_get(svc: DetaBaseService, args: argparse.Namespace) -> None:
    """Get an item with the given key."""
    start = time.perf_counter()
    try:
        item = svc.get(args.database, args.key)
    except NotFoundError:
        console.print("[bold red]Record with the provided key does not exist.[/bold red]")
        console.print(f"[dim]Query took {_elapsed(start)} seconds.[/dim]")
        return
    _print_json(item)
    console.print(f"[dim]Query took {_elapsed(start)} seconds.[/dim]")


def cmd_put(svc: DetaBaseService, args: argparse.Namespace) -> None:
    """Put items, overwriting any item whose key already exists."""
    items = _load_items(args)
    if not items:
        console.print("[yellow]Nothing to put. Aborting...[/yellow]")
        return
    console.print(f"Starting to put [bold]{len(items)}[/bold] items …")
    start = time.perf_counter()
    with _bulk_progress("Putting") as bulk:
        result = put_items(svc, args.database, items, **bulk)
    _print_bulk_report(result, "Put", start)


def cmd_insert(svc: DetaBaseService, args: argparse.Namespace) -> None:
    """Insert items; an item is created only if its key does not exist yet."""
    items = _load_items(args)
    if not items:
        console.print("[yellow]Nothing to insert. Aborting...[/yellow]")
        return
    console.print(f"Starting to insert [bold]{len(items)}[/bold] items …")
    start = time.perf_counter()
    with _bulk_progress("Inserting") as bulk:
        result = insert_items(svc, args.database, items, **bulk)
    _print_bulk_report(result, "Inserted", start)


def cmd_create(svc: DetaBaseService, args: argparse.Namespace) -> None:
    """Create an empty database."""
    start = time.perf_counter()
    with console.status(f"[bold cyan]Creating database '{args.database}' …"):
        create_collection(svc, args.database)
    console.print(f'[bold green]Successfully created the database "{args.database}".[/bold green]')
    console.print(f"[dim]Process took {_elapsed(start)} seconds.[/dim]")


def cmd_truncate(svc: DetaBaseService, args: argparse.Namespace) -> None:
    """Delete every item of a database."""
    if not _confirm(args, f"[bold red]Delete every item of '{args.database}'?[/bold red]"):
        return
    start = time.perf_counter()
    with _bulk_progress("Deleting") as bulk:
        result = truncate_collection(svc, args.database, **bulk)
    if not result.total:
        console.print("[yellow]The database is already empty.[/yellow]")
        return
    _print_bulk_report(result, "Deleted", start)


def cmd_clone(svc: DetaBaseService, args: argparse.Namespace) -> None:
    """Clone (matching) items of a database into another one."""
    start = time.perf_counter()
    matching = " matching the query" if args.query else ""
    console.print(f'Cloning items{matching} from "{args.database}" into "{args.new_name}" …')
    with _bulk_progress("Cloning") as bulk:
        result = clone_collection(
            svc,
            args.database,
            args.new_name,
            resolve_query(args.query),
            force=args.force,
            **bulk,
        )
    if not result.total:
        console.print("[yellow]Nothing to clone.[/yellow]")
        return
    _print_bulk_report(result, "Cloned", start)


def cmd_delete(svc: DetaBaseService, args: argparse.Namespace) -> None:
    """Delete the item with the given key or every item matching a query."""
    start = time.perf_counter()
    if args.key:
        try:
            item = svc.get(args.database, args.key)
        except NotFoundError:
            console.print("[bold red]Record with the provided key does not exist.[/bold red]")
            console.print(f"[dim]Query took {_elapsed(start)} seconds.[/dim]")
            return
        svc.delete(args.database, args.key)
        console.print("Deleted record:")
        _print_json(item)
        console.print(f"[dim]Query took {_elapsed(start)} seconds.[/dim]")
        return

    if not args.query:
        raise DetaBaseError("One of the arguments is required. Please, set a key or query (-q <query>).")
    query = resolve_query(args.query)
    question = "matching the query" if query is not None else "(the query was skipped, this deletes everything)"
    if not _confirm(args, f"[bold red]Delete items of '{args.database}' {question}?[/bold red]"):
        return
    with _bulk_progress("Deleting") as bulk:
        result = delete_by_query(svc, args.database, query, **bulk)
    if not result.total:
        console.print("[yellow]Nothing to delete.[/yellow]")
        return
    _print_bulk_report(result, "Deleted", start)


def cmd_update(svc: DetaBaseService, args: argparse.Namespace) -> None:
    """Update the item with the given key or every item matching a query."""
    updates = _updates_from_args(args)
    start = time.perf_counter()
    if args.key:
        try:
            svc.update(args.database, args.key, updates)
        except NotFoundError:
            console.print("[bold red]Record with the provided key does not exist.[/bold red]")
            console.print(f"[dim]Query took {_elapsed(start)} seconds.[/dim]")
            return
        console.print(f'[green]Successfully updated item with key "{args.key}".[/green]')
        console.print(f"[dim]Query took {_elapsed(start)} seconds.[/dim]")
        return

    if not args.query:
        raise DetaBaseError("One of the arguments is required. Please, set a key or query (-q <query>).")
    with _bulk_progress("Updating") as bulk:
        result = update_by_query(
            svc, args.database, resolve_query(args.query), updates, **bulk
        )
    if not result.total:
        console.print("[yellow]Nothing to update.[/yellow]")
        return
    _print_bulk_report(result, "Updated", start)


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _positive_int(text: str) -> int:
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError("must be a positive integer")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="detabase",
        description="Deta Base Helper CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--env", default=".env", help="Path to .env file (default: .env)")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help=f"Path to the stored project key (default: {CONFIG_FILE})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log requests and chunks")

    sub = parser.add_subparsers(dest="command")

    # --- auth ---
    p_auth = sub.add_parser("auth", help="Set your project key")
    p_auth.add_argument("project_key", help="Your Deta project key")

    # --- export ---
    p_exp = sub.add_parser("export", help="Create a .json dump of a database")
    p_exp.add_argument("database")
    p_exp.add_argument("-q", "--query", help="Only export items matching the query. " + QUERY_HELP)
    p_exp.add_argument("-li", "--limit", type=_positive_int, help="Limit results amount")
    p_exp.add_argument("-la", "--last", help="Last key seen in a previous paginated response")
    p_exp.add_argument("-fn", "--filename", help="Path of the exported file")

    # --- count ---
    p_cnt = sub.add_parser("count", help="Count items with or without a query")
    p_cnt.add_argument("database")
    p_cnt.add_argument("-q", "--query", help=QUERY_HELP)

    # --- query ---
    p_q = sub.add_parser("query", help="Show items matching a query")
    p_q.add_argument("database")
    p_q.add_argument("-q", "--query", help=QUERY_HELP)
    p_q.add_argument("-li", "--limit", type=_positive_int)
    p_q.add_argument("-la", "--last")
    p_q.add_argument("-j", "--json", action="store_true", help="Print JSON instead of a table")

    # --- get ---
    p_get = sub.add_parser("get", help="Get an item with the given key")
    p_get.add_argument("database")
    p_get.add_argument("key")

    # --- put / insert ---
    for name, help_text in (
        ("put", "Put items, overwriting existing keys"),
        ("insert", "Insert items, only if their key does not exist"),
    ):
        p_w = sub.add_parser(name, help=help_text)
        p_w.add_argument("database")
        source = p_w.add_mutually_exclusive_group(required=True)
        source.add_argument("-i", "--items", help="Items literal, e.g. \"[{key: 'a'}]\"")
        source.add_argument("-ff", "--from-file", help="JSON file with an array of items")

    # --- create ---
    p_cr = sub.add_parser("create", help="Create a database")
    p_cr.add_argument("database")

    # --- truncate ---
    p_tr = sub.add_parser("truncate", help="Delete every item of a database")
    p_tr.add_argument("database")
    p_tr.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")

    # --- clone ---
    p_cl = sub.add_parser("clone", help="Clone a database")
    p_cl.add_argument("database")
    p_cl.add_argument("new_name")
    p_cl.add_argument("-q", "--query", help=QUERY_HELP)
    p_cl.add_argument(
        "-f", "--force", action="store_true",
        help="Clone even if a database with the new name already exists",
    )

    # --- delete ---
    p_del = sub.add_parser("delete", help="Delete an item by key or items matching a query")
    p_del.add_argument("database")
    p_del.add_argument("key", nargs="?")
    p_del.add_argument("-q", "--query", help=QUERY_HELP)
    p_del.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")

    # --- update ---
    p_up = sub.add_parser("update", help="Update an item by key or items matching a query")
    p_up.add_argument("database")
    p_up.add_argument("key", nargs="?")
    p_up.add_argument("-q", "--query", help=QUERY_HELP)
    p_up.add_argument("-s", "--set", help="Attributes to be updated or created")
    p_up.add_argument("-i", "--increment", help="Attributes to increment (may be negative)")
    p_up.add_argument("-a", "--append", help="Attributes to append a list to")
    p_up.add_argument("-p", "--prepend", help="Attributes to prepend a list to")
    p_up.add_argument("-d", "--delete", help="Attribute name or array of names to delete")

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

CMD_MAP: dict[str, Callable[[DetaBaseService, argparse.Namespace], None]] = {
    "export": cmd_export,
    "count": cmd_count,
    "query": cmd_query,
    "get": cmd_get,
    "put": cmd_put,
    "insert": cmd_insert,
    "create": cmd_create,
    "truncate": cmd_truncate,
    "clone": cmd_clone,
    "delete": cmd_delete,
    "update": cmd_update,
}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return 1

    try:
        if args.command == "auth":
            path = save_project_key(args.project_key, args.config)
            console.print(f"[green]✅ Successfully authorized! Key stored in {path}[/green]")
            return 0

        svc = create_service_from_env(args.env, args.config)
        CMD_MAP[args.command](svc, args)
    except (DetaBaseError, FileNotFoundError) as exc:
        _print_error(exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
