import json
import os
from typing import Any, Dict, Iterable, List, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIBSYNC_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_rows(title: str, rows: List[Dict[str, Any]], columns: Sequence[str], empty: str) -> None:
    """Print a list of records in the current output mode.
    - plain: one ' | '-joined line per record, or the empty message
    - json: JSON array of the selected columns
    - rich: Rich table
    """
    mode = get_output_mode()

    if not rows:
        print(empty)
        return

    if mode == "json":
        print(json.dumps([{c: row.get(c) for c in columns} for row in rows], ensure_ascii=False, default=str))
    elif mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for column in columns:
            table.add_column(column.replace("_", " ").title())
        for row in rows:
            table.add_row(*("" if row.get(c) is None else str(row.get(c)) for c in columns))
        _console.print(table)
    else:
        for row in rows:
            print(" | ".join("" if row.get(c) is None else str(row.get(c)) for c in columns))


def print_record(title: str, record: Dict[str, Any], keys: Iterable[str] = ()) -> None:
    """Print a single record as 'Key: value' lines, a JSON object or a Rich panel."""
    mode = get_output_mode()
    keys = list(keys) or list(record)
    payload = {k: record.get(k) for k in keys}

    if mode == "json":
        print(json.dumps(payload, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{k.replace('_', ' ').title()}:[/] {v}" for k, v in payload.items())
        _console.print(Panel.fit(content, title=title, border_style="blue"))
    else:
        print(title)
        for k, v in payload.items():
            print(f"{k.replace('_', ' ').title()}: {v}")
