import os
import json
from typing import Any, Callable, Dict, List, Sequence, Tuple
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode

def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()

def _print_rows(
    rows: List[Dict[str, Any]],
    columns: Sequence[Tuple[str, str]],
    title: str,
    empty_message: str,
    plain_line: Callable[[Dict[str, Any]], str],
) -> None:
    """Print ``rows`` (record dicts) in the current output mode.
    - plain: one ``plain_line`` per row, or ``empty_message``
    - json: the row dicts as a JSON array
    - rich: a table with ``columns`` as (key, header) pairs
    """
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False, default=str))
        return

    if not rows:
        print(empty_message)
        return

    if mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for _, header in columns:
            table.add_column(header)
        for row in rows:
            table.add_row(*[str(row.get(key) if row.get(key) is not None else "") for key, _ in columns])
        _console.print(table)
    else:
        for row in rows:
            print(plain_line(row))

def print_books(books: List[Any]) -> None:
    _print_rows(
        [b.to_dict() for b in books],
        [("id", "ID"), ("title", "Title"), ("author", "Author"), ("isbn", "ISBN"),
         ("available_copies", "Available"), ("total_copies", "Total")],
        "📚 Books",
        "No books in library.",
        lambda b: f"[{b['id']}] {b['title']} by {b['author']} ({b['available_copies']}/{b['total_copies']} available)",
    )

def print_loans(loans: List[Any], empty_message: str = "No loans found.") -> None:
    _print_rows(
        [l.to_dict() for l in loans],
        [("id", "ID"), ("student_id", "Student"), ("book_id", "Book"), ("issue_date", "Issued"),
         ("due_date", "Due"), ("status", "Status")],
        "📖 Loans",
        empty_message,
        lambda l: f"Loan {l['id']}: book {l['book_id']} -> student {l['student_id']}, due {l['due_date']} [{l['status']}]",
    )

def print_fines(fines: List[Any]) -> None:
    _print_rows(
        [f.to_dict() for f in fines],
        [("id", "ID"), ("loan_id", "Loan"), ("student_id", "Student"), ("days_overdue", "Days"),
         ("amount", "Amount"), ("status", "Status")],
        "💰 Fines",
        "No fines found.",
        lambda f: (
            f"Fine {f['id']}: loan {f['loan_id']}, student {f['student_id']}, "
            f"{f['amount']} for {f['days_overdue']} day(s) [{f['status']}]"
        ),
    )

def print_record(label: str, record: Dict[str, Any]) -> None:
    """Print a single record: a ``key: value`` block, a JSON object or a panel."""
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(record, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{k}:[/] {v}" for k, v in record.items())
        _console.print(Panel.fit(content, title=label, border_style="green"))
    else:
        print(label)
        for k, v in record.items():
            print(f"  {k}: {v}")

def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print dashboard counters in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{k.replace('_', ' ').title()}:[/] {v}" for k, v in stats.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for k, v in stats.items():
            print(f"{k.replace('_', ' ').title()}: {v}")

def print_sweep_report(report: Dict[str, Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(report, ensure_ascii=False))
        return

    summary = (
        f"Fine sweep for {report['run_date']}: {report['created']} created, "
        f"{report['updated']} updated, {report['marked_overdue']} marked overdue, "
        f"{len(report['errors'])} failed"
    )
    if mode == "rich":
        _console.print(Panel.fit(summary, title="🧾 Fine sweep", border_style="yellow"))
        for err in report["errors"]:
            _console.print(f"[red]Loan {err['loan_id']}: {err['message']}[/]")
    else:
        print(summary)
        for err in report["errors"]:
            print(f"  loan {err['loan_id']}: {err['message']}")
