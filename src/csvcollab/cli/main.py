"""CLI application using Typer for the collaborative CSV workspace."""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ..collab.stats import collect_user_statistics, dataset_progress
from ..collab.workspace import Workspace
from ..config.settings import settings
from ..core.errors import CollabError
from ..core.ids import generate_id, pick_user_color
from ..core.models import RowStatus, User, UserRole
from ..io.csv_io import append_csv, export_csv, import_csv
from ..store.sqlite import SQLiteRowStore
from ..sync.errors import ActionResult
from ..sync.status import StatusTracker
from ..utils.logging import get_logger, set_level
from ..web.app import start_server as _start_web_server

app = typer.Typer(
    name="csvcollab",
    help="CSV Collab - shared row-locked editing of CSV datasets",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

STATUS_STYLES = {
    RowStatus.PENDING: "white",
    RowStatus.WORKING: "yellow",
    RowStatus.COMPLETED: "green",
    RowStatus.BLOCKED: "red",
}


def _open_store(db: Optional[Path]) -> SQLiteRowStore:
    return SQLiteRowStore(db or settings.database_path)


async def _load_user(store: SQLiteRowStore, user_id: str) -> User:
    user = await store.get_user(user_id)
    if user is None:
        console.print(f"[red]Unknown user: {user_id}[/red]")
        raise typer.Exit(1)
    return user


def _print_result(result: ActionResult) -> None:
    if result.ok:
        console.print(f"[green]✓ {result.action} row {result.row_id}[/green]")
    else:
        console.print(f"[red]✗ {result.action} failed ({result.error_type.value}): {result.message}[/red]")
        raise typer.Exit(1)


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override CSVCOLLAB_LOG_LEVEL"),
) -> None:
    if log_level:
        set_level(log_level)


@app.command()
def init(db: Optional[Path] = typer.Option(None, "--db", help="Database file")) -> None:
    """Create the database and its tables."""
    path = db or settings.database_path
    with _open_store(path):
        pass
    console.print(f"[green]Initialized database[/green] at {path}")


@app.command()
def serve(
    host: str = typer.Option(settings.api_host, "--host", help="Hostname to bind the web server to."),
    port: int = typer.Option(settings.api_port, "--port", help="Port for the web server."),
    reload: bool = typer.Option(False, "--reload/--no-reload", help="Enable auto-reload (development only)."),
) -> None:
    """Start the HTTP/websocket API."""
    console.print(f"[bold blue]Starting web server[/bold blue] at http://{host}:{port}")
    try:
        _start_web_server(host=host, port=port, reload=reload)
    except Exception as exc:
        logger.error(f"Failed to start web server: {exc}")


@app.command("add-user")
def add_user(
    email: str = typer.Argument(..., help="User email"),
    name: Optional[str] = typer.Option(None, "--name", help="Full name"),
    admin: bool = typer.Option(False, "--admin", help="Grant the admin role"),
    user_id: Optional[str] = typer.Option(None, "--id", help="Explicit user id (default: random)"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database file"),
) -> None:
    """Register a user with a display colour."""
    uid = user_id or generate_id()
    user = User(
        user_id=uid,
        email=email,
        full_name=name,
        color=pick_user_color(uid, settings.user_colors, settings.default_user_color),
        role=UserRole.ADMIN if admin else UserRole.MEMBER,
    )
    with _open_store(db) as store:
        asyncio.run(store.upsert_user(user))
    console.print(f"[green]Added {user.role.value} {email}[/green] id={uid} color={user.color}")


@app.command("import")
def import_file(
    csv_path: Path = typer.Argument(..., help="CSV file with a header row", exists=True),
    user: str = typer.Option(..., "--user", "-u", help="Uploading user id"),
    name: Optional[str] = typer.Option(None, "--name", help="Dataset name (default: file name)"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database file"),
) -> None:
    """Import a CSV file as a new dataset."""
    with _open_store(db) as store:
        uploader = asyncio.run(_load_user(store, user))
        if not uploader.is_admin:
            console.print("[red]Only administrators can import datasets[/red]")
            raise typer.Exit(1)
        dataset = asyncio.run(import_csv(store, csv_path, uploaded_by=uploader.user_id, name=name))
    console.print(f"[green]Imported {dataset.total_rows} rows[/green] into {dataset.name} ({dataset.dataset_id})")


@app.command()
def append(
    dataset_id: str = typer.Argument(..., help="Target dataset id"),
    csv_path: Path = typer.Argument(..., help="CSV file to append", exists=True),
    user: str = typer.Option(..., "--user", "-u", help="User id"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database file"),
) -> None:
    """Append rows from a CSV file to an existing dataset."""
    with _open_store(db) as store:
        try:
            added = asyncio.run(append_csv(store, dataset_id, csv_path, user_id=user))
        except CollabError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)
    console.print(f"[green]Appended {added} rows[/green]")


@app.command()
def export(
    dataset_id: str = typer.Argument(..., help="Dataset id"),
    output: Path = typer.Option(Path("export.csv"), "--output", "-o", help="Output CSV path"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database file"),
) -> None:
    """Export a dataset to CSV in row order."""
    with _open_store(db) as store:
        try:
            written = asyncio.run(export_csv(store, dataset_id, output))
        except CollabError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)
    console.print(f"Saved {written} rows: {output}")


@app.command()
def datasets(db: Optional[Path] = typer.Option(None, "--db", help="Database file")) -> None:
    """List active datasets with their progress."""
    with _open_store(db) as store:
        items = asyncio.run(store.list_datasets())
    table = Table(title="Datasets")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Rows", style="yellow", justify="right")
    table.add_column("Completed", style="green", justify="right")
    table.add_column("Progress", style="magenta", justify="right")
    for d in items:
        table.add_row(d.dataset_id, d.name, str(d.total_rows), str(d.completed_rows), f"{d.progress:.1f}%")
    console.print(table)


@app.command()
def rows(
    dataset_id: str = typer.Argument(..., help="Dataset id"),
    status: Optional[RowStatus] = typer.Option(None, "--status", help="Only rows with this status"),
    query: str = typer.Option("", "--search", "-s", help="Case-insensitive text filter"),
    limit: int = typer.Option(50, "--limit", "-n", help="Rows to show"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database file"),
) -> None:
    """Show a dataset's rows with lock and status information."""
    with _open_store(db) as store:
        all_rows = asyncio.run(store.read_rows(dataset_id))
    matching = [r for r in all_rows if (status is None or r.status == status) and r.matches(query)]
    columns = list(all_rows[0].fields)[:4] if all_rows else []
    table = Table(title=f"Rows ({len(matching)}/{len(all_rows)})")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Row ID", style="dim")
    table.add_column("Status")
    table.add_column("Locked by", style="yellow")
    for col in columns:
        table.add_column(col)
    for r in matching[:limit]:
        style = STATUS_STYLES[r.status]
        table.add_row(
            str(r.sequence),
            r.row_id,
            f"[{style}]{r.status.value}[/{style}]",
            r.lock_holder or "",
            *[str(r.fields.get(c, "")) for c in columns],
        )
    console.print(table)


async def _row_action(store: SQLiteRowStore, user_id: str, row_id: str, action: str, **kwargs) -> ActionResult:
    user = await _load_user(store, user_id)
    row = await store.get_row(row_id)
    if row is None:
        console.print(f"[red]Row {row_id} not found[/red]")
        raise typer.Exit(1)
    workspace = Workspace(store, user)
    await workspace.select_dataset(row.dataset_id)
    try:
        if action == "lock":
            return await workspace.lock_row(row_id)
        if action == "unlock":
            return await workspace.unlock_row(row_id)
        if action == "force_unlock":
            return await workspace.force_unlock_row(row_id)
        if action == "status":
            return await workspace.change_status(row_id, kwargs["status"])
        if action == "note":
            return await workspace.set_note(row_id, kwargs["note"])
        return await workspace.update_cell(row_id, kwargs["column"], kwargs["value"])
    finally:
        await workspace.close()


@app.command()
def lock(
    row_id: str = typer.Argument(..., help="Row id"),
    user: str = typer.Option(..., "--user", "-u", help="User id"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database file"),
) -> None:
    """Acquire the lock on a row."""
    with _open_store(db) as store:
        _print_result(asyncio.run(_row_action(store, user, row_id, "lock")))


@app.command()
def unlock(
    row_id: str = typer.Argument(..., help="Row id"),
    user: str = typer.Option(..., "--user", "-u", help="User id"),
    force: bool = typer.Option(False, "--force", help="Administrative override"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database file"),
) -> None:
    """Release a row lock (admins may --force)."""
    with _open_store(db) as store:
        _print_result(asyncio.run(_row_action(store, user, row_id, "force_unlock" if force else "unlock")))


@app.command()
def status(
    row_id: str = typer.Argument(..., help="Row id"),
    new_status: RowStatus = typer.Argument(..., help="pending, working, completed or blocked"),
    user: str = typer.Option(..., "--user", "-u", help="User id"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database file"),
) -> None:
    """Change a row's status."""
    with _open_store(db) as store:
        _print_result(asyncio.run(_row_action(store, user, row_id, "status", status=new_status)))


@app.command()
def edit(
    row_id: str = typer.Argument(..., help="Row id"),
    column: str = typer.Argument(..., help="Column name"),
    value: str = typer.Argument(..., help="New cell value"),
    user: str = typer.Option(..., "--user", "-u", help="User id"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database file"),
) -> None:
    """Edit one cell of a row you hold the lock on."""
    with _open_store(db) as store:
        _print_result(asyncio.run(_row_action(store, user, row_id, "edit", column=column, value=value)))


@app.command()
def note(
    row_id: str = typer.Argument(..., help="Row id"),
    text: str = typer.Argument(..., help="Note text (empty to clear)"),
    user: str = typer.Option(..., "--user", "-u", help="User id"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database file"),
) -> None:
    """Set the note on a row."""
    with _open_store(db) as store:
        _print_result(asyncio.run(_row_action(store, user, row_id, "note", note=text)))


@app.command()
def recount(
    dataset_id: str = typer.Argument(..., help="Dataset id"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database file"),
) -> None:
    """Recompute a dataset's row counters from its rows."""
    with _open_store(db) as store:
        try:
            counts = asyncio.run(StatusTracker(store).recount(dataset_id))
        except CollabError as e:
            console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)
    console.print(f"[green]{counts['completed_rows']}/{counts['total_rows']} rows completed[/green]")


@app.command()
def stats(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Show statistics for one user"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database file"),
) -> None:
    """Show dataset progress, or one user's statistics."""
    with _open_store(db) as store:
        if user:
            s = asyncio.run(collect_user_statistics(store, user))
            table = Table(title=f"Statistics for {user}")
            table.add_column("Metric", style="cyan")
            table.add_column("Value", style="yellow", justify="right")
            table.add_row("Completed", str(s.total_completed))
            table.add_row("Working", str(s.total_working))
            table.add_row("Blocked", str(s.total_blocked))
            table.add_row("Locked now", str(s.rows_locked))
            table.add_row("Last active", s.last_active.isoformat() if s.last_active else "-")
            console.print(table)
            return

        async def _progress():
            out = []
            for d in await store.list_datasets():
                out.append(dataset_progress(d, await store.read_rows(d.dataset_id)))
            return out

        table = Table(title="Dataset Progress")
        table.add_column("Dataset", style="cyan")
        for s in RowStatus:
            table.add_column(s.value.title(), style=STATUS_STYLES[s], justify="right")
        table.add_column("Done", style="magenta", justify="right")
        for p in asyncio.run(_progress()):
            table.add_row(p.name, *[str(p.by_status[s.value]) for s in RowStatus], f"{p.percent:.1f}%")
        console.print(table)


@app.command()
def activity(
    limit: int = typer.Option(20, "--limit", "-n", help="Entries to show"),
    db: Optional[Path] = typer.Option(None, "--db", help="Database file"),
) -> None:
    """Show the most recent activity log entries."""
    with _open_store(db) as store:
        entries = asyncio.run(store.list_activity(limit=limit))
    table = Table(title="Recent Activity")
    table.add_column("When", style="dim")
    table.add_column("User", style="cyan")
    table.add_column("Action", style="white")
    table.add_column("Resource", style="yellow")
    for e in entries:
        table.add_row(e.created_at.strftime("%Y-%m-%d %H:%M:%S"), e.user_id or "-", e.action, e.resource_id or "")
    console.print(table)


if __name__ == "__main__":
    app()
