"""Command Line Interface for the Patient Intake Vault.

This module provides a CLI using Typer for managing encrypted patient intake
records: saving, loading, searching, exporting, importing and migrating.

Security Impact:
    - The passphrase is read from --passphrase, IV_PASSPHRASE, or a hidden prompt
    - Record contents are only printed when explicitly loaded
    - Every command goes through the RecordStore, so the audit trail is kept
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, List, NoReturn, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from src.adapters.storage import DuckDBKeyValueAdapter, InMemoryKeyValueAdapter
from src.domain.ports import KeyValuePort, RecordStoreError, ValidationError, utc_now_iso
from src.infrastructure.logging_config import setup_logging
from src.infrastructure.settings import APP_VERSION, settings
from src.main import create_record_store
from src.services.data_transfer import export_to_file, import_from_file, read_import_file
from src.services.record_store import ConflictStrategy, RecordStore

T = TypeVar('T')

# Initialize Typer app and Rich console
app = typer.Typer(
    name="intakevault",
    help="Intake-Vault: encrypted patient intake record store",
    add_completion=False
)
console = Console()

PASSPHRASE_OPTION = typer.Option(
    None, "--passphrase", "-p", envvar="IV_PASSPHRASE", help="Vault passphrase (prompted when omitted)"
)


def _parse_assignments(pairs: List[str]) -> dict:
    """Turn ``key=value`` strings into a dict; values are parsed as JSON when possible."""
    parsed: dict = {}
    for pair in pairs:
        if "=" not in pair:
            console.print(f"[red]✗[/red] Expected key=value, got: {pair}")
            raise typer.Exit(code=2)
        key, raw = pair.split("=", 1)
        try:
            value: Any = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        parsed[key.strip()] = value
    return parsed


def _fail(error: RecordStoreError) -> NoReturn:
    console.print(f"[red]✗[/red] {error.code}: {error.message}")
    raise typer.Exit(code=1)


def _read_json_object(path: Path, what: str) -> dict:
    """Read a JSON object from ``path`` under the import size limits."""
    try:
        data = read_import_file(path, settings=settings)
        if not isinstance(data, dict):
            raise ValidationError(f"{what} must be a JSON object", reason="invalidFormat")
    except RecordStoreError as e:
        _fail(e)
    return data


def _run(passphrase: Optional[str], operation: Callable[[RecordStore], Awaitable[T]]) -> T:
    """Open the store, run ``operation`` and close the store again."""
    if not passphrase and settings.crypto_config.passphrase is None:
        passphrase = typer.prompt("Passphrase", hide_input=True)

    async def runner() -> T:
        store = create_record_store(passphrase, settings=settings)
        try:
            return await operation(store)
        finally:
            await store.close()

    try:
        return asyncio.run(runner())
    except RecordStoreError as e:
        _fail(e)


@app.command()
def save(
    record_id: str = typer.Argument(..., help="Record id"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Patient name"),
    notes: Optional[str] = typer.Option(None, "--notes", help="Free-text notes"),
    language: Optional[str] = typer.Option(None, "--language", help="Preferred language"),
    gender: Optional[str] = typer.Option(None, "--gender", help="Gender"),
    info: List[str] = typer.Option([], "--info", "-i", help="patientInfo field as key=value (repeatable)"),
    from_file: Optional[Path] = typer.Option(None, "--file", "-f", help="Read the record from a JSON file", exists=True),
    backup: bool = typer.Option(False, "--backup", help="Back up the current version first"),
    passphrase: Optional[str] = PASSPHRASE_OPTION,
) -> None:
    """Create or replace a record.

    Examples:
        intakevault save abc123 --name "Jane Doe" --info age=42 --info symptoms='["cough"]'
        intakevault save abc123 --file record.json
    """
    record: dict = {}
    if from_file is not None:
        record = _read_json_object(from_file, "Record file")
    if name is not None:
        record["name"] = name
    for key, value in (("notes", notes), ("language", language), ("gender", gender)):
        if value is not None:
            record[key] = value
    if info:
        record["patientInfo"] = {**(record.get("patientInfo") or {}), **_parse_assignments(info)}
    if not record.get("dateCreated") and not record.get("createdAt"):
        record["dateCreated"] = utc_now_iso()

    saved = _run(passphrase, lambda store: store.save(record_id, record, backup=backup))
    console.print(f"[green]✓[/green] Saved {record_id} (version {saved['metadata']['version']})")


@app.command()
def load(
    record_id: str = typer.Argument(..., help="Record id"),
    passphrase: Optional[str] = PASSPHRASE_OPTION,
) -> None:
    """Decrypt and print a record as JSON."""
    record = _run(passphrase, lambda store: store.load(record_id))
    if record is None:
        console.print(f"[yellow]⚠[/yellow] Record {record_id} not found")
        raise typer.Exit(code=1)
    console.print_json(data=record)


@app.command()
def update(
    record_id: str = typer.Argument(..., help="Record id"),
    fields: List[str] = typer.Argument(..., help="Fields as key=value (patientInfo=... merges)"),
    backup: bool = typer.Option(False, "--backup", help="Back up the current version first"),
    passphrase: Optional[str] = PASSPHRASE_OPTION,
) -> None:
    """Merge fields into an existing record.

    Examples:
        intakevault update abc123 notes="follow up" 'patientInfo={"age": 43}'
    """
    changes = _parse_assignments(fields)
    saved = _run(passphrase, lambda store: store.update(record_id, changes, backup=backup))
    console.print(f"[green]✓[/green] Updated {record_id} (version {saved['metadata']['version']})")


@app.command()
def delete(
    record_id: str = typer.Argument(..., help="Record id"),
    backup: bool = typer.Option(False, "--backup", help="Keep a backup copy"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    passphrase: Optional[str] = PASSPHRASE_OPTION,
) -> None:
    """Delete a record."""
    if not yes:
        typer.confirm(f"Delete record {record_id}?", abort=True)
    _run(passphrase, lambda store: store.delete(record_id, backup=backup))
    console.print(f"[green]✓[/green] Deleted {record_id}")


@app.command(name="list")
def list_records(
    passphrase: Optional[str] = PASSPHRASE_OPTION,
) -> None:
    """List records, most recently updated first."""
    async def collect(store: RecordStore) -> list:
        records = await store.load_all()
        ids = await store.list_ids()
        return [records[rid] for rid in ids]

    records = _run(passphrase, collect)
    if not records:
        console.print("[dim]No records[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Created")
    table.add_column("Updated")
    table.add_column("Version", justify="right")
    for record in records:
        table.add_row(
            record.get("id", ""),
            record.get("name", ""),
            record.get("dateCreated") or record.get("createdAt") or "",
            record.get("updatedAt") or "",
            str((record.get("metadata") or {}).get("version", "")),
        )
    console.print(table)
    console.print(f"[dim]{len(records)} records[/dim]")


@app.command()
def search(
    criteria: str = typer.Argument(..., help='Criteria as JSON, e.g. \'{"patientInfo.age": {"$gte": 40}}\''),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Page size"),
    offset: int = typer.Option(0, "--offset", help="Page offset"),
    passphrase: Optional[str] = PASSPHRASE_OPTION,
) -> None:
    """Search records by field values."""
    try:
        parsed = json.loads(criteria)
    except json.JSONDecodeError as e:
        console.print(f"[red]✗[/red] Criteria must be JSON: {e.msg}")
        raise typer.Exit(code=2)
    if not isinstance(parsed, dict):
        console.print("[red]✗[/red] Criteria must be a JSON object")
        raise typer.Exit(code=2)

    page = _run(passphrase, lambda store: store.search(parsed, limit=limit, offset=offset))

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Updated")
    for record in page.records:
        table.add_row(record.get("id", ""), record.get("name", ""), record.get("updatedAt") or "")
    console.print(table)
    more = " (more available)" if page.has_more else ""
    console.print(f"[dim]{len(page.records)} of {page.total} matches{more}[/dim]")


@app.command(name="export")
def export_records(
    destination: Path = typer.Argument(Path("."), help="Output directory or file"),
    passphrase: Optional[str] = PASSPHRASE_OPTION,
) -> None:
    """Export every record to a JSON file (decrypted)."""
    target = _run(passphrase, lambda store: export_to_file(store, destination, settings=settings))
    console.print(f"[green]✓[/green] Export written: {target}")


@app.command(name="import")
def import_records(
    source: Path = typer.Argument(..., help="Export file or JSON list of records", exists=True, dir_okay=False),
    conflict: ConflictStrategy = typer.Option(
        ConflictStrategy.OVERWRITE, "--conflict", "-c", help="What to do with existing ids"
    ),
    passphrase: Optional[str] = PASSPHRASE_OPTION,
) -> None:
    """Import records from an export file."""
    report = _run(passphrase, lambda store: import_from_file(store, source, conflict=conflict, settings=settings))

    summary_table = Table(show_header=False, box=None, padding=(0, 2))
    summary_table.add_row("Attempted:", f"[bold]{report.attempted:,}[/bold]")
    summary_table.add_row("Imported:", f"[green]{report.imported:,}[/green]")
    summary_table.add_row("Overwritten:", f"{report.overwritten:,}")
    summary_table.add_row("Skipped:", f"[red]{report.skipped:,}[/red]" if report.skipped else "0")
    console.print(summary_table)

    for warning in report.warnings:
        console.print(f"[yellow]⚠[/yellow] {warning}")
    for skipped in report.skipped_records:
        console.print(f"[dim]  skipped #{skipped['index']} ({skipped['id'] or '-'}): {skipped['reason']}[/dim]")


def _legacy_backend(source: Path) -> KeyValuePort:
    """Open a legacy store: a JSON object of key -> record, or a DuckDB file."""
    if source.suffix.lower() == ".json":
        data = _read_json_object(source, "Legacy JSON (key -> record)")
        return InMemoryKeyValueAdapter(initial={key: json.dumps(value) for key, value in data.items()})
    return DuckDBKeyValueAdapter(db_path=str(source))


@app.command()
def migrate(
    source: Path = typer.Argument(..., help="Legacy store (DuckDB file or JSON object)", exists=True, dir_okay=False),
    prefix: str = typer.Option("patient-", "--prefix", help="Key prefix of legacy records"),
    remove_source: bool = typer.Option(False, "--remove-source", help="Delete migrated legacy keys"),
    strict: bool = typer.Option(False, "--strict", help="Fail if any record cannot be migrated"),
    passphrase: Optional[str] = PASSPHRASE_OPTION,
) -> None:
    """Encrypt records from an unencrypted legacy store."""
    legacy = _legacy_backend(source)

    async def operation(store: RecordStore):
        try:
            return await store.migrate_legacy(legacy, prefix=prefix, remove_source=remove_source, strict=strict)
        finally:
            await legacy.close()

    result = _run(passphrase, operation)
    console.print(f"[green]✓[/green] Migrated {result.successful} of {result.total} records")
    for item in result.failures:
        console.print(f"[dim]  {item.record_id or '-'}: {item.reason or item.error_code}[/dim]")
    if result.failed:
        raise typer.Exit(code=1)


@app.command()
def audit(
    limit: int = typer.Option(100, "--limit", "-l", help="Maximum entries"),
    action: Optional[str] = typer.Option(None, "--action", "-a", help="Only this action (e.g. SAVE_PATIENT)"),
    passphrase: Optional[str] = PASSPHRASE_OPTION,
) -> None:
    """Show the audit trail, newest first."""
    async def collect(store: RecordStore) -> list:
        return store.audit_log(limit=limit, action=action)

    entries = _run(passphrase, collect)
    table = Table(show_header=True, header_style="bold")
    table.add_column("Time")
    table.add_column("Action", style="cyan")
    table.add_column("Record")
    table.add_column("Details", style="dim")
    for entry in entries:
        table.add_row(entry.timestamp, entry.action, entry.patient_id or "", json.dumps(entry.details, default=str))
    console.print(table)


@app.command()
def clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    passphrase: Optional[str] = PASSPHRASE_OPTION,
) -> None:
    """Delete every record and backup (the device profile is kept)."""
    if not yes:
        typer.confirm("Delete ALL records and backups?", abort=True)
    removed = _run(passphrase, lambda store: store.clear_all())
    console.print(f"[green]✓[/green] Removed {removed} keys")


@app.command()
def info() -> None:
    """Display system information and configuration."""
    console.print("[bold blue]System Information[/bold blue]\n")

    backend_config = settings.backend_config
    crypto_config = settings.crypto_config
    store_config = settings.store_config

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", f"{settings.app_name} v{APP_VERSION}")
    info_table.add_row("Backend:", backend_config.backend_type)
    if backend_config.backend_type == "duckdb":
        info_table.add_row("Database Path:", backend_config.db_path or ":memory:")
    quota = f"{backend_config.quota_bytes / (1024 * 1024):.0f} MB" if backend_config.quota_bytes else "unlimited"
    info_table.add_row("Quota:", quota)
    info_table.add_row("Fallback:", "Enabled" if backend_config.fallback_enabled else "Disabled")
    info_table.add_row("Device Profile:", crypto_config.device_profile_path)
    info_table.add_row("PBKDF2 Iterations:", f"{crypto_config.pbkdf2_iterations:,}")
    info_table.add_row("Cache Capacity:", str(store_config.cache_capacity))
    info_table.add_row("Retry Attempts:", str(store_config.max_attempts))
    info_table.add_row("Batch Chunk Size:", str(store_config.batch_chunk_size))
    info_table.add_row("Export Limit:", f"{settings.export_max_mb:.0f} MB (warn at {settings.export_warn_mb:.0f} MB)")

    console.print(info_table)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version information"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Intake-Vault: encrypted patient intake record store."""
    if version:
        console.print(f"Intake-Vault v{APP_VERSION}")
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()
    setup_logging(use_json=settings.log_json, log_level="DEBUG" if verbose else settings.log_level)
    if verbose:
        logging.getLogger(__name__).debug("Verbose logging enabled")


if __name__ == "__main__":
    app()
