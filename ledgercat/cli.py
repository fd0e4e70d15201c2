"""Command line interface for ledgercat."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ledgercat.batch import (
    CategorizationSummary,
    ImportSummary,
    assign_category,
    categorize_account,
    categorize_import,
    import_statement,
)
from ledgercat.config import Config, DatabaseConfig, load_config
from ledgercat.db.models import ImportContext, OverrideScope
from ledgercat.db.repository import Repository
from ledgercat.errors import LedgercatError

console = Console()

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="Import bank statements and categorize transactions.",
)


def configure_logging(verbose: bool = False) -> None:
    """Route ledgercat logs through rich, once per process."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


@asynccontextmanager
async def open_repository(config: Config) -> AsyncIterator[Repository]:
    """Connect to the configured database for the duration of a command."""
    repository = Repository(config.database.path)
    await repository.connect()
    try:
        yield repository
    finally:
        await repository.close()


def _config(ctx: typer.Context) -> Config:
    return ctx.obj


def _run(coro):
    try:
        return asyncio.run(coro)
    except LedgercatError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


def _print_import(summary: ImportSummary) -> None:
    table = Table(title=f"Import batch {summary.import_batch_id}")
    table.add_column("Rows")
    table.add_column("Count", justify="right")
    table.add_row("Total", str(summary.rows_total))
    table.add_row("Inserted", str(summary.rows_inserted))
    table.add_row("Skipped", str(summary.rows_skipped))
    table.add_row("  invalid", str(summary.invalid_skipped))
    table.add_row("  duplicate", str(summary.duplicate_skipped))
    console.print(table)
    if summary.categorization is not None:
        _print_categorization(summary.categorization)


def _print_categorization(summary: CategorizationSummary) -> None:
    console.print(
        f"Categorized [bold]{summary.total}[/bold] transaction(s): "
        f"{summary.updated} updated, {summary.skipped} unchanged, "
        f"{summary.canonical_updated} normalized"
    )


@app.callback()
def _root(
    ctx: typer.Context,
    config_path: Path | None = typer.Option(None, "--config", help="Path to a config.toml."),
    db_path: Path | None = typer.Option(None, "--db", help="Override the database path."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output."),
) -> None:
    """Load configuration and set up logging for every command."""
    configure_logging(verbose)
    config = load_config(config_path)
    if db_path is not None:
        config = Config(
            database=DatabaseConfig(path=db_path),
            imports=config.imports,
            security=config.security,
        )
    ctx.obj = config


@app.command("import")
def import_cmd(
    ctx: typer.Context,
    statement: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    user: str = typer.Option(..., "--user", help="Owner of the imported transactions."),
    account: str | None = typer.Option(None, "--account", help="Account the statement belongs to."),
    bank_source: str | None = typer.Option(None, "--bank-source", help="Bank identifier."),
    categorize: bool = typer.Option(False, "--categorize", help="Categorize after import."),
) -> None:
    """Import a bank statement spreadsheet."""
    config = _config(ctx)
    context = ImportContext(
        user_id=user,
        account_id=account,
        bank_source=bank_source or config.imports.bank_source,
        currency=config.imports.currency,
        channel=config.imports.channel,
    )

    async def run() -> ImportSummary:
        async with open_repository(config) as repository:
            return await import_statement(
                repository,
                statement.read_bytes(),
                context,
                file_name=statement.name,
                categorize=categorize,
                chunk_size=config.imports.chunk_size,
            )

    _print_import(_run(run()))


@app.command("categorize")
def categorize_cmd(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", help="Owner of the transactions."),
    batch: int | None = typer.Option(None, "--batch", help="Only this import batch."),
    account: str | None = typer.Option(None, "--account", help="Only this account."),
    force: bool = typer.Option(False, "--force", help="Also recategorize manual choices."),
) -> None:
    """Run the categorization policy over stored transactions."""
    config = _config(ctx)
    if batch is not None and account is not None:
        console.print("[red]Error:[/red] use either --batch or --account, not both")
        raise typer.Exit(2)

    async def run() -> CategorizationSummary:
        async with open_repository(config) as repository:
            if batch is not None:
                return await categorize_import(
                    repository, user, batch, force, config.imports.chunk_size
                )
            return await categorize_account(
                repository, user, account, force, config.imports.chunk_size
            )

    _print_categorization(_run(run()))


@app.command("assign")
def assign_cmd(
    ctx: typer.Context,
    transaction_id: int = typer.Argument(..., help="Transaction to categorize."),
    category_id: int = typer.Argument(..., help="Category to assign."),
    user: str = typer.Option(..., "--user", help="Owner of the transaction."),
    merchant: bool = typer.Option(
        False, "--merchant", help="Remember the choice for the transaction's merchant."
    ),
    scope: OverrideScope = typer.Option(
        OverrideScope.USER, "--scope", help="Merchant override scope."
    ),
) -> None:
    """Pin a category on a transaction."""
    config = _config(ctx)

    async def run():
        async with open_repository(config) as repository:
            return await assign_category(
                repository, user, transaction_id, category_id, merchant, scope
            )

    manual = _run(run())
    console.print(
        f"Transaction {transaction_id} set to [bold]{manual.update.category_label}[/bold]"
    )
    if manual.override is not None:
        console.print(
            f"Merchant {manual.override.merchant_normalized!r} now maps to it "
            f"({manual.override.scope.value} scope)"
        )


@app.command("merchants")
def merchants_cmd(
    ctx: typer.Context,
    user: str = typer.Option(..., "--user", help="Owner of the transactions."),
    limit: int = typer.Option(50, "--limit", help="Maximum merchants to list (1-200)."),
) -> None:
    """List the most frequent merchants that are still uncategorized."""
    config = _config(ctx)

    async def run() -> list[dict]:
        async with open_repository(config) as repository:
            return await repository.get_uncategorized_merchants(user, limit)

    merchants = _run(run())
    if not merchants:
        console.print("No uncategorized merchants")
        return
    table = Table(title="Uncategorized merchants")
    table.add_column("Merchant")
    table.add_column("Transactions", justify="right")
    table.add_column("Total", justify="right")
    for row in merchants:
        table.add_row(
            row["merchant_normalized"],
            str(row["txn_count"]),
            f"{row['total_amount'] or 0:.2f}",
        )
    console.print(table)


def main() -> None:  # pragma: no cover
    """Entry point for the application."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
