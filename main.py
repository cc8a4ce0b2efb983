from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import click
import httpx
import schedule
from rich.console import Console
from rich.table import Table

from models.credentials import ClientCredentials, CredentialSet
from services.archive_service import ArchiveService, ArchiveSummary
from services.auth_service import AuthService, OAuthClient
from services.gmail_service import BASE_URL, GmailService
from services.http_client import ApiClient
from services.persistence_service import MirrorStore
from services.token_manager import TokenManager
from utils.config import AppConfig, load_config
from utils.logger import configure_logging


LOGGER = logging.getLogger(__name__)

FILE_PATH = click.Path(path_type=Path, dir_okay=False)


@dataclass(slots=True)
class AppContext:
    config: AppConfig
    console: Console


def build_context(env_file: str, verbose: bool, trace_requests: bool = False) -> AppContext:
    config = load_config(env_file)
    if verbose:
        config = config.with_overrides(log_level="DEBUG")
    configure_logging(config.log_dir, config.log_level, trace_requests)
    return AppContext(config=config, console=Console())


async def archive_mailbox(
    config: AppConfig,
    store: MirrorStore,
    client: ClientCredentials,
    credentials: CredentialSet,
) -> ArchiveSummary:
    async with httpx.AsyncClient(timeout=config.http_timeout) as http:
        api = ApiClient(BASE_URL, http, config.retry_policy)
        token_manager = TokenManager(OAuthClient(client, api), store, credentials)
        gmail = GmailService(api, token_manager, config.user_id, config.stream_capacity)
        return await ArchiveService(gmail, store, config.concurrency).run()


def run_archive(config: AppConfig) -> ArchiveSummary:
    config.db_path.parent.mkdir(parents=True, exist_ok=True)
    with MirrorStore(config.db_path) as store:
        auth_service = AuthService(config.secrets_file, store)
        client = auth_service.client_credentials()
        credentials = auth_service.credentials()
        return asyncio.run(archive_mailbox(config, store, client, credentials))


@click.group()
@click.option("--env-file", default=".env", show_default=True, help="Path to the .env file")
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level, including every request")
@click.option("--trace-requests", is_flag=True, help="Write every HTTP attempt to the log file")
@click.pass_context
def cli(ctx: click.Context, env_file: str, verbose: bool, trace_requests: bool) -> None:
    """Incrementally archive a Gmail mailbox into a local SQLite database."""

    try:
        ctx.obj = build_context(env_file, verbose, trace_requests)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--env-file") from exc


@cli.command("archive")
@click.option("--secrets-file", type=FILE_PATH, help="Google OAuth client secrets JSON")
@click.option("--db", "db_path", type=FILE_PATH, help="SQLite database to archive into")
@click.option("--concurrency", type=click.IntRange(min=1), help="Full messages fetched in parallel")
@click.pass_obj
def archive(
    app: AppContext,
    secrets_file: Optional[Path],
    db_path: Optional[Path],
    concurrency: Optional[int],
) -> None:
    """Fetch every label, message, attachment and raw message not yet stored."""

    config = app.config.with_overrides(secrets_file=secrets_file, db_path=db_path, concurrency=concurrency)
    summary = _archive_or_exit(config)
    app.console.print(_build_summary_table(summary))


@cli.command("status")
@click.option("--db", "db_path", type=FILE_PATH, help="SQLite database to inspect")
@click.pass_obj
def status(app: AppContext, db_path: Optional[Path]) -> None:
    """Show how much of the mailbox is archived locally."""

    path = db_path or app.config.db_path
    if not path.exists():
        app.console.print(f"[yellow]No archive at {path} yet.[/yellow]")
        return

    with MirrorStore(path) as store:
        counts = store.counts()

    table = Table(title=f"Archive {path}")
    table.add_column("Table")
    table.add_column("Rows", justify="right")
    for name, count in counts.items():
        table.add_row(name, str(count))
    app.console.print(table)


@cli.command("schedule")
@click.option("--interval", type=click.IntRange(min=1), default=60, show_default=True, help="Interval in minutes")
@click.option("--secrets-file", type=FILE_PATH, help="Google OAuth client secrets JSON")
@click.option("--db", "db_path", type=FILE_PATH, help="SQLite database to archive into")
@click.pass_obj
def schedule_archive(
    app: AppContext,
    interval: int,
    secrets_file: Optional[Path],
    db_path: Optional[Path],
) -> None:
    """Run an archive pass now and then every INTERVAL minutes."""

    config = app.config.with_overrides(secrets_file=secrets_file, db_path=db_path)

    def job() -> None:
        summary = _archive_or_exit(config)
        app.console.print(
            f"[scheduler] stored {summary.messages_stored} new message(s), "
            f"skipped {summary.messages_skipped} already archived."
        )

    job()
    schedule.every(interval).minutes.do(job)

    app.console.print(f"Archiving every {interval} minute(s) into {config.db_path}. Press Ctrl+C to stop.")
    try:
        while True:
            schedule.run_pending()
            time.sleep(1)
    except KeyboardInterrupt:
        app.console.print("Scheduler stopped.")
    finally:
        schedule.clear()


def _archive_or_exit(config: AppConfig) -> ArchiveSummary:
    try:
        return run_archive(config)
    except Exception as exc:
        # The next run resumes from whatever was committed before the failure.
        LOGGER.exception("Archive run aborted: %s", exc)
        raise SystemExit(1) from exc


def _build_summary_table(summary: ArchiveSummary) -> Table:
    table = Table(title="Archive run")
    table.add_column("Item")
    table.add_column("Stored", justify="right")
    table.add_row("Labels", str(summary.labels_stored))
    table.add_row("Messages", str(summary.messages_stored))
    table.add_row("Attachments", str(summary.attachments_stored))
    table.add_row("Raw messages", str(summary.raw_messages_stored))
    table.add_row("Messages already archived", str(summary.messages_skipped))
    return table


def main() -> None:
    cli(standalone_mode=True)


if __name__ == "__main__":
    main()
