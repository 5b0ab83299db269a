"""
CLI interface for vaultsync.

Usage:
    vaultsync list activity --search "field trip"
    vaultsync content activity rec-123
    vaultsync upload ./photo.png
    vaultsync rm-file FILE_ID --node https://node-2.example
    vaultsync replay
"""

import asyncio
import json
import mimetypes
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import typer
from typing_extensions import Annotated

from .attachments import AttachmentManager
from .config import VaultConfig, get_home_dir, load_or_create_config
from .errors import SyncError
from .executor import TimeboxedExecutor
from .locator import ContentLocator
from .logging_config import configure_ops_log, configure_quiet_mode, enable_debug_mode
from .protocol import ENTITIES
from .records import RecordService
from .ref_journal import RefJournal
from .transport import NodeClient
from .types import AttachmentRef, Record, Result


# Set VAULTSYNC_VERBOSE=1 to enable debug mode via environment
if os.environ.get("VAULTSYNC_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_home_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _home_callback(value: Optional[Path]):
    global _home_override
    if value is not None:
        _home_override = value


def _get_home() -> Path:
    return _home_override if _home_override is not None else get_home_dir()


app = typer.Typer(
    name="vaultsync",
    help="Sync records, content blobs and attachments across storage nodes.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    home: Annotated[Optional[Path], typer.Option(
        "--home",
        envvar="VAULTSYNC_HOME",
        help="Path to the state directory",
        callback=_home_callback,
        is_eager=True,
    )] = None,
):
    """Sync records, content blobs and attachments across storage nodes."""


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _get_config() -> VaultConfig:
    """Load config for the active state directory, exiting cleanly on errors."""
    try:
        config = load_or_create_config(_get_home())
    except (OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    configure_ops_log(config.path)
    return config


def _make_client(config: VaultConfig) -> NodeClient:
    return NodeClient(config.default_node, timeout=config.sync.request_timeout)


def _client_or_exit(config: VaultConfig) -> NodeClient:
    try:
        return _make_client(config)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _run(config: VaultConfig, work: Callable[[NodeClient], Awaitable[Any]]) -> Any:
    """Run ``work(client)`` under the configured deadline and unwrap its result.

    Failed Results and timeouts end the command with a one-line error.
    """
    outcome: dict[str, Any] = {}

    async def runner():
        executor = TimeboxedExecutor(config.sync.timeout_ms)
        async with _client_or_exit(config) as client:
            await executor.execute(
                lambda token: work(client),
                on_success=lambda value: outcome.setdefault("value", value),
                on_error=lambda error: outcome.setdefault("error", error),
            )

    asyncio.run(runner())
    error = outcome.get("error")
    if isinstance(error, SyncError):
        typer.echo(f"Error ({error.kind.value}): {error.message}", err=True)
        raise typer.Exit(1)
    if error is not None:
        raise error
    value = outcome.get("value")
    return value.value if isinstance(value, Result) else value


def _record_to_dict(record: Record) -> dict[str, Any]:
    return {
        "id": record.id,
        "entity": record.entity,
        "fields": record.fields,
        "ref": {"contentId": record.ref.content_id, "nodeUrl": record.ref.node_url},
    }


def _record_line(record: Record) -> str:
    title = record.get("title") or record.get("name") or record.get("topic") or ""
    ref = record.ref.content_id or "-"
    return f"{record.id}  {title}  [{ref}]"


def _check_entity(entity: str) -> None:
    if entity not in ENTITIES:
        known = ", ".join(sorted(ENTITIES))
        typer.echo(f"Error: Unknown entity {entity!r}. Known: {known}", err=True)
        raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command("list")
def list_records(
    entity: Annotated[str, typer.Argument(help="Entity type, e.g. activity")],
    page: Annotated[int, typer.Option("--page", "-p", help="Page number (1-based)")] = 1,
    limit: Annotated[Optional[int], typer.Option(
        "--limit", "-n", help="Records per page (default from config)"
    )] = None,
    search: Annotated[str, typer.Option("--search", "-s", help="Search text")] = "",
):
    """List one page of records."""
    _check_entity(entity)
    config = _get_config()

    page_data = _run(config, lambda client: RecordService(client).list(
        entity, page=page, limit=limit or config.sync.page_size, search=search,
    ))

    if _get_json_output():
        typer.echo(json.dumps({
            "total": page_data.total_count,
            "items": [_record_to_dict(r) for r in page_data.items],
        }, indent=2))
        return
    for record in page_data.items:
        typer.echo(_record_line(record))
    typer.echo(f"({len(page_data.items)} of {page_data.total_count})", err=True)


@app.command()
def content(
    entity: Annotated[str, typer.Argument(help="Entity type")],
    record_id: Annotated[str, typer.Argument(help="Record ID")],
):
    """Print the content blob a record points at."""
    _check_entity(entity)
    config = _get_config()

    async def read(client: NodeClient) -> Result:
        records = RecordService(client)
        found = await records.find(entity, record_id)
        if not found.ok or found.value is None:
            return found
        return await ContentLocator(client, records).read_content(found.value.ref)

    blob = _run(config, read)
    if blob is None:
        typer.echo(f"No content for {entity}/{record_id}", err=True)
        raise typer.Exit(1)
    typer.echo(json.dumps(blob, indent=2, ensure_ascii=False))


@app.command()
def upload(
    path: Annotated[Path, typer.Argument(
        help="File to upload", exists=True, dir_okay=False, readable=True,
    )],
    label: Annotated[Optional[str], typer.Option("--label", "-l", help="Display label")] = None,
):
    """Upload a file to the default node and print its reference."""
    config = _get_config()
    mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    data = path.read_bytes()

    ref = _run(config, lambda client: AttachmentManager(client).upload(
        path.name, mime_type, data, label=label,
    ))
    if _get_json_output():
        typer.echo(json.dumps(ref.to_wire(), indent=2))
    else:
        typer.echo(f"{ref.file_id}  {ref.node_url}")


@app.command("rm-file")
def rm_file(
    file_id: Annotated[str, typer.Argument(help="File ID on the node")],
    node: Annotated[str, typer.Option("--node", help="Node URL that stores the file")],
):
    """Delete a file's bytes on the node that stores them."""
    config = _get_config()
    attachment = AttachmentRef(label=file_id, file_id=file_id, node_url=node)

    if not _run(config, lambda client: AttachmentManager(client).remove(attachment)):
        typer.echo(f"Error: could not delete {file_id} on {node}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted {file_id}")


@app.command()
def replay(
    failed: Annotated[bool, typer.Option(
        "--failed", help="Requeue dead-lettered pointers before replaying"
    )] = False,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Max pointers to replay")] = 50,
):
    """Re-save record pointers whose save failed after a content write."""
    config = _get_config()
    with RefJournal(config.journal_path) as journal:
        if failed:
            requeued = journal.retry_failed()
            typer.echo(f"Requeued {requeued} failed pointer(s)", err=True)

        counts = _run(config, lambda client: RecordService(client).replay_journal(
            journal, limit=limit,
        ))
        stats = journal.stats()

    if _get_json_output():
        typer.echo(json.dumps({**counts, "journal": stats}, indent=2))
    else:
        typer.echo(f"Saved {counts['saved']}, failed {counts['failed']}")
        typer.echo(f"Pending {stats['pending']}, dead-lettered {stats['failed']}")
    if counts["failed"]:
        raise typer.Exit(1)


@app.command("config")
def show_config():
    """Show the effective configuration."""
    config = _get_config()
    data = {
        "path": str(config.config_path),
        "default_node": config.default_node,
        "journal": str(config.journal_path),
        "sync": {
            "timeout_ms": config.sync.timeout_ms,
            "request_timeout": config.sync.request_timeout,
            "ref_save_retries": config.sync.ref_save_retries,
            "retry_backoff": config.sync.retry_backoff,
            "page_size": config.sync.page_size,
        },
    }
    if _get_json_output():
        typer.echo(json.dumps(data, indent=2))
        return
    typer.echo(f"config:  {data['path']}")
    typer.echo(f"node:    {data['default_node'] or '(not set)'}")
    typer.echo(f"journal: {data['journal']}")
    for key, value in data["sync"].items():
        typer.echo(f"{key}: {value}")


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="vaultsync CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
