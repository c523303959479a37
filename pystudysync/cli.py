"""CLI interface for Study Sync."""

import asyncio
import json as jsonlib
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click
from rich.progress import Progress, SpinnerColumn, TextColumn

from .api import StudySyncClient
from .auth import TokenAuth
from .config import config
from .exceptions import StudySyncAPIError, StudySyncConfigError
from .models import DataType, SyncOutcome, SyncResult
from .output import OutputFormatter
from .storage import JsonFileStore
from .sync import DataSyncManager, SyncEngine
from .utils import format_timestamp

logger = logging.getLogger(__name__)

T = TypeVar("T")

DATA_TYPE_CHOICE = click.Choice([t.value for t in DataType])


def run_async(client: StudySyncClient, operation: Callable[[], Awaitable[T]]) -> T:
    """Run an async operation and close the client afterwards."""

    async def runner() -> T:
        async with client:
            return await operation()

    return asyncio.run(runner())


def build_engine(ctx: Any) -> tuple[SyncEngine, StudySyncClient]:
    """Create the client and engine for a command from the global options.

    Exits with status 1 if no token is configured or the config is invalid.
    """
    out: OutputFormatter = ctx.obj["out"]
    token = ctx.obj.get("token") or config.access_token
    if not token:
        out.error("No access token configured. Run 'studysync init' first.")
        ctx.exit(1)

    try:
        settings = config.get_sync_settings()
    except StudySyncConfigError as e:
        out.error(str(e))
        ctx.exit(1)

    auth = TokenAuth(token)
    client = StudySyncClient(
        auth=auth,
        api_url=ctx.obj.get("api_url"),
        timeout=settings.request_timeout,
    )
    state_dir = ctx.obj.get("state_dir") or config.state_dir
    engine = SyncEngine(client, JsonFileStore(Path(state_dir)), auth, settings)
    return engine, client


def _result_row(result: SyncResult) -> dict[str, Any]:
    detail = result.reason or ""
    if result.error:
        detail = f"{result.error.kind.value}: {result.error.message}"
    return {
        "type": result.data_type.value,
        "outcome": result.outcome.value,
        "version": result.version,
        "strategy": result.strategy.value if result.strategy else None,
        "detail": detail,
    }


def _output_results(out: OutputFormatter, results: list[SyncResult]) -> None:
    if out.json_output:
        out.output_json([r.to_dict() for r in results])
        return
    out.output_table(
        [_result_row(r) for r in results],
        ["type", "outcome", "version", "strategy", "detail"],
        {
            "type": "Data type",
            "outcome": "Outcome",
            "version": "Version",
            "strategy": "Upload",
            "detail": "Detail",
        },
    )


def _has_failures(results: list[SyncResult]) -> bool:
    return any(
        r.outcome in (SyncOutcome.ERROR, SyncOutcome.PROTOCOL_MISMATCH)
        for r in results
    )


@click.group()
@click.option(
    "--api-url", envvar="STUDYSYNC_API_URL", help="Base URL of the sync API"
)
@click.option(
    "--token", "-t", envvar="STUDYSYNC_TOKEN", help="Bearer token for the sync API"
)
@click.option(
    "--state-dir",
    envvar="STUDYSYNC_STATE_DIR",
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory holding local sync state",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(package_name="pystudysync")
@click.pass_context
def main(
    ctx: Any,
    api_url: Optional[str],
    token: Optional[str],
    state_dir: Optional[Path],
    quiet: bool,
    json: bool,
    verbose: bool,
) -> None:
    """Study Sync - offline-first sync of study data."""
    ctx.ensure_object(dict)
    ctx.obj["api_url"] = api_url
    ctx.obj["token"] = token
    ctx.obj["state_dir"] = state_dir
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pystudysync").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


@main.command()
@click.option(
    "--token",
    "-t",
    prompt="Enter your access token",
    hide_input=True,
    help="Bearer token for the sync API",
)
@click.option("--api-url", help="Base URL of the sync API")
@click.pass_context
def init(ctx: Any, token: str, api_url: Optional[str]) -> None:
    """Initialize Study Sync configuration.

    Stores the token (and API URL) in ~/.config/pystudysync/config.json.
    """
    out: OutputFormatter = ctx.obj["out"]
    api_url = api_url or ctx.obj.get("api_url")

    out.info("Validating access token...")
    client = StudySyncClient(auth=TokenAuth(token), api_url=api_url)
    try:
        run_async(client, lambda: client.get_version(DataType.USER_SETTINGS))
        out.success("✓ Access token is valid")
    except StudySyncAPIError as e:
        out.error(f"Token validation failed: {e}")
        if not click.confirm("Save token anyway?", default=False):
            out.warning("Configuration cancelled.")
            ctx.exit(1)

    config.save_access_token(token)
    if api_url:
        config.save_api_url(api_url)

    out.print_summary(
        "Initialization Complete",
        [
            ("Status", "✓ Configuration saved successfully"),
            ("Config file", str(config.get_config_path())),
            ("API URL", api_url or config.api_url),
        ],
    )


@main.command()
@click.pass_context
def status(ctx: Any) -> None:
    """Show local version and pending changes per data type."""
    out: OutputFormatter = ctx.obj["out"]
    engine, _ = build_engine(ctx)

    rows = []
    for data_type in DataType:
        sync_status = engine.get_status(data_type)
        rows.append(
            {
                "type": data_type.value,
                "version": sync_status.version,
                "pending": len(engine.queue.pending_for(data_type)),
            }
        )

    if out.json_output:
        out.output_json(
            {
                "last_sync_time": engine.last_sync_time,
                "sync_enabled": engine.sync_enabled,
                "protocol_mismatch": engine.protocol.mismatch,
                "data_types": rows,
            }
        )
        return

    out.output_table(
        rows,
        ["type", "version", "pending"],
        {"type": "Data type", "version": "Version", "pending": "Pending"},
    )
    out.print_summary(
        "Sync Status",
        [
            ("Last sync", format_timestamp(engine.last_sync_time)),
            ("Sync enabled", "yes" if engine.sync_enabled else "no"),
            ("Queued changes", len(engine.queue)),
        ],
    )


@main.command()
@click.option("--clear", is_flag=True, help="Drop every queued change")
@click.pass_context
def queue(ctx: Any, clear: bool) -> None:
    """List (or clear) queued local changes."""
    out: OutputFormatter = ctx.obj["out"]
    engine, _ = build_engine(ctx)

    if clear:
        count = len(engine.queue)
        if count and not out.json_output:
            click.confirm(f"Drop {count} queued change(s)?", abort=True)
        engine.queue.clear()
        if out.json_output:
            out.output_json({"cleared": count})
        else:
            out.success(f"Cleared {count} queued change(s)")
        return

    entries = engine.queue.entries
    if out.json_output:
        out.output_json([e.to_dict() for e in entries])
        return

    out.output_table(
        [
            {
                "id": e.id,
                "type": e.data_type.value,
                "operation": e.operation.value,
                "record": e.record_id,
                "base_version": e.base_version,
                "queued": format_timestamp(e.timestamp),
            }
            for e in entries
        ],
        ["id", "type", "operation", "record", "base_version", "queued"],
        {
            "id": "ID",
            "type": "Data type",
            "operation": "Operation",
            "record": "Record",
            "base_version": "Base",
            "queued": "Queued at",
        },
    )


@main.command()
@click.argument("data_type", type=DATA_TYPE_CHOICE)
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--queue-only",
    is_flag=True,
    help="Save locally and queue the change instead of uploading now",
)
@click.pass_context
def push(ctx: Any, data_type: str, file: Path, queue_only: bool) -> None:
    """Upload the JSON snapshot in FILE as DATA_TYPE."""
    out: OutputFormatter = ctx.obj["out"]
    engine, client = build_engine(ctx)
    manager = DataSyncManager(engine)

    try:
        with open(file, encoding="utf-8") as f:
            data = jsonlib.load(f)
    except (OSError, ValueError) as e:
        out.error(f"Could not read {file}: {e}")
        ctx.exit(1)

    if queue_only:
        entry = manager.record_change(data_type, data)
        if out.json_output:
            out.output_json(entry.to_dict())
        else:
            out.success(f"Queued {data_type} change {entry.id}")
        return

    engine.local.save(DataType(data_type), data)
    result = run_async(client, lambda: manager.upload_data(data_type, data))
    _output_results(out, [result])
    if result.outcome == SyncOutcome.ERROR:
        ctx.exit(1)


@main.command()
@click.argument("data_type", type=DATA_TYPE_CHOICE)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write the resulting data to this file",
)
@click.pass_context
def pull(ctx: Any, data_type: str, output: Optional[Path]) -> None:
    """Download DATA_TYPE and merge it into local data."""
    out: OutputFormatter = ctx.obj["out"]
    engine, client = build_engine(ctx)
    manager = DataSyncManager(engine)

    result = run_async(client, lambda: manager.download_data(data_type))
    if not result.success:
        _output_results(out, [result])
        ctx.exit(1)

    if output is not None:
        with open(output, "w", encoding="utf-8") as f:
            jsonlib.dump(result.data, f, indent=2)
        out.success(f"Wrote {data_type} v{result.version} to {output}")
    elif out.json_output:
        out.output_json({**result.to_dict(), "data": result.data})
    else:
        out.print(jsonlib.dumps(result.data, indent=2))


@main.command()
@click.argument("data_types", nargs=-1, type=DATA_TYPE_CHOICE)
@click.pass_context
def sync(ctx: Any, data_types: tuple[str, ...]) -> None:
    """Run sync cycles for DATA_TYPES (all data types if none given)."""
    out: OutputFormatter = ctx.obj["out"]
    engine, client = build_engine(ctx)
    types = list(data_types) or None

    if out.interactive:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            transient=True,
        ) as progress:
            progress.add_task("Syncing...", total=None)
            results = run_async(client, lambda: engine.sync_all(types))
    else:
        results = run_async(client, lambda: engine.sync_all(types))

    _output_results(out, results)
    if _has_failures(results):
        ctx.exit(1)


@main.command()
@click.pass_context
def batch(ctx: Any) -> None:
    """Upload all queued changes in a single batch request."""
    out: OutputFormatter = ctx.obj["out"]
    engine, client = build_engine(ctx)
    manager = DataSyncManager(engine)

    results = run_async(client, manager.batch_sync)
    if not results:
        if out.json_output:
            out.output_json([])
        else:
            out.info("No queued changes.")
        return

    _output_results(out, results)
    if _has_failures(results):
        ctx.exit(1)


@main.command()
@click.pass_context
def check(ctx: Any) -> None:
    """Check that the server speaks a supported sync protocol."""
    out: OutputFormatter = ctx.obj["out"]
    engine, client = build_engine(ctx)

    result = run_async(
        client,
        lambda: engine.protocol.check_protocol(client, DataType.USER_SETTINGS),
    )
    if out.json_output:
        out.output_json(
            {
                "compatible": result.compatible,
                "server_version": result.server_version,
                "min_supported": engine.protocol.state.min_supported,
            }
        )
    elif result.compatible:
        version = (
            f"v{result.server_version}" if result.server_version else "not reported"
        )
        out.success(f"✓ Server protocol compatible ({version})")
    else:
        out.error(
            f"Server protocol v{result.server_version} is below the supported "
            f"minimum v{engine.protocol.state.min_supported}"
        )

    if not result.compatible:
        ctx.exit(1)


if __name__ == "__main__":
    main()
