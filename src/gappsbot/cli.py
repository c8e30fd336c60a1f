"""Command-line interface for gappsbot."""

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager

import click
import yaml

from gappsbot import __version__
from gappsbot.config import Config
from gappsbot.logging import get_logger, setup_logging
from gappsbot.storage import NilValueError, NotFoundError, OpenError, Store, StorageError

log = get_logger("cli")


@click.group()
@click.option(
    "-c",
    "--config",
    "config_name",
    default="config",
    show_default=True,
    help="Config file name, looked up as NAME, NAME.yaml or NAME.yml in . and ./configs.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Set logging level (overrides config).",
)
@click.option(
    "--log-json/--no-log-json",
    default=None,
    help="Output logs as JSON or human-readable format (overrides config).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_name: str,
    log_level: str | None,
    log_json: bool | None,
) -> None:
    """gappsbot - long-polling Telegram bot with embedded key/value state."""
    ctx.ensure_object(dict)

    if not config_name:
        click.echo(ctx.get_help(), err=True)
        ctx.exit(1)

    # Load configuration; a missing file falls back to defaults here and is
    # only fatal for commands that need it
    config_path = Config.find(config_name)
    try:
        config = Config.load(config_path) if config_path else Config()
    except (ValueError, yaml.YAMLError) as e:
        click.echo(f"Error: unable to parse config: {e}", err=True)
        raise SystemExit(1)

    ctx.obj["config"] = config
    ctx.obj["config_name"] = config_name
    ctx.obj["config_path"] = config_path

    effective_log_level = log_level or config.log_level
    effective_log_json = log_json if log_json is not None else config.log_json
    setup_logging(json_output=effective_log_json, level=effective_log_level)


@cli.command()
def version() -> None:
    """Print version information."""
    click.echo(f"gappsbot {__version__}")


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Start the bot.

    Opens the database, authenticates with Telegram and long-polls for
    updates, replying to the configured commands.

    Use Ctrl+C or send SIGTERM for graceful shutdown.
    """
    from gappsbot.runtime import run_bot

    config = _require_config(ctx)

    if not config.telegram_token:
        click.echo("Error: telegram.token is not configured", err=True)
        click.echo("Set it in the config file or the TELEGRAM_TOKEN environment variable.", err=True)
        raise SystemExit(1)

    log.info("bot_starting", config=str(ctx.obj["config_path"]))

    try:
        asyncio.run(run_bot(config))
    except KeyboardInterrupt:
        # Signals are handled by the coordinator; this only covers a failure
        # to install the handlers
        log.info("shutdown_requested_keyboard")
    except Exception as e:
        log.error("bot_failed", error=str(e))
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    log.info("bot_stopped")


# =============================================================================
# Config Commands
# =============================================================================


@cli.group()
def config() -> None:
    """Configuration management commands."""
    pass


@config.command(name="check")
@click.pass_context
def config_check(ctx: click.Context) -> None:
    """Validate the configuration file."""
    cfg = _require_config(ctx)

    click.echo(f"Configuration valid: {ctx.obj['config_path']}")
    click.echo(f"  Database path: {cfg.db.path}")
    click.echo(f"  Database timeout: {cfg.db.timeout}s")
    click.echo(f"  Log level: {cfg.log_level}")
    click.echo(f"  Commands: {cfg.commands.start}, {cfg.commands.help}")
    click.echo(f"  Token: {'set' if cfg.telegram_token else 'not set'}")


@config.command(name="show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the effective configuration as YAML (token redacted)."""
    cfg: Config = ctx.obj["config"]
    data = cfg.model_dump(mode="json")
    if data["telegram"].get("token"):
        data["telegram"]["token"] = "***"
    click.echo(yaml.safe_dump(data, sort_keys=False).rstrip())


# =============================================================================
# Database Commands
# =============================================================================


@cli.group()
def db() -> None:
    """Key/value database commands."""
    pass


@db.command(name="keys")
@click.pass_context
def db_keys(ctx: click.Context) -> None:
    """List keys holding a value."""
    with _open_store(ctx) as store:
        for key in store.keys():
            click.echo(key)


@db.command(name="get")
@click.argument("key")
@click.pass_context
def db_get(ctx: click.Context, key: str) -> None:
    """Print the value stored under KEY."""
    with _open_store(ctx) as store:
        try:
            value = store.get(key)
        except NotFoundError:
            click.echo(f"Error: key not found: {key}", err=True)
            raise SystemExit(1)
        except NilValueError:
            click.echo(f"Error: key holds a nil value: {key}", err=True)
            raise SystemExit(1)
    click.echo(value)


@db.command(name="put")
@click.argument("key")
@click.argument("value", required=False)
@click.option("--nil", is_flag=True, help="Store a nil value instead of VALUE.")
@click.pass_context
def db_put(ctx: click.Context, key: str, value: str | None, nil: bool) -> None:
    """Store VALUE under KEY."""
    if nil == (value is not None):
        raise click.UsageError("Provide either VALUE or --nil.")

    with _open_store(ctx) as store:
        store.put(key, None if nil else value.encode())
    click.echo(f"Stored {key}")


@db.command(name="delete")
@click.argument("key")
@click.pass_context
def db_delete(ctx: click.Context, key: str) -> None:
    """Delete KEY (no error if it does not exist)."""
    with _open_store(ctx) as store:
        store.delete(key)
    click.echo(f"Deleted {key}")


@db.command(name="purge")
@click.confirmation_option(prompt="Drop the whole namespace and every key?")
@click.pass_context
def db_purge(ctx: click.Context) -> None:
    """Drop the namespace and every key in it.

    Storage stays unusable for the running process; the namespace is
    recreated the next time the database is opened.
    """
    with _open_store(ctx) as store:
        store.purge()
    click.echo("Namespace purged")


@db.command(name="init")
@click.pass_context
def db_init(ctx: click.Context) -> None:
    """Create the database file and namespace if they are missing."""
    with _open_store(ctx) as store:
        store.ensure_namespace()
    click.echo("Namespace ready")


# =============================================================================
# Helpers
# =============================================================================


def _require_config(ctx: click.Context) -> Config:
    """Return the loaded config, exiting if no config file was found."""
    if ctx.obj["config_path"] is None:
        click.echo(f"Error: configuration not found: {ctx.obj['config_name']}", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


@contextmanager
def _open_store(ctx: click.Context) -> Iterator[Store]:
    """Open the configured store for a single command and close it after."""
    cfg: Config = ctx.obj["config"]
    try:
        store = Store.open(cfg.db.path, cfg.db.timeout)
    except OpenError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    try:
        yield store
    except StorageError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        try:
            asyncio.run(store.close())
        except StorageError as e:
            log.warning("db_close_failed", error=str(e))
