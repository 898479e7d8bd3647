import logging
import os

import click
from rich.logging import RichHandler

from .constants import (
    DEFAULT_IMAGE,
    DEFAULT_REINDEX_SCOPE,
    EXIT_ABORTED,
    EXIT_FAILED,
    EXIT_ROLLED_BACK,
    EXIT_SUCCEEDED,
    READY_INTERVAL_SECONDS,
    READY_RETRIES,
    REINDEX_SCOPES,
)
from .core import PostgresUpgrader, UpgraderError
from .models import Outcome, UpgradeResult
from .services.config_loader import ConfigLoader

EXIT_CODES = {
    Outcome.SUCCEEDED: EXIT_SUCCEEDED,
    Outcome.ABORTED: EXIT_ABORTED,
    Outcome.ROLLED_BACK: EXIT_ROLLED_BACK,
    Outcome.FAILED: EXIT_FAILED,
}


DEFAULT_CONFIG_FILE = ".pgupgrader.yml"
DEFAULT_ENV_FILE = ".env"

# Used when neither the command line, the environment, the env file nor the config file set a value.
OPTION_DEFAULTS = {
    "image": DEFAULT_IMAGE,
    "reindex_scope": DEFAULT_REINDEX_SCOPE,
    "atomic_restore": False,
    "verbose": False,
    "dry_run": False,
    "ready_retries": READY_RETRIES,
    "ready_interval": READY_INTERVAL_SECONDS,
}


def exit_code_for(result: UpgradeResult) -> int:
    return EXIT_CODES.get(result.outcome, EXIT_FAILED)


def _as_text(value):
    return None if value is None else str(value)


def _default_file(name):
    path = os.path.join(os.getcwd(), name)
    return path if os.path.exists(path) else None


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%Y-%m-%d %H:%M:%S]",
    handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
)


@click.command()
@click.option("--data-dir", required=False, help="PostgreSQL data directory to upgrade in place.")
@click.option("--from-version", required=False, help="PostgreSQL version currently owning the data directory.")
@click.option("--to-version", required=False, help="PostgreSQL version to upgrade to.")
@click.option("--user", envvar="POSTGRES_USER", required=False, help="Database superuser [env: POSTGRES_USER].")
@click.option(
    "--password",
    envvar="POSTGRES_PASSWORD",
    required=False,
    help="Password of the superuser [env: POSTGRES_PASSWORD].",
)
@click.option("--database", envvar="POSTGRES_DB", required=False, help="Database name [env: POSTGRES_DB].")
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help="Path to a YAML configuration file. Defaults to .pgupgrader.yml if present.",
)
@click.option("--image", required=False, help=f"Image repository for all instances (default: {DEFAULT_IMAGE}).")
@click.option(
    "--staging-dir",
    required=False,
    type=click.Path(file_okay=False),
    help="Parent directory for the backup copy (default: system temp directory).",
)
@click.option(
    "--reindex-scope",
    required=False,
    type=click.Choice(REINDEX_SCOPES),
    help=f"What to reindex after the restore (default: {DEFAULT_REINDEX_SCOPE}).",
)
@click.option(
    "--atomic-restore",
    is_flag=True,
    default=None,
    help="On rollback, rebuild the data directory beside it and swap it in with a rename.",
)
@click.option(
    "--manifest-file",
    required=False,
    type=click.Path(dir_okay=False),
    help="Where to write the JSON run manifest.",
)
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option(
    "--dry-run",
    is_flag=True,
    default=None,
    help="Validate inputs and print the upgrade plan without touching Docker or the data directory.",
)
@click.option(
    "--ready-retries",
    required=False,
    type=click.IntRange(min=1),
    default=None,
    help=f"Readiness probes before giving up (default: {READY_RETRIES}).",
)
@click.option(
    "--ready-interval",
    required=False,
    type=click.FloatRange(min=0),
    default=None,
    help=f"Seconds between readiness probes (default: {READY_INTERVAL_SECONDS:g}).",
)
@click.option(
    "--env-file",
    required=False,
    type=click.Path(dir_okay=False),
    help="File with POSTGRES_USER/PASSWORD/DB lines. Defaults to .env if present.",
)
def main(config, env_file, **cli_values):
    """Upgrade a PostgreSQL data directory to a new major version using Docker."""
    logger = logging.getLogger("pgupgrader")

    config_loader = ConfigLoader()
    try:
        config = config or _default_file(DEFAULT_CONFIG_FILE)
        env_file = env_file or _default_file(DEFAULT_ENV_FILE)
        # Precedence: command line and environment, then .env, then the config file.
        file_values = config_loader.load(config)
        file_values.update(config_loader.load_env_file(env_file))
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc

    options = {
        key: _resolve_option(value, file_values, key, OPTION_DEFAULTS.get(key))
        for key, value in cli_values.items()
    }

    data_dir = options["data_dir"]
    if data_dir:
        data_dir = os.path.abspath(data_dir)
    verbose = bool(options["verbose"])

    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if options["log_file"]:
        file_handler = logging.FileHandler(options["log_file"])
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    upgrader = PostgresUpgrader(
        data_dir=data_dir,
        source_version=_as_text(options["from_version"]),
        target_version=_as_text(options["to_version"]),
        user=options["user"],
        password=options["password"],
        database=options["database"],
        image=options["image"],
        staging_dir=options["staging_dir"],
        reindex_scope=options["reindex_scope"],
        atomic_restore=bool(options["atomic_restore"]),
        manifest_file=options["manifest_file"],
        ready_retries=int(options["ready_retries"]),
        ready_interval=float(options["ready_interval"]),
        dry_run=bool(options["dry_run"]),
    )

    raise SystemExit(exit_code_for(upgrader.run()))


if __name__ == "__main__":
    main()
