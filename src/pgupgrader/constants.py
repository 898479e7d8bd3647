"""Shared constants for pgupgrader."""

DIR_MODE = 0o700

DEFAULT_IMAGE = "postgres"
CONTAINER_DATA_DIR = "/var/lib/postgresql/data"
CONTAINER_DUMP_DIR = "/dump"
DUMP_FILE_NAME = "db_dump.sql"

READY_RETRIES = 10
READY_INTERVAL_SECONDS = 3.0

REINDEX_SCOPES = ("database", "system", "instance")
DEFAULT_REINDEX_SCOPE = "database"

RESOURCE_PREFIX = "pgupgrader"

EXIT_SUCCEEDED = 0
EXIT_ABORTED = 1
EXIT_ROLLED_BACK = 2
EXIT_FAILED = 3
