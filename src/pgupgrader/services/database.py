"""PostgreSQL calls made through ephemeral instances: probe, dump, import, reindex."""

import os
from pathlib import PurePosixPath
from typing import List, Optional

from pgupgrader.constants import CONTAINER_DUMP_DIR, DUMP_FILE_NAME
from pgupgrader.errors import ResourceError, ValidationError
from pgupgrader.models import Credentials


def quote_ident(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


class DatabaseService:
    """Owns every command line that talks to the database engine."""

    PROBE_TIMEOUT_SECONDS = 15.0
    DUMP_PATH = str(PurePosixPath(CONTAINER_DUMP_DIR, DUMP_FILE_NAME))
    MAINTENANCE_DB = "postgres"

    def __init__(self, logger, console, docker_runtime_service, credentials: Credentials):
        self.logger = logger
        self.console = console
        self.docker = docker_runtime_service
        self.credentials = credentials

    @property
    def _password_env(self):
        return {"PGPASSWORD": self.credentials.password}

    @staticmethod
    def read_data_dir_version(data_dir: str) -> Optional[str]:
        """Contents of ``PG_VERSION`` in ``data_dir``, or None when absent."""
        version_file = os.path.join(data_dir, "PG_VERSION")
        try:
            with open(version_file, "r", encoding="utf-8") as file_obj:
                return file_obj.read().strip() or None
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ValidationError(f"Could not read {version_file}: {exc}") from exc

    def probe_ready(self, container: str) -> bool:
        # TCP probe: the image's init-time server only listens on the unix socket.
        try:
            result = self.docker.exec(
                container,
                ["pg_isready", "-h", "127.0.0.1", "-U", self.credentials.user],
                check=False,
                timeout=self.PROBE_TIMEOUT_SECONDS,
            )
        except ResourceError as exc:
            self.logger.debug("Readiness probe for %s failed to run: %s", container, exc)
            return False
        return result.returncode == 0

    def dump_all(self, dump_container: str, source_host: str):
        """Export the whole source instance into the dump volume with the newer client."""
        self.console.print(f"[blue]Dumping all databases from {source_host}...[/blue]")
        self.logger.info("Creating logical dump at %s via %s", self.DUMP_PATH, dump_container)
        self.docker.exec(
            dump_container,
            ["pg_dumpall", "-h", source_host, "-U", self.credentials.user, "-f", self.DUMP_PATH],
            env=self._password_env,
        )
        self.console.print("[green]Dump complete.[/green]")

    def restore_all(self, container: str):
        self.console.print("[blue]Restoring dump into the new instance...[/blue]")
        self.logger.info("Restoring %s into %s", self.DUMP_PATH, container)
        result = self.docker.exec(
            container,
            ["psql", "-U", self.credentials.user, "-d", self.MAINTENANCE_DB, "-f", self.DUMP_PATH],
            env=self._password_env,
        )

        # The bootstrap role already exists in the new instance, so psql reports it and goes on.
        errors = [line for line in (result.stderr or "").splitlines() if "ERROR:" in line]
        if errors:
            self.logger.warning(
                "psql reported %s error(s) while restoring:\n%s", len(errors), "\n".join(errors[:20])
            )
        self.console.print("[green]Restore complete.[/green]")

    def build_reindex_command(self, scope: str) -> List[str]:
        user = self.credentials.user
        database = self.credentials.database
        if scope == "instance":
            return ["reindexdb", "-U", user, "--all"]

        if scope == "system":
            statement = f"REINDEX SYSTEM {quote_ident(database)};"
        elif scope == "database":
            statement = f"REINDEX DATABASE {quote_ident(database)};"
        else:
            raise ValidationError(f"Unknown reindex scope: {scope}")

        return ["psql", "-U", user, "-d", database, "-v", "ON_ERROR_STOP=1", "-c", statement]

    def reindex(self, container: str, scope: str):
        self.console.print(f"[blue]Reindexing ({scope})...[/blue]")
        self.docker.exec(container, self.build_reindex_command(scope), env=self._password_env)
        self.console.print("[green]Reindex complete.[/green]")

    def query(self, container: str, database: str, sql: str) -> List[str]:
        result = self.docker.exec(
            container,
            ["psql", "-U", self.credentials.user, "-d", database, "-t", "-A", "-v", "ON_ERROR_STOP=1", "-c", sql],
            env=self._password_env,
        )
        return [line for line in (result.stdout or "").splitlines() if line.strip()]

    def count_rows(self, container: str, database: str, table: str) -> int:
        rows = self.query(container, database, f"SELECT count(*) FROM {quote_ident(table)};")
        return int(rows[0]) if rows else 0
