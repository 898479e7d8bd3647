import subprocess

import pytest

from pgupgrader.errors import ResourceError, ValidationError
from pgupgrader.models import Credentials
from pgupgrader.services.database import DatabaseService, quote_ident


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class FakeDocker:
    def __init__(self, returncode=0, stdout="", stderr="", error=None):
        self.calls = []
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.error = error

    def exec(self, container, cmd, env=None, check=True, timeout=None):
        self.calls.append({"container": container, "cmd": cmd, "env": env, "check": check})
        if self.error is not None:
            raise self.error
        return subprocess.CompletedProcess(cmd, self.returncode, stdout=self.stdout, stderr=self.stderr)


def _service(docker, database="app"):
    return DatabaseService(
        logger=DummyLogger(),
        console=DummyConsole(),
        docker_runtime_service=docker,
        credentials=Credentials(user="admin", password="s3cret", database=database),
    )


def test_probe_uses_tcp_and_reports_exit_status():
    docker = FakeDocker(returncode=0)

    assert _service(docker).probe_ready("pg_old") is True
    assert docker.calls[0]["cmd"] == ["pg_isready", "-h", "127.0.0.1", "-U", "admin"]
    assert docker.calls[0]["check"] is False

    assert _service(FakeDocker(returncode=2)).probe_ready("pg_old") is False


def test_probe_is_false_when_exec_cannot_run():
    docker = FakeDocker(error=ResourceError("Error: No such container: pg_old"))

    assert _service(docker).probe_ready("pg_old") is False


def test_dump_all_targets_source_host_with_password_in_env():
    docker = FakeDocker()

    _service(docker).dump_all("pg_dump", "pg_old")

    call = docker.calls[0]
    assert call["container"] == "pg_dump"
    assert call["cmd"] == ["pg_dumpall", "-h", "pg_old", "-U", "admin", "-f", "/dump/db_dump.sql"]
    assert call["env"] == {"PGPASSWORD": "s3cret"}
    assert "s3cret" not in call["cmd"]


def test_dump_all_propagates_failures():
    docker = FakeDocker(error=ResourceError("pg_dumpall: error: connection refused"))

    with pytest.raises(ResourceError, match="connection refused"):
        _service(docker).dump_all("pg_dump", "pg_old")


def test_restore_all_runs_dump_against_maintenance_database():
    docker = FakeDocker(stderr='ERROR:  role "admin" already exists\n')

    _service(docker).restore_all("pg_new")

    assert docker.calls[0]["cmd"] == ["psql", "-U", "admin", "-d", "postgres", "-f", "/dump/db_dump.sql"]


@pytest.mark.parametrize(
    "scope, expected",
    [
        ("database", ["psql", "-U", "admin", "-d", "app", "-v", "ON_ERROR_STOP=1", "-c", 'REINDEX DATABASE "app";']),
        ("system", ["psql", "-U", "admin", "-d", "app", "-v", "ON_ERROR_STOP=1", "-c", 'REINDEX SYSTEM "app";']),
        ("instance", ["reindexdb", "-U", "admin", "--all"]),
    ],
)
def test_reindex_command_per_scope(scope, expected):
    assert _service(FakeDocker()).build_reindex_command(scope) == expected


def test_reindex_rejects_unknown_scope():
    with pytest.raises(ValidationError, match="Unknown reindex scope"):
        _service(FakeDocker()).build_reindex_command("table")


def test_reindex_quotes_database_name():
    command = _service(FakeDocker(), database='odd"name').build_reindex_command("database")

    assert command[-1] == 'REINDEX DATABASE "odd""name";'


def test_reindex_executes_in_new_container():
    docker = FakeDocker()

    _service(docker).reindex("pg_new", "instance")

    assert docker.calls[0]["container"] == "pg_new"
    assert docker.calls[0]["cmd"][0] == "reindexdb"


def test_count_rows_parses_tuples_only_output():
    docker = FakeDocker(stdout="3\n")

    assert _service(docker).count_rows("pg_new", "app", "users") == 3
    assert docker.calls[0]["cmd"][-1] == 'SELECT count(*) FROM "users";'


def test_read_data_dir_version(tmp_path):
    assert DatabaseService.read_data_dir_version(str(tmp_path)) is None

    (tmp_path / "PG_VERSION").write_text("13\n", encoding="utf-8")

    assert DatabaseService.read_data_dir_version(str(tmp_path)) == "13"


def test_quote_ident_doubles_quotes():
    assert quote_ident("orders") == '"orders"'
    assert quote_ident('a"b') == '"a""b"'
