import hashlib
import os

import pytest

from pgupgrader.errors import TransferError
from pgupgrader.services.backup import BackupService
from pgupgrader.services.filesystem import FileSystemService


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


def _service(staging_root=None):
    logger = DummyLogger()
    console = DummyConsole()
    return BackupService(
        logger=logger,
        console=console,
        filesystem_service=FileSystemService(logger=logger, console=console),
        staging_root=staging_root,
    )


def _tree_digest(root):
    entries = {}
    for current_root, dirs, files in os.walk(root):
        for name in sorted(dirs):
            path = os.path.join(current_root, name)
            entries[os.path.relpath(path, root)] = ("dir", os.stat(path).st_mode & 0o7777)
        for name in sorted(files):
            path = os.path.join(current_root, name)
            with open(path, "rb") as file_obj:
                digest = hashlib.sha256(file_obj.read()).hexdigest()
            entries[os.path.relpath(path, root)] = ("file", os.stat(path).st_mode & 0o7777, digest)
    return entries


@pytest.fixture
def data_dir(tmp_path):
    root = tmp_path / "pgdata"
    (root / "base" / "16384").mkdir(parents=True)
    (root / "base" / "16384" / "2619").write_bytes(os.urandom(4096))
    (root / "global").mkdir()
    (root / "global" / "pg_control").write_bytes(b"control" * 16)
    (root / "PG_VERSION").write_text("13\n", encoding="utf-8")
    os.chmod(root, 0o700)
    return root


def test_create_staging_is_private_and_under_root(tmp_path):
    staging = _service(staging_root=str(tmp_path / "stage")).create_staging("abc123")

    assert os.path.dirname(staging) == str(tmp_path / "stage")
    assert os.path.basename(staging).startswith("pgupgrader-abc123-")
    assert os.stat(staging).st_mode & 0o777 == 0o700


def test_snapshot_is_byte_identical(tmp_path, data_dir):
    service = _service(staging_root=str(tmp_path / "stage"))

    staging = service.snapshot(str(data_dir), run_id="abc123")

    assert _tree_digest(staging) == _tree_digest(str(data_dir))


def test_snapshot_rejects_non_empty_staging(tmp_path, data_dir):
    staging = tmp_path / "busy"
    staging.mkdir()
    (staging / "leftover").write_text("x", encoding="utf-8")

    with pytest.raises(TransferError, match="must be an empty directory"):
        _service().snapshot(str(data_dir), staging_path=str(staging))


def test_snapshot_wraps_copy_errors(tmp_path):
    staging = tmp_path / "stage"
    staging.mkdir()

    with pytest.raises(TransferError, match="Failed to back up"):
        _service().snapshot(str(tmp_path / "missing"), staging_path=str(staging))


@pytest.mark.parametrize("atomic", [False, True])
def test_restore_returns_directory_to_snapshot(tmp_path, data_dir, atomic):
    service = _service(staging_root=str(tmp_path / "stage"))
    before = _tree_digest(str(data_dir))
    staging = service.snapshot(str(data_dir), run_id="abc123")

    (data_dir / "PG_VERSION").write_text("16\n", encoding="utf-8")
    (data_dir / "base" / "16384" / "2619").unlink()
    (data_dir / "new_cluster_file").write_text("junk", encoding="utf-8")

    service.restore(staging, str(data_dir), atomic=atomic)

    assert _tree_digest(str(data_dir)) == before
    assert _tree_digest(staging) == before


def test_atomic_restore_leaves_no_siblings(tmp_path, data_dir):
    service = _service(staging_root=str(tmp_path / "stage"))
    staging = service.snapshot(str(data_dir), run_id="abc123")

    service.restore(staging, str(data_dir), atomic=True)

    assert sorted(os.listdir(tmp_path)) == ["pgdata", "stage"]


def test_restore_requires_staging(tmp_path, data_dir):
    with pytest.raises(TransferError, match="Staging path is missing"):
        _service().restore(str(tmp_path / "gone"), str(data_dir))

    assert (data_dir / "PG_VERSION").exists()


def test_reclaim_removes_staging(tmp_path, data_dir):
    service = _service(staging_root=str(tmp_path / "stage"))
    staging = service.snapshot(str(data_dir), run_id="abc123")

    service.reclaim(staging)
    service.reclaim(None)

    assert not os.path.exists(staging)
