import json

from pgupgrader.models import ManagedResource, ResourceKind
from pgupgrader.services.manifest import ManifestService


class DummyLogger:
    def warning(self, *_args, **_kwargs):
        return None


def test_manifest_service_writes_run_metadata(tmp_path):
    manifest_file = tmp_path / "run-manifest.json"
    service = ManifestService(str(manifest_file), logger=DummyLogger())

    service.start_run("run-123", {"data_dir": "/srv/pg", "target_version": "16"})
    service.set_staging_path("/tmp/pgupgrader-run-123")
    service.phase_started("backup")
    service.phase_finished("backup", "success")
    service.phase_started("provision_old")
    service.phase_finished("provision_old", "failed", error="image not found")
    service.set_rollback("succeeded")
    service.finalize("rolled_back", error="image not found")

    data = json.loads(manifest_file.read_text(encoding="utf-8"))

    assert data["run_id"] == "run-123"
    assert data["status"] == "rolled_back"
    assert data["staging_path"] == "/tmp/pgupgrader-run-123"
    assert [phase["name"] for phase in data["phases"]] == ["backup", "provision_old"]
    assert data["phases"][1]["error"] == "image not found"
    assert data["rollback"]["status"] == "succeeded"
    assert data["duration_seconds"] is not None


def test_manifest_service_updates_resource_entries_by_name(tmp_path):
    manifest_file = tmp_path / "run-manifest.json"
    service = ManifestService(str(manifest_file), logger=DummyLogger())
    resource = ManagedResource(kind=ResourceKind.CONTAINER, name="pgupgrader_abc_old_13")

    service.record_resource(resource)
    resource.alive = False
    service.record_resource(resource)

    data = json.loads(manifest_file.read_text(encoding="utf-8"))
    assert len(data["resources"]) == 1
    assert data["resources"][0]["kind"] == "container"
    assert data["resources"][0]["alive"] is False


def test_manifest_service_without_file_writes_nothing(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    service = ManifestService(None, logger=DummyLogger())

    service.start_run("run-123", {})
    service.finalize("succeeded")

    assert list(tmp_path.iterdir()) == []
