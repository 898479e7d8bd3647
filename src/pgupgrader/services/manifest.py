"""Run manifest: a JSON record of one upgrade run, rewritten after every change."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pgupgrader.models import ManagedResource


class ManifestService:
    """Tracks the phase timeline, the resources and the outcome of a run.

    With no ``manifest_file`` the record is kept in memory only.
    """

    def __init__(self, manifest_file: Optional[str], logger):
        self.manifest_file = manifest_file
        self.logger = logger
        self.manifest: Dict[str, Any] = {
            "run_id": None,
            "status": "pending",
            "started_at": None,
            "finished_at": None,
            "duration_seconds": None,
            "metadata": {},
            "staging_path": None,
            "phases": [],
            "resources": [],
            "rollback": None,
            "error": None,
        }

    def start_run(self, run_id: str, metadata: Dict[str, Any]):
        self.manifest.update(run_id=run_id, status="running", started_at=self._now(), metadata=metadata)
        self.write()

    def set_staging_path(self, staging_path: Optional[str]):
        self.manifest["staging_path"] = staging_path
        self.write()

    def phase_started(self, phase_name: str):
        self.manifest["phases"].append(
            {"name": phase_name, "status": "running", "started_at": self._now(), "error": None}
        )
        self.write()

    def phase_finished(self, phase_name: str, status: str, error: Optional[str] = None):
        open_phases = [
            entry for entry in self.manifest["phases"] if entry["name"] == phase_name and entry["status"] == "running"
        ]
        if not open_phases:
            self.logger.warning("Manifest has no running phase named %s", phase_name)
            return

        entry = open_phases[-1]
        entry.update(status=status, error=error)
        self._close(entry)
        self.write()

    def record_resource(self, resource: ManagedResource):
        """Insert or refresh the entry for ``resource`` (matched by name)."""
        entry = {
            "kind": resource.kind.value,
            "name": resource.name,
            "created_at": resource.created_at.isoformat(),
            "alive": resource.alive,
        }
        resources = self.manifest["resources"]
        positions = [index for index, existing in enumerate(resources) if existing["name"] == resource.name]
        if positions:
            resources[positions[0]] = entry
        else:
            resources.append(entry)
        self.write()

    def set_rollback(self, status: str, error: Optional[str] = None):
        self.manifest["rollback"] = {"status": status, "at": self._now(), "error": error}
        self.write()

    def finalize(self, status: str, error: Optional[str] = None):
        self.manifest.update(status=status, error=error)
        self._close(self.manifest)
        self.write()

    def write(self):
        if not self.manifest_file:
            return

        directory = os.path.dirname(os.path.abspath(self.manifest_file))
        temp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            # Same directory as the target so os.replace never crosses filesystems.
            fd, temp_path = tempfile.mkstemp(prefix=".pgupgrader-manifest-", suffix=".json", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(self.manifest, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.manifest_file)
        except OSError as exc:
            self.logger.warning("Could not write manifest file '%s': %s", self.manifest_file, exc)
            if temp_path and os.path.exists(temp_path):
                os.remove(temp_path)

    @classmethod
    def _close(cls, entry: Dict[str, Any]):
        entry["finished_at"] = cls._now()
        if entry.get("started_at"):
            elapsed = datetime.fromisoformat(entry["finished_at"]) - datetime.fromisoformat(entry["started_at"])
            entry["duration_seconds"] = elapsed.total_seconds()

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
