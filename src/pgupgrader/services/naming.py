"""Deterministic, collision-resistant names for ephemeral resources."""

import re
import uuid
from typing import Optional

from pgupgrader.constants import RESOURCE_PREFIX
from pgupgrader.errors import ValidationError
from pgupgrader.errors_catalog import actionable_error
from pgupgrader.models import RunContext

# Docker image tag grammar.
_TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


class ResourceNamer:
    """Derives every resource name of a run from (source, target, nonce)."""

    def __init__(self, prefix: str = RESOURCE_PREFIX):
        self.prefix = prefix

    @staticmethod
    def new_run_id() -> str:
        return uuid.uuid4().hex[:10]

    @staticmethod
    def validate_version(value: Optional[str], label: str) -> str:
        clean_value = (value or "").strip()
        if not _TAG_PATTERN.match(clean_value):
            raise ValidationError(actionable_error("invalid_version", value=clean_value, label=label))
        return clean_value

    @staticmethod
    def _slug(version: str) -> str:
        return re.sub(r"[^a-z0-9]+", "-", version.lower()).strip("-")

    def build(self, source_version: str, target_version: str, run_id: Optional[str] = None) -> RunContext:
        source = self._slug(self.validate_version(source_version, "the source version"))
        target = self._slug(self.validate_version(target_version, "the target version"))
        run_id = run_id or self.new_run_id()
        base = f"{self.prefix}_{run_id}"
        return RunContext(
            run_id=run_id,
            network_name=f"{base}_net",
            old_container_name=f"{base}_old_{source}",
            dump_container_name=f"{base}_dump_{target}",
            new_container_name=f"{base}_new_{target}",
            dump_volume_name=f"{base}_dumpvol",
        )

    def owns(self, name: str, run_id: Optional[str] = None) -> bool:
        """True when ``name`` was produced by this namer (for ``run_id`` if given)."""
        marker = f"{self.prefix}_{run_id}_" if run_id else f"{self.prefix}_"
        return name.startswith(marker)
