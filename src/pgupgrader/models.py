"""Shared domain models for pgupgrader."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple


class Phase(str, Enum):
    INIT = "init"
    BACKUP = "backup"
    PROVISION_OLD = "provision_old"
    AWAIT_OLD_READY = "await_old_ready"
    PROVISION_DUMP = "provision_dump"
    DUMP = "dump"
    RETIRE_OLD = "retire_old"
    CLEAR_DATA = "clear_data"
    PROVISION_NEW = "provision_new"
    AWAIT_NEW_READY = "await_new_ready"
    RESTORE = "restore"
    REINDEX = "reindex"
    COMMIT = "commit"


PHASE_ORDER = tuple(Phase)

# A failure in any of these phases leaves something to roll back.
ROLLBACK_PHASES = PHASE_ORDER[PHASE_ORDER.index(Phase.PROVISION_OLD) : PHASE_ORDER.index(Phase.COMMIT)]


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    ABORTED = "aborted"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class ResourceKind(str, Enum):
    CONTAINER = "container"
    VOLUME = "volume"
    NETWORK = "network"


@dataclass
class ManagedResource:
    """A container, volume or network created during a run."""

    kind: ResourceKind
    name: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    alive: bool = True


@dataclass(frozen=True)
class Credentials:
    user: str
    password: str = field(repr=False)
    database: str


@dataclass(frozen=True)
class RunContext:
    """Resource names for one execution, produced by the resource namer."""

    run_id: str
    network_name: str
    old_container_name: str
    dump_container_name: str
    new_container_name: str
    dump_volume_name: str


@dataclass
class UpgradeRun:
    """The unit of work. Mutated only by the orchestrator."""

    data_dir: str
    source_version: str
    target_version: str
    context: RunContext
    staging_path: Optional[str] = None
    phase: Optional[Phase] = None
    completed_phases: List[Phase] = field(default_factory=list)
    resources: List[ManagedResource] = field(default_factory=list)
    outcome: Optional[Outcome] = None
    failed_phase: Optional[Phase] = None
    cause: Optional[str] = None
    rollback_attempted: bool = False

    @property
    def run_id(self) -> str:
        return self.context.run_id

    def register(self, resource: ManagedResource) -> ManagedResource:
        """Add ``resource`` to the registry, replacing an entry with the same name."""
        for index, existing in enumerate(self.resources):
            if existing.name == resource.name:
                self.resources[index] = resource
                return resource
        self.resources.append(resource)
        return resource

    def find(self, name: str) -> Optional[ManagedResource]:
        for resource in self.resources:
            if resource.name == name:
                return resource
        return None


@dataclass(frozen=True)
class UpgradeResult:
    """Terminal outcome of a run plus its structured cause."""

    outcome: Outcome
    run_id: str
    failed_phase: Optional[Phase] = None
    cause: Optional[str] = None
    staging_path: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCEEDED


@dataclass(frozen=True)
class ContainerSpec:
    """How to run a container. ``env`` values are handed over through the client environment."""

    image: str
    network: Optional[str] = None
    mounts: Tuple[Tuple[str, str], ...] = ()
    env: Dict[str, str] = field(default_factory=dict, repr=False)
    command: Tuple[str, ...] = ()
    labels: Dict[str, str] = field(default_factory=dict)
