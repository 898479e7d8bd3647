import logging
import os
import re
import signal
import threading
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Tuple

from packaging import version
from rich.console import Console

from .constants import (
    CONTAINER_DATA_DIR,
    CONTAINER_DUMP_DIR,
    DEFAULT_IMAGE,
    DEFAULT_REINDEX_SCOPE,
    READY_INTERVAL_SECONDS,
    READY_RETRIES,
    REINDEX_SCOPES,
    RESOURCE_PREFIX,
)
from .errors import (
    NotReadyError,
    RollbackFailure,
    TransferError,
    UpgradeInterrupted,
    UpgraderError,
    ValidationError,
)
from .errors_catalog import actionable_error
from .models import (
    PHASE_ORDER,
    ContainerSpec,
    Credentials,
    ManagedResource,
    Outcome,
    Phase,
    ResourceKind,
    UpgradeResult,
    UpgradeRun,
)
from .services.backup import BackupService
from .services.command_runner import CommandRunner
from .services.database import DatabaseService
from .services.docker_runtime import DockerRuntimeService
from .services.filesystem import FileSystemService
from .services.lock import DataDirLock
from .services.manifest import ManifestService
from .services.naming import ResourceNamer
from .services.readiness import ReadinessPoller

console = Console()
logger = logging.getLogger("pgupgrader")

# Removal order during cleanup: containers release volumes and networks.
_CLEANUP_ORDER = {ResourceKind.CONTAINER: 0, ResourceKind.VOLUME: 1, ResourceKind.NETWORK: 2}


class PostgresUpgrader:
    """Sequences the in-place major-version upgrade of one data directory.

    The upgrader is the only owner of run state. Each phase runs at most once
    and in order. A failure after the backup rolls the data directory back
    from staging. Every terminal state ends with resource cleanup.
    """

    VALID_REINDEX_SCOPES = REINDEX_SCOPES

    def __init__(
        self,
        data_dir: Optional[str],
        source_version: Optional[str],
        target_version: Optional[str],
        user: Optional[str],
        password: Optional[str],
        database: Optional[str],
        image: str = DEFAULT_IMAGE,
        staging_dir: Optional[str] = None,
        reindex_scope: str = DEFAULT_REINDEX_SCOPE,
        atomic_restore: bool = False,
        manifest_file: Optional[str] = None,
        ready_retries: int = READY_RETRIES,
        ready_interval: float = READY_INTERVAL_SECONDS,
        dry_run: bool = False,
        lock_dir: Optional[str] = None,
    ):
        self.data_dir = data_dir
        self.source_version = source_version
        self.target_version = target_version
        self.credentials = Credentials(user=user or "", password=password or "", database=database or "")
        self.image = image
        self.reindex_scope = reindex_scope
        self.atomic_restore = atomic_restore
        self.ready_retries = ready_retries
        self.ready_interval = ready_interval
        self.dry_run = dry_run
        self.lock_dir = lock_dir

        self.namer = ResourceNamer()
        self.run_id = self.namer.new_run_id()
        self.upgrade_run: Optional[UpgradeRun] = None
        self.lock: Optional[DataDirLock] = None

        self.current_phase: Optional[Phase] = None
        self.failed_phase: Optional[Phase] = None
        self.attempted_phases: List[Phase] = []
        self.outcome: Optional[Outcome] = None
        self.cause: Optional[str] = None
        self._interrupts_deferred = False

        self.manifest_service = ManifestService(manifest_file=manifest_file, logger=logger)
        self.filesystem_service = FileSystemService(logger=logger, console=console)
        self.backup_service = BackupService(
            logger=logger,
            console=console,
            filesystem_service=self.filesystem_service,
            staging_root=staging_dir,
        )
        self.command_runner = CommandRunner(logger=logger)
        self.docker_runtime_service = DockerRuntimeService(
            logger=logger,
            console=console,
            command_runner=self.command_runner,
        )
        self.database_service = DatabaseService(
            logger=logger,
            console=console,
            docker_runtime_service=self.docker_runtime_service,
            credentials=self.credentials,
        )
        self.readiness_poller = ReadinessPoller(
            logger=logger,
            console=console,
            probe=lambda container: self.database_service.probe_ready(container),
            max_retries=max(1, int(ready_retries)),
            interval_seconds=float(ready_interval),
        )

    @staticmethod
    def _major_of(version_str: str) -> Optional[Tuple[int, ...]]:
        match = re.match(r"^\d+(\.\d+)*", version_str.strip())
        if not match:
            return None
        try:
            parsed = version.parse(match.group(0))
        except version.InvalidVersion:
            return None
        release = parsed.release
        # Before 10, a PostgreSQL major version has two components (9.6).
        return release[:1] if release[0] >= 10 else release[:2]

    def validate_inputs(self):
        required = (
            ("data directory", "data-dir", None, self.data_dir),
            ("source version", "from-version", None, self.source_version),
            ("target version", "to-version", None, self.target_version),
            ("database user", "user", "POSTGRES_USER", self.credentials.user),
            ("database password", "password", "POSTGRES_PASSWORD", self.credentials.password),
            ("database name", "database", "POSTGRES_DB", self.credentials.database),
        )
        for name, option, envvar, value in required:
            if value is None or not str(value).strip():
                raise ValidationError(
                    actionable_error(
                        "missing_input",
                        name=name,
                        option=option,
                        envvar=envvar or option.upper().replace("-", "_"),
                    )
                )

        if not os.path.isabs(self.data_dir):
            raise ValidationError(f"Data directory must be an absolute path: {self.data_dir}")
        if not os.path.isdir(self.data_dir):
            raise ValidationError(actionable_error("data_dir_not_found", path=self.data_dir))
        if not os.access(self.data_dir, os.W_OK | os.X_OK):
            raise ValidationError(actionable_error("data_dir_not_writable", path=self.data_dir))

        self.source_version = ResourceNamer.validate_version(self.source_version, "the source version")
        self.target_version = ResourceNamer.validate_version(self.target_version, "the target version")

        if self.reindex_scope not in self.VALID_REINDEX_SCOPES:
            raise ValidationError(
                f"Invalid reindex scope '{self.reindex_scope}'. "
                f"Supported scopes: {', '.join(self.VALID_REINDEX_SCOPES)}"
            )

        source_major = self._major_of(self.source_version)
        target_major = self._major_of(self.target_version)
        if source_major and target_major and target_major <= source_major:
            raise ValidationError(
                f"Target version {self.target_version} must be a newer major version "
                f"than source version {self.source_version}."
            )

        on_disk = self.database_service.read_data_dir_version(self.data_dir)
        if on_disk is None:
            logger.warning("%s has no PG_VERSION file; is it a PostgreSQL data directory?", self.data_dir)
        elif source_major and self._major_of(on_disk) != source_major:
            raise ValidationError(
                f"Data directory holds PostgreSQL {on_disk}, "
                f"but the source version is {self.source_version}."
            )

        if hasattr(os, "geteuid") and os.geteuid() != 0:
            logger.warning("Not running as root; file ownership in the backup may not be preserved.")

    def _labels(self) -> Dict[str, str]:
        return {f"{RESOURCE_PREFIX}.run": self.run_id}

    def _run_phase(self, phase: Phase, callback: Callable[[], None]):
        expected = PHASE_ORDER[len(self.attempted_phases)]
        if phase is not expected:
            raise UpgraderError(f"Phase '{phase.value}' requested out of order; expected '{expected.value}'.")

        self.attempted_phases.append(phase)
        self.current_phase = phase
        if self.upgrade_run:
            self.upgrade_run.phase = phase
        logger.info("Phase %s started", phase.value)
        self.manifest_service.phase_started(phase.value)

        try:
            callback()
        except (Exception, KeyboardInterrupt) as exc:
            self.failed_phase = phase
            if self.upgrade_run:
                self.upgrade_run.failed_phase = phase
            self.manifest_service.phase_finished(phase.value, "failed", error=str(exc))
            raise

        if self.upgrade_run:
            self.upgrade_run.completed_phases.append(phase)
        self.manifest_service.phase_finished(phase.value, "success")
        logger.info("Phase %s completed", phase.value)

    def _provision(
        self, kind: ResourceKind, name: str, spec: Optional[ContainerSpec] = None
    ) -> ManagedResource:
        # Registered before creation: a half-created resource must still be cleaned up.
        self.upgrade_run.register(ManagedResource(kind=kind, name=name, alive=False))
        resource = self.docker_runtime_service.create(kind, name, spec=spec, labels=self._labels())
        self.upgrade_run.register(resource)
        self.manifest_service.record_resource(resource)
        return resource

    def _retire(self, name: str):
        resource = self.upgrade_run.find(name)
        if resource is None:
            return
        if resource.kind is ResourceKind.CONTAINER:
            self.docker_runtime_service.stop(resource)
        self.docker_runtime_service.remove(resource)
        self.manifest_service.record_resource(resource)

    def _postgres_env(self, include_database: bool = True) -> Dict[str, str]:
        env = {
            "POSTGRES_USER": self.credentials.user,
            "POSTGRES_PASSWORD": self.credentials.password,
        }
        if include_database:
            env["POSTGRES_DB"] = self.credentials.database
        return env

    def _init_phase(self):
        self.validate_inputs()
        context = self.namer.build(self.source_version, self.target_version, run_id=self.run_id)
        self.upgrade_run = UpgradeRun(
            data_dir=self.data_dir,
            source_version=self.source_version,
            target_version=self.target_version,
            context=context,
            phase=Phase.INIT,
        )
        self.manifest_service.start_run(run_id=self.run_id, metadata=self._manifest_metadata())

        if self.dry_run:
            return

        self.lock = DataDirLock(self.data_dir, logger=logger, lock_dir=self.lock_dir)
        self.lock.acquire()
        self.docker_runtime_service.validate_environment()
        self.upgrade_run.staging_path = self.backup_service.create_staging(self.run_id)
        self.manifest_service.set_staging_path(self.upgrade_run.staging_path)

    def _backup_phase(self):
        self.backup_service.snapshot(self.upgrade_run.data_dir, self.upgrade_run.staging_path)

    def _provision_old_phase(self):
        context = self.upgrade_run.context
        self._provision(ResourceKind.NETWORK, context.network_name)
        self._provision(
            ResourceKind.CONTAINER,
            context.old_container_name,
            ContainerSpec(
                image=f"{self.image}:{self.upgrade_run.source_version}",
                network=context.network_name,
                mounts=((self.upgrade_run.data_dir, CONTAINER_DATA_DIR),),
                env=self._postgres_env(),
                labels=self._labels(),
            ),
        )

    def _await_ready(self, container_name: str):
        try:
            self.readiness_poller.wait(container_name)
        except NotReadyError:
            container_logs = self.docker_runtime_service.logs(container_name)
            if container_logs:
                logger.error("Last log lines of %s:\n%s", container_name, container_logs)
            raise

    def _await_old_ready_phase(self):
        self._await_ready(self.upgrade_run.context.old_container_name)

    def _provision_dump_phase(self):
        context = self.upgrade_run.context
        self._provision(ResourceKind.VOLUME, context.dump_volume_name)
        self._provision(
            ResourceKind.CONTAINER,
            context.dump_container_name,
            ContainerSpec(
                image=f"{self.image}:{self.upgrade_run.target_version}",
                network=context.network_name,
                mounts=((context.dump_volume_name, CONTAINER_DUMP_DIR),),
                env={"POSTGRES_PASSWORD": self.credentials.password},
                command=("tail", "-f", "/dev/null"),
                labels=self._labels(),
            ),
        )

    def _dump_phase(self):
        context = self.upgrade_run.context
        self.database_service.dump_all(context.dump_container_name, source_host=context.old_container_name)

    def _retire_old_phase(self):
        self._retire(self.upgrade_run.context.old_container_name)

    def _clear_data_phase(self):
        console.print(f"[yellow]Clearing {self.upgrade_run.data_dir}...[/yellow]")
        try:
            self.filesystem_service.clear_contents(self.upgrade_run.data_dir)
        except OSError as exc:
            raise TransferError(f"Failed to clear {self.upgrade_run.data_dir}: {exc}") from exc

    def _provision_new_phase(self):
        context = self.upgrade_run.context
        self._provision(
            ResourceKind.CONTAINER,
            context.new_container_name,
            ContainerSpec(
                image=f"{self.image}:{self.upgrade_run.target_version}",
                network=context.network_name,
                mounts=(
                    (self.upgrade_run.data_dir, CONTAINER_DATA_DIR),
                    (context.dump_volume_name, CONTAINER_DUMP_DIR),
                ),
                # No POSTGRES_DB: the dump recreates the databases itself.
                env=self._postgres_env(include_database=False),
                labels=self._labels(),
            ),
        )

    def _await_new_ready_phase(self):
        self._await_ready(self.upgrade_run.context.new_container_name)

    def _restore_phase(self):
        self.database_service.restore_all(self.upgrade_run.context.new_container_name)

    def _reindex_phase(self):
        self.database_service.reindex(self.upgrade_run.context.new_container_name, self.reindex_scope)

    def _commit_phase(self):
        self.outcome = Outcome.SUCCEEDED
        self.upgrade_run.outcome = Outcome.SUCCEEDED
        self._interrupts_deferred = True
        console.print(
            f"[bold green]Upgrade of {self.upgrade_run.data_dir} from {self.upgrade_run.source_version} "
            f"to {self.upgrade_run.target_version} complete.[/bold green]"
        )

    def _pipeline(self) -> List[Tuple[Phase, Callable[[], None]]]:
        return [
            (Phase.BACKUP, self._backup_phase),
            (Phase.PROVISION_OLD, self._provision_old_phase),
            (Phase.AWAIT_OLD_READY, self._await_old_ready_phase),
            (Phase.PROVISION_DUMP, self._provision_dump_phase),
            (Phase.DUMP, self._dump_phase),
            (Phase.RETIRE_OLD, self._retire_old_phase),
            (Phase.CLEAR_DATA, self._clear_data_phase),
            (Phase.PROVISION_NEW, self._provision_new_phase),
            (Phase.AWAIT_NEW_READY, self._await_new_ready_phase),
            (Phase.RESTORE, self._restore_phase),
            (Phase.REINDEX, self._reindex_phase),
            (Phase.COMMIT, self._commit_phase),
        ]

    def print_plan(self):
        context = self.upgrade_run.context
        console.print(f"[bold blue]Upgrade plan for {self.upgrade_run.data_dir}[/bold blue]")
        console.print(f"  {self.upgrade_run.source_version} -> {self.upgrade_run.target_version} (run {self.run_id})")
        for index, phase in enumerate(PHASE_ORDER, start=1):
            console.print(f"  {index:2d}. {phase.value}")
        console.print("[bold blue]Resources[/bold blue]")
        console.print(f"  network   {context.network_name}")
        console.print(f"  container {context.old_container_name} ({self.image}:{self.upgrade_run.source_version})")
        console.print(f"  volume    {context.dump_volume_name}")
        console.print(f"  container {context.dump_container_name} ({self.image}:{self.upgrade_run.target_version})")
        console.print(f"  container {context.new_container_name} ({self.image}:{self.upgrade_run.target_version})")
        console.print(f"  reindex   {self.reindex_scope}")

    def _on_signal(self, signum, _frame):
        name = signal.Signals(signum).name
        if self._interrupts_deferred:
            logger.warning("Received %s during recovery; finishing rollback and cleanup first.", name)
            return
        raise UpgradeInterrupted(f"Operation cancelled by {name}.")

    @contextmanager
    def _signal_guard(self):
        """Turn SIGINT/SIGTERM into ``UpgradeInterrupted`` for the duration of a run."""
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        signals = [signal.SIGINT, signal.SIGTERM]
        previous = {signum: signal.getsignal(signum) for signum in signals}
        for signum in signals:
            signal.signal(signum, self._on_signal)
        try:
            yield
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

    def _settle_failure(self, exc: BaseException):
        if self.outcome is Outcome.SUCCEEDED:
            # Commit already ran; the upgraded directory stays.
            logger.warning("Ignoring %s raised after commit: %s", exc.__class__.__name__, exc)
            return

        self.cause = str(exc) or exc.__class__.__name__
        # An interrupt between two phases is charged to the last phase started.
        phase = self.failed_phase or self.current_phase or Phase.INIT
        self.failed_phase = phase
        if self.upgrade_run:
            self.upgrade_run.failed_phase = phase
        console.print(f"[bold red]Error during {phase.value}:[/bold red] {self.cause}")
        logger.error("Phase %s failed: %s", phase.value, self.cause)

        if self.upgrade_run is None or phase in (Phase.INIT, Phase.BACKUP):
            # Nothing has been mutated yet.
            self.outcome = Outcome.ABORTED
            if self.upgrade_run:
                self.upgrade_run.outcome = Outcome.ABORTED
                self.upgrade_run.cause = self.cause
            return

        self.upgrade_run.cause = self.cause
        self.rollback()

    def _release_data_dir(self):
        """Stop and remove every container that mounts the data directory."""
        context = self.upgrade_run.context
        for name in (context.new_container_name, context.old_container_name):
            try:
                self._retire(name)
            except UpgraderError as exc:
                logger.error(
                    "Restore skipped: %s still mounts %s and could not be stopped, "
                    "so restoring now could be overwritten by a running server.",
                    name,
                    self.upgrade_run.data_dir,
                )
                raise RollbackFailure(
                    f"Rollback failed: restore skipped because {name} could not be stopped: {exc}"
                ) from exc

    def rollback(self):
        """Restore the data directory from staging. Entered at most once per run."""
        if self.upgrade_run.rollback_attempted:
            logger.warning("Rollback was already attempted for run %s; not repeating it.", self.run_id)
            return
        self.upgrade_run.rollback_attempted = True

        console.print("[bold yellow]Rolling back: restoring the data directory from backup...[/bold yellow]")
        logger.warning("Rolling back %s from %s", self.upgrade_run.data_dir, self.upgrade_run.staging_path)

        try:
            self._release_data_dir()
            self.backup_service.restore(
                self.upgrade_run.staging_path,
                self.upgrade_run.data_dir,
                atomic=self.atomic_restore,
            )
        except UpgraderError as exc:
            failure = exc if isinstance(exc, RollbackFailure) else RollbackFailure(f"Rollback failed: {exc}")
            self.outcome = Outcome.FAILED
            self.upgrade_run.outcome = Outcome.FAILED
            self.cause = f"{self.cause}; {failure}"
            self.upgrade_run.cause = self.cause
            self.manifest_service.set_rollback("failed", error=str(failure))
            logger.critical(actionable_error("rollback_failed", staging_path=self.upgrade_run.staging_path))
            console.print(f"[bold red]{failure}[/bold red]")
            return

        self.outcome = Outcome.ROLLED_BACK
        self.upgrade_run.outcome = Outcome.ROLLED_BACK
        self.manifest_service.set_rollback("succeeded")
        failed_phase = self.failed_phase or self.current_phase or Phase.INIT
        logger.warning(actionable_error("rolled_back", phase=failed_phase.value))
        console.print("[yellow]Data directory restored from backup.[/yellow]")

    def cleanup_resources(self) -> int:
        """Remove every registered resource, live or not. Returns the number of failures."""
        if self.upgrade_run is None or not self.upgrade_run.resources:
            return 0

        console.print("[dim]Cleaning up Docker resources...[/dim]")
        logger.info("Cleaning up %s resource(s) of run %s", len(self.upgrade_run.resources), self.run_id)

        ordered = sorted(reversed(self.upgrade_run.resources), key=lambda item: _CLEANUP_ORDER[item.kind])
        failures = 0
        for resource in ordered:
            try:
                if resource.kind is ResourceKind.CONTAINER:
                    self.docker_runtime_service.stop(resource)
                self.docker_runtime_service.remove(resource)
            except Exception as exc:
                failures += 1
                logger.error("Could not remove %s %s: %s", resource.kind.value, resource.name, exc)
                continue
            self.manifest_service.record_resource(resource)

        if failures:
            console.print(f"[yellow]{failures} resource(s) could not be removed; see the log.[/yellow]")
        return failures

    def _finish(self):
        try:
            self.cleanup_resources()

            staging_path = self.upgrade_run.staging_path if self.upgrade_run else None
            if self.outcome is Outcome.FAILED:
                if staging_path:
                    console.print(f"[bold red]Backup preserved at: {staging_path}[/bold red]")
                    logger.critical("Backup preserved for manual recovery at %s", staging_path)
            else:
                self.backup_service.reclaim(staging_path)
        finally:
            if self.lock:
                self.lock.release()
            self.manifest_service.finalize(self.outcome.value, error=self.cause)
            logger.info("Run %s finished: %s", self.run_id, self.outcome.value)

    def result(self) -> UpgradeResult:
        return UpgradeResult(
            outcome=self.outcome,
            run_id=self.run_id,
            failed_phase=self.failed_phase,
            cause=self.cause,
            staging_path=self.upgrade_run.staging_path if self.upgrade_run else None,
        )

    def _manifest_metadata(self) -> Dict[str, object]:
        return {
            "data_dir": self.data_dir,
            "source_version": self.source_version,
            "target_version": self.target_version,
            "image": self.image,
            "user": self.credentials.user,
            "database": self.credentials.database,
            "reindex_scope": self.reindex_scope,
            "atomic_restore": self.atomic_restore,
            "dry_run": self.dry_run,
        }

    def run(self) -> UpgradeResult:
        if self.attempted_phases:
            raise UpgraderError("An upgrader instance runs exactly once; create a new one.")

        with self._signal_guard():
            failure: Optional[BaseException] = None
            try:
                logger.info("Starting pgupgrader run %s", self.run_id)
                self._run_phase(Phase.INIT, self._init_phase)
                if self.dry_run:
                    self.print_plan()
                    self.outcome = Outcome.SUCCEEDED
                    self.manifest_service.finalize(self.outcome.value)
                    return self.result()

                for phase, callback in self._pipeline():
                    self._run_phase(phase, callback)
            except KeyboardInterrupt:
                failure = UpgradeInterrupted("Operation cancelled by user.")
            except UpgraderError as exc:
                failure = exc
            except Exception as exc:
                logger.exception("Unexpected error")
                failure = exc

            self._interrupts_deferred = True
            try:
                if failure is not None:
                    self._settle_failure(failure)
            finally:
                self._finish()

        return self.result()
