"""Docker runtime services for pgupgrader."""

import subprocess
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pgupgrader.errors import ResourceError
from pgupgrader.models import ContainerSpec, ManagedResource, ResourceKind


class DockerRuntimeService:
    """Creates and removes containers, volumes and networks through the Docker CLI."""

    NOT_FOUND_MARKERS = (
        "no such container",
        "no such volume",
        "no such network",
        "not found",
    )

    def __init__(self, logger, console, command_runner):
        self.logger = logger
        self.console = console
        self.command_runner = command_runner

    def validate_environment(self):
        self.console.print("[blue]Validating Docker environment...[/blue]")
        self.command_runner.run(["docker", "--version"], capture_output=True)
        self.command_runner.run(["docker", "info", "--format", "{{.ServerVersion}}"], capture_output=True)
        self.console.print("[green]Docker is available.[/green]")

    def create(
        self,
        kind: ResourceKind,
        name: str,
        spec: Optional[ContainerSpec] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> ManagedResource:
        """Create (and for containers, start) a resource. Runtime errors are raised verbatim."""
        if kind is ResourceKind.NETWORK:
            self._run(["docker", "network", "create", "--driver", "bridge", *self._label_args(labels), name])
        elif kind is ResourceKind.VOLUME:
            self._run(["docker", "volume", "create", *self._label_args(labels), name])
        elif kind is ResourceKind.CONTAINER:
            if spec is None:
                raise ResourceError(f"Container {name} needs a container spec.")
            self._run(self.build_run_command(name, spec), env=spec.env)
        else:
            raise ResourceError(f"Unsupported resource kind: {kind}")

        self.logger.info("Created %s %s", kind.value, name)
        return ManagedResource(kind=kind, name=name, created_at=datetime.now(timezone.utc))

    @staticmethod
    def build_run_command(name: str, spec: ContainerSpec) -> List[str]:
        cmd = ["docker", "run", "-d", "--name", name]
        if spec.network:
            cmd += ["--network", spec.network]
        for source, target in spec.mounts:
            cmd += ["-v", f"{source}:{target}"]
        for key in sorted(spec.env):
            # Value comes from the client environment, never from argv.
            cmd += ["-e", key]
        for key, value in sorted(spec.labels.items()):
            cmd += ["--label", f"{key}={value}"]
        cmd.append(spec.image)
        cmd += list(spec.command)
        return cmd

    @staticmethod
    def _label_args(labels: Optional[Dict[str, str]]) -> List[str]:
        args: List[str] = []
        for key, value in sorted((labels or {}).items()):
            args += ["--label", f"{key}={value}"]
        return args

    def exec(
        self,
        container: str,
        cmd: List[str],
        env: Optional[Dict[str, str]] = None,
        check: bool = True,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        """Run a one-shot command inside a running container and capture its exit status."""
        docker_cmd = ["docker", "exec"]
        for key in sorted(env or {}):
            docker_cmd += ["-e", key]
        docker_cmd.append(container)
        docker_cmd += cmd
        return self.command_runner.run(
            docker_cmd,
            check=check,
            capture_output=True,
            timeout=timeout,
            env=env,
        )

    def stop(self, resource: ManagedResource):
        result = self.command_runner.run(
            ["docker", "stop", resource.name], check=False, capture_output=True
        )
        if result.returncode != 0 and not self._is_not_found(result):
            raise ResourceError(self._failure_message("stop", resource, result))

    def remove(self, resource: ManagedResource):
        """Remove a resource; a resource that is already gone counts as removed."""
        if resource.kind is ResourceKind.CONTAINER:
            cmd = ["docker", "rm", "-f", "-v", resource.name]
        elif resource.kind is ResourceKind.VOLUME:
            cmd = ["docker", "volume", "rm", resource.name]
        else:
            cmd = ["docker", "network", "rm", resource.name]

        result = self.command_runner.run(cmd, check=False, capture_output=True)
        if result.returncode != 0 and not self._is_not_found(result):
            raise ResourceError(self._failure_message("remove", resource, result))

        resource.alive = False
        self.logger.debug("Removed %s %s", resource.kind.value, resource.name)

    def list_names(self, kind: ResourceKind, name_filter: str) -> List[str]:
        """Names of existing resources of ``kind`` whose name contains ``name_filter``."""
        if kind is ResourceKind.CONTAINER:
            cmd = ["docker", "ps", "-a", "--filter", f"name={name_filter}", "--format", "{{.Names}}"]
        elif kind is ResourceKind.VOLUME:
            cmd = ["docker", "volume", "ls", "--filter", f"name={name_filter}", "--format", "{{.Name}}"]
        else:
            cmd = ["docker", "network", "ls", "--filter", f"name={name_filter}", "--format", "{{.Name}}"]

        result = self._run(cmd)
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def _run(self, cmd: List[str], env: Optional[Dict[str, str]] = None) -> subprocess.CompletedProcess:
        return self.command_runner.run(cmd, check=True, capture_output=True, env=env)

    def _is_not_found(self, result: subprocess.CompletedProcess) -> bool:
        stderr = (result.stderr or "").lower()
        return any(marker in stderr for marker in self.NOT_FOUND_MARKERS)

    @staticmethod
    def _failure_message(action: str, resource: ManagedResource, result) -> str:
        stderr = (result.stderr or "").strip()
        message = f"Could not {action} {resource.kind.value} {resource.name} ({result.returncode})"
        if stderr:
            message = f"{message}\n{stderr}"
        return message

    def logs(self, container: str, tail: int = 40) -> str:
        result = self.command_runner.run(
            ["docker", "logs", "--tail", str(tail), container], check=False, capture_output=True
        )
        return "\n".join(part.strip() for part in (result.stdout, result.stderr) if part and part.strip())
