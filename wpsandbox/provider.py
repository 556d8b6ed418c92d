from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Literal, Protocol

from wpsandbox.config import Settings
from wpsandbox.proc import AdapterCommandError, CommandResult, CommandRunner, execute, run_command
from wpsandbox.services.errors import NotFoundException

logger = logging.getLogger(__name__)

EnvironmentState = Literal["creating", "active", "stopped"]

_NOT_FOUND_MARKERS = ("no such container", "no such object", "not found")


@dataclass(frozen=True)
class ResourceProfile:
    image: str = "amazonlinux:2023"
    vcpus: int = 4
    port: int = 3000
    lifetime_seconds: int = 30 * 60
    workdir: str = "/srv/sandbox"


@dataclass(frozen=True)
class Environment:
    environment_id: str
    host: str
    ports: dict[int, int] = field(default_factory=dict)
    state: EnvironmentState = "active"
    lifetime_seconds: int = 30 * 60
    scheme: str = "http"

    def domain(self, port: int) -> str:
        """Externally reachable URL for an exposed port."""
        published = self.ports.get(port)
        if published is None:
            raise NotFoundException(f"Port {port} is not exposed by environment {self.environment_id}")
        return f"{self.scheme}://{self.host}:{published}"


class SandboxProvider(Protocol):
    def create(self, *, profile: ResourceProfile) -> Environment: ...

    def get(self, *, environment_id: str) -> Environment | None: ...

    def run_command(
        self,
        *,
        environment: Environment,
        command: list[str],
        sudo: bool = False,
        detached: bool = False,
    ) -> CommandResult: ...

    def write_file(self, *, environment: Environment, path: str, content: bytes) -> None: ...

    def stop(self, *, environment_id: str) -> bool: ...


def _is_not_found(exc: AdapterCommandError) -> bool:
    text = f"{exc.result.stderr}\n{exc.result.stdout}".lower()
    return any(marker in text for marker in _NOT_FOUND_MARKERS)


def parse_published_port(output: str) -> int:
    """Parse `docker port` output such as '0.0.0.0:32768' (first binding wins)."""
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        _, _, port = line.rpartition(":")
        if port.isdigit():
            return int(port)
    raise ValueError(f"Unable to parse published port from {output!r}")


class _staged_file:
    def __init__(self, content: bytes) -> None:
        self._content = content
        self.path: Path | None = None

    def __enter__(self) -> Path:
        tmp = NamedTemporaryFile(mode="wb", suffix=".staged", delete=False)
        tmp.write(self._content)
        tmp.flush()
        tmp.close()
        self.path = Path(tmp.name)
        logger.debug("Staged %s bytes in %s", len(self._content), self.path)
        return self.path

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.path and self.path.exists():
            self.path.unlink()
            logger.debug("Removed staged file: %s", self.path)


class DockerProvider:
    """Environment provider driving containers through the docker CLI."""

    def __init__(
        self,
        *,
        runner: CommandRunner | None = None,
        public_host: str = "localhost",
        scheme: str = "http",
        docker: str = "docker",
    ) -> None:
        self._runner = runner
        self._public_host = public_host
        self._scheme = scheme
        self._docker = docker

    @classmethod
    def from_settings(cls, settings: Settings, *, runner: CommandRunner | None = None) -> "DockerProvider":
        return cls(runner=runner, public_host=settings.public_host, scheme=settings.url_scheme)

    def create(self, *, profile: ResourceProfile) -> Environment:
        logger.info(
            "Creating environment (image=%s vcpus=%s port=%s lifetime=%ss)",
            profile.image,
            profile.vcpus,
            profile.port,
            profile.lifetime_seconds,
        )
        result = run_command(
            [
                self._docker,
                "run",
                "-d",
                "--rm",
                "--cpus",
                str(profile.vcpus),
                "-p",
                str(profile.port),
                "-w",
                profile.workdir,
                "--label",
                "wpsandbox=1",
                "--label",
                f"wpsandbox.lifetime={profile.lifetime_seconds}",
                profile.image,
                "sleep",
                str(profile.lifetime_seconds),
            ],
            runner=self._runner,
            error_message="Failed to create environment",
        )
        environment_id = result.stdout.strip()
        if not environment_id:
            raise ValueError("docker run did not report a container id")
        environment = Environment(
            environment_id=environment_id,
            host=self._public_host,
            state="creating",
            lifetime_seconds=profile.lifetime_seconds,
            scheme=self._scheme,
        )
        try:
            published = self._published_port(environment_id, profile.port)
        except Exception:
            logger.error("Could not read published port of %s; stopping it", environment_id)
            self._discard(environment_id)
            raise
        logger.info("Created environment %s (port %s -> %s)", environment_id, profile.port, published)
        return replace(environment, ports={profile.port: published}, state="active")

    def get(self, *, environment_id: str) -> Environment | None:
        try:
            result = run_command(
                [self._docker, "inspect", "--format", "{{.State.Status}}", environment_id],
                runner=self._runner,
                error_message=f"Failed to inspect environment {environment_id}",
            )
        except AdapterCommandError as exc:
            if _is_not_found(exc):
                logger.debug("Environment not found: %s", environment_id)
                return None
            raise
        status = result.stdout.strip()
        if status != "running":
            logger.debug("Environment %s is %s", environment_id, status or "unknown")
            return Environment(
                environment_id=environment_id,
                host=self._public_host,
                state="stopped",
                scheme=self._scheme,
            )

        ports: dict[int, int] = {}
        port_result = run_command(
            [self._docker, "port", environment_id],
            runner=self._runner,
            error_message=f"Failed to list ports of environment {environment_id}",
        )
        for line in port_result.stdout.splitlines():
            # e.g. "3000/tcp -> 0.0.0.0:32768"
            spec, sep, binding = line.partition("->")
            if not sep:
                continue
            container_port = spec.strip().split("/", 1)[0]
            if container_port.isdigit() and int(container_port) not in ports:
                ports[int(container_port)] = parse_published_port(binding)
        return Environment(environment_id=environment_id, host=self._public_host, ports=ports, scheme=self._scheme)

    def run_command(
        self,
        *,
        environment: Environment,
        command: list[str],
        sudo: bool = False,
        detached: bool = False,
    ) -> CommandResult:
        cmd = [self._docker, "exec"]
        if sudo:
            cmd.extend(["-u", "root"])
        if detached:
            cmd.append("-d")
        cmd.append(environment.environment_id)
        cmd.extend(command)
        logger.debug("Running in %s: %s", environment.environment_id, " ".join(command))
        return execute(cmd, runner=self._runner)

    def write_file(self, *, environment: Environment, path: str, content: bytes) -> None:
        logger.debug("Writing %s bytes to %s:%s", len(content), environment.environment_id, path)
        with _staged_file(content) as staged:
            run_command(
                [self._docker, "cp", str(staged), f"{environment.environment_id}:{path}"],
                runner=self._runner,
                error_message=f"Failed to write {path}",
            )

    def stop(self, *, environment_id: str) -> bool:
        logger.info("Stopping environment %s", environment_id)
        try:
            run_command(
                [self._docker, "stop", environment_id],
                runner=self._runner,
                error_message=f"Failed to stop environment {environment_id}",
            )
        except AdapterCommandError as exc:
            if _is_not_found(exc):
                logger.debug("Environment was already gone: %s", environment_id)
                return False
            raise
        return True

    def _discard(self, environment_id: str) -> None:
        try:
            self.stop(environment_id=environment_id)
        except AdapterCommandError:
            logger.exception("Failed to stop half-created environment %s", environment_id)

    def _published_port(self, environment_id: str, port: int) -> int:
        result = run_command(
            [self._docker, "port", environment_id, f"{port}/tcp"],
            runner=self._runner,
            error_message=f"Failed to read published port {port} of {environment_id}",
        )
        return parse_published_port(result.stdout)
