"""Provisioning pipeline: turns a bare environment into a running WordPress stack.

Steps run strictly in order against one environment. Each completed step that
reports progress pushes exactly one event to the caller-facing sink; the
module logger is the separate observability channel.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
import logging
import posixpath
import secrets
import time
from typing import Callable, Literal

from wpsandbox.config import Settings
from wpsandbox.logging_config import bind_environment
from wpsandbox.proc import CommandResult
from wpsandbox.provider import Environment, ResourceProfile, SandboxProvider
from wpsandbox.services.config_generator import (
    generate_security_tokens,
    render_fpm_pool,
    render_nginx_site,
    render_wp_config,
    resolve_database,
)
from wpsandbox.services.errors import (
    ERRORS_BY_CATEGORY,
    ConfigurationError,
    ConfigValidationError,
    CreationError,
    FetchError,
    InstallError,
    ProvisioningError,
    StartupError,
)
from wpsandbox.services.leases import LeaseManager
from wpsandbox.services.progress import (
    ACTION_CREATE,
    ACTION_ERROR,
    ACTION_PROCESSING,
    ACTION_READY,
    ProgressEvent,
    ProgressSink,
)

logger = logging.getLogger(__name__)

RunState = Literal[
    "pending",
    "created",
    "runtime_installed",
    "app_fetched",
    "config_written",
    "server_configured",
    "server_validated",
    "services_started",
    "ready",
    "failed",
]

FPM_SOCKET = "/run/php-fpm/www.sock"
NGINX_SITE_PATH = "/etc/nginx/conf.d/wordpress.conf"
FPM_POOL_PATH = "/etc/php-fpm.d/www.conf"
ARCHIVE_NAME = "latest.tar.gz"
MAX_READY_BACKOFF = 2.0
# pkill exit status when no process matched
_PKILL_NO_MATCH = 1


@dataclass(frozen=True)
class StepDescriptor:
    key: str
    label: str
    category: str | None
    state: RunState | None = None
    emits: bool = True
    action: str = ACTION_PROCESSING


STEPS: tuple[StepDescriptor, ...] = (
    StepDescriptor("create_environment", "Sandbox created", "creation", "created", action=ACTION_CREATE),
    StepDescriptor("install_runtime", "Installed PHP, nginx and php-fpm", "install", "runtime_installed"),
    StepDescriptor("fetch_application", "Downloaded WordPress", "fetch", "app_fetched"),
    StepDescriptor("adjust_permissions", "Adjusted file permissions", None, emits=False),
    StepDescriptor("write_app_config", "Configured WordPress database", "configuration", "config_written"),
    StepDescriptor("write_server_config", "Configured nginx and php-fpm", "configuration", "server_configured"),
    StepDescriptor("validate_server_config", "Validated server configuration", "validation", "server_validated"),
    StepDescriptor("start_services", "Started php-fpm and nginx", "startup", "services_started"),
    StepDescriptor("ready", "Sandbox ready! ✅", "startup", "ready", action=ACTION_READY),
)

TOTAL_STEPS = sum(1 for descriptor in STEPS if descriptor.emits)


@dataclass(frozen=True)
class RunProgress:
    step: int = 0
    total_steps: int = TOTAL_STEPS

    @property
    def next_step(self) -> int:
        return self.step + 1

    def advance(self) -> "RunProgress":
        return replace(self, step=self.next_step)


def profile_from_settings(settings: Settings) -> ResourceProfile:
    return ResourceProfile(
        image=settings.image,
        vcpus=settings.vcpus,
        port=settings.port,
        lifetime_seconds=settings.lifetime_seconds,
        workdir=settings.workdir,
    )


class ProvisioningRun:
    """One provisioning run against exactly one environment."""

    def __init__(
        self,
        *,
        provider: SandboxProvider,
        settings: Settings,
        sink: ProgressSink | None = None,
        leases: LeaseManager | None = None,
        environment_id: str | None = None,
        teardown_on_failure: bool | None = None,
        token_factory: Callable[[], dict[str, str]] = generate_security_tokens,
        sleep: Callable[[float], None] = time.sleep,
        holder: str | None = None,
    ) -> None:
        self._provider = provider
        self._settings = settings
        self._sink = sink
        self._leases = leases
        self._attach_id = environment_id
        self._teardown_on_failure = (
            settings.teardown_on_failure if teardown_on_failure is None else teardown_on_failure
        )
        self._token_factory = token_factory
        self._sleep = sleep
        self._holder = holder or f"provision-{secrets.token_hex(4)}"
        self._lease_id: int | None = None
        self._log = bind_environment(logger, environment_id)

        self.progress = RunProgress()
        self.state: RunState = "pending"
        self.environment: Environment | None = None
        self.sandbox_url: str | None = None

    def run(self) -> Environment:
        if self._attach_id and self._leases is not None:
            self._lease_id = self._leases.acquire(self._attach_id, holder=self._holder).id
        try:
            for descriptor in STEPS:
                self._run_step(descriptor)
            assert self.environment is not None
            return self.environment
        finally:
            if self._lease_id is not None and self._leases is not None:
                self._leases.release(self._lease_id)
                self._lease_id = None

    def _run_step(self, descriptor: StepDescriptor) -> None:
        self._log.info("Step %s started", descriptor.key)
        try:
            getattr(self, f"_{descriptor.key}")()
        except ProvisioningError as exc:
            self._fail(descriptor, exc)
            raise
        except Exception as exc:
            error_cls = ERRORS_BY_CATEGORY.get(descriptor.category or "", ProvisioningError)
            error = error_cls(exc)
            self._fail(descriptor, error)
            raise error from exc

        if descriptor.state is not None:
            self.state = descriptor.state
        if descriptor.emits:
            sandbox_url = self.sandbox_url if descriptor.action == ACTION_READY else None
            self._emit(descriptor.action, descriptor.label, sandbox_url=sandbox_url)
        self._log.info("Step %s finished (state=%s)", descriptor.key, self.state)

    def _emit(self, action: str, text: str, *, sandbox_url: str | None = None) -> None:
        self.progress = self.progress.advance()
        if self._sink is not None:
            self._sink(
                ProgressEvent(
                    action=action,
                    step=self.progress.step,
                    total_steps=self.progress.total_steps,
                    text=text,
                    sandbox_url=sandbox_url,
                )
            )

    def _fail(self, descriptor: StepDescriptor, error: ProvisioningError) -> None:
        self.state = "failed"
        self._log.error("Step %s failed: %s", descriptor.key, error)
        self._emit(ACTION_ERROR, f"Error: {error}")
        if self._teardown_on_failure and self.environment is not None:
            self._teardown_after_failure(self.environment.environment_id)

    def _teardown_after_failure(self, environment_id: str) -> None:
        try:
            stopped = self._provider.stop(environment_id=environment_id)
        except Exception:
            self._log.exception("Teardown after failure did not complete for %s", environment_id)
            return
        self._log.info("Teardown after failure: stopped=%s", stopped)

    def _exec(self, command: list[str], *, sudo: bool = False, detached: bool = False) -> CommandResult:
        assert self.environment is not None
        return self._provider.run_command(
            environment=self.environment,
            command=command,
            sudo=sudo,
            detached=detached,
        )

    @staticmethod
    def _check(result: CommandResult, error_cls: type[ProvisioningError], what: str) -> None:
        if not result.ok:
            raise error_cls(f"{what} exited with status {result.returncode}: {result.detail() or 'no output'}")

    # Steps, in pipeline order.

    def _create_environment(self) -> None:
        if self._attach_id:
            environment = self._provider.get(environment_id=self._attach_id)
            if environment is None or environment.state != "active":
                raise CreationError(f"environment {self._attach_id} is not running")
            self._bind(environment)
        else:
            environment = self._provider.create(profile=profile_from_settings(self._settings))
            # Bound before leasing so a refused lease can still tear it down.
            self._bind(environment)
            if self._leases is not None:
                self._lease_id = self._leases.acquire(environment.environment_id, holder=self._holder).id

    def _bind(self, environment: Environment) -> None:
        self.environment = environment
        self._log = bind_environment(logger, environment.environment_id)

    def _install_runtime(self) -> None:
        result = self._exec(["dnf", "install", "-y", *self._settings.packages], sudo=True)
        self._check(result, InstallError, "dnf install")

    def _fetch_application(self) -> None:
        workdir = self._settings.workdir
        archive = posixpath.join(workdir, ARCHIVE_NAME)
        for what, command in (
            ("download", ["curl", "-fsSL", self._settings.wordpress_url, "-o", archive]),
            ("unpack", ["tar", "-xzf", archive, "-C", workdir]),
            ("cleanup", ["rm", "-f", archive]),
        ):
            self._check(self._exec(command), FetchError, what)

    def _adjust_permissions(self) -> None:
        settings = self._settings
        commands = [["chmod", "a+x", path] for path in _parents(settings.workdir)]
        commands.append(["chmod", "-R", "a+rX", settings.app_root])
        commands.append(["chown", "-R", f"{settings.web_user}:{settings.web_user}", f"{settings.app_root}/wp-content"])
        for command in commands:
            result = self._exec(command, sudo=True)
            if not result.ok:
                self._log.warning("Ignoring failed permission change %s: %s", " ".join(command), result.detail())

    def _write_app_config(self) -> None:
        settings = self._settings
        database = resolve_database(settings.environ)
        self._log.info(
            "Using database host=%s port=%s name=%s user=%s",
            database.host,
            database.port,
            database.name,
            database.user,
        )
        content = render_wp_config(database, tokens=self._token_factory(), debug=settings.wp_debug)
        path = f"{settings.app_root}/wp-config.php"
        assert self.environment is not None
        self._provider.write_file(environment=self.environment, path=path, content=content.encode("utf-8"))
        self._check(
            self._exec(["chown", f"{settings.web_user}:{settings.web_user}", path], sudo=True),
            ConfigurationError,
            "chown wp-config.php",
        )
        self._check(self._exec(["chmod", "640", path], sudo=True), ConfigurationError, "chmod wp-config.php")

    def _write_server_config(self) -> None:
        settings = self._settings
        assert self.environment is not None
        self._check(
            self._exec(["mkdir", "-p", posixpath.dirname(FPM_SOCKET)], sudo=True),
            ConfigurationError,
            "mkdir socket directory",
        )
        site = render_nginx_site(port=settings.port, root=settings.app_root, fpm_socket=FPM_SOCKET)
        pool = render_fpm_pool(socket=FPM_SOCKET, user=settings.web_user)
        self._provider.write_file(environment=self.environment, path=NGINX_SITE_PATH, content=site.encode("utf-8"))
        self._provider.write_file(environment=self.environment, path=FPM_POOL_PATH, content=pool.encode("utf-8"))

    def _validate_server_config(self) -> None:
        self._check(self._exec(["php-fpm", "-t"], sudo=True), ConfigValidationError, "php-fpm -t")
        self._check(self._exec(["nginx", "-t"], sudo=True), ConfigValidationError, "nginx -t")

    def _start_services(self) -> None:
        for name in ("php-fpm", "nginx"):
            result = self._exec(["pkill", "-x", name], sudo=True)
            if result.returncode == _PKILL_NO_MATCH:
                self._log.debug("No stale %s process", name)
            elif not result.ok:
                self._log.warning("Could not stop stale %s: %s", name, result.detail())

        self._check(self._exec(["php-fpm", "-F"], sudo=True, detached=True), StartupError, "php-fpm start")
        self._wait_until(["test", "-S", FPM_SOCKET], "php-fpm socket")
        self._check(
            self._exec(["nginx", "-g", "daemon off;"], sudo=True, detached=True),
            StartupError,
            "nginx start",
        )
        self._wait_until(
            ["bash", "-c", f"exec 3<>/dev/tcp/127.0.0.1/{self._settings.port}"],
            f"nginx on port {self._settings.port}",
        )

    def _ready(self) -> None:
        assert self.environment is not None
        self.sandbox_url = self.environment.domain(self._settings.port)
        self._log.info("Sandbox ready at %s", self.sandbox_url)

    def _wait_until(self, command: list[str], what: str) -> None:
        attempts = max(1, self._settings.ready_attempts)
        delay = self._settings.ready_backoff
        for attempt in range(1, attempts + 1):
            if self._exec(command).ok:
                self._log.debug("%s ready after %s attempt(s)", what, attempt)
                return
            if attempt < attempts:
                self._sleep(delay)
                delay = min(delay * 2, MAX_READY_BACKOFF)
        raise StartupError(f"{what} not ready after {attempts} attempts")


def _parents(path: str) -> list[str]:
    parts = [part for part in path.split("/") if part]
    return ["/" + "/".join(parts[: index + 1]) for index in range(len(parts))]
