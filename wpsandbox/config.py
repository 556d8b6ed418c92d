from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import Mapping

from wpsandbox.services.errors import ConfigurationError

DEFAULT_PACKAGES = (
    "php8.1-cli",
    "php8.1-fpm",
    "php8.1-mysqlnd",
    "php8.1-gd",
    "php8.1-mbstring",
    "php8.1-xml",
    "php8.1-opcache",
    "nginx",
    "procps-ng",
    "tar",
    "gzip",
)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class Settings:
    image: str = "amazonlinux:2023"
    vcpus: int = 4
    port: int = 3000
    lifetime_seconds: int = 30 * 60
    workdir: str = "/srv/sandbox"
    public_host: str = "localhost"
    url_scheme: str = "http"
    wordpress_url: str = "https://wordpress.org/latest.tar.gz"
    packages: tuple[str, ...] = DEFAULT_PACKAGES
    web_user: str = "nginx"
    teardown_on_failure: bool = False
    ready_attempts: int = 20
    ready_backoff: float = 0.25
    wp_debug: bool = True
    environ: Mapping[str, str] = field(default_factory=dict, repr=False, compare=False)

    @property
    def app_root(self) -> str:
        return f"{self.workdir}/wordpress"


def _int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


def _bool(environ: Mapping[str, str], name: str, default: bool) -> bool:
    raw = environ.get(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build settings from SANDBOX_* variables, keeping the full mapping for credential lookup."""
    env = dict(os.environ if environ is None else environ)
    defaults = Settings()
    packages = env.get("SANDBOX_PACKAGES")
    return Settings(
        image=env.get("SANDBOX_IMAGE") or defaults.image,
        vcpus=_int(env, "SANDBOX_VCPUS", defaults.vcpus),
        port=_int(env, "SANDBOX_PORT", defaults.port),
        lifetime_seconds=_int(env, "SANDBOX_LIFETIME", defaults.lifetime_seconds),
        workdir=(env.get("SANDBOX_WORKDIR") or defaults.workdir).rstrip("/"),
        public_host=env.get("SANDBOX_PUBLIC_HOST") or defaults.public_host,
        url_scheme=env.get("SANDBOX_URL_SCHEME") or defaults.url_scheme,
        wordpress_url=env.get("SANDBOX_WORDPRESS_URL") or defaults.wordpress_url,
        packages=tuple(packages.split()) if packages else defaults.packages,
        web_user=env.get("SANDBOX_WEB_USER") or defaults.web_user,
        teardown_on_failure=_bool(env, "SANDBOX_TEARDOWN_ON_FAILURE", defaults.teardown_on_failure),
        ready_attempts=_int(env, "SANDBOX_READY_ATTEMPTS", defaults.ready_attempts),
        ready_backoff=_float(env, "SANDBOX_READY_BACKOFF", defaults.ready_backoff),
        wp_debug=_bool(env, "SANDBOX_WP_DEBUG", defaults.wp_debug),
        environ=env,
    )
