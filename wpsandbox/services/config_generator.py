from __future__ import annotations

from dataclasses import dataclass
import secrets
import string
from typing import Callable, Mapping, Sequence
from urllib.parse import unquote, urlsplit

from wpsandbox.services.errors import ConfigurationError

CONNECTION_STRING_VAR = "MYSQL_PUBLIC_URL"
DEFAULT_DB_PORT = "3306"

# Discrete overrides, checked in order before the connection string.
NAME_VARS = ("MYSQLDATABASE", "MYSQL_DATABASE")
USER_VARS = ("MYSQLUSER",)
PASSWORD_VARS = ("MYSQLPASSWORD", "MYSQL_ROOT_PASSWORD")
HOST_VARS = ("MYSQLHOST",)
PORT_VARS = ("MYSQLPORT",)

TOKEN_NAMES = (
    "AUTH_KEY",
    "SECURE_AUTH_KEY",
    "LOGGED_IN_KEY",
    "NONCE_KEY",
    "AUTH_SALT",
    "SECURE_AUTH_SALT",
    "LOGGED_IN_SALT",
    "NONCE_SALT",
)
TOKEN_LENGTH = 64
TOKEN_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True)
class DatabaseDescriptor:
    host: str
    port: str
    name: str
    user: str
    password: str

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class _UrlParts:
    host: str = ""
    port: str = ""
    name: str = ""
    user: str = ""
    password: str = ""


def _first(environ: Mapping[str, str], names: Sequence[str], fallback: str) -> str:
    for name in names:
        value = environ.get(name)
        if value:
            return value
    return fallback


def _parse_connection_string(raw: str) -> _UrlParts:
    try:
        parsed = urlsplit(raw)
        port = parsed.port
    except ValueError as exc:
        raise ConfigurationError(f"{CONNECTION_STRING_VAR} is not a valid URL: {exc}") from exc
    if not parsed.scheme or not parsed.netloc:
        raise ConfigurationError(f"{CONNECTION_STRING_VAR} is not a valid URL")
    return _UrlParts(
        host=parsed.hostname or "",
        port=str(port) if port is not None else "",
        name=unquote(parsed.path.lstrip("/")),
        user=unquote(parsed.username or ""),
        password=unquote(parsed.password or ""),
    )


def resolve_database(environ: Mapping[str, str]) -> DatabaseDescriptor:
    """Resolve database credentials; discrete variables win over the connection string."""
    raw_url = environ.get(CONNECTION_STRING_VAR, "")
    url = _parse_connection_string(raw_url) if raw_url else _UrlParts()

    descriptor = DatabaseDescriptor(
        host=_first(environ, HOST_VARS, url.host),
        port=_first(environ, PORT_VARS, url.port) or DEFAULT_DB_PORT,
        name=_first(environ, NAME_VARS, url.name),
        user=_first(environ, USER_VARS, url.user),
        password=_first(environ, PASSWORD_VARS, url.password),
    )

    missing = [field for field in ("name", "user", "password", "host") if not getattr(descriptor, field)]
    if missing:
        if not raw_url:
            raise ConfigurationError(
                f"{CONNECTION_STRING_VAR} is not set and overrides are incomplete (missing {', '.join(missing)})"
            )
        raise ConfigurationError(f"Database settings incomplete (missing {', '.join(missing)})")
    return descriptor


def escape_php_single_quoted(value: str) -> str:
    # Backslashes must go first or the inserted ones get doubled.
    return value.replace("\\", "\\\\").replace("'", "\\'")


def generate_security_tokens(choice: Callable[[str], str] = secrets.choice) -> dict[str, str]:
    return {name: "".join(choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH)) for name in TOKEN_NAMES}


def render_wp_config(
    db: DatabaseDescriptor,
    *,
    tokens: Mapping[str, str],
    debug: bool = True,
    table_prefix: str = "wp_",
) -> str:
    """Render wp-config.php for the resolved database and security tokens."""
    missing = [name for name in TOKEN_NAMES if not tokens.get(name)]
    if missing:
        raise ConfigurationError(f"Missing security tokens: {', '.join(missing)}")

    quoted = escape_php_single_quoted
    token_lines = "\n".join(f"define( '{name}', '{quoted(tokens[name])}' );" for name in TOKEN_NAMES)
    debug_flag = "true" if debug else "false"
    return f"""<?php
define( 'DB_NAME', '{quoted(db.name)}' );
define( 'DB_USER', '{quoted(db.user)}' );
define( 'DB_PASSWORD', '{quoted(db.password)}' );
define( 'DB_HOST', '{quoted(db.address)}' );
define( 'DB_CHARSET', 'utf8mb4' );
define( 'DB_COLLATE', '' );

{token_lines}

if (
    isset( $_SERVER['HTTP_X_FORWARDED_PROTO'] ) &&
    $_SERVER['HTTP_X_FORWARDED_PROTO'] === 'https'
) {{
    $_SERVER['HTTPS'] = 'on';
}}

$scheme = ( isset( $_SERVER['HTTPS'] ) && $_SERVER['HTTPS'] === 'on' ) ? 'https' : 'http';
define( 'WP_HOME', $scheme . '://' . $_SERVER['HTTP_HOST'] );
define( 'WP_SITEURL', $scheme . '://' . $_SERVER['HTTP_HOST'] );

$table_prefix = '{quoted(table_prefix)}';

define( 'WP_DEBUG', {debug_flag} );
define( 'WP_DEBUG_LOG', {debug_flag} );
define( 'WP_DEBUG_DISPLAY', false );

if ( ! defined( 'ABSPATH' ) ) {{
    define( 'ABSPATH', __DIR__ . '/' );
}}

require_once ABSPATH . 'wp-settings.php';
"""


def render_nginx_site(*, port: int, root: str, fpm_socket: str) -> str:
    return f"""server {{
    listen {port} default_server;
    server_name _;

    root {root};
    index index.php index.html;
    client_max_body_size 64m;

    location / {{
        try_files $uri $uri/ /index.php?$args;
    }}

    location ~ \\.php$ {{
        try_files $uri =404;
        fastcgi_split_path_info ^(.+\\.php)(/.+)$;
        fastcgi_pass unix:{fpm_socket};
        fastcgi_index index.php;
        include fastcgi_params;
        fastcgi_param SCRIPT_FILENAME $document_root$fastcgi_script_name;
        fastcgi_param PATH_INFO $fastcgi_path_info;
        fastcgi_param HTTP_X_FORWARDED_PROTO $http_x_forwarded_proto;
    }}

    location ~* \\.(css|js|gif|ico|jpe?g|png|svg|webp|woff2?|ttf)$ {{
        expires 7d;
        access_log off;
        try_files $uri =404;
    }}

    location ~ /\\. {{
        deny all;
    }}
}}
"""


def render_fpm_pool(*, socket: str, user: str, group: str | None = None) -> str:
    group = group or user
    return f"""[www]
user = {user}
group = {group}
listen = {socket}
listen.owner = {user}
listen.group = {group}
listen.mode = 0660
pm = dynamic
pm.max_children = 8
pm.start_servers = 2
pm.min_spare_servers = 1
pm.max_spare_servers = 4
clear_env = no
catch_workers_output = yes
"""
