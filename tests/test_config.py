import logging

import pytest

from wpsandbox.config import DEFAULT_PACKAGES, Settings, load_settings
from wpsandbox.logging_config import bind_environment, configure_logging
from wpsandbox.services.errors import ConfigurationError


def test_defaults_without_environment() -> None:
    settings = load_settings({})

    assert settings == Settings()
    assert settings.port == 3000
    assert settings.lifetime_seconds == 1800
    assert settings.packages == DEFAULT_PACKAGES
    assert settings.app_root == "/srv/sandbox/wordpress"
    assert settings.teardown_on_failure is False


def test_sandbox_variables_override_defaults() -> None:
    settings = load_settings(
        {
            "SANDBOX_PORT": "8080",
            "SANDBOX_WORKDIR": "/opt/site/",
            "SANDBOX_PACKAGES": "php nginx",
            "SANDBOX_TEARDOWN_ON_FAILURE": "yes",
            "SANDBOX_READY_BACKOFF": "0.1",
            "SANDBOX_PUBLIC_HOST": "sb.example.com",
        }
    )

    assert settings.port == 8080
    assert settings.workdir == "/opt/site"
    assert settings.app_root == "/opt/site/wordpress"
    assert settings.packages == ("php", "nginx")
    assert settings.teardown_on_failure is True
    assert settings.ready_backoff == 0.1
    assert settings.public_host == "sb.example.com"


def test_full_environment_is_kept_for_credential_lookup() -> None:
    settings = load_settings({"MYSQL_PUBLIC_URL": "mysql://u:p@h/db"})

    assert settings.environ["MYSQL_PUBLIC_URL"] == "mysql://u:p@h/db"


@pytest.mark.parametrize(
    ("name", "value"),
    [("SANDBOX_PORT", "abc"), ("SANDBOX_READY_BACKOFF", "soon"), ("SANDBOX_WP_DEBUG", "maybe")],
)
def test_invalid_values_are_configuration_errors(name, value) -> None:
    with pytest.raises(ConfigurationError, match=name):
        load_settings({name: value})


def test_bound_logger_tags_records_with_environment(caplog) -> None:
    configure_logging(level="DEBUG")
    log = bind_environment(logging.getLogger("wpsandbox.test"), "env-42")

    with caplog.at_level(logging.INFO, logger="wpsandbox.test"):
        log.info("Step %s started", "install_runtime")

    record = caplog.records[-1]
    assert record.environment_id == "env-42"
    assert record.getMessage() == "Step install_runtime started"
