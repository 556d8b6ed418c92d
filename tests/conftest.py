import importlib
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from starlette.testclient import TestClient
from typer.testing import CliRunner

from tests.fakes import DB_URL, FakeProvider
from wpsandbox.db import init_db
from wpsandbox.services.leases import LeaseManager


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


@pytest.fixture
def leases(db_engine):
    return LeaseManager(db_engine)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sandbox_env(monkeypatch):
    monkeypatch.setenv("MYSQL_PUBLIC_URL", DB_URL)
    monkeypatch.setenv("SANDBOX_READY_BACKOFF", "0")
    overrides = ("MYSQLDATABASE", "MYSQL_DATABASE", "MYSQLUSER", "MYSQLPASSWORD", "MYSQL_ROOT_PASSWORD", "MYSQLHOST", "MYSQLPORT")
    for name in overrides:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def client(leases, provider, sandbox_env):
    from wpsandbox.api.sandbox import get_leases, get_provider_factory
    from wpsandbox.main import app

    app.dependency_overrides[get_leases] = lambda: leases
    app.dependency_overrides[get_provider_factory] = lambda: (lambda settings: provider)

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture()
def cli_runner(tmp_path, monkeypatch, provider, sandbox_env):
    project_root = Path(__file__).resolve().parents[1]
    sys.path.append(str(project_root))
    monkeypatch.setenv("SANDBOX_DATABASE_URL", f"sqlite:///{tmp_path / 'test_cli.db'}")

    import wpsandbox.db as db

    importlib.reload(db)
    init_db(db.engine)

    import wpsandbox.cli as cli

    importlib.reload(cli)
    monkeypatch.setattr(cli, "provider_factory", lambda settings: provider)

    return CliRunner(), cli
