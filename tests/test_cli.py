from __future__ import annotations

import json

from wpsandbox.provider import Environment
from wpsandbox.services.consumer import consume
from wpsandbox.services.progress import ProgressEvent, encode_event


def test_cli_provision_flow(cli_runner, provider, tmp_path):
    runner, cli = cli_runner
    artifact = tmp_path / "sandbox.config.json"

    result = runner.invoke(cli.app, ["provision", "--artifact", str(artifact)])
    assert result.exit_code == 0, result.output
    assert "[1/8] Sandbox created" in result.output
    assert "[8/8] Sandbox ready!" in result.output
    assert "sandbox_url: http://localhost:32768" in result.output
    assert json.loads(artifact.read_text()) == {"WORDPRESS_URL": "http://localhost:32768", "SANDBOX_ID": "env-1"}

    result = runner.invoke(cli.app, ["teardown", "--artifact", str(artifact)])
    assert result.exit_code == 0, result.output
    assert "stopped: true" in result.output
    assert provider.stopped == ["env-1"]
    assert not artifact.exists()

    result = runner.invoke(cli.app, ["teardown", "--artifact", str(artifact)])
    assert result.exit_code == 0
    assert "nothing to clean up" in result.output


def test_cli_provision_failure_exits_non_zero(cli_runner, provider, tmp_path):
    runner, cli = cli_runner
    artifact = tmp_path / "sandbox.config.json"
    provider.returncodes[("dnf",)] = 1

    result = runner.invoke(cli.app, ["provision", "--artifact", str(artifact)])

    assert result.exit_code == 1
    assert "Error: install failed" in result.output
    assert not artifact.exists()
    assert provider.stopped == []


def test_cli_provision_teardown_on_failure(cli_runner, provider, tmp_path):
    runner, cli = cli_runner
    provider.returncodes[("nginx", "-t")] = 1

    result = runner.invoke(
        cli.app, ["provision", "--artifact", str(tmp_path / "a.json"), "--teardown-on-failure"]
    )

    assert result.exit_code == 1
    assert provider.stopped == ["env-1"]


def test_cli_teardown_by_id(cli_runner, provider, tmp_path):
    runner, cli = cli_runner
    provider.existing["env-7"] = Environment(environment_id="env-7", host="localhost")

    result = runner.invoke(cli.app, ["teardown", "env-7", "--artifact", str(tmp_path / "none.json")])

    assert result.exit_code == 0, result.output
    assert "environment_id: env-7" in result.output
    assert provider.stopped == ["env-7"]


def test_cli_build_runs_command_and_cleans_up(cli_runner, provider, tmp_path, monkeypatch):
    runner, cli = cli_runner
    artifact = tmp_path / "sandbox.config.json"
    seen: dict = {}

    def fake_downstream(command, *, env=None):
        seen["command"] = command
        seen["env"] = env
        seen["artifact"] = json.loads(artifact.read_text())
        return 3

    monkeypatch.setattr(cli, "run_downstream", fake_downstream)

    result = runner.invoke(cli.app, ["build", "--artifact", str(artifact), "--", "npm", "run", "build"])

    assert result.exit_code == 3, result.output
    assert seen["command"] == ["npm", "run", "build"]
    assert seen["env"]["WORDPRESS_URL"] == "http://localhost:32768"
    assert seen["env"]["SANDBOX_ID"] == "env-1"
    assert seen["artifact"]["SANDBOX_ID"] == "env-1"
    assert provider.stopped == ["env-1"]
    assert not artifact.exists()


def test_cli_build_requires_command(cli_runner):
    runner, cli = cli_runner

    result = runner.invoke(cli.app, ["build"])

    assert result.exit_code == 1
    assert "no build command" in result.output


def test_cli_watch_prints_sandbox_url(cli_runner, monkeypatch):
    runner, cli = cli_runner
    events = [
        ProgressEvent(action="sandbox-create", step=1, total_steps=2, text="Sandbox created"),
        ProgressEvent(action="ready", step=2, total_steps=2, text="ready", sandbox_url="http://h:1"),
    ]
    monkeypatch.setattr(
        cli, "watch_endpoint", lambda url, consumer: consume([encode_event(event) for event in events], consumer)
    )

    result = runner.invoke(cli.app, ["watch", "http://sandbox.test/api/sandbox"])

    assert result.exit_code == 0, result.output
    assert "[1/2] Sandbox created" in result.output
    assert "http://h:1" in result.output


def test_cli_watch_failure_exits_non_zero(cli_runner, monkeypatch):
    runner, cli = cli_runner
    failed = ProgressEvent(action="error", step=0, total_steps=8, text="Error: configuration failed")
    monkeypatch.setattr(cli, "watch_endpoint", lambda url, consumer: consume([encode_event(failed)], consumer))

    result = runner.invoke(cli.app, ["watch", "http://sandbox.test/api/sandbox"])

    assert result.exit_code == 1
    assert "Error: configuration failed" in result.output


def test_cli_build_with_missing_command_still_cleans_up(cli_runner, provider, tmp_path):
    runner, cli = cli_runner
    artifact = tmp_path / "sandbox.config.json"

    result = runner.invoke(
        cli.app, ["build", "--artifact", str(artifact), "--", "wpsandbox-no-such-build-command-xyz"]
    )

    assert result.exit_code == 127, result.output
    assert provider.stopped == ["env-1"]
    assert not artifact.exists()


def test_cli_build_cleans_up_when_interrupted(cli_runner, provider, tmp_path, monkeypatch):
    runner, cli = cli_runner
    artifact = tmp_path / "sandbox.config.json"

    def interrupted(command, *, env=None):
        raise KeyboardInterrupt

    monkeypatch.setattr(cli, "run_downstream", interrupted)

    result = runner.invoke(cli.app, ["build", "--artifact", str(artifact), "--", "npm", "run", "build"])

    assert result.exit_code != 0
    assert provider.stopped == ["env-1"]
    assert not artifact.exists()
