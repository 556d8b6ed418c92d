from __future__ import annotations

from dataclasses import dataclass
import logging
import subprocess
from typing import Callable

logger = logging.getLogger(__name__)

CommandRunner = Callable[[list[str]], subprocess.CompletedProcess[str]]

COMMAND_NOT_FOUND = 127


@dataclass(frozen=True)
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def detail(self, limit: int = 400) -> str:
        text = (self.stderr or self.stdout).strip()
        if len(text) > limit:
            text = f"{text[:limit - 3]}..."
        return text


class AdapterCommandError(RuntimeError):
    def __init__(self, *, message: str, result: CommandResult) -> None:
        self.result = result
        super().__init__(self._build_message(message))

    def _build_message(self, message: str) -> str:
        cmd = " ".join(self.result.command)
        return f"{message} (returncode={self.result.returncode}, command={cmd!r}, detail={self.result.detail()!r})"


def default_runner(command: list[str]) -> subprocess.CompletedProcess[str]:
    return subprocess.run(command, capture_output=True, text=True, check=False)


def execute(command: list[str], *, runner: CommandRunner | None = None) -> CommandResult:
    """Run a command and capture its outcome without judging the exit status."""
    active_runner = runner or default_runner
    completed = active_runner(command)
    return CommandResult(
        command=command,
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )


def run_command(
    command: list[str],
    *,
    runner: CommandRunner | None = None,
    error_message: str,
) -> CommandResult:
    result = execute(command, runner=runner)
    if not result.ok:
        raise AdapterCommandError(message=error_message, result=result)
    return result


def run_downstream(command: list[str], *, env: dict[str, str] | None = None) -> int:
    """Run a follow-up command with inherited stdio and return its exit code.

    A command that cannot be found exits with 127, as it would under a shell.
    """
    try:
        return subprocess.run(command, env=env, check=False).returncode
    except FileNotFoundError:
        logger.error("Command not found: %s", command[0])
        return COMMAND_NOT_FOUND
