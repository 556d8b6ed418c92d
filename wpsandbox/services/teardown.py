from __future__ import annotations

from dataclasses import dataclass
import logging

from wpsandbox.provider import SandboxProvider
from wpsandbox.services.leases import LeaseManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TeardownResult:
    environment_id: str
    stopped: bool


def teardown(
    provider: SandboxProvider,
    environment_id: str,
    *,
    leases: LeaseManager | None = None,
    holder: str = "teardown",
) -> TeardownResult:
    """Stop an environment by id; an unknown or already stopped environment is not an error."""
    if leases is None:
        stopped = provider.stop(environment_id=environment_id)
    else:
        with leases.held(environment_id, holder=holder):
            stopped = provider.stop(environment_id=environment_id)
    if stopped:
        logger.info("Stopped environment %s", environment_id)
    else:
        logger.info("Environment %s was already stopped or unknown", environment_id)
    return TeardownResult(environment_id=environment_id, stopped=stopped)
