from __future__ import annotations

from functools import lru_cache
import logging
import threading
from typing import Callable

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from wpsandbox import db
from wpsandbox.config import Settings, load_settings
from wpsandbox.provider import DockerProvider, SandboxProvider
from wpsandbox.services.leases import LeaseManager
from wpsandbox.services.pipeline import TOTAL_STEPS, ProvisioningRun
from wpsandbox.services.progress import ProgressChannel, ProgressSink, stream_provisioning
from wpsandbox.services.teardown import TeardownResult, teardown

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sandbox", tags=["sandbox"])

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Content-Type-Options": "nosniff",
}

ProviderFactory = Callable[[Settings], SandboxProvider]


def get_provider_factory() -> ProviderFactory:
    return DockerProvider.from_settings


@lru_cache
def _default_leases() -> LeaseManager:
    db.init_db(db.engine)
    return LeaseManager(db.engine)


def get_leases() -> LeaseManager:
    return _default_leases()


@router.get("", response_class=StreamingResponse)
def start_sandbox(
    provider_factory: ProviderFactory = Depends(get_provider_factory),
    leases: LeaseManager = Depends(get_leases),
) -> StreamingResponse:
    """Provision one sandbox, streaming newline-delimited progress records."""
    channel = ProgressChannel()

    def run_factory(sink: ProgressSink) -> ProvisioningRun:
        settings = load_settings()
        return ProvisioningRun(provider=provider_factory(settings), settings=settings, sink=sink, leases=leases)

    # The run keeps going when the client disconnects; only the reader stops.
    worker = threading.Thread(
        target=stream_provisioning,
        args=(channel, run_factory),
        kwargs={"total_steps": TOTAL_STEPS},
        name="sandbox-provision",
        daemon=True,
    )
    worker.start()
    logger.info("Started provisioning thread %s", worker.name)
    return StreamingResponse(iter(channel), media_type="text/plain; charset=utf-8", headers=STREAM_HEADERS)


@router.delete("/{environment_id}", response_model=TeardownResult)
def stop_sandbox(
    environment_id: str,
    provider_factory: ProviderFactory = Depends(get_provider_factory),
    leases: LeaseManager = Depends(get_leases),
) -> TeardownResult:
    return teardown(provider_factory(load_settings()), environment_id, leases=leases)
