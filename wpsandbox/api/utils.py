import logging

from starlette.requests import Request
from starlette.responses import JSONResponse

from wpsandbox.services.errors import (
    EnvironmentBusyException,
    NotFoundException,
    ProtocolError,
    SandboxException,
)

ERROR_STATUS = {
    EnvironmentBusyException: 409,
    NotFoundException: 404,
    ProtocolError: 502,
}

logger = logging.getLogger(__name__)


def _exception_handler(request: Request, exc: Exception):
    status = ERROR_STATUS.get(type(exc), 500)
    if status >= 500:
        logger.exception("Sandbox request failed for path=%s: %s", request.url.path, exc)
    else:
        logger.warning("Request failed path=%s status=%s error=%s", request.url.path, status, exc)
    return JSONResponse({"detail": str(exc)}, status_code=status)


def register_exception_handlers(app):
    app.exception_handler(SandboxException)(_exception_handler)
