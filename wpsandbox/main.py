from __future__ import annotations

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

from wpsandbox.api import sandbox
from wpsandbox.api.utils import register_exception_handlers
from wpsandbox.logging_config import configure_logging

configure_logging()

app = FastAPI(
    title="WordPress Sandbox",
    description="Provisions ephemeral WordPress environments and streams provisioning progress",
    version="0.1.0",
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", include_in_schema=False)
def root() -> RedirectResponse:
    """Redirect root URL to Swagger UI docs."""
    return RedirectResponse(url="/docs")


app.include_router(sandbox.router)

register_exception_handlers(app)

if __name__ == "__main__":
    uvicorn.run("wpsandbox.main:app", host="0.0.0.0", port=8001, log_level="info", reload=True)
