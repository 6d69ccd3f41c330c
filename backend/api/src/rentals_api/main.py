"""FastAPI application for the rental orchestration REST API.

Routes (all under /api):
- GET  /ping                          health check
- POST /rentals/...                   rental transitions (bearer token)
- GET  /rentals/{id}/payment-status   payment summary (bearer token)
- GET  /access/status                 access gate progress (bearer token)
- POST /webhooks/processor            signed payment processor events

Runs on AWS Lambda behind API Gateway through Mangum, or locally with uvicorn.
"""

import logging
import os
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum

from rentals.utils.logging import configure_logging
from rentals_api.exceptions import register_exception_handlers
from rentals_api.middleware.correlation import CORRELATION_ID_HEADER, CorrelationIdMiddleware
from rentals_api.routes.access import router as access_router
from rentals_api.routes.rentals import router as rentals_router
from rentals_api.routes.webhooks import router as webhooks_router

API_PREFIX = "/api"
DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"

configure_logging(getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Rentals API",
    description="Rental transactions, payments and processor webhooks for peer-to-peer lending",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.environ.get("CORS_ALLOWED_ORIGINS", DEFAULT_CORS_ORIGINS).split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type", CORRELATION_ID_HEADER],
    expose_headers=[CORRELATION_ID_HEADER],
)
app.add_middleware(CorrelationIdMiddleware)

register_exception_handlers(app)

for router in (rentals_router, access_router, webhooks_router):
    app.include_router(router, prefix=API_PREFIX)


@app.get(f"{API_PREFIX}/ping")
async def ping() -> dict[str, Any]:
    return {
        "status": "ok",
        "timestamp": datetime.now(UTC).isoformat(),
        "service": "rentals-api",
    }


# Lambda entry point (API Gateway proxy integration)
handler = Mangum(app, lifespan="off")


def run_server(host: str = "0.0.0.0", port: int = 8080, reload: bool = True) -> None:
    """Run the API locally with uvicorn.

    Args:
        host: Interface to bind
        port: Port to listen on
        reload: Restart on source changes under backend/
    """
    import uvicorn

    if reload:
        # reload needs an import string, not the app object
        uvicorn.run(
            "rentals_api.main:app",
            host=host,
            port=port,
            reload=True,
            reload_dirs=["backend/api/src", "backend/shared/src"],
        )
    else:
        uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
