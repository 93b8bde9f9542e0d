"""
Main FastAPI application for the VPN shop.
Serves health, hosted gateway callback, admin review API and metrics.
"""
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request

from vpnshop.core.config import settings
from vpnshop.core.logging import configure_logging
from vpnshop.api.routes import admin, health, payments
from vpnshop.utils.metrics import router as metrics_router


configure_logging("api")
logger = logging.getLogger("http")

app = FastAPI(
    title="VPN Shop API",
    description="Payment callbacks and admin API for the VPN shop bot",
    version="1.0.0",
)


@app.middleware("http")
async def request_log(request: Request, call_next):
    request_id = request.headers.get(settings.request_id_header) or uuid4().hex
    start = time.time()
    response = await call_next(request)
    response.headers[settings.request_id_header] = request_id
    logger.info(
        "http_request",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": int((time.time() - start) * 1000),
        },
    )
    return response


# Routers
app.include_router(health.router, tags=["health"])
app.include_router(payments.router, tags=["payments"])
app.include_router(admin.router, tags=["admin"])
app.include_router(metrics_router)
