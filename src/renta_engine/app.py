"""FastAPI application factory for Renta-Engine."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from renta_engine.common.config import get_settings
from renta_engine.common.exceptions import RentaError
from renta_engine.common.logging import setup_logging
from renta_engine.common.schemas import ErrorResponse, HealthResponse

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    "MACHINE_NOT_FOUND": 404,
    "SESSION_NOT_FOUND": 404,
    "MACHINE_UNAVAILABLE": 409,
    "SESSION_CONFLICT": 409,
    "INVALID_DURATION": 422,
    "INVALID_PAYMENT_REQUEST": 422,
    "PROVIDER_ERROR": 502,
    "PROVIDER_UNAVAILABLE": 502,
}


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        from renta_engine.deps import (
            get_db,
            get_device_channel,
            get_dispatcher,
            get_sweeper,
            get_telemetry_monitor,
        )
        db = get_db()
        await db.init()
        await db.create_all()

        listener = None
        if settings.device_telemetry_enabled:
            channel = get_device_channel()
            listener = asyncio.create_task(channel.listen(get_telemetry_monitor().handle))
        sweeper = get_sweeper()
        if settings.sweeper_enabled:
            sweeper.start()
        yield
        # Shutdown
        await sweeper.stop()
        if listener is not None:
            listener.cancel()
            await asyncio.gather(listener, return_exceptions=True)
        await get_dispatcher().close()
        channel = get_device_channel()
        if hasattr(channel, "close"):
            await channel.close()
        await db.close()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RentaError)
    async def renta_error_handler(request: Request, exc: RentaError):
        status = STATUS_BY_CODE.get(exc.code, 400)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        body = ErrorResponse(error=type(exc).__name__, code=exc.code, detail=exc.message)
        return JSONResponse(status_code=status, content=body.model_dump())

    @app.get("/health", response_model=HealthResponse)
    async def health():
        from renta_engine.deps import get_db

        if await get_db().ping():
            return HealthResponse(version=settings.api_version)
        return HealthResponse(status="degraded", version=settings.api_version, database="unreachable")

    # Mount routers
    from renta_engine.sessions.router import router as sessions_router
    from renta_engine.payments.router import router as payments_router
    from renta_engine.machines.router import router as machines_router
    from renta_engine.reconciliation.router import router as reconciliation_router
    from renta_engine.realtime.router import router as realtime_router

    prefix = settings.api_prefix
    app.include_router(sessions_router, prefix=prefix, tags=["sessions"])
    app.include_router(payments_router, prefix=prefix, tags=["payments"])
    app.include_router(machines_router, prefix=prefix, tags=["machines"])
    app.include_router(reconciliation_router, prefix=prefix, tags=["reconciliation"])
    app.include_router(realtime_router, prefix=prefix, tags=["realtime"])

    return app
