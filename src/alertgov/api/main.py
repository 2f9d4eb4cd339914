"""
Alert governance API application
"""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from alertgov import __version__
from alertgov.api.routes import adaptive_router, governance_router, policy_router
from alertgov.config import Settings
from alertgov.engine import GovernanceEngine, build_engine
from alertgov.errors import AlertNotFoundError, InvalidWeightsError
from alertgov.log import setup_json_logging
from alertgov.metrics.governance_metrics import api_request_duration

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[GovernanceEngine] = None,
    start_background: bool = True,
) -> FastAPI:
    """Build the API; the engine is created on startup unless one is given"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting alert governance API...")
        app.state.engine = engine or build_engine(settings)
        if start_background:
            await app.state.engine.start()
        yield
        logger.info("Shutting down alert governance API...")
        await app.state.engine.stop()
        if engine is None:
            app.state.engine.close()

    app = FastAPI(
        title="Alert Governance API",
        description="Adaptive alert suppression, weight tuning and governance alerts",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_metrics(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time
        route = request.scope.get("route")
        api_request_duration.labels(
            endpoint=getattr(route, "path", request.url.path),
            method=request.method,
            status=response.status_code,
        ).observe(duration)
        response.headers["X-Process-Time"] = str(duration)
        return response

    @app.exception_handler(AlertNotFoundError)
    async def alert_not_found(request: Request, exc: AlertNotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc), "alert_id": exc.alert_id})

    @app.exception_handler(InvalidWeightsError)
    async def invalid_weights(request: Request, exc: InvalidWeightsError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.get("/health")
    async def health_check(request: Request):
        eng: GovernanceEngine = request.app.state.engine
        window = eng.runner.get_persistence_window()
        degraded = window["disabled"]
        return {
            "status": "degraded" if degraded else "healthy",
            "service": "alertgov",
            "version": __version__,
            "runner_running": eng.runner.running,
            "durable_store": eng.persistence.available,
            "persistence_disabled": window["disabled"],
        }

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(adaptive_router)
    app.include_router(governance_router)
    app.include_router(policy_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    setup_json_logging()
    uvicorn.run(app, host="0.0.0.0", port=8000)
