"""
Sentiment Serving Server

FastAPI application exposing a pooled sentiment model:
- POST /predict  score one text
- GET  /health   liveness/readiness
- GET  /info     model and pool information
- GET  /metrics  Prometheus metrics

The engine pool is built once in the application lifespan and handed to
routes through a dependency, so tests can build an app around any engine
factory.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool
from starlette.responses import Response

from .. import metrics
from ..config import Config, get_config
from .engine import EngineFactory, SentimentInput
from .model_source import ModelSource
from .pool import EnginePool, PoolClosedError, PoolTimeoutError
from .reloader import ModelReloader

logger = logging.getLogger(__name__)


# Request/Response Models
class PredictRequest(BaseModel):
    """Request body for the prediction endpoint."""
    model_config = ConfigDict(
        json_schema_extra={"example": {"SentimentText": "This was a great movie"}},
    )

    text: str = Field(..., alias="SentimentText", description="Text to classify")

    def to_input(self) -> SentimentInput:
        return SentimentInput(text=self.text)


class PredictResponse(BaseModel):
    """Response body for the prediction endpoint."""
    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {"Prediction": True, "Probability": 0.9, "Score": 2.0}
        },
    )

    prediction: bool = Field(..., alias="Prediction")
    probability: float = Field(..., alias="Probability")
    score: float = Field(..., alias="Score")


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    model_config = ConfigDict(protected_namespaces=())

    status: str
    model_loaded: bool
    uptime_seconds: float
    timestamp: str


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def get_pool(request: Request) -> EnginePool:
    """Dependency returning the application's engine pool."""
    pool = getattr(request.app.state, "pool", None)
    if pool is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Engine pool not initialized",
        )
    return pool


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Fetches the model, builds the engine pool and optional reloader on
    startup; tears them down on shutdown.
    """
    config: Config = app.state.config
    factory: Optional[Callable[[], Any]] = app.state.engine_factory
    reloader: Optional[ModelReloader] = None
    pool: Optional[EnginePool] = None

    logger.info("Starting sentiment serving API")

    try:
        source = None
        if factory is None:
            source = ModelSource(
                config.MODEL_URI,
                cache_dir=config.MODEL_CACHE_DIR,
                timeout=config.MODEL_DOWNLOAD_TIMEOUT,
                retry_attempts=config.MODEL_DOWNLOAD_RETRIES,
            )
            blob = await run_in_threadpool(source.fetch)
            factory = EngineFactory(blob, source=config.MODEL_URI)

        pool = EnginePool(
            factory,
            max_size=config.POOL_MAX_SIZE,
            acquire_timeout=config.acquire_timeout,
        )
        app.state.pool = pool

        if config.POOL_WARMUP:
            await pool.warmup(config.POOL_WARMUP)

        if source is not None and config.MODEL_RELOAD_INTERVAL > 0:
            reloader = ModelReloader(source, factory, pool, interval=config.MODEL_RELOAD_INTERVAL)
            await reloader.start()
        app.state.reloader = reloader

        metrics.model_loaded_gauge.set(1)
        logger.info("Server startup complete")

        yield

    finally:
        logger.info("Shutting down sentiment serving API")
        metrics.model_loaded_gauge.set(0)

        if reloader:
            await reloader.shutdown()

        if pool:
            await pool.close()

        logger.info("Server shutdown complete")


def create_app(
    config: Optional[Config] = None,
    engine_factory: Optional[Callable[[], Any]] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Configuration (defaults to the environment)
        engine_factory: Zero-argument engine constructor. When omitted the
            model is fetched from ``config.MODEL_URI`` at startup.

    Returns:
        Configured FastAPI app
    """
    config = config or get_config()

    app = FastAPI(
        title="Sentiment Serving API",
        description="Binary sentiment predictions from a pooled scikit-learn model",
        version=config.API_VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.engine_factory = engine_factory
    app.state.pool = None
    app.state.reloader = None
    app.state.start_time = time.time()

    @app.middleware("http")
    async def track_requests(request: Request, call_next):
        """Record request metrics and attach a trace ID."""
        trace_id = uuid.uuid4().hex[:16]
        request.state.trace_id = trace_id
        start_time = time.time()

        response = await call_next(request)

        response.headers["X-Trace-ID"] = trace_id
        metrics.request_duration.labels(
            method=request.method, endpoint=request.url.path
        ).observe(time.time() - start_time)
        metrics.request_count.labels(
            method=request.method,
            endpoint=request.url.path,
            status_code=response.status_code,
        ).inc()
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request):
        """Health check endpoint."""
        pool = request.app.state.pool
        healthy = pool is not None and not pool.closed
        body = HealthResponse(
            status="healthy" if healthy else "unhealthy",
            model_loaded=healthy,
            uptime_seconds=round(time.time() - request.app.state.start_time, 3),
            timestamp=_utcnow(),
        )
        if not healthy:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content=body.model_dump(),
            )
        return body

    @app.get("/info")
    async def info(request: Request, pool: EnginePool = Depends(get_pool)) -> Dict[str, Any]:
        """Model, pool and API information."""
        cfg: Config = request.app.state.config
        reloader: Optional[ModelReloader] = request.app.state.reloader
        return {
            "model": {
                "uri": cfg.MODEL_URI if request.app.state.engine_factory is None else None,
                "reload_interval_seconds": cfg.MODEL_RELOAD_INTERVAL,
                "reloads": reloader.reloads if reloader else 0,
            },
            "pool": pool.stats().to_dict(),
            "api": {
                "version": cfg.API_VERSION,
                "endpoints": ["/predict", "/health", "/info", "/metrics"],
            },
            "timestamp": _utcnow(),
        }

    @app.get("/metrics")
    async def prometheus_metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        pool = request.app.state.pool
        if pool is not None:
            metrics.update_pool_metrics(pool.stats())
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/predict", response_model=PredictResponse)
    async def predict(
        request: Request,
        body: PredictRequest,
        pool: EnginePool = Depends(get_pool),
    ) -> PredictResponse:
        """Score one text with a pooled engine."""
        start_time = time.time()

        try:
            result = await pool.predict(body.to_input())
        except (PoolTimeoutError, PoolClosedError) as e:
            logger.warning(f"No engine available: {e} (trace_id={request.state.trace_id})")
            metrics.prediction_count.labels(status="unavailable").inc()
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=str(e),
            )
        except Exception as e:
            logger.error(
                f"Prediction failed: {e} (trace_id={request.state.trace_id})",
                exc_info=True,
            )
            metrics.prediction_count.labels(status="error").inc()
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Prediction failed: {e}",
            )

        metrics.inference_duration.observe(time.time() - start_time)
        metrics.prediction_count.labels(status="success").inc()
        logger.debug(
            f"Prediction: prediction={result.prediction}, "
            f"probability={result.probability:.4f}, trace_id={request.state.trace_id}"
        )

        return PredictResponse(
            prediction=result.prediction,
            probability=result.probability,
            score=result.score,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "detail": exc.detail,
                "trace_id": getattr(request.state, "trace_id", "unknown"),
            },
        )

    return app
