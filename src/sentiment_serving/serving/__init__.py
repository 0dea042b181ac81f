"""
Serving Module

Pooled sentiment inference behind a FastAPI app.

Example:
    >>> from sentiment_serving.serving import EnginePool, EngineFactory, SentimentInput
    >>> pool = EnginePool(EngineFactory(blob), max_size=4)
    >>> await pool.predict(SentimentInput(text="This was a great movie"))
"""

from .pool import (
    EnginePool,
    PoolStats,
    PoolError,
    EngineConstructionError,
    PoolTimeoutError,
    PoolClosedError,
)

from .engine import (
    SentimentEngine,
    SentimentInput,
    SentimentPrediction,
    EngineFactory,
    ModelLoadError,
    PredictionError,
    load_estimator,
    write_model_archive,
)

from .model_source import ModelSource, ModelSourceError

# Server and reloader are imported from their modules so the pool stays
# usable without FastAPI.

__all__ = [
    # Pool
    "EnginePool",
    "PoolStats",
    "PoolError",
    "EngineConstructionError",
    "PoolTimeoutError",
    "PoolClosedError",
    # Engine
    "SentimentEngine",
    "SentimentInput",
    "SentimentPrediction",
    "EngineFactory",
    "ModelLoadError",
    "PredictionError",
    "load_estimator",
    "write_model_archive",
    # Model source
    "ModelSource",
    "ModelSourceError",
]
