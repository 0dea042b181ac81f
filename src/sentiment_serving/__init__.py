"""
Sentiment Serving

A small HTTP service that loads a pre-trained binary sentiment model from a
remote or local archive and serves predictions through a bounded pool of
reusable inference engines.

Modules:
    - serving.pool: bounded, lazily-filled engine pool
    - serving.engine: model loading and single-record inference
    - serving.model_source: archive download, caching and change detection
    - serving.reloader: background model reloads
    - serving.server: FastAPI application
    - config: environment-driven configuration
"""

__version__ = "1.0.0"

__all__ = [
    "__version__",
]
