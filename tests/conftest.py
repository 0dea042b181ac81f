"""
Pytest Configuration and Fixtures

Shared fixtures for the sentiment serving tests:
- Stub engines and counting engine factories
- A small fitted scikit-learn pipeline and its model archive
- Configuration and FastAPI test clients
"""

import asyncio
import io
import threading
import time
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.linear_model import LogisticRegression
from sklearn.pipeline import Pipeline

from sentiment_serving.config import Config
from sentiment_serving.serving.engine import SentimentPrediction, write_model_archive
from sentiment_serving.serving.server import create_app


TRAINING_REVIEWS = [
    ("This was a great movie", True),
    ("I loved it, wonderful and moving", True),
    ("Excellent acting and a great story", True),
    ("Fantastic, brilliant, highly recommended", True),
    ("A beautiful and enjoyable film", True),
    ("This was a terrible movie", False),
    ("I hated it, boring and painful", False),
    ("Awful acting and a bad story", False),
    ("Dreadful, dull, avoid it", False),
    ("An ugly and tedious film", False),
]

FIXED_PREDICTION = SentimentPrediction(prediction=True, probability=0.9, score=2.0)


# ============================================================================
# Stub Engines
# ============================================================================

class StubEngine:
    """Engine returning a fixed prediction, with hooks for concurrency tests."""

    def __init__(
        self,
        number: int,
        result: SentimentPrediction = FIXED_PREDICTION,
        delay: float = 0.0,
        gate: Optional[threading.Event] = None,
        entered: Optional[threading.Event] = None,
    ):
        self.number = number
        self.result = result
        self.delay = delay
        self.gate = gate
        self.entered = entered
        self.calls = 0
        self.closed = False
        self.overlaps = 0
        self._busy = False

    def predict(self, data):
        if self._busy:
            self.overlaps += 1
        self._busy = True
        try:
            self.calls += 1
            if self.entered is not None:
                self.entered.set()
            if self.gate is not None:
                self.gate.wait(timeout=5)
            if self.delay:
                time.sleep(self.delay)
            if data.text == "boom":
                raise ValueError("malformed input")
            return self.result
        finally:
            self._busy = False

    def close(self):
        self.closed = True


class CountingFactory:
    """Engine factory that records every construction."""

    def __init__(self, fail: bool = False, construct_gate: Optional[threading.Event] = None, **engine_kwargs):
        self.fail = fail
        self.construct_gate = construct_gate
        self.construct_entered = threading.Event()
        self.engine_kwargs = engine_kwargs
        self.engines = []
        self.attempts = 0
        self._lock = threading.Lock()

    @property
    def created(self) -> int:
        return len(self.engines)

    def __call__(self):
        with self._lock:
            self.attempts += 1
        self.construct_entered.set()
        if self.construct_gate is not None:
            self.construct_gate.wait(timeout=5)
        if self.fail:
            raise RuntimeError("model blob unreachable")
        with self._lock:
            engine = StubEngine(len(self.engines) + 1, **self.engine_kwargs)
            self.engines.append(engine)
        return engine


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until ``predicate()`` is true or fail the test."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def counting_factory():
    return CountingFactory()


# ============================================================================
# Real Model Fixtures
# ============================================================================

@pytest.fixture(scope="session")
def trained_pipeline():
    """Small fitted TF-IDF + logistic regression pipeline."""
    texts = [text for text, _ in TRAINING_REVIEWS]
    labels = [label for _, label in TRAINING_REVIEWS]
    pipeline = Pipeline([
        ("tfidf", TfidfVectorizer()),
        ("clf", LogisticRegression(C=10.0, max_iter=1000)),
    ])
    pipeline.fit(texts, labels)
    return pipeline


@pytest.fixture(scope="session")
def model_archive_bytes(trained_pipeline):
    buffer = io.BytesIO()
    write_model_archive(trained_pipeline, buffer)
    return buffer.getvalue()


@pytest.fixture
def model_archive_path(tmp_path, model_archive_bytes):
    path = tmp_path / "sentiment_model.zip"
    path.write_bytes(model_archive_bytes)
    return path


# ============================================================================
# Configuration / App Fixtures
# ============================================================================

@pytest.fixture
def app_config(tmp_path):
    """Configuration suitable for tests (no warmup, no reloads)."""
    config = Config()
    config.MODEL_URI = str(tmp_path / "missing.zip")
    config.MODEL_CACHE_DIR = str(tmp_path / "cache")
    config.POOL_MAX_SIZE = 2
    config.POOL_WARMUP = 0
    config.POOL_ACQUIRE_TIMEOUT = 0.0
    config.MODEL_RELOAD_INTERVAL = 0.0
    config.LOG_LEVEL = "INFO"
    config.LOG_FORMAT = "text"
    return config


@pytest.fixture
def stub_client(app_config, counting_factory):
    """Test client around an app serving stub engines."""
    app = create_app(app_config, engine_factory=counting_factory)
    with TestClient(app) as client:
        yield client


@pytest.fixture(autouse=True)
def clean_model_env(monkeypatch):
    """Keep the developer's environment out of Config()."""
    for var in (
        "MODEL_URI", "MODEL_CACHE_DIR", "MODEL_DOWNLOAD_TIMEOUT", "MODEL_DOWNLOAD_RETRIES",
        "MODEL_RELOAD_INTERVAL", "POOL_MAX_SIZE", "POOL_ACQUIRE_TIMEOUT", "POOL_WARMUP",
        "HOST", "PORT", "API_VERSION", "LOG_LEVEL", "LOG_FORMAT",
    ):
        monkeypatch.delenv(var, raising=False)
