"""
Tests for the HTTP API.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from sentiment_serving.serving.model_source import ModelSourceError
from sentiment_serving.serving.pool import (
    EngineConstructionError,
    PoolClosedError,
    PoolTimeoutError,
)
from sentiment_serving.serving.server import create_app, lifespan


class TestPredictEndpoint:
    """POST /predict"""

    def test_predict(self, stub_client, counting_factory):
        response = stub_client.post("/predict", json={"SentimentText": "This was a great movie"})

        assert response.status_code == 200
        assert response.json() == {"Prediction": True, "Probability": 0.9, "Score": 2.0}
        assert counting_factory.engines[0].calls == 1

    def test_repeated_requests_reuse_engine(self, stub_client, counting_factory):
        for _ in range(5):
            response = stub_client.post("/predict", json={"SentimentText": "great"})
            assert response.status_code == 200

        assert counting_factory.created == 1
        assert counting_factory.engines[0].calls == 5

    def test_extra_fields_are_ignored(self, stub_client):
        response = stub_client.post(
            "/predict", json={"SentimentText": "great", "Sentiment": True}
        )
        assert response.status_code == 200

    def test_missing_text(self, stub_client, counting_factory):
        response = stub_client.post("/predict", json={})

        assert response.status_code == 422
        assert counting_factory.attempts == 0

    def test_field_name_is_not_accepted(self, stub_client, counting_factory):
        response = stub_client.post("/predict", json={"text": "This was a great movie"})

        assert response.status_code == 422
        assert counting_factory.attempts == 0

    def test_wrong_type(self, stub_client):
        response = stub_client.post("/predict", json={"SentimentText": 123})
        assert response.status_code == 422

    def test_invalid_json(self, stub_client):
        response = stub_client.post(
            "/predict",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 422

    def test_engine_failure_returns_500(self, stub_client, counting_factory):
        response = stub_client.post("/predict", json={"SentimentText": "boom"})

        assert response.status_code == 500
        body = response.json()
        assert "Prediction failed" in body["detail"]
        assert body["trace_id"] == response.headers["X-Trace-ID"]

        # The engine went back to the pool
        response = stub_client.post("/predict", json={"SentimentText": "great"})
        assert response.status_code == 200
        assert counting_factory.created == 1

    @pytest.mark.parametrize("error", [PoolTimeoutError("busy"), PoolClosedError("closed")])
    def test_pool_unavailable_returns_503(self, stub_client, error):
        stub_client.app.state.pool.predict = AsyncMock(side_effect=error)

        response = stub_client.post("/predict", json={"SentimentText": "great"})

        assert response.status_code == 503
        assert response.json()["detail"] == str(error)

    def test_pool_not_started(self, app_config, counting_factory):
        # Without the context manager the lifespan never runs
        client = TestClient(create_app(app_config, engine_factory=counting_factory))

        response = client.post("/predict", json={"SentimentText": "great"})

        assert response.status_code == 503
        assert response.json()["detail"] == "Engine pool not initialized"


class TestHealthEndpoint:
    """GET /health"""

    def test_healthy(self, stub_client):
        response = stub_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["model_loaded"] is True
        assert data["uptime_seconds"] >= 0
        assert "timestamp" in data

    def test_unhealthy_before_startup(self, app_config, counting_factory):
        client = TestClient(create_app(app_config, engine_factory=counting_factory))

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"


class TestInfoAndMetrics:
    """GET /info and GET /metrics"""

    def test_info(self, stub_client):
        stub_client.post("/predict", json={"SentimentText": "great"})

        response = stub_client.get("/info")

        assert response.status_code == 200
        data = response.json()
        assert data["pool"]["max_size"] == 2
        assert data["pool"]["created"] == 1
        assert data["pool"]["idle"] == 1
        assert data["model"]["uri"] is None
        assert "/predict" in data["api"]["endpoints"]

    def test_metrics(self, stub_client):
        stub_client.post("/predict", json={"SentimentText": "great"})

        response = stub_client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]
        assert "sentiment_api_predictions_total" in response.text
        assert "sentiment_api_pool_engines" in response.text

    def test_trace_id_header(self, stub_client):
        first = stub_client.get("/health")
        second = stub_client.get("/health")

        assert len(first.headers["X-Trace-ID"]) == 16
        assert first.headers["X-Trace-ID"] != second.headers["X-Trace-ID"]


@pytest.mark.integration
class TestRealModel:
    """Serving a real model archive from MODEL_URI."""

    def test_end_to_end(self, app_config, model_archive_path):
        app_config.MODEL_URI = str(model_archive_path)
        app_config.POOL_WARMUP = 1

        with TestClient(create_app(app_config)) as client:
            assert client.app.state.pool.stats().idle == 1

            positive = client.post("/predict", json={"SentimentText": "This was a great movie"})
            negative = client.post("/predict", json={"SentimentText": "This was a terrible movie"})

            info = client.get("/info").json()

        assert positive.status_code == 200
        assert positive.json()["Prediction"] is True
        assert positive.json()["Probability"] > 0.5
        assert positive.json()["Score"] > 0
        assert negative.json()["Prediction"] is False
        assert info["model"]["uri"] == str(model_archive_path)

    def test_reloader_started_when_enabled(self, app_config, model_archive_path):
        app_config.MODEL_URI = str(model_archive_path)
        app_config.MODEL_RELOAD_INTERVAL = 60.0

        with TestClient(create_app(app_config)) as client:
            reloader = client.app.state.reloader
            assert reloader is not None
            assert reloader.running

        assert not reloader.running

    @pytest.mark.asyncio
    async def test_missing_model_fails_startup(self, app_config):
        app = create_app(app_config)

        with pytest.raises(ModelSourceError):
            async with lifespan(app):
                pass

    @pytest.mark.asyncio
    async def test_corrupt_model_fails_warmup(self, app_config, tmp_path):
        corrupt = tmp_path / "corrupt.zip"
        corrupt.write_bytes(b"\x00\x01 not a model")
        app_config.MODEL_URI = str(corrupt)
        app_config.POOL_WARMUP = 1
        app = create_app(app_config)

        with pytest.raises(EngineConstructionError):
            async with lifespan(app):
                pass

        assert app.state.pool.closed
