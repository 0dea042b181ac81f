"""
Prometheus metrics definitions.

Kept in one module so the server and the pool bookkeeping share the same
metric objects.
"""

from prometheus_client import Counter, Gauge, Histogram


request_count = Counter(
    'sentiment_api_requests_total',
    'Total number of requests',
    ['method', 'endpoint', 'status_code']
)

request_duration = Histogram(
    'sentiment_api_request_duration_seconds',
    'Request duration in seconds',
    ['method', 'endpoint'],
    buckets=[.001, .0025, .005, .01, .025, .05, .1, .25, .5, 1.0, 2.5, 5.0]
)

prediction_count = Counter(
    'sentiment_api_predictions_total',
    'Total number of predictions',
    ['status']
)

inference_duration = Histogram(
    'sentiment_api_inference_duration_seconds',
    'Time spent waiting for an engine plus scoring',
    buckets=[.0005, .001, .0025, .005, .01, .025, .05, .1, .25, .5, 1.0]
)

model_loaded_gauge = Gauge(
    'sentiment_api_model_loaded',
    'Whether a model is loaded (1=loaded, 0=not loaded)'
)

model_reloads = Counter(
    'sentiment_api_model_reloads_total',
    'Model reload attempts',
    ['status']
)

pool_engines = Gauge(
    'sentiment_api_pool_engines',
    'Engines in the pool by state',
    ['state']
)

pool_waiting = Gauge(
    'sentiment_api_pool_waiting_requests',
    'Requests waiting for a free engine'
)


def update_pool_metrics(stats) -> None:
    """Copy a PoolStats snapshot into the pool gauges."""
    pool_engines.labels(state='idle').set(stats.idle)
    pool_engines.labels(state='in_use').set(stats.in_use)
    pool_engines.labels(state='constructing').set(stats.constructing)
    pool_engines.labels(state='max').set(stats.max_size)
    pool_waiting.set(stats.waiting)
