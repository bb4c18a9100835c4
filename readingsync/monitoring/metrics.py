from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter
from fastapi.responses import Response

router = APIRouter()

# Define metrics
request_count = Counter(
	'http_requests_total',
	'Total HTTP requests',
	['method', 'endpoint', 'status']
)

request_duration = Histogram(
	'http_request_duration_seconds',
	'HTTP request duration',
	['method', 'endpoint'],
	buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

active_requests = Gauge(
	'http_requests_active',
	'Number of active HTTP requests'
)

readings_ingested = Counter(
	'readings_ingested_total',
	'Reading writes by ingestion path and outcome',
	['source', 'outcome']  # outcome: created, duplicate, failed
)

idempotent_replays = Counter(
	'idempotent_replays_total',
	'Responses served from the idempotency cache',
	['scope']
)

anomalies_detected = Counter(
	'anomalies_detected_total',
	'Readings flagged by the anomaly rules engine',
	['severity']
)

realtime_publish_failures = Counter(
	'realtime_publish_failures_total',
	'Realtime events that could not be delivered',
	['target']  # local, broker
)

websocket_connections = Gauge(
	'websocket_connections_active',
	'Open realtime websocket connections'
)


@router.get("/metrics")
async def metrics():
	"""Prometheus metrics endpoint"""
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
