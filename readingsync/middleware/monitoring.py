import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from readingsync.monitoring.metrics import request_count, request_duration, active_requests
import time

logger = logging.getLogger(__name__)


def endpoint_label(request: Request) -> str:
	"""Route template, falling back to the raw path"""
	route = request.scope.get("route")
	return getattr(route, "path", request.url.path)


class MonitoringMiddleware(BaseHTTPMiddleware):
	"""Track request metrics for Prometheus"""

	async def dispatch(self, request: Request, call_next):
		# Skip metrics endpoint to avoid recursion
		if request.url.path == "/internal/metrics":
			return await call_next(request)

		# Track active requests
		active_requests.inc()

		# Start timer
		start_time = time.time()

		try:
			# Process request
			response = await call_next(request)

			# Record metrics
			duration = time.time() - start_time
			endpoint = endpoint_label(request)

			request_count.labels(
				method=request.method,
				endpoint=endpoint,
				status=response.status_code
			).inc()

			request_duration.labels(
				method=request.method,
				endpoint=endpoint
			).observe(duration)

			# Log slow requests
			if duration > 1.0:
				logger.warning(
					f"Slow request: {request.method} {request.url.path} "
					f"took {duration:.2f}s"
				)

			return response

		finally:
			active_requests.dec()
