from fastapi import Request
import time
import logging
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi.responses import Response as FastAPIResponse

logger = logging.getLogger(__name__)

# Prometheus metrics
request_count = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration',
    ['method', 'endpoint']
)

job_count = Counter(
    'jobs_total',
    'Jobs that reached a terminal state',
    ['status']
)

job_duration = Histogram(
    'job_processing_duration_seconds',
    'Time from submission to terminal state',
    ['status'],
    buckets=(5, 10, 20, 30, 60, 120, 300, 600)
)

webhook_count = Counter(
    'webhooks_total',
    'Provider webhooks received',
    ['outcome']
)

provider_calls = Counter(
    'provider_calls_total',
    'Calls to the image provider queue',
    ['operation', 'outcome']
)

def job_finished(job):
    """Record a job's transition into a terminal state"""
    status = job.status.value
    job_count.labels(status=status).inc()
    if job.created_at and job.updated_at:
        job_duration.labels(status=status).observe(
            max((job.updated_at - job.created_at).total_seconds(), 0)
        )

class MonitoringMiddleware:
    def __init__(self, app):
        self.app = app
    
    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        
        request = Request(scope, receive)
        start_time = time.time()
        
        # Process the request
        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                # Record metrics
                duration = time.time() - start_time
                status_code = message["status"]

                # Route template keeps per-job URLs from exploding label cardinality
                route = scope.get("route")
                endpoint = getattr(route, "path", request.url.path)
                
                request_count.labels(
                    method=request.method,
                    endpoint=endpoint,
                    status=status_code
                ).inc()
                
                request_duration.labels(
                    method=request.method,
                    endpoint=endpoint
                ).observe(duration)
                
                logger.info(
                    f"{request.method} {request.url.path} "
                    f"- {status_code} - {duration:.3f}s"
                )
            
            await send(message)
        
        await self.app(scope, receive, send_wrapper)

def setup_monitoring(app):
    """Setup monitoring middleware and endpoints"""
    
    # Add monitoring middleware
    app.add_middleware(MonitoringMiddleware)
    
    @app.get("/metrics")
    def get_metrics():
        """Prometheus metrics endpoint"""
        return FastAPIResponse(
            generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )
