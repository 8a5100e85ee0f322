from fastapi import FastAPI, HTTPException, Depends, Request, APIRouter
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from pydantic import BaseModel
from functools import partial
from typing import Callable, Optional
import asyncio
import uuid
import logging
import redis
from rq import Queue
from contextlib import asynccontextmanager

# Local imports
from config import settings
from database import SqlJobStore, create_tables
from errors import InvalidSubmissionError, JobFailedError, JobRecordError, ProviderError, SubmissionError, WaitTimeoutError
from events import JobEvents, make_events
from gateway import submit_job
from job_store import JobStore
from models import MOCK_REQUEST_ID, JobStatus
from provider import FalQueueClient
from reconciler import check_after_grace, reconcile_status
from security import security_manager
from waiter import JobWaiter
from webhook import WebhookNotification, apply_webhook
from worker_tasks import schedule_reconcile
from rate_limiter import limiter, setup_rate_limiting, submission_limit
from health import health_router
from monitoring import setup_monitoring

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(settings.log_file),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# Change notifications; every store write is published
job_events = make_events(settings.redis_url)
job_store = SqlJobStore(listener=job_events.publish)

provider_client = None
if settings.provider_configured:
    provider_client = FalQueueClient(
        settings.fal_key,
        settings.fal_model,
        base_url=settings.fal_queue_url,
        timeout=settings.provider_timeout
    )

# Redis connection for the background reconcile queue
redis_conn = redis.from_url(settings.redis_url) if settings.redis_url else None
reconcile_queue = Queue(settings.reconcile_queue, connection=redis_conn) if redis_conn else None

def get_store() -> JobStore:
    return job_store

def get_events() -> JobEvents:
    return job_events

def get_provider() -> Optional[FalQueueClient]:
    return provider_client

def get_scheduler() -> Optional[Callable[[str], None]]:
    if reconcile_queue is None:
        return None
    return partial(schedule_reconcile, reconcile_queue)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    try:
        create_tables()
        logger.info("Application started successfully")

        if redis_conn is not None:
            redis_conn.ping()
            logger.info("Redis connection established")
        else:
            logger.info("Redis disabled: in-process events, no background reconcile")

        if provider_client is None:
            logger.warning("FAL_KEY not configured, submissions will be mocked")

    except Exception as e:
        logger.error(f"Startup error: {e}")
        raise

    yield

    # Shutdown
    logger.info("Application shutting down")
    await job_events.aclose()
    if provider_client is not None:
        provider_client.close()

# Create FastAPI app
app = FastAPI(
    title="AI Makeup Job Service",
    description="Submits makeup edits to an external image queue and tracks them to completion",
    version="1.0.0",
    lifespan=lifespan
)

# Security middleware
app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["*"]  # Configure properly for production
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Setup rate limiting
setup_rate_limiting(app)

# Setup monitoring
setup_monitoring(app)

# Include health check router
app.include_router(health_router, prefix="/health", tags=["health"])

makeup_router = APIRouter()

# Request/Response models
class ProcessRequest(BaseModel):
    image: Optional[str] = None
    prompt: Optional[str] = None
    style: Optional[str] = "Custom"
    intensity: Optional[str] = "Custom"

    class Config:
        json_schema_extra = {
            "example": {
                "image": "https://example.com/portrait.png",
                "prompt": "add thick eyebrows and change lips color to red to the image"
            }
        }

class WaitResponse(BaseModel):
    status: JobStatus
    resultUrl: Optional[str] = None
    error: Optional[str] = None

# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception on {request.url}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error_id": str(uuid.uuid4())}
    )

@app.get("/", response_class=PlainTextResponse)
def root():
    return "AI Makeup Server is running"

@makeup_router.post("/process")
@limiter.limit(submission_limit)
def submit_makeup(
    request: Request,
    body: ProcessRequest,
    store: JobStore = Depends(get_store),
    provider: Optional[FalQueueClient] = Depends(get_provider),
    scheduler: Optional[Callable[[str], None]] = Depends(get_scheduler)
):
    """Submit a new makeup job"""

    if body.image and not security_manager.validate_image_payload(body.image):
        return JSONResponse(status_code=400, content={"error": "Invalid image payload"})

    try:
        result = submit_job(
            store,
            provider,
            body.image,
            prompt=body.prompt,
            style=body.style,
            intensity=body.intensity,
            webhook_url=settings.webhook_url,
            schedule_reconcile=scheduler
        )
    except InvalidSubmissionError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})
    except SubmissionError as e:
        return JSONResponse(status_code=500, content={"error": "Failed to submit job", "details": str(e)})
    except JobRecordError as e:
        return JSONResponse(status_code=500, content={"error": "Failed to record job", "requestId": e.request_id})

    return result.to_response()

@makeup_router.post("/webhook")
def handle_webhook(notification: WebhookNotification, store: JobStore = Depends(get_store)):
    """Receive a completion callback from the provider"""

    if not notification.request_id:
        logger.error("Webhook missing request_id")
        return JSONResponse(status_code=400, content={"error": "Missing request_id"})

    try:
        apply_webhook(store, notification)
    except Exception as e:
        # Acknowledge anyway; a non-2xx only triggers provider redelivery
        logger.error(f"Error processing webhook for job {notification.request_id}: {e}", exc_info=True)

    return {"received": True}

@makeup_router.get("/status/{request_id}")
def get_makeup_status(
    request_id: str,
    store: JobStore = Depends(get_store),
    provider: Optional[FalQueueClient] = Depends(get_provider)
):
    """Current status, polling the provider when no terminal state is stored"""
    try:
        report = reconcile_status(store, provider, request_id)
    except ProviderError as e:
        return JSONResponse(status_code=502, content={"error": "Failed to check status", "details": str(e)})

    return report.to_response()

@makeup_router.get("/wait/{request_id}", response_model=WaitResponse, response_model_exclude_none=True)
async def wait_for_job(
    request_id: str,
    timeout: Optional[float] = None,
    store: JobStore = Depends(get_store),
    events: JobEvents = Depends(get_events),
    provider: Optional[FalQueueClient] = Depends(get_provider)
):
    """Block until the job completes, fails or the wait times out"""

    if request_id == MOCK_REQUEST_ID:
        return WaitResponse(status=JobStatus.COMPLETED)

    if await asyncio.to_thread(store.get, request_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")

    # Webhooks can be lost, so checks fall back to polling the provider
    if provider is None:
        check = store.get
    elif settings.webhook_enabled:
        check = partial(check_after_grace, store, provider, settings.webhook_grace_seconds)
    else:
        check = partial(reconcile_status, store, provider)

    wait_timeout = settings.wait_timeout_seconds
    if timeout is not None:
        wait_timeout = max(0.0, min(timeout, wait_timeout))

    waiter = JobWaiter(
        events,
        check,
        timeout=wait_timeout,
        recheck_interval=settings.wait_recheck_interval,
        max_resubscribes=settings.wait_max_resubscribes,
        resubscribe_delay=settings.wait_resubscribe_delay
    )

    try:
        outcome = await waiter.wait(request_id)
    except JobFailedError as e:
        return WaitResponse(status=JobStatus.FAILED, error=e.error)
    except WaitTimeoutError:
        return JSONResponse(status_code=504, content={"error": "Timed out waiting for job"})

    return WaitResponse(status=outcome.status, resultUrl=outcome.result_url)

@makeup_router.get("/jobs")
def list_jobs(
    skip: int = 0,
    limit: int = 100,
    status: Optional[JobStatus] = None,
    store: JobStore = Depends(get_store),
    api_key: str = Depends(security_manager.get_api_key)
):
    """List jobs (admin endpoint)"""

    jobs = store.list(status=status, skip=skip, limit=min(limit, 500))

    return {
        "jobs": [
            {
                "requestId": job.request_id,
                "status": job.status.value,
                "prompt": job.prompt,
                "resultUrl": job.result_url,
                "error": job.error,
                "createdAt": job.created_at,
                "updatedAt": job.updated_at
            }
            for job in jobs
        ]
    }

app.include_router(makeup_router, prefix="/api/makeup", tags=["makeup"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
