import logging
from dataclasses import dataclass
from typing import Callable, Optional

from errors import InvalidSubmissionError, JobRecordError, ProviderError, SubmissionError
from job_store import JobStore
from models import MOCK_REQUEST_ID
from provider import FalQueueClient

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    request_id: str
    message: str
    mock: bool = False
    webhook_enabled: bool = False

    def to_response(self) -> dict:
        body = {"success": True, "message": self.message, "requestId": self.request_id}
        if self.mock:
            body["mock"] = True
        else:
            body["webhookEnabled"] = self.webhook_enabled
        return body


def build_prompt(prompt: Optional[str], style: Optional[str], intensity: Optional[str]) -> str:
    if prompt and prompt.strip():
        return prompt.strip()
    return f"Portrait with {style} makeup, {intensity} intensity"


def submit_job(
    store: JobStore,
    provider: Optional[FalQueueClient],
    image: Optional[str],
    prompt: Optional[str] = None,
    style: Optional[str] = None,
    intensity: Optional[str] = None,
    webhook_url: Optional[str] = None,
    schedule_reconcile: Optional[Callable[[str], None]] = None,
) -> SubmissionResult:
    """Forward a job to the provider queue and record it as PENDING.

    ``provider`` is None when no credential is configured; the request is
    then answered with the mock sentinel id and nothing is stored.
    """
    if not image:
        raise InvalidSubmissionError("Image is required")

    if provider is None:
        logger.warning("FAL_KEY is missing or placeholder.")
        return SubmissionResult(
            request_id=MOCK_REQUEST_ID,
            message="Mock success (FAL_KEY missing)",
            mock=True,
        )

    final_prompt = build_prompt(prompt, style, intensity)
    logger.info(f"Submitting to fal queue (prompt={final_prompt!r}, webhook={webhook_url or 'NONE (polling mode)'})")

    try:
        request_id = provider.submit(
            {
                "prompt": final_prompt,
                "image_urls": [image],
                "num_images": 1,
                "output_format": "png",
            },
            webhook_url=webhook_url,
        )
    except ProviderError as e:
        logger.error(f"Error submitting job: {e}")
        raise SubmissionError(str(e)) from e

    try:
        store.create(request_id, final_prompt)
    except Exception as e:
        # The provider is already processing this job; make the orphan visible
        logger.critical(f"Job {request_id} was queued at the provider but could not be recorded: {e}", exc_info=True)
        raise JobRecordError(request_id, f"Failed to record job {request_id}: {e}") from e

    logger.info(f"Job created with ID: {request_id}")

    if schedule_reconcile is not None:
        try:
            schedule_reconcile(request_id)
        except Exception as e:
            logger.warning(f"Could not schedule background reconcile for job {request_id}: {e}")

    return SubmissionResult(
        request_id=request_id,
        message="Job submitted successfully",
        webhook_enabled=bool(webhook_url),
    )
