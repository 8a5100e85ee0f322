"""
fal.ai queue client.

Thin synchronous wrapper over the queue REST API:

    POST {queue}/{model}?fal_webhook=...          -> {request_id, ...}
    GET  {queue}/{app}/requests/{id}/status?logs=1 -> {status, logs, ...}
    GET  {queue}/{app}/requests/{id}               -> model output

Status and result URLs use the app id (``owner/alias``), not the full model
path, so ``fal-ai/nano-banana/edit`` is polled under ``fal-ai/nano-banana``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import httpx

from errors import ProviderError
from monitoring import provider_calls

logger = logging.getLogger(__name__)


@dataclass
class ProviderStatus:
    status: str
    logs: List[str] = field(default_factory=list)
    error: Optional[str] = None
    queue_position: Optional[int] = None


def first_image_url(output: Optional[Dict[str, Any]]) -> Optional[str]:
    """First ``images[].url`` of a provider output, if any"""
    if not isinstance(output, dict):
        return None
    images = output.get("images") or []
    for image in images[:1]:
        if isinstance(image, dict) and image.get("url"):
            return image["url"]
    return None


def error_message(body: Any) -> Optional[str]:
    """Best-effort error text from a provider response body"""
    if not isinstance(body, dict):
        return None
    err = body.get("error")
    if isinstance(err, dict):
        err = err.get("message")
    if err:
        return str(err)
    detail = body.get("detail")
    if isinstance(detail, list) and detail:
        detail = detail[0].get("msg") if isinstance(detail[0], dict) else detail[0]
    return str(detail) if detail else None


class FalQueueClient:
    def __init__(self, api_key: str, model: str, base_url: str = "https://queue.fal.run",
                 timeout: float = 30.0, transport: httpx.BaseTransport = None):
        self.model = model.strip("/")
        self.app_id = "/".join(self.model.split("/")[:2])
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            headers={"Authorization": f"Key {api_key}", "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
            trust_env=False,
        )

    def close(self):
        self._client.close()

    def _request(self, operation: str, method: str, path: str, **kwargs) -> Any:
        try:
            r = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            provider_calls.labels(operation=operation, outcome="error").inc()
            raise ProviderError(f"fal {operation} request failed: {e}") from e

        try:
            body = r.json()
        except ValueError:
            body = {}

        if not r.is_success:
            provider_calls.labels(operation=operation, outcome="error").inc()
            msg = error_message(body) or r.text[:2000]
            raise ProviderError(
                f"fal {operation} failed: HTTP {r.status_code}: {msg}",
                status_code=r.status_code,
                detail=msg,
            )

        if not isinstance(body, dict):
            provider_calls.labels(operation=operation, outcome="error").inc()
            raise ProviderError(f"fal {operation} returned a non-object body: {r.text[:500]}")

        provider_calls.labels(operation=operation, outcome="ok").inc()
        return body

    def submit(self, payload: Dict[str, Any], webhook_url: Optional[str] = None) -> str:
        """Queue a job and return its request id"""
        params = {"fal_webhook": webhook_url} if webhook_url else None
        body = self._request("submit", "POST", f"/{self.model}", json=payload, params=params)
        request_id = body.get("request_id")
        if not request_id:
            raise ProviderError(f"fal submit returned no request_id: {str(body)[:500]}")
        return request_id

    def status(self, request_id: str, logs: bool = True) -> ProviderStatus:
        body = self._request(
            "status",
            "GET",
            f"/{self.app_id}/requests/{request_id}/status",
            params={"logs": 1 if logs else 0},
        )
        raw_logs = body.get("logs") or []
        return ProviderStatus(
            status=str(body.get("status", "")).upper(),
            logs=[l.get("message", "") if isinstance(l, dict) else str(l) for l in raw_logs],
            error=error_message(body),
            queue_position=body.get("queue_position"),
        )

    def result(self, request_id: str) -> Dict[str, Any]:
        body = self._request("result", "GET", f"/{self.app_id}/requests/{request_id}")
        # Some responses wrap the model output in "response"/"data"
        for key in ("response", "data"):
            if isinstance(body.get(key), dict):
                return body[key]
        return body
