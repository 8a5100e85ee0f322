"""Exceptions raised by the job lifecycle layer."""


class JobServiceError(Exception):
    """Base class for job service errors"""


class InvalidSubmissionError(JobServiceError):
    """Client supplied an unusable submission (e.g. no image)"""


class SubmissionError(JobServiceError):
    """Provider queue rejected or failed the submission"""


class JobRecordError(JobServiceError):
    """Provider accepted a job but its record could not be stored"""

    def __init__(self, request_id: str, message: str):
        super().__init__(message)
        self.request_id = request_id


class JobAlreadyExistsError(JobServiceError):
    def __init__(self, request_id: str):
        super().__init__(f"Job {request_id} already exists")
        self.request_id = request_id


class ProviderError(JobServiceError):
    """Provider call failed (network, timeout or non-2xx response)"""

    def __init__(self, message: str, status_code: int = None, detail=None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500 and self.status_code != 429


class SubscriptionError(JobServiceError):
    """Change-notification channel dropped or could not be opened"""


class JobFailedError(JobServiceError):
    def __init__(self, request_id: str, error: str):
        super().__init__(error)
        self.request_id = request_id
        self.error = error


class WaitTimeoutError(JobServiceError):
    def __init__(self, request_id: str, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for job {request_id}")
        self.request_id = request_id
        self.timeout = timeout


class JobStillRunningError(JobServiceError):
    """Raised by the background reconcile task so the queue retries it"""
