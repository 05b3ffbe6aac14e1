from __future__ import annotations

from typing import Optional


class MarketingAgentError(Exception):
    """Base error. ``retryable`` tells the queue worker whether to try again."""

    retryable = False

    def __init__(self, msg: str, code: Optional[str] = None):
        super().__init__(msg)
        self.code = code


class ValidationError(MarketingAgentError):
    """Bad input. Never retried."""


class NotFound(MarketingAgentError):
    pass


class ChannelCredentialMissing(NotFound):
    def __init__(self, msg: str, channel: Optional[str] = None):
        super().__init__(msg, code="CHANNEL_CREDENTIAL_MISSING")
        self.channel = channel


class InvalidTransition(MarketingAgentError):
    def __init__(self, current: str, target: str, post_id: Optional[str] = None):
        super().__init__(f"Invalid status transition: {current} -> {target}", code="INVALID_TRANSITION")
        self.current = current
        self.target = target
        self.post_id = post_id


class ChannelMismatch(MarketingAgentError):
    def __init__(self, msg: str, expected: Optional[str] = None, actual: Optional[str] = None):
        super().__init__(msg, code="CHANNEL_MISMATCH")
        self.expected = expected
        self.actual = actual


class ExternalServiceError(MarketingAgentError):
    """LLM, embedding or channel API failure (timeouts and non-2xx included)."""

    retryable = True

    def __init__(self, msg: str, service: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(msg, code="EXTERNAL_SERVICE_ERROR")
        self.service = service
        self.status_code = status_code


class GenerationParseError(ExternalServiceError):
    def __init__(self, msg: str, raw: str = ""):
        super().__init__(msg, service="llm")
        self.code = "GENERATION_PARSE_ERROR"
        self.raw = raw


class RateLimited(MarketingAgentError):
    def __init__(self, msg: str, retry_after: float = 0.0):
        super().__init__(msg, code="RATE_LIMITED")
        self.retry_after = retry_after


class JobFailedError(MarketingAgentError):
    def __init__(self, job_id: str, reason: Optional[str] = None):
        super().__init__(f"Job {job_id} failed: {reason or 'unknown error'}", code="JOB_FAILED")
        self.job_id = job_id
        self.reason = reason
