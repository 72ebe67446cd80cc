"""
Error Taxonomy

Every failure a stage can hit maps to one of these. Workers decide
ack/nack from the type, never from the message text.
"""

from typing import Any, Optional


class PipelineError(Exception):
    """Base class for all bottleneck-tracker errors."""


class DecodeError(PipelineError):
    """Malformed or incomplete payload. Dropped and acknowledged."""

    def __init__(self, message: str, payload: Any = None, field: Optional[str] = None):
        super().__init__(message)
        self.payload = payload
        self.field = field


class PublishError(PipelineError):
    """The transport rejected a publish."""

    def __init__(self, topic: str, message: str, attempts: int = 1):
        super().__init__(f"publish to {topic} failed after {attempts} attempt(s): {message}")
        self.topic = topic
        self.reason = message
        self.attempts = attempts


class HandlerFault(PipelineError):
    """Unexpected exception inside a stage handler. The envelope is nacked."""

    def __init__(self, stage: str, envelope_id: str, cause: BaseException):
        super().__init__(f"{stage} failed on envelope {envelope_id}: {cause!r}")
        self.stage = stage
        self.envelope_id = envelope_id
        self.cause = cause


class ConfigurationError(PipelineError):
    """A required parameter is missing or invalid. Fatal at startup."""

    def __init__(self, parameter: str, reason: str = "missing required parameter"):
        super().__init__(f"{reason}: {parameter}")
        self.parameter = parameter
