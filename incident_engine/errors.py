"""Typed failures raised across the engine and the AI worker."""


class MalformedEventError(Exception):
    """Raised when an inbound envelope cannot be decoded or validated."""
    pass


class IncidentNotFound(Exception):
    """Raised when a job or an operator action references a missing incident."""
    pass


class LLMError(Exception):
    """Base class for inference provider failures."""
    pass


class LLMTimeout(LLMError):
    """Raised when the inference call exceeds its deadline."""
    pass


class LLMUnavailable(LLMError):
    """Raised when the LLM endpoint returns 4xx/5xx or can't be reached."""
    pass


class SummaryParseError(Exception):
    """Raised when the provider response holds no usable structured summary."""
    pass
