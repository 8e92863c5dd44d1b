from typing import Optional


class PipelineError(RuntimeError):
    def __init__(self, message: str, user_id: Optional[int] = None):
        super().__init__(message)
        self.user_id = user_id


class ConfigError(ValueError):
    pass


class ProviderRequestError(PipelineError):
    """A single provider call failed. The gateway retries these."""

    def __init__(self, provider: str, model: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.model = model
        self.status_code = status_code


class ProviderUnavailable(PipelineError):
    """Every model in the fallback list failed or returned empty text."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None, attempts: int = 0):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


class MalformedSuggestionPayload(PipelineError):
    def __init__(self, message: str, raw_excerpt: str = "", user_id: Optional[int] = None):
        super().__init__(message, user_id=user_id)
        self.raw_excerpt = raw_excerpt


class AggregationError(PipelineError):
    pass


class StoreWriteError(PipelineError):
    pass


class InvalidTransition(PipelineError):
    def __init__(self, suggestion_id: int, current: str, target: str):
        super().__init__(f"Suggestion {suggestion_id} is {current}; cannot move to {target}")
        self.suggestion_id = suggestion_id
        self.current = current
        self.target = target
