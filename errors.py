from typing import Optional

import openai


class TokenBudgetExceeded(Exception):
    """The prompt does not fit into the model context window."""

    def __init__(self, estimated_tokens: Optional[int] = None, available_tokens: Optional[int] = None, message: str = ""):
        self.estimated_tokens = estimated_tokens
        self.available_tokens = available_tokens
        if not message:
            message = f"Prompt needs ~{estimated_tokens} tokens, {available_tokens} available"
        super().__init__(message)


class CompletionError(Exception):
    """The model answered with something we cannot use."""


def is_rate_limit(exc: BaseException) -> bool:
    if isinstance(exc, openai.RateLimitError):
        return True
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status == 429


def is_context_length_error(exc: BaseException) -> bool:
    if not isinstance(exc, openai.BadRequestError):
        return False
    if getattr(exc, "code", None) == "context_length_exceeded":
        return True
    return "maximum context length" in str(exc)
