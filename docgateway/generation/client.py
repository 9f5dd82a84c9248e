"""LiteLLM wrapper for documentation generation.

The provider is an opaque capability: messages in, text out, or one of a
few failure modes. This module:
- Wraps litellm.acompletion()
- Retries transient failures with exponential backoff via tenacity
- Bounds the whole call (retries included) by generation_timeout_seconds
- Normalizes provider exceptions to the gateway error taxonomy
- Logs token usage and records provider metrics

Anything that implements GenerationProvider can stand in for the client,
which is how tests inject fakes.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Protocol

import litellm
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from docgateway.config import Settings
from docgateway.core.errors import (
    GenerationError,
    UpstreamAuthError,
    UpstreamQuotaExhausted,
    UpstreamTimeout,
    UpstreamTransientError,
)
from docgateway.core.requests import DiagnosticRequest
from docgateway.generation.prompts import build_messages
from docgateway.middleware.prometheus import record_generation

log = structlog.get_logger(__name__)

_QUOTA_MARKERS = ("insufficient_quota", "exceeded your current quota", "billing")


@dataclass(frozen=True)
class GeneratedContent:
    content: str
    model: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None


class GenerationProvider(Protocol):
    """Anything that can turn a DiagnosticRequest into documentation text."""

    model: str

    @property
    def configured(self) -> bool: ...

    async def generate(self, request: DiagnosticRequest) -> GeneratedContent: ...


def _is_quota_error(exc: BaseException) -> bool:
    if isinstance(exc, litellm.exceptions.BudgetExceededError):
        return True
    code = str(getattr(exc, "code", "") or "").lower()
    if code == "insufficient_quota":
        return True
    text = str(exc).lower()
    return isinstance(exc, litellm.exceptions.RateLimitError) and any(
        marker in text for marker in _QUOTA_MARKERS
    )


def _is_retryable(exc: BaseException) -> bool:
    """Transient network/rate-limit failures are worth another attempt."""
    if _is_quota_error(exc):
        return False
    return isinstance(
        exc,
        (
            litellm.exceptions.RateLimitError,
            litellm.exceptions.ServiceUnavailableError,
            litellm.exceptions.APIConnectionError,
            litellm.exceptions.InternalServerError,
            litellm.exceptions.Timeout,
            ConnectionError,
        ),
    )


def classify_provider_error(exc: BaseException) -> GenerationError:
    """Map a provider exception onto the gateway error taxonomy."""
    detail = str(exc) or type(exc).__name__
    if isinstance(exc, GenerationError):
        return exc
    if _is_quota_error(exc):
        return UpstreamQuotaExhausted(detail=detail)
    if isinstance(exc, litellm.exceptions.AuthenticationError):
        return UpstreamAuthError(detail=detail)
    if isinstance(exc, (litellm.exceptions.Timeout, TimeoutError)):
        return UpstreamTimeout(detail=detail)
    return UpstreamTransientError(detail=detail)


class GenerationClient:
    """Thin wrapper around LiteLLM with retry logic and structured logging."""

    def __init__(self, settings: Settings, *, retry_wait_max: float = 10.0) -> None:
        self._settings = settings
        self.model = settings.generation_model
        self._api_key = settings.litellm_api_key.get_secret_value()
        self._retry_wait_max = retry_wait_max

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def generate(self, request: DiagnosticRequest) -> GeneratedContent:
        """Generate documentation for a request.

        Raises:
            UpstreamQuotaExhausted: provider billing/quota exhausted
            UpstreamAuthError: provider rejected our credentials
            UpstreamTimeout: no answer within generation_timeout_seconds
            UpstreamTransientError: any other provider failure, after retries
        """
        messages = build_messages(request, system_prompt=self._settings.generation_system_prompt)
        started = time.perf_counter()

        log.debug(
            "generation.request",
            model=self.model,
            subsystem=request.subsystem,
            identifier_suffix=request.identifier_suffix,
        )

        try:
            async with asyncio.timeout(self._settings.generation_timeout_seconds):
                response = await self._complete_with_retry(messages)
        except TimeoutError as exc:
            error: GenerationError = UpstreamTimeout(
                detail=f"no response within {self._settings.generation_timeout_seconds}s"
            )
            self._record_failure(error, started)
            raise error from exc
        except Exception as exc:
            error = classify_provider_error(exc)
            self._record_failure(error, started)
            raise error from exc

        duration = time.perf_counter() - started
        content = self._extract_text(response)
        model = self._extract_model_name(response)
        record_generation(self.model, "success", duration)

        usage = getattr(response, "usage", None)
        prompt_tokens = getattr(usage, "prompt_tokens", None) if usage else None
        completion_tokens = getattr(usage, "completion_tokens", None) if usage else None
        log.info(
            "generation.completed",
            model=model,
            duration_ms=round(duration * 1000, 1),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
        return GeneratedContent(
            content=content,
            model=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )

    async def _complete_with_retry(self, messages: list[dict[str, str]]) -> Any:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self._settings.generation_max_retries + 1),
            wait=wait_exponential(multiplier=1, max=self._retry_wait_max),
            reraise=True,
        ):
            with attempt:
                return await litellm.acompletion(
                    model=self.model,
                    messages=messages,
                    temperature=self._settings.generation_temperature,
                    max_tokens=self._settings.generation_max_tokens,
                    api_key=self._api_key,
                    api_base=self._settings.litellm_base_url,
                    timeout=self._settings.generation_timeout_seconds,
                )
        raise UpstreamTransientError(detail="retry loop exited without a result")

    def _record_failure(self, error: GenerationError, started: float) -> None:
        duration = time.perf_counter() - started
        record_generation(self.model, error.category, duration)
        log.warning(
            "generation.failed",
            model=self.model,
            category=error.category,
            error=error.detail,
            duration_ms=round(duration * 1000, 1),
        )

    def _extract_text(self, response: Any) -> str:
        """Extract the assistant text content from a completion response."""
        try:
            return response.choices[0].message.content or ""
        except (AttributeError, IndexError, KeyError):
            return ""

    def _extract_model_name(self, response: Any) -> str:
        """Extract the model name actually used from the response."""
        return getattr(response, "model", None) or self.model
