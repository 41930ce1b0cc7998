"""LLM text generation via LiteLLM.

Any LiteLLM model string works (``openai/gpt-4o``,
``anthropic/claude-sonnet-4-20250514``, ``ollama/llava`` ...). Providers
that cannot serve concurrent requests are wrapped in
``QueuedTextGenerator`` so the screen-analysis pool still works against
them, one call at a time.
"""

import base64
import logging
import threading
from typing import Any, Optional

import litellm

from .circuit_breaker import CircuitBreakerOpen, get_breaker
from .collaborators import LLMRequest, TextGenerator
from .config import Settings
from .exceptions import TransientCollaboratorError

logger = logging.getLogger(__name__)


def build_messages(request: LLMRequest) -> list[dict[str, Any]]:
    """Chat messages for *request*, with the image inlined as a data URL."""
    messages: list[dict[str, Any]] = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})

    if request.image is None:
        messages.append({"role": "user", "content": request.prompt})
        return messages

    encoded = base64.b64encode(request.image.data).decode("ascii")
    messages.append({
        "role": "user",
        "content": [
            {"type": "text", "text": request.prompt},
            {
                "type": "image_url",
                "image_url": {"url": f"data:{request.image.mime_type};base64,{encoded}"},
            },
        ],
    })
    return messages


class LiteLLMTextGenerator:
    """``TextGenerator`` backed by ``litellm.completion``.

    Failures surface as ``TransientCollaboratorError``; retrying is left
    to whoever re-runs the pipeline.
    """

    def __init__(
        self,
        model: str,
        api_key: str = "",
        api_base: str = "",
        timeout: int = 300,
        temperature: Optional[float] = None,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self._api_base = api_base
        self._timeout = timeout
        self._temperature = temperature

    @classmethod
    def from_settings(cls, settings: Settings) -> "LiteLLMTextGenerator":
        return cls(
            model=settings.llm_model,
            api_key=settings.llm_api_key,
            api_base=settings.llm_api_base,
            timeout=settings.llm_timeout,
        )

    def generate_text(self, request: LLMRequest) -> str:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": build_messages(request),
            "max_tokens": request.max_tokens,
            "timeout": self._timeout,
        }
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if self._api_base:
            kwargs["api_base"] = self._api_base
        if self._temperature is not None:
            kwargs["temperature"] = self._temperature

        breaker = get_breaker(f"llm:{self.model}")
        try:
            response = breaker.call(lambda: litellm.completion(**kwargs))
        except CircuitBreakerOpen:
            raise
        except Exception as exc:
            status = getattr(exc, "status_code", None)
            logger.error("LLM request to %s failed: %s", self.model, exc)
            raise TransientCollaboratorError("llm", str(exc), status) from exc

        text = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(
                "LLM usage",
                extra={
                    "model": self.model,
                    "prompt_tokens": getattr(usage, "prompt_tokens", None),
                    "completion_tokens": getattr(usage, "completion_tokens", None),
                },
            )
        return text


class QueuedTextGenerator:
    """Serializes calls to a generator that cannot run requests in parallel."""

    def __init__(self, inner: TextGenerator) -> None:
        self._inner = inner
        self._lock = threading.Lock()

    def generate_text(self, request: LLMRequest) -> str:
        with self._lock:
            return self._inner.generate_text(request)


def build_text_generator(settings: Settings) -> TextGenerator:
    generator: TextGenerator = LiteLLMTextGenerator.from_settings(settings)
    if not settings.llm_supports_parallel:
        logger.info("LLM provider %s is sequential; queueing requests", settings.llm_model)
        generator = QueuedTextGenerator(generator)
    return generator
