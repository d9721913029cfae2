"""
Model Gateway - Stateless proxy to the OpenRouter chat completions API.

No retries here; the orchestrator owns the fallback policy.
"""

import time
from collections.abc import Sequence
from typing import Any, Protocol

import httpx
from structlog import get_logger

from chatbot.config import Settings
from chatbot.exceptions import (
    ModelAuthenticationError,
    ModelGatewayError,
    UpstreamConfigurationError,
)
from chatbot.models.api import ModelInfo
from chatbot.models.domain import PromptMessage
from chatbot.observability.metrics import metrics

logger = get_logger(__name__)


class ModelGateway(Protocol):
    """Anything that turns a message list into generated text."""

    def is_configured(self) -> bool: ...

    async def generate(
        self,
        model: str,
        messages: Sequence[PromptMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str: ...

    async def list_models(self) -> list[ModelInfo]: ...

    async def close(self) -> None: ...


class OpenRouterGateway:
    """OpenRouter implementation of the model gateway."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://openrouter.ai/api/v1",
        referer: str = "http://localhost:3000",
        app_title: str = "Chatbot API",
        timeout_seconds: float = 60.0,
        default_temperature: float = 0.7,
        default_max_tokens: int = 500,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.referer = referer
        self.app_title = app_title
        self.timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        self.default_temperature = default_temperature
        self.default_max_tokens = default_max_tokens
        self._http_client = http_client

        if not api_key:
            logger.warning("openrouter_api_key_not_set")

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenRouterGateway":
        return cls(
            api_key=settings.openrouter_api_key,
            base_url=settings.openrouter_base_url,
            referer=settings.openrouter_referer,
            app_title=settings.openrouter_app_title,
            timeout_seconds=settings.model_timeout_seconds,
            default_temperature=settings.model_temperature,
            default_max_tokens=settings.model_max_tokens,
        )

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.referer,
            "X-Title": self.app_title,
        }

    async def generate(
        self,
        model: str,
        messages: Sequence[PromptMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """
        Send one chat completion request and return the generated text.

        Raises:
            UpstreamConfigurationError: No API key configured
            ModelAuthenticationError: OpenRouter rejected the API key (401)
            ModelGatewayError: Any other non-2xx, timeout, transport error or empty reply
        """
        if not self.is_configured():
            raise UpstreamConfigurationError("Model gateway")

        payload = {
            "model": model,
            "messages": [m.to_payload() for m in messages],
            "temperature": self.default_temperature if temperature is None else temperature,
            "max_tokens": self.default_max_tokens if max_tokens is None else max_tokens,
        }

        logger.info("model_request_started", model=model, message_count=len(messages))
        started = time.perf_counter()
        try:
            response = await self.http_client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            self._record_failure(model, started, "timeout")
            raise ModelGatewayError(f"Model request timed out for {model}") from exc
        except httpx.HTTPError as exc:
            self._record_failure(model, started, type(exc).__name__)
            raise ModelGatewayError(f"Model request failed for {model}") from exc

        if response.status_code == 401:
            self._record_failure(model, started, "authentication")
            raise ModelAuthenticationError()

        if response.is_error:
            self._record_failure(model, started, f"http_{response.status_code}")
            logger.error(
                "model_request_http_error",
                model=model,
                status=response.status_code,
                detail=self._error_detail(response),
            )
            raise ModelGatewayError(
                f"OpenRouter API error: {response.status_code}", status=response.status_code
            )

        content = self._extract_content(response)
        if not content:
            self._record_failure(model, started, "empty_response")
            raise ModelGatewayError(f"No response content from {model}")

        duration = time.perf_counter() - started
        metrics.record_model_call(model, success=True, duration=duration)
        logger.info(
            "model_request_completed",
            model=model,
            duration_ms=round(duration * 1000, 2),
            response_chars=len(content),
        )
        return content

    async def list_models(self) -> list[ModelInfo]:
        """
        Fetch the models OpenRouter currently offers.

        Raises:
            UpstreamConfigurationError: No API key configured
            ModelGatewayError: Request failed
        """
        if not self.is_configured():
            raise UpstreamConfigurationError("Model gateway")

        try:
            response = await self.http_client.get(
                f"{self.base_url}/models", headers=self._headers(), timeout=self.timeout
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error("model_list_failed", status=exc.response.status_code)
            if exc.response.status_code == 401:
                raise ModelAuthenticationError() from exc
            raise ModelGatewayError(
                f"Failed to fetch models: {exc.response.status_code}",
                status=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("model_list_failed", error=str(exc), error_type=type(exc).__name__)
            raise ModelGatewayError("Failed to fetch models") from exc

        return [
            ModelInfo(
                id=item["id"],
                name=item.get("name"),
                context_length=item.get("context_length"),
            )
            for item in response.json().get("data", [])
            if item.get("id")
        ]

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    @staticmethod
    def _extract_content(response: httpx.Response) -> str:
        try:
            data: dict[str, Any] = response.json()
        except ValueError:
            return ""
        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        content = message.get("content")
        return content.strip() if isinstance(content, str) else ""

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:200]
        error = data.get("error", {}) if isinstance(data, dict) else data
        if isinstance(error, dict):
            return str(error.get("message", ""))[:200]
        return str(error)[:200]

    @staticmethod
    def _record_failure(model: str, started: float, error_type: str) -> None:
        duration = time.perf_counter() - started
        metrics.record_model_call(model, success=False, duration=duration, error_type=error_type)
        logger.warning("model_request_failed", model=model, error_type=error_type)
