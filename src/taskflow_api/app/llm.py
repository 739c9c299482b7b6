from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Protocol
from urllib import error, request

from .settings import Settings

logger = logging.getLogger(__name__)

ANTHROPIC_API_VERSION = "2023-06-01"


class LLMAdapter(Protocol):
    """Interface for single-shot text completions."""

    async def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str: ...


class _HTTPCompletionAdapter:
    """Shared blocking HTTP transport, run in a worker thread per request."""

    provider = "http"

    def __init__(
        self,
        *,
        model: str,
        base_url: str,
        timeout_s: float = 60.0,
        max_retries: int = 0,
        backoff_s: float = 0.2,
    ) -> None:
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    async def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool = False,
    ) -> str:
        payload = self._build_payload(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=json_mode,
        )
        response_json = await asyncio.to_thread(self._request_with_retry, payload)
        return self._extract_content(response_json)

    def _build_payload(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def _url(self) -> str:
        raise NotImplementedError

    def _headers(self) -> dict[str, str]:
        raise NotImplementedError

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        raise NotImplementedError

    def _request_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload)
            except (TimeoutError, ValueError, error.URLError, error.HTTPError) as exc:
                last_error = exc
                logger.warning(
                    "LLM request failed provider=%s attempt=%d/%d model=%s reason=%s",
                    self.provider,
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s)
        if last_error is None:
            raise RuntimeError("LLM request failed with unknown error")
        raise last_error

    def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = request.Request(
            url=self._url(),
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json", **self._headers()},
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(
                exc.url,
                exc.code,
                f"{self.provider} API request failed: {raw_error}",
                exc.headers,
                exc.fp,
            ) from exc
        return json.loads(body)


class OpenAIChatCompletionsAdapter(_HTTPCompletionAdapter):
    """Chat completions REST API. Also serves OpenAI-compatible local gateways."""

    provider = "openai"

    def __init__(self, *, api_key: str = "", **kwargs: Any) -> None:
        kwargs.setdefault("base_url", "https://api.openai.com/v1")
        kwargs.setdefault("model", "gpt-4-turbo-preview")
        super().__init__(**kwargs)
        self.api_key = api_key

    def _url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        # Local gateways usually run without auth.
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    def _build_payload(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices", [])
        if not choices:
            raise ValueError("Completion response did not contain choices")

        message = choices[0].get("message", {})
        content = message.get("content", "")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            text_segments: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        text_segments.append(text)
            return "".join(text_segments)
        raise ValueError("Completion response content could not be parsed as text")


class AnthropicMessagesAdapter(_HTTPCompletionAdapter):
    """Anthropic Messages API.

    The API has no JSON response mode; callers already ask for JSON in the prompt.
    """

    provider = "anthropic"

    def __init__(self, *, api_key: str, **kwargs: Any) -> None:
        kwargs.setdefault("base_url", "https://api.anthropic.com")
        kwargs.setdefault("model", "claude-3-5-sonnet-latest")
        super().__init__(**kwargs)
        self.api_key = api_key

    def _url(self) -> str:
        return f"{self.base_url}/v1/messages"

    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_API_VERSION}

    def _build_payload(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
        json_mode: bool,
    ) -> dict[str, Any]:
        return {
            "model": self.model,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        blocks = response_json.get("content")
        if not isinstance(blocks, list):
            raise ValueError("Messages response did not contain content blocks")
        texts = [
            block["text"]
            for block in blocks
            if isinstance(block, dict)
            and block.get("type") == "text"
            and isinstance(block.get("text"), str)
        ]
        return "".join(texts)


def build_llm_adapter(settings: Settings) -> LLMAdapter | None:
    """Return the configured adapter, or None when no provider is usable."""
    provider = settings.llm_provider.lower().strip()
    common: dict[str, Any] = {
        "model": settings.llm_model,
        "base_url": settings.resolved_llm_base_url(),
        "timeout_s": settings.llm_timeout_s,
        "max_retries": settings.llm_max_retries,
        "backoff_s": settings.llm_backoff_s,
    }

    if provider == "openai":
        api_key = settings.resolved_openai_api_key()
        if not api_key:
            logger.warning("LLM provider=openai has no API key; pipeline will use fallbacks")
            return None
        return OpenAIChatCompletionsAdapter(api_key=api_key, **common)

    if provider == "anthropic":
        api_key = settings.resolved_anthropic_api_key()
        if not api_key:
            logger.warning("LLM provider=anthropic has no API key; pipeline will use fallbacks")
            return None
        return AnthropicMessagesAdapter(api_key=api_key, **common)

    if provider == "local":
        return OpenAIChatCompletionsAdapter(api_key=settings.resolved_openai_api_key(), **common)

    if provider != "none":
        logger.warning("Unknown LLM provider=%s; pipeline will use fallbacks", provider)
    return None
