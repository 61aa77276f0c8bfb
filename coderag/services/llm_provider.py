"""
LLM Providers

Chat-completion adapters used by the analysis agents that consume retrieved
code context. OllamaLLMProvider speaks Ollama's /api/chat wire format over
httpx (blocking and line-delimited streaming); OpenAILLMProvider uses the
openai SDK. ReasoningService puts either behind the reasoning slot pool and
the resilience pipeline.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)

from ..core.concurrency import ConcurrencyLimiter
from ..core.config import LLMOptions
from ..core.errors import (
    ConfigurationError,
    LLMConnectionError,
    LLMError,
    LLMModelUnavailableError,
    LLMTimeoutError,
)
from ..core.resilience import ResiliencePipeline

logger = logging.getLogger(__name__)

MODEL_MEMORY_MARKER = "requires more system memory"


@dataclass
class LLMRequest:
    system_prompt: str
    user_prompt: str
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass
class LLMResponse:
    content: str
    prompt_tokens: int
    completion_tokens: int
    model: str
    duration_seconds: float
    finish_reason: str = "completed"

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class LLMProvider(Protocol):
    provider_name: str
    model_name: str

    async def analyze(self, request: LLMRequest) -> LLMResponse:
        ...

    async def analyze_streaming(self, request: LLMRequest, on_chunk: Callable[[str], None]) -> LLMResponse:
        ...

    async def aclose(self) -> None:
        ...


class OllamaLLMProvider:
    """
    Ollama /api/chat adapter.

    Request: {model, messages: [system, user], stream, options: {temperature, num_predict}}.
    Streaming responses are one JSON object per line; the last has done=true
    and carries the token counts.
    """

    provider_name = "ollama"

    def __init__(self, options: LLMOptions, client: Optional[httpx.AsyncClient] = None):
        self.options = options
        self.model_name = options.model
        self.base_url = options.base_url.rstrip('/')
        self._client = client or httpx.AsyncClient(timeout=options.timeout_seconds)
        logger.info(f"🔗 Ollama LLM provider: {self.base_url} ({self.model_name})")

    def _payload(self, request: LLMRequest, stream: bool) -> dict:
        return {
            'model': self.model_name,
            'messages': [
                {'role': 'system', 'content': request.system_prompt},
                {'role': 'user', 'content': request.user_prompt},
            ],
            'stream': stream,
            'options': {
                'temperature': request.temperature if request.temperature is not None else self.options.temperature,
                'num_predict': request.max_tokens or self.options.max_tokens,
            },
        }

    def _check_status(self, status_code: int, body: str) -> None:
        if status_code < 400:
            return
        if MODEL_MEMORY_MARKER in body.lower():
            logger.warning(f"⚠️ Ollama cannot load {self.model_name}: insufficient memory on host")
            raise LLMModelUnavailableError(
                f"Model {self.model_name} requires more memory than is available on the inference host"
            )
        if status_code in (408, 504):
            raise LLMTimeoutError(f"Ollama timed out ({status_code}): {body[:200]}")
        if status_code == 429 or status_code >= 500:
            raise LLMError(f"Ollama returned {status_code}: {body[:200]}", transient=True)
        raise LLMError(f"Ollama rejected the request ({status_code}): {body[:200]}")

    async def analyze(self, request: LLMRequest) -> LLMResponse:
        """
        Send one blocking chat request.

        Raises:
            LLMConnectionError: Host unreachable
            LLMTimeoutError: Request timed out
            LLMModelUnavailableError: Host lacks memory for the model
            LLMError: Any other failure
        """
        url = f"{self.base_url}/api/chat"
        started = time.monotonic()
        try:
            response = await self._client.post(url, json=self._payload(request, stream=False))
        except httpx.TimeoutException as e:
            raise LLMTimeoutError(f"LLM request to {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise LLMConnectionError(f"Failed to connect to Ollama at {self.base_url}: {e}") from e

        self._check_status(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as e:
            raise LLMError(f"Malformed response from Ollama: {e}") from e

        result = LLMResponse(
            content=(data.get('message') or {}).get('content', ''),
            prompt_tokens=data.get('prompt_eval_count') or 0,
            completion_tokens=data.get('eval_count') or 0,
            model=data.get('model', self.model_name),
            duration_seconds=time.monotonic() - started,
            finish_reason=data.get('done_reason') or "completed",
        )
        logger.info(
            f"✅ LLM request completed in {result.duration_seconds:.1f}s "
            f"(tokens: prompt={result.prompt_tokens}, completion={result.completion_tokens})"
        )
        return result

    async def analyze_streaming(self, request: LLMRequest, on_chunk: Callable[[str], None]) -> LLMResponse:
        """Stream a chat request, passing each content fragment to on_chunk."""
        url = f"{self.base_url}/api/chat"
        started = time.monotonic()
        parts = []
        prompt_tokens = completion_tokens = 0
        finish_reason = "completed"

        try:
            async with self._client.stream('POST', url, json=self._payload(request, stream=True)) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode('utf-8', errors='replace')
                    self._check_status(response.status_code, body)

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        event = json.loads(line)
                    except ValueError:
                        logger.debug(f"Ignoring malformed stream line: {line[:80]}")
                        continue

                    content = (event.get('message') or {}).get('content')
                    if content:
                        parts.append(content)
                        on_chunk(content)

                    if event.get('done'):
                        prompt_tokens = event.get('prompt_eval_count') or 0
                        completion_tokens = event.get('eval_count') or 0
                        finish_reason = event.get('done_reason') or finish_reason
                        break
        except httpx.TimeoutException as e:
            raise LLMTimeoutError(f"Streaming LLM request to {url} timed out: {e}") from e
        except httpx.TransportError as e:
            raise LLMConnectionError(f"Failed to connect to Ollama at {self.base_url}: {e}") from e

        return LLMResponse(
            content=''.join(parts),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            model=self.model_name,
            duration_seconds=time.monotonic() - started,
            finish_reason=finish_reason,
        )

    async def aclose(self) -> None:
        await self._client.aclose()


class OpenAILLMProvider:
    """OpenAI-compatible chat completions via the openai SDK."""

    provider_name = "openai"

    def __init__(self, options: LLMOptions, api_key: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        self.options = options
        self.model_name = options.model
        if client is None:
            api_key = api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ConfigurationError("OPENAI_API_KEY environment variable required for the openai LLM provider")
            client = AsyncOpenAI(api_key=api_key, timeout=options.timeout_seconds, max_retries=0)
        self._client = client

    def _messages(self, request: LLMRequest) -> list:
        return [
            {'role': 'system', 'content': request.system_prompt},
            {'role': 'user', 'content': request.user_prompt},
        ]

    def _settings(self, request: LLMRequest) -> dict:
        return {
            'temperature': request.temperature if request.temperature is not None else self.options.temperature,
            'max_tokens': request.max_tokens or self.options.max_tokens,
        }

    async def _create(self, **kwargs):
        try:
            return await self._client.chat.completions.create(model=self.model_name, **kwargs)
        except APITimeoutError as e:
            raise LLMTimeoutError(f"LLM request timed out: {e}") from e
        except APIConnectionError as e:
            raise LLMConnectionError(f"Cannot reach LLM service: {e}") from e
        except (RateLimitError, InternalServerError) as e:
            raise LLMError(f"LLM service error: {e}", transient=True) from e
        except APIStatusError as e:
            raise LLMError(f"LLM request rejected ({e.status_code}): {e}") from e

    async def analyze(self, request: LLMRequest) -> LLMResponse:
        started = time.monotonic()
        completion = await self._create(messages=self._messages(request), **self._settings(request))
        choice = completion.choices[0]
        usage = completion.usage
        return LLMResponse(
            content=choice.message.content or '',
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            model=completion.model,
            duration_seconds=time.monotonic() - started,
            finish_reason=choice.finish_reason or "completed",
        )

    async def analyze_streaming(self, request: LLMRequest, on_chunk: Callable[[str], None]) -> LLMResponse:
        started = time.monotonic()
        stream = await self._create(
            messages=self._messages(request),
            stream=True,
            stream_options={'include_usage': True},
            **self._settings(request)
        )
        parts = []
        prompt_tokens = completion_tokens = 0
        finish_reason = "completed"
        async for chunk in stream:
            if chunk.usage:
                prompt_tokens = chunk.usage.prompt_tokens
                completion_tokens = chunk.usage.completion_tokens
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                parts.append(delta)
                on_chunk(delta)
            if chunk.choices[0].finish_reason:
                finish_reason = chunk.choices[0].finish_reason

        return LLMResponse(
            content=''.join(parts),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            model=self.model_name,
            duration_seconds=time.monotonic() - started,
            finish_reason=finish_reason,
        )

    async def aclose(self) -> None:
        await self._client.close()


def create_llm_provider(options: LLMOptions) -> LLMProvider:
    provider = options.provider.lower()
    if provider == 'ollama':
        return OllamaLLMProvider(options)
    if provider == 'openai':
        return OpenAILLMProvider(options)
    raise ConfigurationError(f"Unknown LLM provider: {options.provider}")


class ReasoningService:
    """
    Bounded, resilient access to the LLM.

    Blocking requests are retried through the resilience pipeline. Streaming
    requests are not retried once output has started; they only take a slot.
    """

    def __init__(
        self,
        provider: LLMProvider,
        limiter: ConcurrencyLimiter,
        resilience: Optional[ResiliencePipeline] = None
    ):
        self.provider = provider
        self.limiter = limiter
        self.resilience = resilience or ResiliencePipeline('llm')

    async def analyze(self, request: LLMRequest) -> LLMResponse:
        async with self.limiter.reasoning_slot():
            return await self.resilience.execute(lambda: self.provider.analyze(request))

    async def analyze_streaming(self, request: LLMRequest, on_chunk: Callable[[str], None]) -> LLMResponse:
        async with self.limiter.reasoning_slot():
            return await self.provider.analyze_streaming(request, on_chunk)
