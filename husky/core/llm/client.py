"""
LLM Gateway: the only component allowed to talk to the language-model provider.
Implements batched embeddings, rate-limit throttling, retry with jittered
exponential backoff, provider wait hints, per-call timeouts and a circuit breaker.
"""

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

import openai
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)
from tenacity.wait import wait_base

from husky.core.config import Settings, get_settings
from husky.core.errors import (
    PermanentProviderError,
    ProviderError,
    RateLimitError,
    TransientProviderError,
)
from husky.core.llm.circuit_breaker import CircuitBreaker

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChatMessages = List[Dict[str, str]]


class LLMProvider(Protocol):
    """Capability interface over one language-model backend."""

    name: str

    async def embed(self, texts: List[str], input_type: str) -> List[List[float]]:
        ...

    async def complete(
        self, messages: ChatMessages, temperature: float, max_tokens: int
    ) -> str:
        ...

    async def open_stream(
        self, messages: ChatMessages, temperature: float, max_tokens: int
    ) -> AsyncIterator[str]:
        ...


# ── OpenAI-compatible provider ───────────────────────────────────────


def _retry_after(response: Any) -> Optional[float]:
    """Read a provider wait hint from Retry-After / retry-after-ms headers."""
    headers = getattr(response, "headers", None) or {}
    try:
        if headers.get("retry-after-ms"):
            return float(headers["retry-after-ms"]) / 1000.0
        if headers.get("retry-after"):
            return float(headers["retry-after"])
    except (TypeError, ValueError):
        return None
    return None


def translate_provider_error(exc: Exception) -> ProviderError:
    """Map an openai SDK exception onto Husky's provider error kinds."""
    if isinstance(exc, openai.RateLimitError):
        return RateLimitError(str(exc), retry_after=_retry_after(exc.response))
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
        return TransientProviderError(str(exc))
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500 or exc.status_code in (408, 409):
            return TransientProviderError(str(exc))
        return PermanentProviderError(str(exc))
    return PermanentProviderError(str(exc))


class OpenAICompatibleProvider:
    """
    Provider backed by the ``openai`` async SDK. OpenRouter, NVIDIA NIM and
    OpenAI all speak this protocol; only base URL, key and models differ.
    SDK-level retries are disabled so the gateway owns the retry policy.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str,
        chat_model: str,
        embedding_model: str,
        timeout: float,
        send_input_type: bool = False,
    ):
        self.name = name
        self.chat_model = chat_model
        self.embedding_model = embedding_model
        self.send_input_type = send_input_type
        self.client = openai.AsyncOpenAI(
            base_url=base_url, api_key=api_key, max_retries=0, timeout=timeout
        )

    async def embed(self, texts: List[str], input_type: str) -> List[List[float]]:
        kwargs: Dict[str, Any] = {}
        if self.send_input_type:
            kwargs["extra_body"] = {"input_type": input_type, "truncate": "END"}
        try:
            response = await self.client.embeddings.create(
                model=self.embedding_model,
                input=texts,
                encoding_format="float",
                **kwargs,
            )
        except openai.OpenAIError as e:
            raise translate_provider_error(e) from e
        return [item.embedding for item in response.data]

    async def complete(
        self, messages: ChatMessages, temperature: float, max_tokens: int
    ) -> str:
        try:
            completion = await self.client.chat.completions.create(
                model=self.chat_model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.OpenAIError as e:
            raise translate_provider_error(e) from e
        return completion.choices[0].message.content or ""

    async def open_stream(
        self, messages: ChatMessages, temperature: float, max_tokens: int
    ) -> AsyncIterator[str]:
        try:
            stream = await self.client.chat.completions.create(
                model=self.chat_model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
            )
        except openai.OpenAIError as e:
            raise translate_provider_error(e) from e
        return self._iter_stream(stream)

    @staticmethod
    async def _iter_stream(stream) -> AsyncIterator[str]:
        try:
            async for chunk in stream:
                if not getattr(chunk, "choices", None):
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    yield delta.content
        except openai.OpenAIError as e:
            raise translate_provider_error(e) from e
        finally:
            await stream.close()


def build_provider(settings: Optional[Settings] = None) -> OpenAICompatibleProvider:
    """Select the single provider for this process from configuration."""
    settings = settings or get_settings()
    presets = {
        "openrouter": (
            settings.openrouter_base_url,
            settings.openrouter_api_key,
            settings.openrouter_model,
            settings.openrouter_embedding_model,
        ),
        "nvidia": (
            settings.nvidia_base_url,
            settings.nvidia_api_key,
            settings.nvidia_model,
            settings.nvidia_embedding_model,
        ),
        "openai": (
            settings.openai_base_url,
            settings.openai_api_key,
            settings.openai_model,
            settings.openai_embedding_model,
        ),
    }
    base_url, api_key, chat_model, embedding_model = presets[settings.llm_provider]
    if not api_key:
        raise ValueError(
            f"No API key configured for provider '{settings.llm_provider}'. "
            f"Set {settings.llm_provider.upper()}_API_KEY."
        )
    logger.info(f"Using LLM provider '{settings.llm_provider}' ({chat_model})")
    return OpenAICompatibleProvider(
        name=settings.llm_provider,
        base_url=base_url,
        api_key=api_key,
        chat_model=chat_model,
        embedding_model=embedding_model,
        timeout=settings.llm_timeout_seconds,
        send_input_type=settings.llm_provider == "nvidia",
    )


# ── Retry policy ─────────────────────────────────────────────────────


class wait_provider_hint(wait_base):
    """Jittered exponential backoff that defers to a provider Retry-After hint."""

    def __init__(self, min_wait: float, max_wait: float, hint_cap: float):
        self.backoff = wait_random_exponential(multiplier=min_wait, max=max_wait)
        self.hint_cap = hint_cap

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            return min(max(exc.retry_after, 0.0), self.hint_cap)
        return self.backoff(retry_state)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        f"Provider call failed (attempt {retry_state.attempt_number}): {exc}; "
        f"retrying in {wait:.1f}s"
    )


# ── Gateway ──────────────────────────────────────────────────────────


class LLMGateway:
    """
    Uniform embedding/completion interface with:
    - bounded retries on transient failures (timeouts, 5xx, throttling)
    - Retry-After hints honored on rate limiting
    - circuit breaker that fails fast after consecutive failures
    - sliding-window RPM throttle shared by chat and ingestion traffic
    """

    def __init__(
        self,
        provider: LLMProvider,
        settings: Optional[Settings] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.settings = settings or get_settings()
        self.provider = provider
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=self.settings.circuit_failure_threshold,
            cooldown_seconds=self.settings.circuit_cooldown_seconds,
            name=getattr(provider, "name", "llm"),
        )
        self.timeout = self.settings.llm_timeout_seconds

        # Rate-limit tracking
        self._request_timestamps: List[float] = []
        self._rpm_limit = self.settings.api_requests_per_minute
        self._throttle_lock = asyncio.Lock()

    async def _throttle(self):
        """Enforce RPM rate limit by sleeping when necessary."""
        if self._rpm_limit <= 0:
            return
        async with self._throttle_lock:
            now = time.monotonic()
            window_start = now - 60.0
            self._request_timestamps = [
                t for t in self._request_timestamps if t > window_start
            ]
            if len(self._request_timestamps) >= self._rpm_limit:
                sleep_time = 60.0 - (now - self._request_timestamps[0]) + 0.1
                if sleep_time > 0:
                    logger.info(f"Rate limit: sleeping {sleep_time:.1f}s")
                    await asyncio.sleep(sleep_time)
            self._request_timestamps.append(time.monotonic())

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.settings.llm_max_attempts),
            wait=wait_provider_hint(
                self.settings.llm_retry_min_wait,
                self.settings.llm_retry_max_wait,
                self.settings.llm_rate_limit_max_wait,
            ),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def _attempt(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        self.breaker.before_call()
        try:
            await self._throttle()
            result = await asyncio.wait_for(factory(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self.breaker.record_failure()
            raise TransientProviderError(
                f"{operation} timed out after {self.timeout:.1f}s"
            ) from None
        except TransientProviderError:
            self.breaker.record_failure()
            raise
        except BaseException:
            self.breaker.release()
            raise
        self.breaker.record_success()
        return result

    async def _call(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        async for attempt in self._retrying():
            with attempt:
                return await self._attempt(operation, factory)
        raise AssertionError("unreachable")  # pragma: no cover

    # ── Embeddings ───────────────────────────────────────────────────

    async def embed(self, text: str, input_type: str = "query") -> List[float]:
        """Embed a single text."""
        vectors = await self._call(
            "embed", lambda: self.provider.embed([text], input_type)
        )
        return vectors[0]

    async def embed_many(
        self, texts: List[str], input_type: str = "passage"
    ) -> List[List[float]]:
        """Embed texts in batches of ``embedding_batch_size``."""
        if not texts:
            return []

        batch_size = self.settings.embedding_batch_size
        all_embeddings: List[List[float]] = []
        for i in range(0, len(texts), batch_size):
            batch = texts[i : i + batch_size]
            all_embeddings.extend(
                await self._call(
                    "embed", lambda batch=batch: self.provider.embed(batch, input_type)
                )
            )
        return all_embeddings

    # ── Chat Completion ──────────────────────────────────────────────

    async def complete(
        self,
        messages: ChatMessages,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        temperature = (
            self.settings.completion_temperature if temperature is None else temperature
        )
        max_tokens = max_tokens or self.settings.completion_max_tokens
        return await self._call(
            "complete",
            lambda: self.provider.complete(messages, temperature, max_tokens),
        )

    async def stream(
        self,
        messages: ChatMessages,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """
        Stream completion chunks. Opening the stream is retried; once chunks
        flow, a failure or a stalled chunk surfaces as TransientProviderError.
        Closing this iterator closes the provider stream.
        """
        temperature = (
            self.settings.completion_temperature if temperature is None else temperature
        )
        max_tokens = max_tokens or self.settings.completion_max_tokens
        iterator = await self._call(
            "stream",
            lambda: self.provider.open_stream(messages, temperature, max_tokens),
        )
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(
                        iterator.__anext__(), timeout=self.timeout
                    )
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    self.breaker.record_failure()
                    raise TransientProviderError(
                        f"stream stalled for {self.timeout:.1f}s"
                    ) from None
                except TransientProviderError:
                    self.breaker.record_failure()
                    raise
                yield chunk
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

    # ── Health Check ─────────────────────────────────────────────────

    async def health_check(self) -> Dict[str, Any]:
        """Check connectivity to the provider without tripping the breaker."""
        health: Dict[str, Any] = {
            "provider": getattr(self.provider, "name", "unknown"),
            "circuit": self.breaker.state,
            "embedding": False,
        }
        try:
            await asyncio.wait_for(
                self.provider.embed(["health check"], "query"), timeout=self.timeout
            )
            health["embedding"] = True
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.warning(f"Provider health check failed: {e}")
        return health
