"""
LLM provider client.

This module wraps every call the gateway makes to the model provider:
- Chat completions, whole or streamed
- Text embeddings
- Speech-to-text and text-to-speech

Each call carries a caller-enforced timeout. Non-streaming calls retry
rate limits, connection errors and 5xx responses with exponential backoff.
Timeouts are never retried.
"""

from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar, Any
import asyncio
import logging
import os
import threading
import time

from openai import AsyncOpenAI, APIError, RateLimitError, APIConnectionError

from ..config import get_settings
from ..exceptions import (
    LLMServiceUnavailableError,
    LLMRateLimitError,
    LLMTimeoutError,
    LLMResponseInvalidError,
    LLMError,
)
from ..utils.log_sanitizer import sanitize_string


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CompletionResult:
    """A finished chat completion with its provider-reported usage."""
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    duration_ms: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class StreamChunk:
    """
    One item of a streamed completion.

    Content chunks carry ``content``. The final usage frame (when the
    provider sends one) carries the token counts and no content.
    """
    content: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None

    @property
    def is_usage(self) -> bool:
        return self.input_tokens is not None or self.output_tokens is not None


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        retryable_status_codes: Optional[set[int]] = None,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.retryable_status_codes = retryable_status_codes or {429, 500, 502, 503, 504}

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt number."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        return min(delay, self.max_delay)


class LLMMetrics:
    """Track provider usage metrics for the process."""

    def __init__(self) -> None:
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.retried_requests = 0
        self.total_tokens_input = 0
        self.total_tokens_output = 0
        self._last_request_time: Optional[float] = None
        self._request_times: list[float] = []

    def record_request(
        self,
        success: bool,
        retried: bool = False,
        input_tokens: int = 0,
        output_tokens: int = 0,
        duration_ms: Optional[float] = None,
    ) -> None:
        """Record a request."""
        self.total_requests += 1
        if success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1
        if retried:
            self.retried_requests += 1
        self.total_tokens_input += input_tokens
        self.total_tokens_output += output_tokens
        self._last_request_time = time.time()
        if duration_ms is not None:
            self._request_times.append(duration_ms)
            # Keep only last 100 request times
            if len(self._request_times) > 100:
                self._request_times = self._request_times[-100:]

    def record_tokens(self, input_tokens: int, output_tokens: int) -> None:
        self.total_tokens_input += input_tokens
        self.total_tokens_output += output_tokens

    @property
    def avg_request_time_ms(self) -> float:
        """Average request time in milliseconds."""
        if not self._request_times:
            return 0.0
        return sum(self._request_times) / len(self._request_times)

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary."""
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "retried_requests": self.retried_requests,
            "total_tokens_input": self.total_tokens_input,
            "total_tokens_output": self.total_tokens_output,
            "avg_request_time_ms": round(self.avg_request_time_ms, 2),
        }


class LLMClient:
    """
    Provider client with retry logic, timeouts and error translation.

    Every provider failure surfaces as an ``LLMError`` subclass whose
    message has been passed through the log sanitizer.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        retry_config: Optional[RetryConfig] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        """
        Initialize the LLM client.

        Args:
            api_key: OpenAI API key (defaults to settings or env var)
            retry_config: Configuration for retry behavior
            client: Pre-built AsyncOpenAI client, mainly for tests
        """
        settings = get_settings()
        self.settings = settings

        if client is None:
            api_key = api_key or settings.openai_api_key or os.environ.get("OPENAI_API_KEY")
            if not api_key:
                raise LLMServiceUnavailableError(
                    message="OPENAI_API_KEY not configured",
                    details={"configuration_missing": "openai_api_key"},
                )
            client = AsyncOpenAI(api_key=api_key)

        self.client = client
        self.retry_config = retry_config or RetryConfig()
        self.metrics = LLMMetrics()
        self._logger = logger

    async def _execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "LLM request",
    ) -> T:
        """
        Execute an operation with retry logic.

        Args:
            operation: Async callable to execute
            operation_name: Name for logging

        Returns:
            The operation result

        Raises:
            LLMError: On unrecoverable failure
        """
        last_exception: Optional[Exception] = None
        retried = False

        for attempt in range(self.retry_config.max_retries + 1):
            start_time = time.time()

            try:
                result = await operation()
                duration_ms = (time.time() - start_time) * 1000
                self.metrics.record_request(
                    success=True,
                    retried=retried,
                    duration_ms=duration_ms,
                )
                return result

            except LLMError:
                self.metrics.record_request(success=False, retried=retried)
                raise

            except RateLimitError as e:
                last_exception = e
                retried = True
                retry_after = getattr(e, "retry_after", None)
                delay = retry_after if retry_after else self.retry_config.get_delay(attempt)

                if attempt < self.retry_config.max_retries:
                    self._logger.warning(
                        f"{operation_name} rate limited. "
                        f"Retry {attempt + 1}/{self.retry_config.max_retries} "
                        f"in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                else:
                    self.metrics.record_request(success=False, retried=True)
                    raise LLMRateLimitError(
                        retry_after=int(delay) if retry_after else None,
                    )

            except APIConnectionError as e:
                last_exception = e
                retried = True

                if attempt < self.retry_config.max_retries:
                    delay = self.retry_config.get_delay(attempt)
                    self._logger.warning(
                        f"{operation_name} connection error. "
                        f"Retry {attempt + 1}/{self.retry_config.max_retries} "
                        f"in {delay:.1f}s: {e}"
                    )
                    await asyncio.sleep(delay)
                else:
                    self.metrics.record_request(success=False, retried=True)
                    raise LLMServiceUnavailableError(
                        message=sanitize_string(f"Connection to LLM service failed: {e}"),
                    )

            except APIError as e:
                last_exception = e
                status = getattr(e, "status_code", 500)

                if status in self.retry_config.retryable_status_codes:
                    retried = True
                    if attempt < self.retry_config.max_retries:
                        delay = self.retry_config.get_delay(attempt)
                        self._logger.warning(
                            f"{operation_name} API error (status {status}). "
                            f"Retry {attempt + 1}/{self.retry_config.max_retries} "
                            f"in {delay:.1f}s"
                        )
                        await asyncio.sleep(delay)
                    else:
                        self.metrics.record_request(success=False, retried=True)
                        raise LLMServiceUnavailableError(
                            message=sanitize_string(f"LLM API error after retries: {e}"),
                            details={"status_code": status},
                        )
                else:
                    self.metrics.record_request(success=False, retried=retried)
                    raise LLMError(
                        message=sanitize_string(f"LLM API error: {e}"),
                        details={"status_code": status},
                    )

            except asyncio.TimeoutError:
                self.metrics.record_request(success=False, retried=retried)
                self._logger.warning(f"{operation_name} timed out")
                raise LLMTimeoutError()

            except Exception as e:
                last_exception = e
                self.metrics.record_request(success=False, retried=retried)
                self._logger.error(f"Unexpected error in {operation_name}: {e}")
                raise LLMError(message=sanitize_string(f"Unexpected LLM error: {e}"))

        # Should not reach here, but just in case
        self.metrics.record_request(success=False, retried=True)
        raise LLMError(message=f"Operation failed after all retries: {last_exception}")

    async def chat_completion(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        timeout: Optional[float] = None,
    ) -> CompletionResult:
        """
        Get a whole completion for a message sequence.

        Args:
            messages: Ordered ``{"role", "content"}`` dicts
            model: Provider model name (defaults to the configured chat model)
            max_tokens: Maximum tokens in response
            temperature: Sampling temperature
            timeout: Request timeout in seconds

        Returns:
            The response text with provider-reported token usage

        Raises:
            LLMError: On failure
        """
        model = model or self.settings.default_chat_model
        timeout = timeout or self.settings.llm_timeout_seconds
        start_time = time.time()

        async def _make_request() -> CompletionResult:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=model,
                    messages=messages,
                    max_tokens=max_tokens,
                    temperature=temperature,
                ),
                timeout=timeout,
            )
            content = response.choices[0].message.content
            if content is None:
                raise LLMResponseInvalidError(message="Empty response from LLM")
            usage = response.usage
            return CompletionResult(
                content=content,
                model=model,
                input_tokens=(usage.prompt_tokens or 0) if usage else 0,
                output_tokens=(usage.completion_tokens or 0) if usage else 0,
            )

        result = await self._execute_with_retry(_make_request, "chat_completion")
        result.duration_ms = (time.time() - start_time) * 1000
        self.metrics.record_tokens(result.input_tokens, result.output_tokens)
        return result

    async def stream_chat(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream a completion for a message sequence.

        The timeout applies to opening the stream and to each wait for the
        next chunk. Usage is requested from the provider and yielded as a
        final content-less chunk when it arrives.

        Yields:
            StreamChunk items
        """
        model = model or self.settings.default_chat_model
        timeout = timeout or self.settings.llm_timeout_seconds
        start_time = time.time()

        try:
            stream = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=model,
                    messages=messages,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    stream=True,
                    stream_options={"include_usage": True},
                ),
                timeout=timeout,
            )

            iterator = stream.__aiter__()
            while True:
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout=timeout)
                except StopAsyncIteration:
                    break

                if chunk.choices and chunk.choices[0].delta.content:
                    yield StreamChunk(content=chunk.choices[0].delta.content)

                usage = getattr(chunk, "usage", None)
                if usage:
                    self.metrics.record_tokens(
                        usage.prompt_tokens or 0, usage.completion_tokens or 0
                    )
                    yield StreamChunk(
                        input_tokens=usage.prompt_tokens or 0,
                        output_tokens=usage.completion_tokens or 0,
                    )

            duration_ms = (time.time() - start_time) * 1000
            self.metrics.record_request(
                success=True,
                duration_ms=duration_ms,
            )

        except LLMError:
            self.metrics.record_request(success=False)
            raise
        except asyncio.TimeoutError:
            self.metrics.record_request(success=False)
            self._logger.warning("Stream timed out")
            raise LLMTimeoutError(timeout_seconds=timeout)
        except RateLimitError:
            self.metrics.record_request(success=False)
            raise LLMRateLimitError()
        except APIConnectionError as e:
            self.metrics.record_request(success=False)
            raise LLMServiceUnavailableError(message=sanitize_string(str(e)))
        except Exception as e:
            self.metrics.record_request(success=False)
            self._logger.error(f"Stream error: {e}")
            raise LLMError(message=sanitize_string(f"Streaming error: {e}"))

    async def embed(
        self,
        text: str,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[float]:
        """Embed a single text and return its vector."""
        model = model or self.settings.embedding_model
        timeout = timeout or self.settings.embedding_timeout_seconds

        async def _make_request() -> List[float]:
            response = await asyncio.wait_for(
                self.client.embeddings.create(model=model, input=text),
                timeout=timeout,
            )
            if not response.data:
                raise LLMResponseInvalidError(message="Empty embedding response")
            return list(response.data[0].embedding)

        return await self._execute_with_retry(_make_request, "embedding")

    async def transcribe(
        self,
        audio: bytes,
        language: str = "en",
        model: Optional[str] = None,
        filename: str = "audio.webm",
        timeout: Optional[float] = None,
    ) -> str:
        """Speech-to-text. Returns the transcribed text."""
        model = model or self.settings.transcription_model
        timeout = timeout or self.settings.audio_timeout_seconds

        async def _make_request() -> str:
            response = await asyncio.wait_for(
                self.client.audio.transcriptions.create(
                    model=model,
                    file=(filename, audio),
                    language=language,
                ),
                timeout=timeout,
            )
            text = getattr(response, "text", None)
            if text is None:
                raise LLMResponseInvalidError(message="Empty transcription response")
            return text

        return await self._execute_with_retry(_make_request, "transcription")

    async def synthesize_speech(
        self,
        text: str,
        voice: str = "alloy",
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> bytes:
        """Text-to-speech. Returns the encoded audio bytes."""
        model = model or self.settings.speech_model
        timeout = timeout or self.settings.audio_timeout_seconds

        async def _make_request() -> bytes:
            response = await asyncio.wait_for(
                self.client.audio.speech.create(model=model, voice=voice, input=text),
                timeout=timeout,
            )
            return response.content

        return await self._execute_with_retry(_make_request, "speech")

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metrics."""
        return self.metrics.to_dict()


# Singleton instance with thread-safe locking
_llm_client: Optional[LLMClient] = None
_llm_client_sync_lock = threading.Lock()


def get_llm_client() -> LLMClient:
    """
    Get the LLM client singleton (thread-safe).

    Returns:
        The LLM client instance
    """
    global _llm_client
    if _llm_client is None:
        with _llm_client_sync_lock:
            if _llm_client is None:
                _llm_client = LLMClient()
    return _llm_client


def get_llm_metrics() -> Optional[Dict[str, Any]]:
    """Counters of the shared client, or None before it has been created."""
    if _llm_client is None:
        return None
    return _llm_client.get_metrics()
