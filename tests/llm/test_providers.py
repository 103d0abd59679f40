"""Tests for the LLM provider client using a mocked OpenAI client."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from openai import APIConnectionError

from personal_os_ai.exceptions import (
    LLMError,
    LLMResponseInvalidError,
    LLMServiceUnavailableError,
    LLMTimeoutError,
)
from personal_os_ai.llm.providers import LLMClient, RetryConfig, StreamChunk


def completion_response(content="Hello", prompt_tokens=12, completion_tokens=4):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def stream_chunk(content=None, usage=None):
    choices = [SimpleNamespace(delta=SimpleNamespace(content=content))] if content is not None else []
    return SimpleNamespace(choices=choices, usage=usage)


async def fake_stream(*chunks):
    for chunk in chunks:
        yield chunk


@pytest.fixture
def openai_client():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=completion_response())
    client.embeddings.create = AsyncMock(
        return_value=SimpleNamespace(data=[SimpleNamespace(embedding=[0.1, 0.2])])
    )
    client.audio.transcriptions.create = AsyncMock(return_value=SimpleNamespace(text="hello there"))
    client.audio.speech.create = AsyncMock(return_value=SimpleNamespace(content=b"audio"))
    return client


@pytest.fixture
def llm(openai_client):
    return LLMClient(client=openai_client, retry_config=RetryConfig(max_retries=1, base_delay=0))


class TestConstruction:
    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        settings = MagicMock(openai_api_key="")
        with patch("personal_os_ai.llm.providers.get_settings", return_value=settings):
            with pytest.raises(LLMServiceUnavailableError):
                LLMClient()


class TestChatCompletion:
    @pytest.mark.asyncio
    async def test_returns_content_and_usage(self, llm, openai_client):
        result = await llm.chat_completion(
            [{"role": "user", "content": "Hi"}], model="gpt-4", max_tokens=50
        )

        assert result.content == "Hello"
        assert result.model == "gpt-4"
        assert (result.input_tokens, result.output_tokens) == (12, 4)
        assert result.total_tokens == 16
        kwargs = openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["max_tokens"] == 50

    @pytest.mark.asyncio
    async def test_empty_content_is_invalid(self, llm, openai_client):
        openai_client.chat.completions.create.return_value = completion_response(content=None)
        with pytest.raises(LLMResponseInvalidError):
            await llm.chat_completion([{"role": "user", "content": "Hi"}])

    @pytest.mark.asyncio
    async def test_timeout_is_not_retried(self, llm, openai_client):
        openai_client.chat.completions.create.side_effect = asyncio.TimeoutError
        with pytest.raises(LLMTimeoutError):
            await llm.chat_completion([{"role": "user", "content": "Hi"}])
        assert openai_client.chat.completions.create.call_count == 1

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self, llm, openai_client):
        error = APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1"))
        openai_client.chat.completions.create.side_effect = [error, completion_response("Recovered")]

        result = await llm.chat_completion([{"role": "user", "content": "Hi"}])

        assert result.content == "Recovered"
        assert llm.get_metrics()["retried_requests"] == 1

    @pytest.mark.asyncio
    async def test_connection_errors_exhaust_retries(self, llm, openai_client):
        error = APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1"))
        openai_client.chat.completions.create.side_effect = error

        with pytest.raises(LLMServiceUnavailableError):
            await llm.chat_completion([{"role": "user", "content": "Hi"}])
        assert openai_client.chat.completions.create.call_count == 2

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_sanitized(self, llm, openai_client):
        openai_client.chat.completions.create.side_effect = RuntimeError(
            "bad key sk-abcdefghijklmnopqrstuvwxyz123456"
        )
        with pytest.raises(LLMError) as exc_info:
            await llm.chat_completion([{"role": "user", "content": "Hi"}])
        assert "sk-abcdef" not in exc_info.value.message
        assert "[REDACTED_OPENAI_KEY]" in exc_info.value.message


class TestStreamChat:
    @pytest.mark.asyncio
    async def test_yields_content_then_usage(self, llm, openai_client):
        openai_client.chat.completions.create.return_value = fake_stream(
            stream_chunk("Hel"),
            stream_chunk("lo"),
            stream_chunk(usage=SimpleNamespace(prompt_tokens=9, completion_tokens=2)),
        )

        chunks = [c async for c in llm.stream_chat([{"role": "user", "content": "Hi"}])]

        assert [c.content for c in chunks if not c.is_usage] == ["Hel", "lo"]
        assert chunks[-1] == StreamChunk(input_tokens=9, output_tokens=2)
        kwargs = openai_client.chat.completions.create.call_args.kwargs
        assert kwargs["stream"] is True
        assert kwargs["stream_options"] == {"include_usage": True}

    @pytest.mark.asyncio
    async def test_open_timeout(self, llm, openai_client):
        openai_client.chat.completions.create.side_effect = asyncio.TimeoutError
        with pytest.raises(LLMTimeoutError):
            async for _ in llm.stream_chat([{"role": "user", "content": "Hi"}]):
                pass

    @pytest.mark.asyncio
    async def test_mid_stream_failure(self, llm, openai_client):
        async def broken():
            yield stream_chunk("partial")
            raise RuntimeError("connection reset")

        openai_client.chat.completions.create.return_value = broken()

        received = []
        with pytest.raises(LLMError):
            async for chunk in llm.stream_chat([{"role": "user", "content": "Hi"}]):
                received.append(chunk.content)
        assert received == ["partial"]


class TestAudioAndEmbeddings:
    @pytest.mark.asyncio
    async def test_embed(self, llm, openai_client):
        assert await llm.embed("hello") == [0.1, 0.2]
        assert openai_client.embeddings.create.call_args.kwargs["input"] == "hello"

    @pytest.mark.asyncio
    async def test_empty_embedding_is_invalid(self, llm, openai_client):
        openai_client.embeddings.create.return_value = SimpleNamespace(data=[])
        with pytest.raises(LLMResponseInvalidError):
            await llm.embed("hello")

    @pytest.mark.asyncio
    async def test_transcribe(self, llm, openai_client):
        text = await llm.transcribe(b"\x00\x01", language="es")

        assert text == "hello there"
        kwargs = openai_client.audio.transcriptions.create.call_args.kwargs
        assert kwargs["language"] == "es"
        assert kwargs["file"] == ("audio.webm", b"\x00\x01")

    @pytest.mark.asyncio
    async def test_synthesize_speech(self, llm, openai_client):
        audio = await llm.synthesize_speech("Hello", voice="nova")

        assert audio == b"audio"
        assert openai_client.audio.speech.create.call_args.kwargs["voice"] == "nova"
