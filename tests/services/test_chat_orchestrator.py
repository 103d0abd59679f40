"""Tests for the chat orchestrator: budget gate, prompt assembly, streaming, voice."""

import base64
import json
import re
import threading
from unittest.mock import AsyncMock

import pytest

from personal_os_ai.exceptions import LLMError, LLMTimeoutError, ValidationError
from personal_os_ai.services.base import ServiceResult
from personal_os_ai.services.chat_orchestrator import (
    ChatCommand,
    ChatState,
    VoiceCommand,
    new_session_id,
    sse_frame,
)
from personal_os_ai.services.cost_governor import (
    LimitType,
    calculate_cost,
    calculate_speech_cost,
    calculate_transcription_cost,
)
from personal_os_ai.storage.usage_store import DAILY

TODAY = "2024-03-15"


def parse_frames(frames):
    assert all(f.startswith("data: ") and f.endswith("\n\n") for f in frames)
    return [json.loads(f[len("data: "):]) for f in frames]


async def collect(generator):
    return [frame async for frame in generator]


async def run_chat(orchestrator, **kwargs):
    command = ChatCommand(**kwargs)
    prepared = await orchestrator.prepare("user-1", "Alex", command)
    return prepared, await orchestrator.complete(prepared)


class TestBudgetGate:
    @pytest.mark.asyncio
    async def test_denied_request_never_reaches_provider(self, orchestrator, governor, mock_llm):
        governor.record_cost("user-1", 9.95)

        prepared = await orchestrator.prepare("user-1", "Alex", ChatCommand(message="Hello"))

        assert not prepared.allowed
        assert prepared.decision.limit_type == LimitType.DAILY
        assert prepared.state == ChatState.BUDGET_CHECKED
        assert prepared.messages == []
        mock_llm.chat_completion.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.prepare("user-1", "Alex", ChatCommand(message="   "))


class TestPromptAssembly:
    @pytest.mark.asyncio
    async def test_without_context_only_user_message(self, orchestrator, mock_llm):
        await run_chat(orchestrator, message="Hello", include_context=False)

        messages = mock_llm.chat_completion.call_args.args[0]
        assert messages == [{"role": "user", "content": "Hello"}]

    @pytest.mark.asyncio
    async def test_context_adds_system_prompt(self, orchestrator, records, mock_llm):
        records.add_record("user-1", "reading", {"title": "Atomic Habits", "status": "reading"})

        prepared, _ = await run_chat(orchestrator, message="I finished reading Atomic habits")

        messages = mock_llm.chat_completion.call_args.args[0]
        assert messages[0]["role"] == "system"
        assert "Alex" in messages[0]["content"]
        assert "Atomic Habits" in messages[0]["content"]
        assert messages[-1] == {"role": "user", "content": "I finished reading Atomic habits"}
        assert prepared.context.value == "learning"

    @pytest.mark.asyncio
    async def test_summary_failure_drops_system_prompt(self, orchestrator, mock_llm):
        orchestrator.domain_summaries.summarize = AsyncMock(return_value=ServiceResult.fail("down"))

        await run_chat(orchestrator, message="Hello")

        messages = mock_llm.chat_completion.call_args.args[0]
        assert [m["role"] for m in messages] == ["user"]


class TestComplete:
    @pytest.mark.asyncio
    async def test_response_and_metadata(self, orchestrator):
        prepared, outcome = await run_chat(orchestrator, message="Hello", include_context=False)

        body = outcome.to_dict()
        assert body["response"] == "Here is my advice."
        metadata = body["metadata"]
        assert metadata["model"] == "gpt-4"
        assert metadata["tokens"] == {"input": 100, "output": 50, "total": 150}
        assert metadata["cost"]["actual"] == pytest.approx(calculate_cost("gpt-4", 100, 50))
        assert metadata["cost"]["daily"]["limit"] == 10.0
        assert metadata["warnings"] == []
        assert prepared.state == ChatState.RESPONDED

    @pytest.mark.asyncio
    async def test_actual_cost_is_recorded(self, orchestrator, usage_store):
        await run_chat(orchestrator, message="Hello")
        assert usage_store.get("user-1", DAILY, TODAY) == pytest.approx(0.006)

    @pytest.mark.asyncio
    async def test_ledger_calls_run_off_the_event_loop(self, orchestrator, usage_store):
        loop_thread = threading.get_ident()
        threads = []
        original_get, original_add = usage_store.get, usage_store.add

        def tracking_get(*args):
            threads.append(threading.get_ident())
            return original_get(*args)

        def tracking_add(*args):
            threads.append(threading.get_ident())
            return original_add(*args)

        usage_store.get = tracking_get
        usage_store.add = tracking_add

        await run_chat(orchestrator, message="Hello", include_context=False)

        assert threads
        assert loop_thread not in threads

    @pytest.mark.asyncio
    async def test_provider_failure_records_nothing(self, orchestrator, mock_llm, usage_store):
        mock_llm.chat_completion.side_effect = LLMTimeoutError(timeout_seconds=60)

        with pytest.raises(LLMTimeoutError):
            await run_chat(orchestrator, message="Hello")

        assert usage_store.get("user-1", DAILY, TODAY) == 0.0


class TestPersistence:
    @pytest.mark.asyncio
    async def test_exchange_is_persisted_with_cost_attribution(self, orchestrator, chat_history):
        await run_chat(orchestrator, message="Hello", project_id="p1", session_id="s1")

        record = chat_history.get_by_project("user-1", "p1")
        conversation = chat_history.get_conversation(record.id, "s1")
        user_msg, assistant_msg = conversation.messages

        assert (user_msg.role, user_msg.input_tokens, user_msg.output_tokens) == ("user", 100, 0)
        assert user_msg.cost == 0
        assert (assistant_msg.role, assistant_msg.input_tokens, assistant_msg.output_tokens) == (
            "assistant", 0, 50,
        )
        assert assistant_msg.cost == pytest.approx(0.006)

    @pytest.mark.asyncio
    async def test_history_is_sent_with_next_message(self, orchestrator, mock_llm):
        await run_chat(orchestrator, message="First", project_id="p1", session_id="s1")
        await run_chat(orchestrator, message="Second", project_id="p1", session_id="s1")

        messages = mock_llm.chat_completion.call_args.args[0]
        assert [m["content"] for m in messages if m["role"] != "system"] == [
            "First", "Here is my advice.", "Second",
        ]

    @pytest.mark.asyncio
    async def test_without_session_nothing_is_persisted(self, orchestrator, chat_history):
        await run_chat(orchestrator, message="Hello", project_id="p1")

        record = chat_history.get_by_project("user-1", "p1")
        assert chat_history.list_conversations(record.id) == []

    @pytest.mark.asyncio
    async def test_summary_triggered_after_enough_messages(self, orchestrator, chat_history):
        for text in ("one", "two", "three"):
            await run_chat(orchestrator, message=text, project_id="p1", session_id="s1")
            await orchestrator.drain_background_tasks()

        summary = await orchestrator.summarizer.get_summary("user-1", "s1")
        assert summary is not None
        assert summary.message_count_at_summary == 6

        record = chat_history.get_by_project("user-1", "p1")
        assert chat_history.get_conversation(record.id, "s1").summary == summary.summary_text


class TestStreaming:
    @pytest.mark.asyncio
    async def test_deltas_then_metadata_then_done(self, orchestrator, usage_store):
        prepared = await orchestrator.prepare(
            "user-1", "Alex", ChatCommand(message="Hi", include_context=False, stream=True)
        )

        frames = parse_frames(await collect(orchestrator.stream(prepared)))

        types = [f["type"] for f in frames]
        assert types == ["content", "content", "content", "metadata", "done"]
        assert "".join(f["content"] for f in frames if f["type"] == "content") == "Hi there!"
        assert frames[3]["metadata"]["tokens"] == {"input": 20, "output": 3, "total": 23}
        assert usage_store.get("user-1", DAILY, TODAY) == pytest.approx(calculate_cost("gpt-4", 20, 3))
        assert prepared.state == ChatState.RESPONDED

    @pytest.mark.asyncio
    async def test_missing_usage_is_estimated(self, orchestrator, mock_llm, stream_factory, usage_store):
        mock_llm.stream_chat = stream_factory(["abcd", "efgh"], usage=None)
        prepared = await orchestrator.prepare(
            "user-1", "Alex", ChatCommand(message="12345678", include_context=False)
        )

        frames = parse_frames(await collect(orchestrator.stream(prepared)))

        assert frames[-2]["metadata"]["tokens"] == {"input": 2, "output": 2, "total": 4}

    @pytest.mark.asyncio
    async def test_mid_stream_failure_emits_one_error_frame(
        self, orchestrator, mock_llm, stream_factory, usage_store
    ):
        mock_llm.stream_chat = stream_factory(["Hi"], usage=None, error=LLMError("boom"))
        prepared = await orchestrator.prepare(
            "user-1", "Alex", ChatCommand(message="Hi", include_context=False)
        )

        frames = parse_frames(await collect(orchestrator.stream(prepared)))

        assert [f["type"] for f in frames] == ["content", "error"]
        assert frames[-1]["error"] == "Stream processing failed"
        # The partial generation is still charged
        assert usage_store.get("user-1", DAILY, TODAY) > 0

    @pytest.mark.asyncio
    async def test_timeout_records_nothing(self, orchestrator, mock_llm, stream_factory, usage_store):
        mock_llm.stream_chat = stream_factory(["Hi"], usage=None, error=LLMTimeoutError())
        prepared = await orchestrator.prepare(
            "user-1", "Alex", ChatCommand(message="Hi", include_context=False)
        )

        frames = parse_frames(await collect(orchestrator.stream(prepared)))

        assert frames[-1]["type"] == "error"
        assert usage_store.get("user-1", DAILY, TODAY) == 0.0

    @pytest.mark.asyncio
    async def test_client_disconnect_records_partial_cost(self, orchestrator, usage_store):
        prepared = await orchestrator.prepare(
            "user-1", "Alex", ChatCommand(message="Hi", include_context=False)
        )
        stream = orchestrator.stream(prepared)

        first = await stream.__anext__()
        await stream.aclose()

        assert json.loads(first[len("data: "):])["content"] == "Hi"
        assert usage_store.get("user-1", DAILY, TODAY) > 0


class TestVoice:
    @pytest.mark.asyncio
    async def test_round_trip_records_one_combined_cost(self, orchestrator, usage_store, mock_llm):
        audio = b"x" * 96_000
        command = VoiceCommand(audio_data=base64.b64encode(audio).decode())

        result = await orchestrator.voice("user-1", "Alex", command)

        assert not result.denied
        payload = result.payload
        assert payload["transcription"] == "How are my goals going?"
        assert payload["response"] == "Here is my advice."
        assert base64.b64decode(payload["audio"]) == b"mp3-bytes"

        expected = (
            calculate_transcription_cost(len(audio))
            + calculate_cost("gpt-4", 100, 50)
            + calculate_speech_cost("Here is my advice.")
        )
        voice_meta = payload["metadata"]["voice"]
        assert voice_meta["totalRequestCost"] == pytest.approx(expected)
        assert usage_store.get("user-1", DAILY, TODAY) == pytest.approx(expected)

    @pytest.mark.asyncio
    async def test_invalid_audio(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.voice("user-1", "Alex", VoiceCommand(audio_data="not base64!!"))

    @pytest.mark.asyncio
    async def test_denied_before_transcription(self, orchestrator, governor, mock_llm):
        governor.record_cost("user-1", 9.95)
        command = VoiceCommand(audio_data=base64.b64encode(b"audio").decode())

        result = await orchestrator.voice("user-1", "Alex", command)

        assert result.denied
        mock_llm.transcribe.assert_not_called()

    @pytest.mark.asyncio
    async def test_completed_calls_are_charged_when_speech_fails(
        self, orchestrator, mock_llm, usage_store
    ):
        mock_llm.synthesize_speech.side_effect = LLMError("tts down")
        command = VoiceCommand(audio_data=base64.b64encode(b"a" * 960_000).decode())

        with pytest.raises(LLMError):
            await orchestrator.voice("user-1", "Alex", command)

        expected = calculate_transcription_cost(960_000) + calculate_cost("gpt-4", 100, 50)
        assert usage_store.get("user-1", DAILY, TODAY) == pytest.approx(expected)


class TestAnalysisAndBrief:
    @pytest.mark.asyncio
    async def test_analyze(self, orchestrator, mock_llm):
        result = await orchestrator.analyze("user-1", "finance", "week", "Where can I save?")

        payload = result.payload
        assert payload["analysis"] == "Here is my advice."
        assert payload["area"] == "finance"
        assert payload["timeframe"] == "week"
        assert payload["dataPoints"] == 2
        kwargs = mock_llm.chat_completion.call_args.kwargs
        assert kwargs["max_tokens"] == 2000
        assert kwargs["temperature"] == 0.3
        assert "Where can I save?" in mock_llm.chat_completion.call_args.args[0][1]["content"]

    @pytest.mark.asyncio
    async def test_analyze_unknown_area_uses_general(self, orchestrator):
        result = await orchestrator.analyze("user-1", "astrology")
        assert result.payload["dataPoints"] == 4

    @pytest.mark.asyncio
    async def test_analyze_denied(self, orchestrator, governor, mock_llm):
        governor.record_cost("user-1", 10.0)
        result = await orchestrator.analyze("user-1", "general")
        assert result.denied
        mock_llm.chat_completion.assert_not_called()

    @pytest.mark.asyncio
    async def test_daily_brief(self, orchestrator, mock_llm, usage_store):
        result = await orchestrator.daily_brief("user-1", "Alex")

        assert result.payload["brief"] == "Here is my advice."
        assert "summary" in result.payload["data"]
        assert mock_llm.chat_completion.call_args.kwargs["max_tokens"] == 300
        assert usage_store.get("user-1", DAILY, TODAY) > 0


class TestConversations:
    def test_session_id_format(self):
        assert re.fullmatch(r"session_\d{13}_[0-9a-z]{9}", new_session_id())

    @pytest.mark.asyncio
    async def test_start_new_chat(self, orchestrator, chat_history):
        result = await orchestrator.start_new_chat("user-1", "p1", tags=["Planning"])

        conversation = chat_history.get_conversation(result["chatHistoryId"], result["sessionId"])
        assert conversation.tags == ["planning"]

    @pytest.mark.asyncio
    async def test_project_history_without_record(self, orchestrator):
        result = await orchestrator.get_project_history("user-1", "unknown")
        assert result == {"chatHistory": None, "conversations": [], "stats": None}

    def test_sse_frame(self):
        assert sse_frame({"type": "done"}) == 'data: {"type": "done"}\n\n'
