"""
Chat orchestration.

Turns a user's message into a cost-governed provider call:

    budget check -> entity links + domain summary (parallel)
    -> relevant history -> prompt -> provider call
    -> record cost -> persist exchange -> background summary

The same path serves plain and streamed chat. Voice, analysis and the
daily brief are thin variations that share the budget and recording
rules: check before calling, record what the provider actually charged,
and record nothing for a call that timed out.
"""

import asyncio
import base64
import binascii
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from ..config import get_settings
from ..exceptions import LLMError, LLMTimeoutError, ValidationError
from ..llm.prompts import (
    ANALYSIS_SYSTEM_PROMPT,
    DAILY_BRIEF_SYSTEM_PROMPT,
    DAILY_BRIEF_USER_PROMPT,
    build_analysis_prompt,
    build_system_prompt,
)
from ..llm.providers import LLMClient
from ..storage.chat_history import ChatHistoryRecord, ChatHistoryRepository
from .base import BaseService
from .context_selector import ContextSelector
from .cost_governor import (
    ActualUsage,
    BudgetDecision,
    CostEstimate,
    CostGovernor,
    UsageSnapshot,
    calculate_speech_cost,
    calculate_transcription_cost,
    estimate_tokens,
)
from .domain_summary import (
    DomainSummaryService,
    SummaryContext,
    analyze_message_context,
)
from .entity_linker import EntityLinker, EntityLinks
from .summarizer import ConversationSummarizer


logger = logging.getLogger(__name__)

ANALYSIS_MAX_TOKENS = 2000
ANALYSIS_TEMPERATURE = 0.3
DAILY_BRIEF_MAX_TOKENS = 300
DAILY_BRIEF_TEMPERATURE = 0.7
DEFAULT_TEMPERATURE = 0.7

STREAM_ERROR_MESSAGE = "Stream processing failed"


class ChatState(str, Enum):
    """Lifecycle of a chat request."""

    RECEIVED = "received"
    BUDGET_CHECKED = "budget_checked"
    CONTEXT_ASSEMBLED = "context_assembled"
    DISPATCHED = "dispatched"
    STREAMING = "streaming"
    COMPLETED = "completed"
    PERSISTED = "persisted"
    SUMMARIZATION_TRIGGERED = "summarization_triggered"
    RESPONDED = "responded"


@dataclass
class ChatCommand:
    """A chat request after HTTP validation."""
    message: str
    model: Optional[str] = None
    project_id: Optional[str] = None
    session_id: Optional[str] = None
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: Optional[int] = None
    include_context: bool = True
    stream: bool = False


@dataclass
class VoiceCommand:
    """A voice request after HTTP validation."""
    audio_data: str  # base64
    model: Optional[str] = None
    language: str = "en"
    project_id: Optional[str] = None
    session_id: Optional[str] = None
    response_voice: str = "alloy"


@dataclass
class PreparedChat:
    """Everything needed to dispatch a chat request."""
    user_id: str
    user_name: str
    command: ChatCommand
    model: str
    max_tokens: int
    estimate: CostEstimate
    decision: BudgetDecision
    state: ChatState = ChatState.RECEIVED
    context: SummaryContext = SummaryContext.GENERAL
    entity_links: EntityLinks = field(default_factory=EntityLinks)
    messages: List[Dict[str, str]] = field(default_factory=list)
    chat_history: Optional[ChatHistoryRecord] = None
    started_at: float = field(default_factory=time.time)

    @property
    def allowed(self) -> bool:
        return self.decision.allowed

    @property
    def prompt_chars(self) -> int:
        return sum(len(m["content"]) for m in self.messages)

    @property
    def persists(self) -> bool:
        return bool(self.command.session_id and self.chat_history)


@dataclass
class ChatOutcome:
    """A finished non-streamed chat exchange."""
    response: str
    usage: ActualUsage
    snapshot: UsageSnapshot
    metadata: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"response": self.response, "metadata": self.metadata}


@dataclass
class GovernedResult:
    """Either a budget denial or the payload of a governed call."""
    decision: BudgetDecision
    payload: Optional[Dict[str, Any]] = None

    @property
    def denied(self) -> bool:
        return not self.decision.allowed


def sse_frame(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def _now_ms() -> int:
    return int(time.time() * 1000)


class ChatOrchestrator(BaseService):
    """Entry point for chat, voice, analysis and daily brief requests."""

    def __init__(
        self,
        llm_client: LLMClient,
        cost_governor: CostGovernor,
        context_selector: ContextSelector,
        entity_linker: EntityLinker,
        summarizer: ConversationSummarizer,
        domain_summaries: DomainSummaryService,
        chat_history: ChatHistoryRepository,
    ) -> None:
        super().__init__()
        self.settings = get_settings()
        self.llm_client = llm_client
        self.cost_governor = cost_governor
        self.context_selector = context_selector
        self.entity_linker = entity_linker
        self.summarizer = summarizer
        self.domain_summaries = domain_summaries
        self.chat_history = chat_history
        self._background_tasks: Set[asyncio.Task] = set()

    def _transition(self, prepared: PreparedChat, state: ChatState) -> None:
        self.logger.debug(
            f"Chat for user {prepared.user_id}: {prepared.state.value} -> {state.value}"
        )
        prepared.state = state

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    async def prepare(
        self,
        user_id: str,
        user_name: str,
        command: ChatCommand,
        check_budget: bool = True,
    ) -> PreparedChat:
        """
        Check the budget and assemble the prompt.

        When the budget check denies the request the returned PreparedChat
        has ``allowed == False`` and no context has been gathered.
        """
        if not command.message or not command.message.strip():
            raise ValidationError("Message is required", field="message")

        model = command.model or self.settings.default_chat_model
        max_tokens = command.max_tokens or self.settings.default_max_output_tokens
        estimate = self.cost_governor.estimate_cost(model, len(command.message), max_tokens)
        if check_budget:
            decision = await asyncio.to_thread(self.cost_governor.check_budget, user_id, estimate)
        else:
            snapshot = await asyncio.to_thread(self.cost_governor.get_snapshot, user_id)
            decision = BudgetDecision(
                allowed=True,
                estimated_cost=estimate.estimated_cost,
                daily_usage=snapshot.daily_usage,
                monthly_usage=snapshot.monthly_usage,
            )

        prepared = PreparedChat(
            user_id=user_id,
            user_name=user_name,
            command=command,
            model=model,
            max_tokens=max_tokens,
            estimate=estimate,
            decision=decision,
        )
        self._transition(prepared, ChatState.BUDGET_CHECKED)
        if not decision.allowed:
            return prepared

        prepared.context = (
            analyze_message_context(command.message)
            if command.include_context
            else SummaryContext.GENERAL
        )

        link_result, summary_result = await asyncio.gather(
            self.entity_linker.link(command.message, user_id),
            self._fetch_summary(user_id, prepared.context, command.include_context),
        )
        prepared.entity_links = link_result.unwrap_or(EntityLinks())

        if command.project_id:
            prepared.chat_history = await asyncio.to_thread(
                self.chat_history.create_or_get_project_chat,
                user_id,
                command.project_id,
                "AI Chat for Project",
                "AI conversation linked to project",
            )

        messages: List[Dict[str, str]] = []
        summary = summary_result.unwrap_or(None) if summary_result is not None else None
        if command.include_context and summary is not None:
            messages.append({
                "role": "system",
                "content": build_system_prompt(
                    user_name,
                    prepared.context.value,
                    summary,
                    prepared.entity_links.entities_as_dicts(),
                ),
            })

        if prepared.persists:
            conversation = await asyncio.to_thread(
                self.chat_history.ensure_conversation,
                prepared.chat_history.id,
                command.session_id,
            )
            selected = await self.context_selector.select_relevant(
                command.session_id,
                command.message,
                conversation.messages,
                self.settings.context_max_messages,
            )
            messages.extend({"role": m.role, "content": m.content} for m in selected)

        messages.append({"role": "user", "content": command.message})
        prepared.messages = messages
        self._transition(prepared, ChatState.CONTEXT_ASSEMBLED)
        return prepared

    async def _fetch_summary(self, user_id: str, context: SummaryContext, include: bool):
        if not include:
            return None
        return await self.domain_summaries.summarize(user_id, context)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def complete(self, prepared: PreparedChat, record: bool = True) -> ChatOutcome:
        """
        Run a prepared chat as a single request.

        With ``record=False`` the cost is not added to the ledger; the voice
        flow records the combined cost of its three calls itself.
        """
        command = prepared.command
        self._transition(prepared, ChatState.DISPATCHED)
        result = await self.llm_client.chat_completion(
            prepared.messages,
            model=prepared.model,
            max_tokens=prepared.max_tokens,
            temperature=command.temperature,
        )
        self._transition(prepared, ChatState.COMPLETED)

        response_time = _now_ms() - int(prepared.started_at * 1000)
        usage = ActualUsage.from_tokens(
            prepared.model, result.input_tokens, result.output_tokens, response_time
        )
        if record:
            snapshot = await asyncio.to_thread(
                self.cost_governor.record_actual, prepared.user_id, usage
            )
        else:
            snapshot = await asyncio.to_thread(self.cost_governor.get_snapshot, prepared.user_id)

        await self._finish_exchange(prepared, result.content, usage)
        metadata = self._build_metadata(prepared, usage, snapshot)
        self._transition(prepared, ChatState.RESPONDED)
        return ChatOutcome(
            response=result.content,
            usage=usage,
            snapshot=snapshot,
            metadata=metadata,
        )

    async def stream(self, prepared: PreparedChat) -> AsyncIterator[str]:
        """
        Run a prepared chat as a stream of SSE frames.

        Content frames are forwarded as they arrive. Once the provider
        finishes, one metadata frame and one done frame follow. A provider
        failure produces one error frame and ends the stream. If the client
        goes away mid-stream, the partial generation is still charged.
        """
        command = prepared.command
        parts: List[str] = []
        input_tokens: Optional[int] = None
        output_tokens: Optional[int] = None
        recorded = False
        timed_out = False

        self._transition(prepared, ChatState.DISPATCHED)
        try:
            self._transition(prepared, ChatState.STREAMING)
            async for chunk in self.llm_client.stream_chat(
                prepared.messages,
                model=prepared.model,
                max_tokens=prepared.max_tokens,
                temperature=command.temperature,
            ):
                if chunk.content:
                    parts.append(chunk.content)
                    yield sse_frame({
                        "type": "content",
                        "content": chunk.content,
                        "timestamp": _now_ms(),
                    })
                elif chunk.is_usage:
                    input_tokens = chunk.input_tokens
                    output_tokens = chunk.output_tokens

            self._transition(prepared, ChatState.COMPLETED)
            full_text = "".join(parts)
            usage = self._stream_usage(prepared, full_text, input_tokens, output_tokens)
            snapshot = await asyncio.to_thread(
                self.cost_governor.record_actual, prepared.user_id, usage
            )
            recorded = True

            await self._finish_exchange(prepared, full_text, usage)
            yield sse_frame({
                "type": "metadata",
                "metadata": self._build_metadata(prepared, usage, snapshot),
            })
            yield sse_frame({"type": "done"})
            self._transition(prepared, ChatState.RESPONDED)

        except LLMTimeoutError as e:
            timed_out = True
            self.logger.warning(f"Chat stream timed out for user {prepared.user_id}")
            yield sse_frame({"type": "error", "error": STREAM_ERROR_MESSAGE, "code": e.code.value})
        except LLMError as e:
            self.logger.error(f"Chat stream failed for user {prepared.user_id}: {e.message}")
            yield sse_frame({"type": "error", "error": STREAM_ERROR_MESSAGE, "code": e.code.value})
        except Exception as e:
            self.logger.error(f"Chat stream failed for user {prepared.user_id}: {e}")
            yield sse_frame({"type": "error", "error": STREAM_ERROR_MESSAGE})
        finally:
            if not recorded and not timed_out and parts:
                self._record_partial(prepared, "".join(parts), input_tokens, output_tokens)

    def _stream_usage(
        self,
        prepared: PreparedChat,
        full_text: str,
        input_tokens: Optional[int],
        output_tokens: Optional[int],
    ) -> ActualUsage:
        """Provider usage when it was reported, otherwise a character estimate."""
        if input_tokens is None:
            input_tokens = estimate_tokens(prepared.prompt_chars)
        if output_tokens is None:
            output_tokens = estimate_tokens(len(full_text))
        response_time = _now_ms() - int(prepared.started_at * 1000)
        return ActualUsage.from_tokens(prepared.model, input_tokens, output_tokens, response_time)

    def _record_partial(
        self,
        prepared: PreparedChat,
        partial_text: str,
        input_tokens: Optional[int],
        output_tokens: Optional[int],
    ) -> None:
        """Charge an interrupted stream. Synchronous so it can run during cancellation."""
        usage = self._stream_usage(prepared, partial_text, input_tokens, output_tokens)
        self.cost_governor.record_actual(prepared.user_id, usage)
        self.logger.info(
            f"Recorded partial stream for user {prepared.user_id}: "
            f"{usage.output_tokens} output tokens, ${usage.actual_cost:.4f}"
        )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def _finish_exchange(
        self,
        prepared: PreparedChat,
        response_text: str,
        usage: ActualUsage,
    ) -> None:
        """Persist both messages and kick off the summarizer."""
        if not prepared.persists:
            return

        command = prepared.command
        history_id = prepared.chat_history.id
        try:
            await asyncio.to_thread(
                self.chat_history.add_message,
                history_id,
                command.session_id,
                "user",
                command.message,
                usage.input_tokens,
                0,
                prepared.model,
                {
                    "temperature": command.temperature,
                    "maxTokens": prepared.max_tokens,
                    "responseTime": 0,
                    "cost": 0,
                    "context": prepared.context.value,
                    "entityLinks": prepared.entity_links.to_dict(),
                },
            )
            await asyncio.to_thread(
                self.chat_history.add_message,
                history_id,
                command.session_id,
                "assistant",
                response_text,
                0,
                usage.output_tokens,
                prepared.model,
                {
                    "temperature": command.temperature,
                    "maxTokens": prepared.max_tokens,
                    "responseTime": usage.response_time_ms,
                    "cost": usage.actual_cost,
                    "context": prepared.context.value,
                },
            )
        except Exception as e:
            # The provider already charged for this exchange; the reply still goes out
            self.logger.error(f"Failed to persist exchange for session {command.session_id}: {e}")
            return
        self._transition(prepared, ChatState.PERSISTED)

        self._spawn(self._summarize_session(prepared.user_id, history_id, command.session_id))
        self._transition(prepared, ChatState.SUMMARIZATION_TRIGGERED)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def _summarize_session(self, user_id: str, history_id: str, session_id: str) -> None:
        try:
            conversation = await asyncio.to_thread(
                self.chat_history.get_conversation, history_id, session_id
            )
            if conversation is None:
                return
            messages = [{"role": m.role, "content": m.content} for m in conversation.messages]
            summary = await self.summarizer.maybe_summarize(session_id, messages, user_id)
            if summary is not None:
                await asyncio.to_thread(
                    self.chat_history.update_conversation_summary,
                    history_id,
                    session_id,
                    summary.summary_text,
                )
        except Exception as e:
            self.logger.warning(f"Background summary failed for session {session_id}: {e}")

    async def drain_background_tasks(self) -> None:
        """Wait for pending summaries. Used at shutdown and in tests."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    def _build_metadata(
        self,
        prepared: PreparedChat,
        usage: ActualUsage,
        snapshot: UsageSnapshot,
    ) -> Dict[str, Any]:
        return {
            "model": prepared.model,
            "context": prepared.context.value,
            "entityLinks": prepared.entity_links.to_dict(),
            "tokens": {
                "input": usage.input_tokens,
                "output": usage.output_tokens,
                "total": usage.input_tokens + usage.output_tokens,
            },
            "cost": snapshot.to_cost_dict(usage.actual_cost, prepared.estimate.estimated_cost),
            "responseTime": usage.response_time_ms,
            "sessionId": prepared.command.session_id,
            "warnings": [w.to_dict() for w in snapshot.warnings],
        }

    # ------------------------------------------------------------------
    # Voice
    # ------------------------------------------------------------------

    async def voice(self, user_id: str, user_name: str, command: VoiceCommand) -> GovernedResult:
        """
        Speech-to-text, chat, text-to-speech as one governed transaction.

        The three costs are summed into a single ledger update. Calls that
        completed before a failure are still recorded.
        """
        if not command.audio_data:
            raise ValidationError("Audio data is required", field="audioData")
        try:
            audio = base64.b64decode(command.audio_data, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError("Audio data must be base64 encoded", field="audioData")
        if not audio:
            raise ValidationError("Audio data is required", field="audioData")

        estimate = self.cost_governor.estimate_voice_cost()
        decision = await asyncio.to_thread(self.cost_governor.check_budget, user_id, estimate)
        if not decision.allowed:
            return GovernedResult(decision=decision)

        started_at = time.time()
        transcription_model = command.model or self.settings.transcription_model
        costs = {"whisper": 0.0, "chat": 0.0, "tts": 0.0}
        try:
            transcription = await self.llm_client.transcribe(
                audio, language=command.language, model=transcription_model
            )
            costs["whisper"] = calculate_transcription_cost(len(audio), transcription_model)
            if not transcription.strip():
                raise ValidationError("No speech detected in audio", field="audioData")

            prepared = await self.prepare(
                user_id,
                user_name,
                ChatCommand(
                    message=transcription,
                    model=self.settings.default_chat_model,
                    project_id=command.project_id,
                    session_id=command.session_id,
                    include_context=True,
                ),
                check_budget=False,
            )
            outcome = await self.complete(prepared, record=False)
            costs["chat"] = outcome.usage.actual_cost

            audio_reply = await self.llm_client.synthesize_speech(
                outcome.response, voice=command.response_voice
            )
            costs["tts"] = calculate_speech_cost(outcome.response, self.settings.speech_model)
        finally:
            total = sum(costs.values())
            if total > 0:
                snapshot = await asyncio.to_thread(self.cost_governor.record_cost, user_id, total)
            else:
                snapshot = await asyncio.to_thread(self.cost_governor.get_snapshot, user_id)

        response_time = _now_ms() - int(started_at * 1000)
        metadata = dict(outcome.metadata)
        metadata["cost"] = snapshot.to_cost_dict(total, estimate.estimated_cost)
        metadata["warnings"] = [w.to_dict() for w in snapshot.warnings]
        metadata["voice"] = {
            "whisperCost": costs["whisper"],
            "ttsCost": costs["tts"],
            "totalVoiceCost": costs["whisper"] + costs["tts"],
            "totalRequestCost": total,
            "responseTime": response_time,
        }
        return GovernedResult(
            decision=decision,
            payload={
                "transcription": transcription,
                "response": outcome.response,
                "audio": base64.b64encode(audio_reply).decode("ascii"),
                "metadata": metadata,
            },
        )

    # ------------------------------------------------------------------
    # Analysis and daily brief
    # ------------------------------------------------------------------

    async def analyze(
        self,
        user_id: str,
        area: Optional[str],
        timeframe: str = "month",
        specific: Optional[str] = None,
    ) -> GovernedResult:
        """One-shot deeper analysis of a domain summary. Unknown areas use the general view."""
        try:
            context = SummaryContext(area) if area else SummaryContext.GENERAL
        except ValueError:
            context = SummaryContext.GENERAL

        data = await self.domain_summaries.get_summary(user_id, context)
        user_prompt = build_analysis_prompt(context.value, data, timeframe, specific)
        model = self.settings.analysis_model

        estimate = self.cost_governor.estimate_cost(
            model, len(ANALYSIS_SYSTEM_PROMPT) + len(user_prompt), ANALYSIS_MAX_TOKENS
        )
        decision = await asyncio.to_thread(self.cost_governor.check_budget, user_id, estimate)
        if not decision.allowed:
            return GovernedResult(decision=decision)

        result = await self.llm_client.chat_completion(
            [
                {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ],
            model=model,
            max_tokens=ANALYSIS_MAX_TOKENS,
            temperature=ANALYSIS_TEMPERATURE,
        )
        usage = ActualUsage.from_tokens(
            model, result.input_tokens, result.output_tokens, result.duration_ms
        )
        snapshot = await asyncio.to_thread(self.cost_governor.record_actual, user_id, usage)

        return GovernedResult(
            decision=decision,
            payload={
                "analysis": result.content,
                "area": area or SummaryContext.GENERAL.value,
                "timeframe": timeframe,
                "dataPoints": len(data),
                "metadata": {
                    "cost": usage.actual_cost,
                    "tokens": {
                        "prompt_tokens": usage.input_tokens,
                        "completion_tokens": usage.output_tokens,
                        "total_tokens": usage.input_tokens + usage.output_tokens,
                    },
                    "warnings": [w.to_dict() for w in snapshot.warnings],
                },
            },
        )

    async def daily_brief(self, user_id: str, user_name: str) -> GovernedResult:
        """Short encouraging brief over the general summary."""
        summary = await self.domain_summaries.get_summary(user_id, SummaryContext.GENERAL)
        brief_data = {"summary": summary, "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())}
        system_prompt = DAILY_BRIEF_SYSTEM_PROMPT.format(user_name=user_name)
        user_prompt = DAILY_BRIEF_USER_PROMPT.format(data=json.dumps(brief_data, indent=2, default=str))
        model = self.settings.summary_model

        estimate = self.cost_governor.estimate_cost(
            model, len(system_prompt) + len(user_prompt), DAILY_BRIEF_MAX_TOKENS
        )
        decision = await asyncio.to_thread(self.cost_governor.check_budget, user_id, estimate)
        if not decision.allowed:
            return GovernedResult(decision=decision)

        result = await self.llm_client.chat_completion(
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            model=model,
            max_tokens=DAILY_BRIEF_MAX_TOKENS,
            temperature=DAILY_BRIEF_TEMPERATURE,
        )
        usage = ActualUsage.from_tokens(
            model, result.input_tokens, result.output_tokens, result.duration_ms
        )
        await asyncio.to_thread(self.cost_governor.record_actual, user_id, usage)

        return GovernedResult(
            decision=decision,
            payload={
                "brief": result.content,
                "data": brief_data,
                "metadata": {"cost": usage.actual_cost},
            },
        )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def start_new_chat(
        self,
        user_id: str,
        project_id: str,
        tags: Optional[List[str]] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Open a fresh session in the project's chat history."""
        record = await asyncio.to_thread(
            self.chat_history.create_or_get_project_chat,
            user_id,
            project_id,
            title or "AI Chat for Project",
            description or "AI conversation linked to project",
        )
        session_id = new_session_id()
        conversation = await asyncio.to_thread(
            self.chat_history.start_new_conversation, record.id, session_id, tags or []
        )
        self.logger.info(f"Started session {session_id} for project {project_id}")
        return {
            "sessionId": conversation.session_id,
            "chatHistoryId": record.id,
            "message": "New conversation started",
        }

    async def get_project_history(
        self,
        user_id: str,
        project_id: str,
        limit: int = 10,
    ) -> Dict[str, Any]:
        """Recent conversations of a project, newest first, with aggregate stats."""
        record = await asyncio.to_thread(self.chat_history.get_by_project, user_id, project_id)
        if record is None:
            return {"chatHistory": None, "conversations": [], "stats": None}

        conversations, stats = await asyncio.gather(
            asyncio.to_thread(self.chat_history.list_conversations, record.id),
            asyncio.to_thread(self.chat_history.get_conversation_stats, record.id),
        )
        conversations.sort(key=lambda c: c.last_activity, reverse=True)
        return {
            "chatHistory": record.to_dict(),
            "conversations": [c.to_dict() for c in conversations[:limit]],
            "stats": stats,
        }


def new_session_id() -> str:
    """``session_<epoch ms>_<9 base36 chars>``"""
    alphabet = "0123456789abcdefghijklmnopqrstuvwxyz"
    suffix = "".join(secrets.choice(alphabet) for _ in range(9))
    return f"session_{_now_ms()}_{suffix}"
