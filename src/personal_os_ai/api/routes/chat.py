"""Chat and voice routes."""

import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from ...exceptions import NotFoundError, ValidationError
from ...services.chat_orchestrator import ChatOrchestrator
from ...services.cost_governor import BudgetDecision
from ..deps import get_orchestrator
from ..middleware.auth import CurrentUser, get_current_user
from ..middleware.rate_limit import RATE_LIMIT_AI, limiter
from ..schemas import (
    BudgetExceededResponse,
    ChatRequest,
    ErrorResponse,
    NewChatRequest,
    VoiceRequest,
)


router = APIRouter()
logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# OpenAPI documentation for routes that go through the cost governor
GOVERNED_RESPONSES = {
    400: {"model": ErrorResponse},
    429: {"model": BudgetExceededResponse},
}


def budget_exceeded_response(decision: BudgetDecision) -> JSONResponse:
    """429 carrying the limit that would have been crossed."""
    logger.info(f"Budget denied: {decision.reason}")
    return JSONResponse(status_code=429, content=decision.to_dict())


@router.post("/chat", responses=GOVERNED_RESPONSES)
@limiter.limit(RATE_LIMIT_AI)
async def chat(
    request: Request,
    chat_request: ChatRequest,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """
    Send a message to the assistant.

    With ``stream: true`` the reply is a ``text/event-stream`` of content
    frames followed by one metadata frame and one done frame.
    """
    command = chat_request.to_command()
    prepared = await orchestrator.prepare(
        current_user.user_id, current_user.display_name, command
    )
    if not prepared.allowed:
        return budget_exceeded_response(prepared.decision)

    if command.stream:
        return StreamingResponse(
            orchestrator.stream(prepared),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    outcome = await orchestrator.complete(prepared)
    return outcome.to_dict()


@router.post("/chat/new")
async def new_chat(
    new_chat_request: NewChatRequest,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Start a new conversation in a project's chat history."""
    if not new_chat_request.project_id:
        raise ValidationError("Project ID is required", field="projectId")

    result = await orchestrator.start_new_chat(
        current_user.user_id,
        new_chat_request.project_id,
        tags=new_chat_request.tags,
        title=new_chat_request.title,
        description=new_chat_request.description,
    )
    return {"success": True, **result}


@router.get("/chat/history/{project_id}")
async def chat_history(
    project_id: str,
    limit: int = Query(10, ge=1, le=100),
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Recent conversations for a project, with token and cost totals."""
    history = await orchestrator.get_project_history(current_user.user_id, project_id, limit)
    return {"success": True, **history}


@router.get("/chat/summary/{session_id}")
async def chat_summary(
    session_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Latest rolling summary of a conversation."""
    summary = await orchestrator.summarizer.get_summary(current_user.user_id, session_id)
    if summary is None:
        raise NotFoundError("ConversationSummary", session_id)
    return summary.to_dict()


@router.post("/voice", responses=GOVERNED_RESPONSES)
@limiter.limit(RATE_LIMIT_AI)
async def voice(
    request: Request,
    voice_request: VoiceRequest,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Transcribe audio, answer it and speak the answer back."""
    result = await orchestrator.voice(
        current_user.user_id, current_user.display_name, voice_request.to_command()
    )
    if result.denied:
        return budget_exceeded_response(result.decision)
    return result.payload
