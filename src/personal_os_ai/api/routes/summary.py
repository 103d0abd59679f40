"""Domain summary, analysis and automation routes."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request

from ...services.chat_orchestrator import ChatOrchestrator
from ...services.domain_summary import (
    CONTEXT_CATALOG,
    DomainSummaryService,
    SummaryContext,
    parse_context,
)
from ..deps import get_domain_summary_service, get_orchestrator
from ..middleware.auth import CurrentUser, get_current_user
from ..middleware.rate_limit import RATE_LIMIT_AI, limiter
from ..schemas import AnalyzeRequest
from .chat import GOVERNED_RESPONSES, budget_exceeded_response


router = APIRouter()
logger = logging.getLogger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/summary")
async def get_general_summary(
    current_user: CurrentUser = Depends(get_current_user),
    summaries: DomainSummaryService = Depends(get_domain_summary_service),
):
    """Snapshot across all areas."""
    summary = await summaries.get_summary(current_user.user_id, SummaryContext.GENERAL)
    return {
        "success": True,
        "context": SummaryContext.GENERAL.value,
        "summary": summary,
        "timestamp": _timestamp(),
    }


@router.get("/summary/{context}")
async def get_context_summary(
    context: str,
    current_user: CurrentUser = Depends(get_current_user),
    summaries: DomainSummaryService = Depends(get_domain_summary_service),
):
    """Snapshot for one area. 400 on an unknown context."""
    summary_context = parse_context(context)
    summary = await summaries.get_summary(current_user.user_id, summary_context)
    return {
        "success": True,
        "context": summary_context.value,
        "summary": summary,
        "timestamp": _timestamp(),
    }


@router.get("/contexts")
async def list_contexts(current_user: CurrentUser = Depends(get_current_user)):
    return {"contexts": CONTEXT_CATALOG}


@router.post("/analyze", responses=GOVERNED_RESPONSES)
@limiter.limit(RATE_LIMIT_AI)
async def analyze(
    request: Request,
    analyze_request: AnalyzeRequest,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Deeper one-shot analysis of an area."""
    result = await orchestrator.analyze(
        current_user.user_id,
        analyze_request.area,
        analyze_request.timeframe,
        analyze_request.specific,
    )
    if result.denied:
        return budget_exceeded_response(result.decision)
    return result.payload


@router.post("/automation/daily-brief", responses=GOVERNED_RESPONSES)
@limiter.limit(RATE_LIMIT_AI)
async def daily_brief(
    request: Request,
    current_user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
):
    """Short motivating brief for the day."""
    result = await orchestrator.daily_brief(current_user.user_id, current_user.display_name)
    if result.denied:
        return budget_exceeded_response(result.decision)
    return {"success": True, **result.payload}
