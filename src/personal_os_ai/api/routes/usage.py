"""Usage, limits and model catalog routes."""

import logging

from fastapi import APIRouter, Depends, Query

from ...services.cost_governor import MODEL_PRICING, CostGovernor
from ..deps import get_governor
from ..middleware.auth import CurrentUser, get_current_user
from ..schemas import LimitsUpdateRequest


router = APIRouter()
logger = logging.getLogger(__name__)

CHAT_MODELS = [
    ("gpt-4", "GPT-4", "Most capable model"),
    ("gpt-4-turbo", "GPT-4 Turbo", "Faster and cheaper GPT-4"),
    ("gpt-3.5-turbo", "GPT-3.5 Turbo", "Fast and efficient"),
]
TTS_VOICES = ["alloy", "echo", "fable", "onyx", "nova", "shimmer"]


def _per_1k(price: float) -> str:
    return f"${price:g}/1K tokens"


def build_model_catalog(governor: CostGovernor) -> dict:
    """Models the gateway can route to, priced from the same table it bills with."""
    whisper = MODEL_PRICING["whisper-1"]["input"]
    tts = MODEL_PRICING["tts-1"]["input"]
    return {
        "chat": [
            {
                "id": model_id,
                "name": name,
                "description": description,
                "pricing": {
                    "input": _per_1k(MODEL_PRICING[model_id]["input"]),
                    "output": _per_1k(MODEL_PRICING[model_id]["output"]),
                },
                "supportsStreaming": True,
            }
            for model_id, name, description in CHAT_MODELS
        ],
        "voice": [
            {
                "id": "whisper-1",
                "name": "Whisper",
                "description": "Speech to text",
                "pricing": {"input": f"${whisper:g}/minute", "output": "Free"},
            }
        ],
        "tts": [
            {"id": voice, "name": voice.capitalize(), "pricing": f"${tts:g}/1K characters"}
            for voice in TTS_VOICES
        ],
        "costLimits": governor.limits.to_dict(),
        "features": {
            "streaming": True,
            "contextualSummaries": True,
            "smartContextDetection": True,
        },
    }


@router.get("/usage")
async def get_usage(
    period: str = Query("current", description="current, week, month or year"),
    current_user: CurrentUser = Depends(get_current_user),
    governor: CostGovernor = Depends(get_governor),
):
    """Current spend against limits, with an optional historical series."""
    return governor.get_usage(current_user.user_id, period)


@router.post("/limits")
async def update_limits(
    limits_request: LimitsUpdateRequest,
    current_user: CurrentUser = Depends(get_current_user),
    governor: CostGovernor = Depends(get_governor),
):
    """Change the cost ceilings. They apply to every user of this process."""
    limits = governor.update_limits(
        daily=limits_request.daily_limit,
        monthly=limits_request.monthly_limit,
        per_request=limits_request.per_request_limit,
    )
    logger.info(f"Cost limits changed by user {current_user.user_id}")
    return {
        "message": "Cost limits updated successfully",
        "limits": limits.to_dict(),
    }


@router.get("/models")
async def list_models(governor: CostGovernor = Depends(get_governor)):
    """Model catalog with pricing and the current limits."""
    return build_model_catalog(governor)
