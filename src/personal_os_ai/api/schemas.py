"""
API schemas for request validation.

Request bodies use the camelCase field names the Personal OS clients send;
Python code reads the snake_case attributes.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..services.chat_orchestrator import ChatCommand, VoiceCommand


class CamelModel(BaseModel):
    """Accepts both the camelCase alias and the field name."""

    model_config = ConfigDict(populate_by_name=True)


# ============================================================================
# Error Models
# ============================================================================

class ErrorDetail(BaseModel):
    """Error detail for API responses."""

    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: ErrorDetail


class BudgetExceededResponse(CamelModel):
    """Body of a 429 returned when a cost ceiling would be crossed."""

    error: str
    limit_type: Optional[str] = Field(None, alias="limitType")
    current_usage: Optional[float] = Field(None, alias="currentUsage")
    estimated_cost: float = Field(..., alias="estimatedCost")
    limit: Optional[float] = None
    remaining_budget: Optional[float] = Field(None, alias="remainingBudget")


# ============================================================================
# Chat
# ============================================================================

class ChatRequest(CamelModel):
    """Body of POST /chat."""

    message: Optional[str] = Field(None, description="The user's message")
    model: Optional[str] = Field(None, description="Chat model, defaults to the configured model")
    project_id: Optional[str] = Field(None, alias="projectId")
    session_id: Optional[str] = Field(None, alias="sessionId")
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(1000, alias="maxTokens", ge=1, le=8192)
    include_context: bool = Field(True, alias="includeContext")
    stream: bool = False

    def to_command(self) -> ChatCommand:
        return ChatCommand(
            message=self.message or "",
            model=self.model,
            project_id=self.project_id,
            session_id=self.session_id,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            include_context=self.include_context,
            stream=self.stream,
        )


class NewChatRequest(CamelModel):
    """Body of POST /chat/new."""

    project_id: Optional[str] = Field(None, alias="projectId")
    title: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class VoiceRequest(CamelModel):
    """Body of POST /voice."""

    audio_data: Optional[str] = Field(None, alias="audioData", description="Base64 encoded audio")
    model: Optional[str] = Field(None, description="Transcription model")
    language: str = "en"
    project_id: Optional[str] = Field(None, alias="projectId")
    session_id: Optional[str] = Field(None, alias="sessionId")
    response_voice: str = Field("alloy", alias="responseVoice")

    def to_command(self) -> VoiceCommand:
        return VoiceCommand(
            audio_data=self.audio_data or "",
            model=self.model,
            language=self.language,
            project_id=self.project_id,
            session_id=self.session_id,
            response_voice=self.response_voice,
        )


# ============================================================================
# Usage and limits
# ============================================================================

class LimitsUpdateRequest(CamelModel):
    """Body of POST /limits. Omitted values keep their current setting."""

    daily_limit: Optional[float] = Field(None, alias="dailyLimit")
    monthly_limit: Optional[float] = Field(None, alias="monthlyLimit")
    per_request_limit: Optional[float] = Field(None, alias="perRequestLimit")


# ============================================================================
# Analysis
# ============================================================================

class AnalyzeRequest(CamelModel):
    """Body of POST /analyze."""

    area: Optional[str] = Field(None, description="general, productivity, finance, learning or goals")
    timeframe: str = "month"
    specific: Optional[str] = Field(None, description="A specific question to answer")
