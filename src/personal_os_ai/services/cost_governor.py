"""
Cost governor for provider spend.

Tracks per-user spend in a daily and a monthly ledger and decides, before
each provider call, whether the estimated cost fits under three ceilings:
- per-request: the estimate alone
- daily: today's spend plus the estimate
- monthly: this month's spend plus the estimate

A denial is returned as a BudgetDecision, never raised. Actual cost is
recorded after the call completes. A call that fails after a passed check
records nothing; the check itself never reserves budget.

Check-then-record is not atomic across awaits, so two concurrent requests
from one user can both pass before either records. The overshoot is
bounded by the per-request ceiling.
"""

import logging
import math
import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import get_settings
from ..exceptions import ValidationError
from ..storage.usage_store import DAILY, MONTHLY, UsageStore, create_usage_store


logger = logging.getLogger(__name__)


# USD per 1K tokens. Audio models are priced per unit instead, see the
# helpers below.
MODEL_PRICING: Dict[str, Dict[str, float]] = {
    "gpt-4": {"input": 0.03, "output": 0.06},
    "gpt-4-turbo": {"input": 0.01, "output": 0.03},
    "gpt-4-1106-preview": {"input": 0.01, "output": 0.03},
    "gpt-3.5-turbo": {"input": 0.0015, "output": 0.002},
    "gpt-3.5-turbo-1106": {"input": 0.001, "output": 0.002},
    "whisper-1": {"input": 0.006, "output": 0.0},
    "tts-1": {"input": 0.015, "output": 0.0},
    "text-embedding-3-small": {"input": 0.00002, "output": 0.0},
}

# Unknown models are charged at the most expensive tier
FALLBACK_PRICING_MODEL = "gpt-4"

CHARS_PER_TOKEN = 4
VOICE_REQUEST_ESTIMATE = 0.10

# Compressed speech at ~128 kbps
AUDIO_BYTES_PER_MINUTE = 960_000

DAILY_RETENTION_DAYS = 31
MONTHLY_RETENTION_MONTHS = 12

# Ledger sums are floats; totals within this of a ceiling count as equal
COST_TOLERANCE = 1e-9
COST_DIGITS = 9


class LimitType(str, Enum):
    """Which ceiling a request would breach."""

    PER_REQUEST = "per_request"
    DAILY = "daily"
    MONTHLY = "monthly"


@dataclass
class CostLimits:
    """Process-wide ceilings in USD."""
    daily: float = 10.00
    monthly: float = 100.00
    per_request: float = 1.00
    warning_threshold: float = 0.80

    @classmethod
    def from_settings(cls) -> "CostLimits":
        settings = get_settings()
        return cls(
            daily=settings.daily_ai_cost_limit,
            monthly=settings.monthly_ai_cost_limit,
            per_request=settings.per_request_cost_limit,
            warning_threshold=settings.cost_warning_threshold,
        )

    def to_dict(self) -> Dict[str, float]:
        return {
            "dailyLimit": self.daily,
            "monthlyLimit": self.monthly,
            "perRequestLimit": self.per_request,
            "warningThreshold": self.warning_threshold,
        }


@dataclass
class CostEstimate:
    """Pre-call cost estimate. Never recorded."""
    model: str
    estimated_input_tokens: int
    estimated_output_tokens: int
    estimated_cost: float


@dataclass
class ActualUsage:
    """Provider-reported usage of a finished call."""
    model: str
    input_tokens: int
    output_tokens: int
    actual_cost: float
    response_time_ms: float = 0.0

    @classmethod
    def from_tokens(
        cls,
        model: str,
        input_tokens: int,
        output_tokens: int,
        response_time_ms: float = 0.0,
    ) -> "ActualUsage":
        return cls(
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            actual_cost=calculate_cost(model, input_tokens, output_tokens),
            response_time_ms=response_time_ms,
        )


@dataclass
class BudgetDecision:
    """Outcome of a budget check."""
    allowed: bool
    estimated_cost: float
    daily_usage: float
    monthly_usage: float
    limit_type: Optional[LimitType] = None
    current_usage: Optional[float] = None
    limit: Optional[float] = None
    remaining_budget: Optional[float] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Body of a 429 response."""
        return {
            "error": self.reason,
            "limitType": self.limit_type.value if self.limit_type else None,
            "currentUsage": self.current_usage,
            "estimatedCost": self.estimated_cost,
            "limit": self.limit,
            "remainingBudget": self.remaining_budget,
        }


@dataclass
class CostWarning:
    """Advisory notice that a ceiling is close to being reached."""
    type: str
    usage: float
    limit: float
    percentage: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class UsageSnapshot:
    """Ledger totals for the current periods, with the limits they are measured against."""
    daily_usage: float
    monthly_usage: float
    daily_limit: float
    monthly_limit: float
    warnings: List[CostWarning] = field(default_factory=list)

    @property
    def daily_remaining(self) -> float:
        return self.daily_limit - self.daily_usage

    @property
    def monthly_remaining(self) -> float:
        return self.monthly_limit - self.monthly_usage

    def to_cost_dict(self, actual: float, estimated: float) -> Dict[str, Any]:
        """The ``cost`` block of chat response metadata."""
        return {
            "actual": actual,
            "estimated": estimated,
            "daily": {
                "used": self.daily_usage,
                "limit": self.daily_limit,
                "remaining": self.daily_remaining,
            },
            "monthly": {
                "used": self.monthly_usage,
                "limit": self.monthly_limit,
                "remaining": self.monthly_remaining,
            },
        }


def get_model_pricing(model: str) -> Dict[str, float]:
    return MODEL_PRICING.get(model, MODEL_PRICING[FALLBACK_PRICING_MODEL])


def calculate_cost(model: str, input_tokens: float, output_tokens: float) -> float:
    """USD cost of a call. Not rounded; round only for display."""
    pricing = get_model_pricing(model)
    input_cost = (input_tokens / 1000) * pricing["input"]
    output_cost = (output_tokens / 1000) * pricing["output"]
    return input_cost + output_cost


def calculate_transcription_cost(audio_size_bytes: int, model: str = "whisper-1") -> float:
    """Speech-to-text is billed per minute of audio."""
    minutes = audio_size_bytes / AUDIO_BYTES_PER_MINUTE
    return minutes * get_model_pricing(model)["input"]


def calculate_speech_cost(text: str, model: str = "tts-1") -> float:
    """Text-to-speech is billed per 1K characters."""
    return (len(text) / 1000) * get_model_pricing(model)["input"]


def estimate_tokens(text_length: int) -> int:
    """Rough token count: one token per four characters."""
    return math.ceil(text_length / CHARS_PER_TOKEN)


def _shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def exceeds(total: float, limit: float) -> bool:
    """True when total is over limit by more than float noise."""
    return total > limit and not math.isclose(total, limit, rel_tol=COST_TOLERANCE, abs_tol=COST_TOLERANCE)


def headroom(limit: float, usage: float) -> float:
    return round(limit - usage, COST_DIGITS)


class CostGovernor:
    """
    Budget checks and the usage ledger.

    Args:
        store: Ledger backend
        limits: Initial ceilings (defaults to settings)
        clock: Returns the current UTC time; injectable for tests
    """

    def __init__(
        self,
        store: UsageStore,
        limits: Optional[CostLimits] = None,
        clock: Callable[[], datetime] = _utcnow,
        default_max_output_tokens: Optional[int] = None,
    ) -> None:
        self.store = store
        self.limits = limits or CostLimits.from_settings()
        self._clock = clock
        self._default_max_output_tokens = (
            default_max_output_tokens or get_settings().default_max_output_tokens
        )
        self._limits_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Period keys
    # ------------------------------------------------------------------

    def period_keys(self, now: Optional[datetime] = None) -> Tuple[str, str]:
        """(daily, monthly) ledger keys for the given instant."""
        now = now or self._clock()
        return now.strftime("%Y-%m-%d"), now.strftime("%Y-%m")

    # ------------------------------------------------------------------
    # Estimation and checks
    # ------------------------------------------------------------------

    def estimate_cost(
        self,
        model: str,
        input_length: int,
        max_output_tokens: Optional[int] = None,
    ) -> CostEstimate:
        """Estimate a chat call from the prompt length in characters."""
        input_tokens = estimate_tokens(input_length)
        output_tokens = max_output_tokens or self._default_max_output_tokens
        return CostEstimate(
            model=model,
            estimated_input_tokens=input_tokens,
            estimated_output_tokens=output_tokens,
            estimated_cost=calculate_cost(model, input_tokens, output_tokens),
        )

    def estimate_voice_cost(self) -> CostEstimate:
        """Flat estimate for a voice round trip."""
        return CostEstimate(
            model=get_settings().transcription_model,
            estimated_input_tokens=0,
            estimated_output_tokens=0,
            estimated_cost=VOICE_REQUEST_ESTIMATE,
        )

    def check_budget(self, user_id: str, estimate: CostEstimate) -> BudgetDecision:
        """
        Decide whether a call with this estimate may proceed.

        Ceilings are checked per-request, then daily, then monthly. A total
        exactly equal to a ceiling is allowed.
        """
        daily_key, monthly_key = self.period_keys()
        daily_usage = self.store.get(user_id, DAILY, daily_key)
        monthly_usage = self.store.get(user_id, MONTHLY, monthly_key)
        cost = estimate.estimated_cost
        limits = self.limits

        decision = BudgetDecision(
            allowed=True,
            estimated_cost=cost,
            daily_usage=daily_usage,
            monthly_usage=monthly_usage,
        )

        if exceeds(cost, limits.per_request):
            decision.allowed = False
            decision.limit_type = LimitType.PER_REQUEST
            # Headroom of a single request is the ceiling itself
            decision.current_usage = 0.0
            decision.limit = limits.per_request
            decision.remaining_budget = limits.per_request
            decision.reason = "Request cost estimate exceeds per-request limit"
        elif exceeds(daily_usage + cost, limits.daily):
            decision.allowed = False
            decision.limit_type = LimitType.DAILY
            decision.current_usage = daily_usage
            decision.limit = limits.daily
            decision.remaining_budget = headroom(limits.daily, daily_usage)
            decision.reason = "Daily cost limit would be exceeded"
        elif exceeds(monthly_usage + cost, limits.monthly):
            decision.allowed = False
            decision.limit_type = LimitType.MONTHLY
            decision.current_usage = monthly_usage
            decision.limit = limits.monthly
            decision.remaining_budget = headroom(limits.monthly, monthly_usage)
            decision.reason = "Monthly cost limit would be exceeded"

        if not decision.allowed:
            logger.warning(
                f"Budget denied for user {user_id}: {decision.limit_type.value} "
                f"(usage={decision.current_usage:.4f}, estimate={cost:.4f}, "
                f"limit={decision.limit:.2f})"
            )
        return decision

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_actual(self, user_id: str, usage: ActualUsage) -> UsageSnapshot:
        """Add a finished call's cost to both ledgers and return the new totals."""
        logger.debug(
            f"Recording {usage.model} usage for user {user_id}: "
            f"{usage.input_tokens} in / {usage.output_tokens} out, ${usage.actual_cost:.6f}"
        )
        return self.record_cost(user_id, usage.actual_cost)

    def record_cost(self, user_id: str, amount: float) -> UsageSnapshot:
        """Add a raw USD amount to both ledgers."""
        now = self._clock()
        daily_key, monthly_key = self.period_keys(now)
        daily_total = self.store.add(user_id, DAILY, daily_key, amount)
        monthly_total = self.store.add(user_id, MONTHLY, monthly_key, amount)
        self._prune(user_id, now)

        snapshot = UsageSnapshot(
            daily_usage=daily_total,
            monthly_usage=monthly_total,
            daily_limit=self.limits.daily,
            monthly_limit=self.limits.monthly,
        )
        snapshot.warnings = self.compute_warnings(snapshot)
        return snapshot

    def _prune(self, user_id: str, now: datetime) -> None:
        oldest_day = (now - timedelta(days=DAILY_RETENTION_DAYS)).strftime("%Y-%m-%d")
        year, month = _shift_month(now.year, now.month, -MONTHLY_RETENTION_MONTHS)
        oldest_month = f"{year:04d}-{month:02d}"
        removed = self.store.prune(user_id, DAILY, oldest_day)
        removed += self.store.prune(user_id, MONTHLY, oldest_month)
        if removed:
            logger.debug(f"Pruned {removed} stale ledger entries for user {user_id}")

    def compute_warnings(self, snapshot: UsageSnapshot) -> List[CostWarning]:
        """Advisory warnings for every ceiling above the warning threshold."""
        warnings = []
        threshold = self.limits.warning_threshold
        for period, usage, limit in (
            ("daily", snapshot.daily_usage, snapshot.daily_limit),
            ("monthly", snapshot.monthly_usage, snapshot.monthly_limit),
        ):
            if limit > 0 and usage > limit * threshold:
                warnings.append(CostWarning(
                    type=period,
                    usage=usage,
                    limit=limit,
                    percentage=round(usage / limit * 100),
                ))
        return warnings

    # ------------------------------------------------------------------
    # Reporting and limits
    # ------------------------------------------------------------------

    def get_snapshot(self, user_id: str) -> UsageSnapshot:
        daily_key, monthly_key = self.period_keys()
        snapshot = UsageSnapshot(
            daily_usage=self.store.get(user_id, DAILY, daily_key),
            monthly_usage=self.store.get(user_id, MONTHLY, monthly_key),
            daily_limit=self.limits.daily,
            monthly_limit=self.limits.monthly,
        )
        snapshot.warnings = self.compute_warnings(snapshot)
        return snapshot

    def get_usage(self, user_id: str, period: str = "current") -> Dict[str, Any]:
        """
        Current usage against limits, plus a historical series.

        ``week`` and ``month`` add the last 7 or 30 daily totals, ``year``
        adds the last 12 monthly totals. Missing entries read as 0.
        """
        if period not in ("current", "week", "month", "year"):
            raise ValidationError(
                f"Invalid period: {period}",
                field="period",
                details={"valid_periods": ["current", "week", "month", "year"]},
            )

        now = self._clock()
        snapshot = self.get_snapshot(user_id)
        historical: Dict[str, Dict[str, float]] = {}

        if period in ("week", "month"):
            days = 7 if period == "week" else 30
            history = self.store.history(user_id, DAILY)
            series = {}
            for i in range(days):
                key = (now - timedelta(days=i)).strftime("%Y-%m-%d")
                series[key] = history.get(key, 0.0)
            historical["daily"] = series

        if period == "year":
            history = self.store.history(user_id, MONTHLY)
            series = {}
            for i in range(12):
                year, month = _shift_month(now.year, now.month, -i)
                key = f"{year:04d}-{month:02d}"
                series[key] = history.get(key, 0.0)
            historical["monthly"] = series

        return {
            "current": {
                "daily": self._period_usage(snapshot.daily_usage, snapshot.daily_limit),
                "monthly": self._period_usage(snapshot.monthly_usage, snapshot.monthly_limit),
            },
            "limits": self.limits.to_dict(),
            "historical": historical,
            "period": period,
        }

    @staticmethod
    def _period_usage(usage: float, limit: float) -> Dict[str, Any]:
        return {
            "usage": usage,
            "limit": limit,
            "remaining": limit - usage,
            "percentage": round(usage / limit * 100) if limit > 0 else 0,
        }

    def update_limits(
        self,
        daily: Optional[float] = None,
        monthly: Optional[float] = None,
        per_request: Optional[float] = None,
    ) -> CostLimits:
        """Change the process-wide ceilings. Omitted values are kept."""
        for name, value in (("dailyLimit", daily), ("monthlyLimit", monthly), ("perRequestLimit", per_request)):
            if value is not None and value <= 0:
                raise ValidationError(f"{name} must be greater than 0", field=name)

        with self._limits_lock:
            if daily is not None:
                self.limits.daily = float(daily)
            if monthly is not None:
                self.limits.monthly = float(monthly)
            if per_request is not None:
                self.limits.per_request = float(per_request)

        logger.info(f"Cost limits updated: {self.limits.to_dict()}")
        return self.limits


# Singleton instance
_cost_governor: Optional[CostGovernor] = None
_cost_governor_lock = threading.Lock()


def get_cost_governor() -> CostGovernor:
    """Get the process-wide cost governor, backed by the configured store."""
    global _cost_governor
    if _cost_governor is None:
        with _cost_governor_lock:
            if _cost_governor is None:
                settings = get_settings()
                store = create_usage_store(
                    settings.usage_store_backend, str(settings.database_path)
                )
                _cost_governor = CostGovernor(store)
    return _cost_governor
