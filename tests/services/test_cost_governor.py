"""Tests for the cost governor: estimates, budget checks and the usage ledger."""

from datetime import datetime, timedelta, timezone

import pytest

from personal_os_ai.exceptions import ValidationError
from personal_os_ai.services.cost_governor import (
    ActualUsage,
    CostEstimate,
    CostGovernor,
    CostLimits,
    LimitType,
    calculate_cost,
    calculate_speech_cost,
    calculate_transcription_cost,
    estimate_tokens,
)
from personal_os_ai.storage.usage_store import DAILY, MONTHLY, InMemoryUsageStore


def estimate(cost: float) -> CostEstimate:
    return CostEstimate(
        model="gpt-4",
        estimated_input_tokens=0,
        estimated_output_tokens=0,
        estimated_cost=cost,
    )


class TestPricing:
    """Pure cost helpers."""

    def test_gpt4_cost(self):
        assert calculate_cost("gpt-4", 1000, 1000) == pytest.approx(0.09)

    def test_unknown_model_uses_most_expensive_tier(self):
        assert calculate_cost("mystery-model", 1000, 0) == calculate_cost("gpt-4", 1000, 0)

    def test_costs_are_not_rounded(self):
        assert calculate_cost("gpt-3.5-turbo", 1, 1) == pytest.approx(0.0000035)

    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens(0) == 0
        assert estimate_tokens(1) == 1
        assert estimate_tokens(8) == 2
        assert estimate_tokens(9) == 3

    def test_transcription_cost_per_minute(self):
        assert calculate_transcription_cost(960_000) == pytest.approx(0.006)
        assert calculate_transcription_cost(480_000) == pytest.approx(0.003)

    def test_speech_cost_per_thousand_characters(self):
        assert calculate_speech_cost("x" * 1000) == pytest.approx(0.015)


class TestEstimateCost:
    def test_estimate_from_prompt_length(self, governor):
        result = governor.estimate_cost("gpt-4", 400, 1000)
        assert result.estimated_input_tokens == 100
        assert result.estimated_output_tokens == 1000
        assert result.estimated_cost == pytest.approx(0.003 + 0.06)

    def test_default_output_budget(self, governor):
        result = governor.estimate_cost("gpt-4", 0)
        assert result.estimated_output_tokens == 1000

    def test_voice_estimate_is_flat(self, governor):
        assert governor.estimate_voice_cost().estimated_cost == pytest.approx(0.10)


class TestCheckBudget:
    """Ceilings are checked per-request, then daily, then monthly."""

    def test_allows_within_limits(self, governor):
        decision = governor.check_budget("user-1", estimate(0.05))
        assert decision.allowed
        assert decision.limit_type is None

    def test_denies_when_daily_would_be_exceeded(self, governor):
        governor.record_cost("user-1", 9.50)

        decision = governor.check_budget("user-1", estimate(0.60))

        assert not decision.allowed
        assert decision.limit_type == LimitType.DAILY
        assert decision.current_usage == pytest.approx(9.50)
        assert decision.limit == pytest.approx(10.0)
        assert decision.remaining_budget == pytest.approx(0.50)

    def test_allows_exactly_reaching_the_ceiling(self, governor):
        governor.record_cost("user-1", 9.0)
        decision = governor.check_budget("user-1", estimate(1.0))
        assert decision.allowed

    def test_reaching_the_ceiling_after_several_records(self, governor):
        governor.limits.daily = 1.0
        governor.record_cost("user-1", 0.33)
        governor.record_cost("user-1", 0.56)

        assert governor.check_budget("user-1", estimate(0.11)).allowed

        decision = governor.check_budget("user-1", estimate(0.12))
        assert decision.limit_type == LimitType.DAILY
        assert decision.remaining_budget == 0.11

    def test_reaching_the_monthly_ceiling_after_several_records(self, usage_store):
        governor = CostGovernor(
            usage_store,
            limits=CostLimits(daily=50.0, monthly=1.0, per_request=5.0),
            clock=lambda: datetime(2024, 3, 15, tzinfo=timezone.utc),
        )
        governor.record_cost("user-1", 0.33)
        governor.record_cost("user-1", 0.56)

        assert governor.check_budget("user-1", estimate(0.11)).allowed

    def test_estimate_equal_to_per_request_limit_within_float_noise(self, governor):
        governor.limits.per_request = 0.3
        assert governor.check_budget("user-1", estimate(0.1 + 0.2)).allowed

    def test_per_request_denial(self, governor):
        decision = governor.check_budget("user-1", estimate(1.01))

        assert not decision.allowed
        assert decision.limit_type == LimitType.PER_REQUEST
        assert decision.current_usage == 0.0
        assert decision.remaining_budget == pytest.approx(1.0)

    def test_per_request_checked_before_daily(self, governor):
        governor.record_cost("user-1", 9.95)
        decision = governor.check_budget("user-1", estimate(1.5))
        assert decision.limit_type == LimitType.PER_REQUEST

    def test_monthly_denial(self, usage_store):
        governor = CostGovernor(
            usage_store,
            limits=CostLimits(daily=50.0, monthly=20.0, per_request=5.0),
            clock=lambda: datetime(2024, 3, 15, tzinfo=timezone.utc),
        )
        usage_store.add("user-1", MONTHLY, "2024-03", 19.0)

        decision = governor.check_budget("user-1", estimate(2.0))

        assert decision.limit_type == LimitType.MONTHLY
        assert decision.remaining_budget == pytest.approx(1.0)

    def test_users_have_separate_ledgers(self, governor):
        governor.record_cost("user-1", 9.99)
        assert governor.check_budget("user-2", estimate(0.5)).allowed

    def test_denial_body(self, governor):
        governor.record_cost("user-1", 9.50)
        body = governor.check_budget("user-1", estimate(0.60)).to_dict()
        assert body["limitType"] == "daily"
        assert body["estimatedCost"] == pytest.approx(0.60)
        assert body["remainingBudget"] == pytest.approx(0.50)
        assert body["error"]


class TestRecording:
    def test_ledger_equals_sum_of_recorded_costs(self, governor, usage_store):
        costs = [0.0123, 0.2, 0.00045, 1.3]
        for cost in costs:
            governor.record_cost("user-1", cost)

        assert usage_store.get("user-1", DAILY, "2024-03-15") == pytest.approx(sum(costs))
        assert usage_store.get("user-1", MONTHLY, "2024-03") == pytest.approx(sum(costs))

    def test_record_actual_uses_token_cost(self, governor):
        usage = ActualUsage.from_tokens("gpt-4", 100, 50)
        snapshot = governor.record_actual("user-1", usage)
        assert snapshot.daily_usage == pytest.approx(0.006)

    def test_warning_above_threshold(self, governor):
        snapshot = governor.record_cost("user-1", 8.5)

        assert [w.type for w in snapshot.warnings] == ["daily"]
        assert snapshot.warnings[0].percentage == 85

    def test_no_warning_at_threshold(self, governor):
        snapshot = governor.record_cost("user-1", 8.0)
        assert snapshot.warnings == []

    def test_prunes_old_daily_entries(self, usage_store):
        now = {"value": datetime(2024, 1, 1, tzinfo=timezone.utc)}
        governor = CostGovernor(usage_store, limits=CostLimits(), clock=lambda: now["value"])

        governor.record_cost("user-1", 1.0)
        now["value"] = now["value"] + timedelta(days=40)
        governor.record_cost("user-1", 2.0)

        history = usage_store.history("user-1", DAILY)
        assert "2024-01-01" not in history
        assert history["2024-02-10"] == pytest.approx(2.0)


class TestUsageReport:
    def test_current_usage(self, governor):
        governor.record_cost("user-1", 2.5)
        report = governor.get_usage("user-1")

        assert report["period"] == "current"
        assert report["current"]["daily"]["usage"] == pytest.approx(2.5)
        assert report["current"]["daily"]["remaining"] == pytest.approx(7.5)
        assert report["current"]["daily"]["percentage"] == 25
        assert report["limits"]["dailyLimit"] == 10.0
        assert report["historical"] == {}

    def test_week_history_fills_missing_days(self, governor):
        governor.record_cost("user-1", 1.0)
        report = governor.get_usage("user-1", "week")

        series = report["historical"]["daily"]
        assert len(series) == 7
        assert series["2024-03-15"] == pytest.approx(1.0)
        assert series["2024-03-09"] == 0.0

    def test_year_history(self, governor):
        report = governor.get_usage("user-1", "year")
        assert len(report["historical"]["monthly"]) == 12
        assert "2023-04" in report["historical"]["monthly"]

    def test_invalid_period(self, governor):
        with pytest.raises(ValidationError):
            governor.get_usage("user-1", "decade")


class TestUpdateLimits:
    def test_updates_given_values_only(self, governor):
        limits = governor.update_limits(daily=20.0)
        assert limits.daily == 20.0
        assert limits.monthly == 100.0

    def test_new_limits_apply_to_checks(self, governor):
        governor.record_cost("user-1", 9.5)
        governor.update_limits(daily=20.0)
        assert governor.check_budget("user-1", estimate(0.6)).allowed

    @pytest.mark.parametrize("value", [0, -1.0])
    def test_rejects_non_positive(self, governor, value):
        with pytest.raises(ValidationError):
            governor.update_limits(monthly=value)
