"""
Tests for the Response Interpreter.

Tests cover:
  - Digit, canonical token and short-phrase matching (trimmed, case-insensitive)
  - Free-form symptom narration stays UNCLASSIFIED
  - Action mapping, including the "911" override for classified replies
  - Applying replies to the chains: reduce, escalate, emergency, continue
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from heatcare.monitoring.responses import (
    MonitoringAction,
    PollResponse,
    ResponseInterpreter,
    action_for,
    classify_response,
)
from heatcare.monitoring.tracks import emergency_follow_up_job_id

SYMPTOM_JOB = "recurring-monitor-PT-1-symptom"
DAILY_JOB = "daily-checkup-PT-1"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Classification
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestClassifyResponse:

    @pytest.mark.parametrize("text,expected", [
        ("1", PollResponse.MUCH_BETTER),
        ("2", PollResponse.SLIGHTLY_BETTER),
        ("3", PollResponse.SAME_SYMPTOMS),
        ("4", PollResponse.WORSE_CONDITION),
        ("5", PollResponse.EMERGENCY_HELP),
    ])
    def test_digits(self, text, expected):
        assert classify_response(text) == expected

    def test_digit_out_of_range(self):
        assert classify_response("6") == PollResponse.UNCLASSIFIED
        assert classify_response("12") == PollResponse.UNCLASSIFIED

    def test_canonical_tokens(self):
        assert classify_response("worse_condition") == PollResponse.WORSE_CONDITION
        assert classify_response("EMERGENCY_HELP") == PollResponse.EMERGENCY_HELP

    def test_unclassified_is_not_a_token(self):
        assert classify_response("unclassified") == PollResponse.UNCLASSIFIED

    def test_trimmed_and_case_insensitive(self):
        assert classify_response("  WORSE  ") == PollResponse.WORSE_CONDITION

    @pytest.mark.parametrize("text,expected", [
        ("better", PollResponse.MUCH_BETTER),
        ("Much better", PollResponse.MUCH_BETTER),
        ("feeling much better", PollResponse.MUCH_BETTER),
        ("slightly better", PollResponse.SLIGHTLY_BETTER),
        ("a bit better", PollResponse.SLIGHTLY_BETTER),
        ("a little better", PollResponse.SLIGHTLY_BETTER),
        ("same", PollResponse.SAME_SYMPTOMS),
        ("the same", PollResponse.SAME_SYMPTOMS),
        ("no change", PollResponse.SAME_SYMPTOMS),
        ("unchanged", PollResponse.SAME_SYMPTOMS),
        ("getting worse", PollResponse.WORSE_CONDITION),
        ("feeling worse", PollResponse.WORSE_CONDITION),
        ("911", PollResponse.EMERGENCY_HELP),
        ("call 911", PollResponse.EMERGENCY_HELP),
        ("emergency", PollResponse.EMERGENCY_HELP),
        ("need help now", PollResponse.EMERGENCY_HELP),
    ])
    def test_short_phrases(self, text, expected):
        assert classify_response(text) == expected

    @pytest.mark.parametrize("text", [
        "I feel worse than my headache yesterday, it really hurts",
        "better than yesterday but still dizzy",
        "is this the same as heat stroke?",
        "my emergency contact is my daughter",
        "",
        "   ",
    ])
    def test_narration_is_unclassified(self, text):
        assert classify_response(text) == PollResponse.UNCLASSIFIED

    def test_none_is_unclassified(self):
        assert classify_response(None) == PollResponse.UNCLASSIFIED


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Action mapping
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestActionFor:

    def test_mapping(self):
        assert action_for(PollResponse.MUCH_BETTER) == MonitoringAction.REDUCE
        assert action_for(PollResponse.SLIGHTLY_BETTER) == MonitoringAction.CONTINUE
        assert action_for(PollResponse.SAME_SYMPTOMS) == MonitoringAction.CONTINUE
        assert action_for(PollResponse.WORSE_CONDITION) == MonitoringAction.ESCALATE
        assert action_for(PollResponse.EMERGENCY_HELP) == MonitoringAction.EMERGENCY
        assert action_for(PollResponse.UNCLASSIFIED) == MonitoringAction.NONE

    def test_911_in_classified_reply_forces_emergency(self):
        assert action_for(PollResponse.SLIGHTLY_BETTER, "2 - called 911") == MonitoringAction.EMERGENCY

    def test_911_in_unclassified_text_does_nothing(self):
        text = "my neighbour called 911 for her husband"
        assert action_for(classify_response(text), text) == MonitoringAction.NONE


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Applying replies
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestResponseInterpreter:

    @pytest.mark.asyncio
    async def test_much_better_cancels_symptom_keeps_daily(self, controller, store):
        await controller.start_daily("PT-1")
        await controller.start("PT-1", "symptom", "medium")
        interpreter = ResponseInterpreter(controller)

        result = await interpreter.handle("PT-1", "much better")
        assert result.action == MonitoringAction.REDUCE
        assert result.cancelled is True
        assert await store.pending(SYMPTOM_JOB) == []
        assert len(await store.pending(DAILY_JOB)) == 1

    @pytest.mark.asyncio
    async def test_worse_replaces_high_with_critical(self, controller, store):
        await controller.start("PT-1", "symptom", "high")
        interpreter = ResponseInterpreter(controller)

        result = await interpreter.handle("PT-1", "worse")
        assert result.response == PollResponse.WORSE_CONDITION
        assert result.job.escalation_level == "critical"
        assert result.job.interval_minutes == 2

        pending = await store.pending(SYMPTOM_JOB)
        assert len(pending) == 1
        assert pending[0].payload["escalation_level"] == "critical"
        assert pending[0].payload["context"]["last_response"] == "worse_condition"

    @pytest.mark.asyncio
    async def test_emergency_reply_runs_protocol(self, controller, store, memory_dispatcher):
        await controller.start("PT-1", "symptom", "high")
        interpreter = ResponseInterpreter(controller)

        result = await interpreter.handle("PT-1", "5")
        assert result.action == MonitoringAction.EMERGENCY
        assert await store.pending(SYMPTOM_JOB) == []
        assert len(await store.pending(emergency_follow_up_job_id("PT-1"))) == 1
        assert len(memory_dispatcher.get_messages("PT-1")) == 1

    @pytest.mark.asyncio
    async def test_same_leaves_chain_untouched(self, controller, store):
        await controller.start("PT-1", "symptom", "medium")
        before = await store.pending(SYMPTOM_JOB)
        interpreter = ResponseInterpreter(controller)

        result = await interpreter.handle("PT-1", "3")
        assert result.action == MonitoringAction.CONTINUE
        assert result.handled is True
        after = await store.pending(SYMPTOM_JOB)
        assert [h.handle_id for h in after] == [h.handle_id for h in before]

    @pytest.mark.asyncio
    async def test_unclassified_makes_no_controller_call(self):
        controller = MagicMock()
        controller.cancel = AsyncMock()
        controller.escalate = AsyncMock()
        controller.handle_emergency = AsyncMock()
        interpreter = ResponseInterpreter(controller)

        result = await interpreter.handle("PT-1", "I feel worse than my headache yesterday, it really hurts")
        assert result.handled is False
        controller.cancel.assert_not_called()
        controller.escalate.assert_not_called()
        controller.handle_emergency.assert_not_called()
