"""
Response Interpreter — turns a patient's reply into a monitoring action.

Matching is strict.  Only three shapes count as a poll reply:
  1. a bare digit 1-5 (position in the poll menu)
  2. a canonical token, as sent back by an interactive button
  3. a short, unambiguous status phrase ("much better", "no change", ...)

Anything else, including free-form symptom narration that merely contains
a trigger word ("I feel worse than yesterday, my head hurts"), is
UNCLASSIFIED and is left to the conversational layer.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from heatcare.monitoring.jobs import CheckinJob
from heatcare.monitoring.tracks import MonitoringTrack

logger = logging.getLogger("monitoring.responses")


class PollResponse(str, Enum):
    MUCH_BETTER = "much_better"
    SLIGHTLY_BETTER = "slightly_better"
    SAME_SYMPTOMS = "same_symptoms"
    WORSE_CONDITION = "worse_condition"
    EMERGENCY_HELP = "emergency_help"
    UNCLASSIFIED = "unclassified"


class MonitoringAction(str, Enum):
    REDUCE = "reduce"          # cancel Symptom, keep Daily
    ESCALATE = "escalate"      # Symptom one level up
    EMERGENCY = "emergency"    # emergency protocol
    CONTINUE = "continue"      # no cadence change
    NONE = "none"              # not a poll reply


# Poll menu order
_DIGIT_RESPONSES = {
    "1": PollResponse.MUCH_BETTER,
    "2": PollResponse.SLIGHTLY_BETTER,
    "3": PollResponse.SAME_SYMPTOMS,
    "4": PollResponse.WORSE_CONDITION,
    "5": PollResponse.EMERGENCY_HELP,
}

_CANONICAL_TOKENS = {
    r.value: r for r in PollResponse if r != PollResponse.UNCLASSIFIED
}

_PHRASES: list[tuple[PollResponse, re.Pattern[str]]] = [
    (PollResponse.MUCH_BETTER, re.compile(r"^(feeling )?(much )?better$")),
    (PollResponse.SLIGHTLY_BETTER, re.compile(r"^(slightly better|a (little|bit) better)$")),
    (PollResponse.SAME_SYMPTOMS, re.compile(r"^((the )?same|no change|unchanged)$")),
    (PollResponse.WORSE_CONDITION, re.compile(r"^(getting |feeling )?worse$")),
    (PollResponse.EMERGENCY_HELP, re.compile(r"^((call )?911|emergency|need help now)$")),
]

_ACTIONS = {
    PollResponse.MUCH_BETTER: MonitoringAction.REDUCE,
    PollResponse.SLIGHTLY_BETTER: MonitoringAction.CONTINUE,
    PollResponse.SAME_SYMPTOMS: MonitoringAction.CONTINUE,
    PollResponse.WORSE_CONDITION: MonitoringAction.ESCALATE,
    PollResponse.EMERGENCY_HELP: MonitoringAction.EMERGENCY,
    PollResponse.UNCLASSIFIED: MonitoringAction.NONE,
}


def classify_response(text: str | None) -> PollResponse:
    """Classify raw inbound text.  Never raises."""
    normalized = (text or "").strip().lower()
    if not normalized:
        return PollResponse.UNCLASSIFIED

    if normalized in _DIGIT_RESPONSES:
        return _DIGIT_RESPONSES[normalized]

    if normalized in _CANONICAL_TOKENS:
        return _CANONICAL_TOKENS[normalized]

    for response, pattern in _PHRASES:
        if pattern.match(normalized):
            return response

    return PollResponse.UNCLASSIFIED


def action_for(response: PollResponse, raw_text: str = "") -> MonitoringAction:
    """
    Action for a classified reply.

    A classified reply whose raw text mentions 911 is always treated as an
    emergency.  Unclassified text never triggers anything here.
    """
    if response == PollResponse.UNCLASSIFIED:
        return MonitoringAction.NONE
    if "911" in (raw_text or ""):
        return MonitoringAction.EMERGENCY
    return _ACTIONS[response]


@dataclass
class InterpretationResult:
    patient_id: str
    response: PollResponse
    action: MonitoringAction
    job: Optional[CheckinJob] = None
    cancelled: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def handled(self) -> bool:
        return self.action != MonitoringAction.NONE


class ResponseInterpreter:
    """
    Applies poll replies to the monitoring chains.

    Usage:
        interpreter = ResponseInterpreter(controller)
        result = await interpreter.handle("PT-1", "4")
        if not result.handled:
            ...  # route to the conversational handler
    """

    def __init__(self, controller) -> None:
        self._controller = controller

    async def handle(self, patient_id: str, text: str) -> InterpretationResult:
        response = classify_response(text)
        action = action_for(response, text)
        result = InterpretationResult(patient_id=patient_id, response=response, action=action)

        if action == MonitoringAction.NONE:
            logger.debug("Reply from %s is not a poll response", patient_id)
            return result

        logger.info("Poll reply from %s: %s -> %s", patient_id, response.value, action.value)
        context = {"last_response": response.value}

        if action == MonitoringAction.REDUCE:
            result.cancelled = await self._controller.cancel(patient_id, MonitoringTrack.SYMPTOM)
        elif action == MonitoringAction.ESCALATE:
            result.job = await self._controller.escalate(
                patient_id, MonitoringTrack.SYMPTOM, context=context,
            )
        elif action == MonitoringAction.EMERGENCY:
            result.job = await self._controller.handle_emergency(patient_id, context)
            result.cancelled = True
        return result
