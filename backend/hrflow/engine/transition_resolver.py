"""Transition Resolver - Determine next step based on step outcome and conditions"""
from typing import Any, Dict, List, Optional, Tuple

from ..config.settings import settings
from ..domain.models import StepGraph, TransitionDefinition, BaseStepDefinition
from ..domain.enums import (
    StepOutcome, TransitionTrigger, TransitionMatching, WILDCARD_STEP
)
from .condition_evaluator import ConditionEvaluator
from ..utils.logger import get_logger

logger = get_logger(__name__)


# Trigger preference per outcome when matching is outcome-aware
OUTCOME_TRIGGERS: Dict[StepOutcome, Tuple[TransitionTrigger, ...]] = {
    StepOutcome.SUBMITTED: (
        TransitionTrigger.FORM_SUBMITTED, TransitionTrigger.CONDITION_MET, TransitionTrigger.MANUAL
    ),
    StepOutcome.SKIPPED: (
        TransitionTrigger.FORM_SUBMITTED, TransitionTrigger.CONDITION_MET, TransitionTrigger.MANUAL
    ),
    StepOutcome.APPROVED: (
        TransitionTrigger.APPROVED, TransitionTrigger.CONDITION_MET, TransitionTrigger.MANUAL
    ),
    StepOutcome.REJECTED: (
        TransitionTrigger.REJECTED, TransitionTrigger.CONDITION_MET, TransitionTrigger.MANUAL
    ),
    StepOutcome.DUE_DATE_REACHED: (
        TransitionTrigger.DUE_DATE_REACHED, TransitionTrigger.CONDITION_MET, TransitionTrigger.MANUAL
    ),
    StepOutcome.TIMEOUT: (
        TransitionTrigger.TIMEOUT, TransitionTrigger.CONDITION_MET, TransitionTrigger.MANUAL
    ),
    StepOutcome.PARALLEL_COMPLETE: (
        TransitionTrigger.ALL_PARALLEL_COMPLETE, TransitionTrigger.CONDITION_MET, TransitionTrigger.MANUAL
    ),
    StepOutcome.AUTO: (TransitionTrigger.CONDITION_MET, TransitionTrigger.MANUAL),
    StepOutcome.CONDITION: (TransitionTrigger.CONDITION_MET, TransitionTrigger.MANUAL),
    StepOutcome.ESCALATION: (TransitionTrigger.ESCALATION,),
}

# Triggers accepted by the legacy rule regardless of outcome
LEGACY_TRIGGERS = (
    TransitionTrigger.FORM_SUBMITTED, TransitionTrigger.APPROVED, TransitionTrigger.MANUAL
)

# Timer outcomes also accept their own trigger under the legacy rule
TIMER_TRIGGERS = {
    StepOutcome.DUE_DATE_REACHED: TransitionTrigger.DUE_DATE_REACHED,
    StepOutcome.TIMEOUT: TransitionTrigger.TIMEOUT,
    StepOutcome.ESCALATION: TransitionTrigger.ESCALATION,
}


class TransitionResolver:
    """
    Resolve the transition taken when a step finishes

    Given completed step S and outcome O:
    1. Candidates are transitions whose from_step_id is S or '*'
    2. Outcome-aware: triggers are tried in O's preference order, list order
       within a trigger; conditions must hold (fail closed)
    3. Legacy: first candidate in list order with an accepted trigger;
       conditions are ignored
    4. None when nothing matches - the caller falls back to position
    """

    def __init__(self, matching: Optional[str] = None):
        self.matching = TransitionMatching(matching or settings.transition_matching)
        self.condition_evaluator = ConditionEvaluator()

    def find_transition(
        self,
        graph: StepGraph,
        step_id: str,
        outcome: StepOutcome,
        context: Dict[str, Any]
    ) -> Optional[TransitionDefinition]:
        """
        Find the transition to follow after a step

        Args:
            graph: Definition structure the instance runs on
            step_id: ID of the step that just finished
            outcome: How the step finished
            context: Context for condition evaluation

        Returns:
            Matching transition, or None
        """
        candidates = self.get_outgoing_transitions(graph, step_id)
        if not candidates:
            return None

        if outcome == StepOutcome.ESCALATION:
            selected = next((t for t in candidates if t.trigger == TransitionTrigger.ESCALATION), None)
        elif self.matching == TransitionMatching.LEGACY:
            selected = self._match_legacy(candidates, outcome)
        else:
            selected = self._match_outcome_aware(candidates, outcome, context)

        if selected:
            logger.info(
                f"Resolved transition: {step_id} -> {selected.to_step_id}",
                extra={"step_id": step_id, "trigger": selected.trigger.value}
            )
        return selected

    def _match_legacy(
        self,
        candidates: List[TransitionDefinition],
        outcome: StepOutcome
    ) -> Optional[TransitionDefinition]:
        accepted = set(LEGACY_TRIGGERS)
        if outcome in TIMER_TRIGGERS:
            accepted.add(TIMER_TRIGGERS[outcome])

        for transition in candidates:
            if transition.trigger in accepted:
                return transition
        return None

    def _match_outcome_aware(
        self,
        candidates: List[TransitionDefinition],
        outcome: StepOutcome,
        context: Dict[str, Any]
    ) -> Optional[TransitionDefinition]:
        for trigger in OUTCOME_TRIGGERS.get(outcome, ()):
            for transition in candidates:
                if transition.trigger != trigger:
                    continue
                if trigger == TransitionTrigger.CONDITION_MET and not transition.conditions:
                    continue
                if self.condition_evaluator.evaluate(transition.condition_group, context):
                    return transition
        return None

    def get_outgoing_transitions(self, graph: StepGraph, step_id: str) -> List[TransitionDefinition]:
        """Transitions leaving a step, wildcard transitions included, in list order"""
        return [
            t for t in graph.transitions
            if t.from_step_id == step_id
            or (t.from_step_id == WILDCARD_STEP and t.to_step_id != step_id)
        ]

    def positional_successor(self, graph: StepGraph, step_id: str) -> Optional[BaseStepDefinition]:
        """Step declared right after step_id, None when step_id is last"""
        index = graph.step_index(step_id)
        if 0 <= index < len(graph.steps) - 1:
            return graph.steps[index + 1]
        return None

    def get_triggers_for_step(self, graph: StepGraph, step_id: str) -> List[TransitionTrigger]:
        """Distinct triggers that can move a step forward"""
        triggers: List[TransitionTrigger] = []
        for transition in self.get_outgoing_transitions(graph, step_id):
            if transition.trigger not in triggers:
                triggers.append(transition.trigger)
        return triggers
