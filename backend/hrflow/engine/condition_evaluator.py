"""Condition Evaluator - Safe evaluation of workflow conditions"""
from datetime import datetime
from typing import Any, Dict, Optional

from ..domain.models import ConditionGroup, WorkflowCondition
from ..domain.enums import ConditionType, ConditionOperator, DateComparison, ConditionLogic
from ..utils.time import utc_now, coerce_datetime
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ConditionEvaluator:
    """
    Evaluate workflow conditions safely

    Uses a simple DSL - no eval() or exec(). Anything that cannot be
    evaluated (missing field, wrong type) counts as false.
    """

    def evaluate(
        self,
        condition_group: ConditionGroup,
        context: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> bool:
        """
        Evaluate a condition group

        Args:
            condition_group: Group of conditions with AND/OR logic
            context: Instance context data merged with the step payload
            now: Reference time for date checks

        Returns:
            True if conditions are met
        """
        if not condition_group.conditions:
            return True  # No conditions = always true

        now = now or utc_now()
        results = [self._evaluate_single(c, context, now) for c in condition_group.conditions]

        if condition_group.logic == ConditionLogic.OR:
            return any(results)
        return all(results)

    def _evaluate_single(
        self,
        condition: WorkflowCondition,
        context: Dict[str, Any],
        now: datetime
    ) -> bool:
        """Evaluate a single condition"""
        try:
            if condition.type == ConditionType.FIELD_CHECK:
                if not condition.field:
                    return False
                field_value = self._get_field_value(condition.field, context)
                return self._compare(field_value, condition.operator or ConditionOperator.EQ, condition.value)

            if condition.type == ConditionType.SCORE_CHECK:
                if not condition.score_field or condition.score_threshold is None:
                    return False
                score = self._get_field_value(condition.score_field, context)
                if score is None or isinstance(score, bool):
                    return False
                return float(score) >= condition.score_threshold

            if condition.type == ConditionType.DATE_CHECK:
                if not condition.date_field or not condition.date_comparison:
                    return False
                date_value = coerce_datetime(self._get_field_value(condition.date_field, context))
                if date_value is None:
                    return False
                return self._compare_date(date_value, condition.date_comparison, now)

        except (ValueError, TypeError) as e:
            logger.warning(f"Condition evaluation failed: {e}")
            return False  # Fail closed

        return False

    def _get_field_value(self, field_path: str, context: Dict[str, Any]) -> Any:
        """
        Get field value from context using dot notation

        Example: "review.score" -> context["review"]["score"]
        """
        if field_path in context:
            return context[field_path]

        value: Any = context
        for part in field_path.split("."):
            if isinstance(value, dict):
                value = value.get(part)
            else:
                return None
        return value

    def _compare(
        self,
        field_value: Any,
        operator: ConditionOperator,
        compare_value: Any
    ) -> bool:
        """Compare values using operator"""

        if operator == ConditionOperator.EQ:
            return field_value == compare_value

        elif operator == ConditionOperator.NE:
            return field_value != compare_value

        elif operator == ConditionOperator.GT:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a > b)

        elif operator == ConditionOperator.GTE:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a >= b)

        elif operator == ConditionOperator.LT:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a < b)

        elif operator == ConditionOperator.LTE:
            return self._compare_numeric(field_value, compare_value, lambda a, b: a <= b)

        elif operator == ConditionOperator.CONTAINS:
            if field_value is None:
                return False
            if isinstance(field_value, (list, tuple)):
                return compare_value in field_value
            return str(compare_value) in str(field_value)

        elif operator == ConditionOperator.IN:
            if not isinstance(compare_value, (list, tuple)):
                return False
            return field_value in compare_value

        return False

    def _compare_numeric(
        self,
        field_value: Any,
        compare_value: Any,
        comparator
    ) -> bool:
        """Compare numeric values; missing values never match"""
        if field_value is None or compare_value is None:
            return False
        try:
            return comparator(float(field_value), float(compare_value))
        except (ValueError, TypeError):
            return False

    def _compare_date(self, value: datetime, comparison: DateComparison, now: datetime) -> bool:
        if comparison == DateComparison.BEFORE:
            return value < now
        if comparison == DateComparison.AFTER:
            return value > now
        if comparison == DateComparison.ON:
            return value.date() == now.date()
        return False
