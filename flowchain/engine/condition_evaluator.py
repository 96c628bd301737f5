"""Declarative predicate evaluation for CUSTOM transitions"""
import operator
from enum import Enum
from typing import Any, Callable, Dict, Mapping

from ..domain.models import ConditionGroup, Condition
from ..domain.enums import ConditionOperator
from ..domain.errors import EngineError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ConditionEvaluator:
    """
    Evaluate predicates against a condition context

    Predicates are declarative condition groups stored in the definition
    under a name. There is no eval() or exec(); an unknown field resolves
    to None and a comparison that cannot be made is false.
    """

    def evaluate_predicate(
        self,
        predicates: Mapping[str, ConditionGroup],
        predicate_key: str,
        context: Dict[str, Any]
    ) -> bool:
        """
        Evaluate a named predicate

        Raises:
            EngineError: If the key is not declared. Published definitions
                never reference undeclared keys, so this is a defect.
        """
        group = predicates.get(predicate_key)
        if group is None:
            raise EngineError(
                f"Predicate '{predicate_key}' is not declared",
                details={"predicate_key": predicate_key}
            )
        result = self.evaluate(group, context)
        logger.debug(f"Predicate {predicate_key} evaluated to {result}")
        return result

    def evaluate(self, group: ConditionGroup, context: Dict[str, Any]) -> bool:
        """An empty group holds; OR needs any condition, anything else needs all"""
        if not group.conditions:
            return True

        results = (self._evaluate_single(c, context) for c in group.conditions)
        if group.logic.upper() == "OR":
            return any(results)
        return all(results)

    def _evaluate_single(self, condition: Condition, context: Dict[str, Any]) -> bool:
        actual = _plain(resolve_path(context, condition.field))
        expected = _plain(condition.value)
        check = OPERATORS.get(condition.operator)
        if check is None:
            return False
        try:
            return check(actual, expected)
        except (TypeError, ValueError) as e:
            logger.warning(f"Condition on '{condition.field}' could not be evaluated: {e}")
            return False


def resolve_path(context: Mapping[str, Any], path: str) -> Any:
    """``"steps.legal.resolution"`` -> ``context["steps"]["legal"]["resolution"]``, or None"""
    value: Any = context
    for part in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def _plain(value: Any) -> Any:
    """Compare enums by their wire value"""
    if isinstance(value, Enum):
        return value.value
    return value


def _as_list(value: Any) -> list:
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_plain(v) for v in value]
    return [value]


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None:
        return False
    if isinstance(actual, (list, tuple, set, frozenset)):
        return expected in [_plain(v) for v in actual]
    if isinstance(actual, Mapping):
        return expected in actual
    return str(expected) in str(actual)


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    # Missing values never satisfy an ordering
    def check(actual: Any, expected: Any) -> bool:
        if actual is None or expected is None:
            return False
        return compare(float(actual), float(expected))
    return check


def _is_empty(actual: Any, _expected: Any = None) -> bool:
    return actual in (None, "", [], {})


OPERATORS: Dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: operator.eq,
    ConditionOperator.NOT_EQUALS: operator.ne,
    ConditionOperator.GREATER_THAN: _numeric(operator.gt),
    ConditionOperator.LESS_THAN: _numeric(operator.lt),
    ConditionOperator.GREATER_THAN_OR_EQUALS: _numeric(operator.ge),
    ConditionOperator.LESS_THAN_OR_EQUALS: _numeric(operator.le),
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.NOT_CONTAINS: lambda a, b: not _contains(a, b),
    ConditionOperator.IN: lambda a, b: a in _as_list(b),
    ConditionOperator.NOT_IN: lambda a, b: a not in _as_list(b),
    ConditionOperator.IS_EMPTY: _is_empty,
    ConditionOperator.IS_NOT_EMPTY: lambda a, b: not _is_empty(a),
}
