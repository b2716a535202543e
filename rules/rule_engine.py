from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    ICONTAINS = "icontains"
    IS_TRUE = "is_true"
    IS_FALSE = "is_false"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


@dataclass
class Condition:
    field: str
    operator: ConditionOperator
    value: Any = None

    def evaluate(self, context: dict) -> bool:
        field_value = self._get_field_value(context, self.field)
        return self._apply_operator(field_value, self.value)

    def _get_field_value(self, context: dict, field_path: str) -> Any:
        value = context
        for part in field_path.split("."):
            if isinstance(value, dict):
                value = value.get(part)
            else:
                return None
        return value

    def _apply_operator(self, field_value: Any, compare_value: Any) -> bool:
        op = self.operator
        if op == ConditionOperator.EQUALS: return field_value == compare_value
        if op == ConditionOperator.NOT_EQUALS: return field_value != compare_value
        if field_value is None and op in (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN):
            return False
        if op == ConditionOperator.GREATER_THAN: return field_value > compare_value
        if op == ConditionOperator.LESS_THAN: return field_value < compare_value
        if op == ConditionOperator.CONTAINS: return compare_value in str(field_value) if field_value is not None else False
        if op == ConditionOperator.ICONTAINS:
            return str(compare_value).lower() in str(field_value).lower() if field_value is not None else False
        if op == ConditionOperator.IS_TRUE: return bool(field_value) is True
        if op == ConditionOperator.IS_FALSE: return bool(field_value) is False
        return False


@dataclass
class ConditionGroup:
    operator: LogicalOperator
    conditions: list[Union[Condition, "ConditionGroup"]]

    def evaluate(self, context: dict) -> bool:
        if not self.conditions:
            return True
        results = (cond.evaluate(context) for cond in self.conditions)
        return all(results) if self.operator == LogicalOperator.AND else any(results)


STATUS_FILTERS: dict[str, Condition] = {
    "banned": Condition(field="banned", operator=ConditionOperator.IS_TRUE),
    "flagged": Condition(field="flagged", operator=ConditionOperator.IS_TRUE),
    "pending-claims": Condition(field="daily_earnings", operator=ConditionOperator.GREATER_THAN, value=Decimal("0")),
}

SEARCH_FIELDS = ("display_name", "external_id", "id")


def build_user_query(search: Optional[str] = None, status: Optional[str] = None) -> ConditionGroup:
    """Condition tree for the admin user list.

    ``status`` is one of ``STATUS_FILTERS`` (``all`` or None means no status
    filter); ``search`` is matched case-insensitively against ``SEARCH_FIELDS``.
    """
    conditions: list[Union[Condition, ConditionGroup]] = []
    if search and search.strip():
        conditions.append(ConditionGroup(
            operator=LogicalOperator.OR,
            conditions=[
                Condition(field=name, operator=ConditionOperator.ICONTAINS, value=search.strip())
                for name in SEARCH_FIELDS
            ],
        ))
    if status and status != "all":
        if status not in STATUS_FILTERS:
            raise ValueError(f"Unknown user filter: {status}")
        conditions.append(STATUS_FILTERS[status])
    return ConditionGroup(operator=LogicalOperator.AND, conditions=conditions)
