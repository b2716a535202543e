"""
Rules Package

Condition trees evaluated against plain dict records. Used by the admin
surface to filter and search users.
"""

from .rule_engine import (
    Condition,
    ConditionGroup,
    ConditionOperator,
    LogicalOperator,
    build_user_query,
)

__all__ = [
    "Condition",
    "ConditionGroup",
    "ConditionOperator",
    "LogicalOperator",
    "build_user_query",
]
