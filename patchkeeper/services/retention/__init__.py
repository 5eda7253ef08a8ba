# patchkeeper/services/retention/__init__.py
"""
Update retention policy.

- policy_engine: classify catalog updates into decline / approve / purge sets
"""

from patchkeeper.services.retention.policy_engine import (
    RetentionDecision,
    RetentionPolicy,
    classify_updates,
    evaluate_catalog,
    subtract_months,
)

__all__ = [
    "RetentionDecision",
    "RetentionPolicy",
    "classify_updates",
    "evaluate_catalog",
    "subtract_months",
]
