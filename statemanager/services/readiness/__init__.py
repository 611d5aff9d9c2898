"""
Configurable State Service

Responsibilities:
- Load readiness rule files from the rules directory
- Publish one category object per rule file
- Re-evaluate a category whenever a watched property changes
"""

from .category import CategoryKind, ReadinessCategory
from .evaluator import Evaluation, InvalidLogic, Outcome, evaluate
from .rules import RuleValidator, load_rule_directory, load_rule_file
from .service import ReadinessService

__all__ = [
    "CategoryKind",
    "ReadinessCategory",
    "Evaluation",
    "InvalidLogic",
    "Outcome",
    "evaluate",
    "RuleValidator",
    "load_rule_directory",
    "load_rule_file",
    "ReadinessService",
]
