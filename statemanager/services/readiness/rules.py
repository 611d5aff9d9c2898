"""
Readiness Rule Files

Loads and validates the per-category JSON rule files. Files are read in
lexicographic filename order; a file that cannot be parsed or fails
validation is logged and skipped, the rest still load.
"""

import json
from pathlib import Path

from ...common.config import Combinator, RuleSet, load_rule_set
from ...common.exceptions import ConfigError
from ...common.logging_setup import get_service_logger
from .category import CategoryKind

logger = get_service_logger("readiness.rules")

KNOWN_LOGIC = {"", Combinator.AND.value, Combinator.OR.value, Combinator.SINGLE.value}


def load_rule_file(path: str | Path) -> RuleSet:
    """
    Parse one rule file.

    Raises:
        ConfigError: unreadable file, invalid JSON, missing or malformed field
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigError(f"cannot read file: {e}", source=str(path)) from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"corrupted JSON: {e}", source=str(path)) from e

    return load_rule_set(data, source=str(path))


class RuleValidator:
    """Structural checks on a loaded RuleSet"""

    def validate(self, rules: RuleSet) -> tuple[bool, list[str]]:
        """
        Validate a rule set.

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        errors: list[str] = []

        if CategoryKind.for_interface(rules.interface_name) is None:
            errors.append(f"Unsupported category interface {rules.interface_name}")

        if not rules.states:
            errors.append("No states declared")

        for state in rules.states:
            if not state.conditions:
                errors.append(f"State {state.name} has no conditions")
            for condition in state.conditions:
                paths = rules.monitored.get(condition.interface)
                if not paths:
                    errors.append(
                        f"State {state.name}: {condition.interface} is not monitored "
                        f"on any object path"
                    )

        for state in rules.states:
            # Unknown logic is not rejected here: evaluation aborts to the
            # default state when it meets one
            for logic in [state.logic] + [c.logic for c in state.conditions]:
                if logic not in KNOWN_LOGIC:
                    logger.warning(
                        f"{rules.source}: unknown logic {logic!r} in state {state.name}",
                    )

        is_valid = len(errors) == 0
        if not is_valid:
            logger.warning(
                f"Rule validation failed for {rules.source}: {len(errors)} errors",
                extra={"errors": errors},
            )
        return is_valid, errors


def load_rule_directory(directory: str | Path) -> list[RuleSet]:
    """All valid rule sets in directory, in filename order"""
    directory = Path(directory)
    if not directory.is_dir():
        logger.error(f"Rules directory {directory} not found")
        return []

    validator = RuleValidator()
    rule_sets: list[RuleSet] = []

    for path in sorted(p for p in directory.glob("*.json") if p.is_file()):
        try:
            rules = load_rule_file(path)
        except ConfigError as e:
            logger.error(f"Skipping rule file: {e}", extra={"file": str(path)})
            continue

        is_valid, errors = validator.validate(rules)
        if not is_valid:
            logger.error(
                f"Skipping invalid rule file {path}",
                extra={"file": str(path), "errors": errors},
            )
            continue

        logger.debug(f"Loaded rule file {path}")
        rule_sets.append(rules)

    logger.info(f"Loaded {len(rule_sets)} readiness rule sets from {directory}")
    return rule_sets
