"""
Condition Evaluation

Derives a category's state from the properties of the entities it monitors.

States are tried in declaration order and the first one whose conditions
hold wins. For each condition the property is fetched from every object
path monitored under the condition's interface, compared as a string, and
the per-path results are folded with the condition's logic; the
per-condition results are folded with the state's logic.

A failed fetch or an unknown logic aborts the whole round (default state).
Running out of states without a match is a clean no-match (error state).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from ...common.config import Combinator, RuleSet
from ...common.exceptions import ResolutionFailure

UNSUPPORTED = "Unsupported Type"

Fetch = Callable[[str, str, str], Awaitable[Any]]


class Outcome(str, Enum):
    """How an evaluation round ended"""
    MATCHED = "matched"
    NO_MATCH = "no_match"
    ABORTED = "aborted"


@dataclass
class Evaluation:
    outcome: Outcome
    state: str
    reason: str = ""


class InvalidLogic(ValueError):
    """Unknown combinator, or SINGLE applied to other than one value"""


def coerce(value: Any) -> str:
    """String form used for comparison; unsupported kinds never match"""
    # bool first: it is an int subclass
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value
    return UNSUPPORTED


def combine(logic: str, results: list[bool]) -> bool:
    """
    Fold a list of booleans.

    Raises:
        InvalidLogic: unknown logic, or SINGLE without exactly one result
    """
    if logic == Combinator.AND.value:
        return all(results)
    if logic == Combinator.OR.value:
        return any(results)
    if logic in ("", Combinator.SINGLE.value):
        if len(results) != 1:
            raise InvalidLogic(f"single logic applied to {len(results)} results")
        return results[0]
    raise InvalidLogic(f"unknown logic {logic!r}")


async def evaluate(rules: RuleSet, fetch: Fetch) -> Evaluation:
    """One evaluation round over rules using fetch(path, interface, property)"""
    for state in rules.states:
        try:
            condition_results = []
            for condition in state.conditions:
                path_results = []
                for path in rules.monitored.get(condition.interface, []):
                    value = await fetch(path, condition.interface, condition.property)
                    path_results.append(coerce(value) == condition.value)
                condition_results.append(combine(condition.logic, path_results))
            matched = combine(state.logic, condition_results)
        except ResolutionFailure as e:
            return Evaluation(Outcome.ABORTED, rules.default_state, e.message)
        except InvalidLogic as e:
            return Evaluation(Outcome.ABORTED, rules.default_state, f"state {state.name}: {e}")

        if matched:
            return Evaluation(Outcome.MATCHED, state.name)

    return Evaluation(Outcome.NO_MATCH, rules.error_state)
