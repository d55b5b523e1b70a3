"""Violation evaluator: checks one message against a ruleset snapshot.

Every active rule's check is launched at once and the call returns when all
of them have finished. A check returning False is a violation. A check that
raises is a RuleCheckFailure: reported back and logged, never counted as a
violation, and never allowed to disturb the other checks.
"""

import asyncio
from dataclasses import dataclass

from event_log import log_event
from rule_catalog import Rule, RuleCatalog


class RuleCheckFailure(Exception):
    """A rule's check raised instead of answering."""

    def __init__(self, rule_id: str, error: BaseException):
        super().__init__(f"{rule_id}: {type(error).__name__}: {error}")
        self.rule_id = rule_id
        self.error = error


@dataclass(frozen=True)
class Evaluation:
    ruleset: frozenset
    violations: tuple            # Rules, catalog order
    failures: tuple = ()         # RuleCheckFailures

    @property
    def violated_ids(self) -> tuple:
        return tuple(rule.id for rule in self.violations)

    @property
    def passed(self) -> bool:
        return not self.violations


async def _run_check(rule: Rule, message: str, context) -> bool:
    return await rule.check.run(message, context)


async def evaluate(catalog: RuleCatalog, message: str, ruleset, context=None) -> Evaluation:
    """Evaluate `message` against `ruleset` (already a snapshot)."""
    snapshot = frozenset(ruleset)
    rules = [rule for rule in catalog if rule.id in snapshot]

    results = await asyncio.gather(
        *(_run_check(rule, message, context) for rule in rules),
        return_exceptions=True,
    )

    violations = []
    failures = []
    for rule, result in zip(rules, results):
        if isinstance(result, BaseException) and not isinstance(result, Exception):
            raise result  # cancellation / interpreter exit
        if isinstance(result, Exception):
            failure = RuleCheckFailure(rule.id, result)
            log_event("CHECK_FAILED", str(failure))
            failures.append(failure)
        elif not result:
            violations.append(rule)

    return Evaluation(snapshot, tuple(violations), tuple(failures))
