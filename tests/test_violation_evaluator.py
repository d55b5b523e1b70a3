"""Tests for the per-message violation evaluator.

Run: python3 -m pytest tests/test_violation_evaluator.py -v
"""

import asyncio
import sys
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
import event_log
from rule_catalog import Rule, RuleCatalog, load_catalog
from rule_checks import AsyncCheck, BlockingCheck, PredicateCheck
from violation_evaluator import Evaluation, RuleCheckFailure, evaluate


@pytest.fixture(autouse=True)
def isolate_log(tmp_path, monkeypatch):
    monkeypatch.setattr(event_log, "LOG_FILE", tmp_path / "audit.log")


@pytest.fixture
def catalog():
    return load_catalog()


def _boom(message, context):
    raise ValueError("lookup exploded")


def _rule(rid, check):
    return Rule(rid, rid, rid, check, 1)


# ============================================================
# BASIC OUTCOMES
# ============================================================

class TestOutcomes:

    def test_no_spaces_example(self, catalog):
        result = asyncio.run(evaluate(catalog, "a b", {"no-spaces"}))
        assert result.violated_ids == ("no-spaces",)
        result = asyncio.run(evaluate(catalog, "ab", {"no-spaces"}))
        assert result.violated_ids == ()
        assert result.passed

    def test_multiple_violations_in_catalog_order(self, catalog):
        result = asyncio.run(evaluate(catalog, "Hello, World", {"no-punctuation", "all-lowercase", "no-spaces"}))
        assert result.violated_ids == ("all-lowercase", "no-spaces", "no-punctuation")

    def test_empty_ruleset(self, catalog):
        result = asyncio.run(evaluate(catalog, "anything goes", frozenset()))
        assert result == Evaluation(frozenset(), (), ())

    def test_inactive_rules_not_checked(self, catalog):
        result = asyncio.run(evaluate(catalog, "a b", {"all-lowercase"}))
        assert result.passed

    def test_snapshot_recorded(self, catalog):
        ruleset = {"no-spaces"}
        result = asyncio.run(evaluate(catalog, "ab", ruleset))
        ruleset.add("all-uppercase")
        assert result.ruleset == frozenset({"no-spaces"})


# ============================================================
# FAILURE ISOLATION
# ============================================================

class TestFailures:

    def _catalog(self):
        return RuleCatalog([
            _rule("ok", PredicateCheck(lambda m, c: True)),
            _rule("fails", PredicateCheck(lambda m, c: False)),
            _rule("broken", PredicateCheck(_boom)),
            _rule("broken-io", BlockingCheck(_boom)),
        ])

    def test_failure_not_a_violation(self):
        catalog = self._catalog()
        result = asyncio.run(evaluate(catalog, "x", set(catalog.ids)))
        assert result.violated_ids == ("fails",)
        assert {f.rule_id for f in result.failures} == {"broken", "broken-io"}

    def test_failure_carries_original_error(self):
        catalog = self._catalog()
        result = asyncio.run(evaluate(catalog, "x", {"broken"}))
        failure = result.failures[0]
        assert isinstance(failure, RuleCheckFailure)
        assert isinstance(failure.error, ValueError)
        assert "lookup exploded" in str(failure)

    def test_failure_logged(self, tmp_path):
        catalog = self._catalog()
        asyncio.run(evaluate(catalog, "x", {"broken"}))
        assert "CHECK_FAILED: broken" in (tmp_path / "audit.log").read_text()

    def test_missing_slack_token_is_unknown(self, catalog, monkeypatch):
        monkeypatch.delenv("SLACK_USER_TOKEN", raising=False)
        result = asyncio.run(evaluate(catalog, "hello", {"unique-messages", "no-spaces"}))
        assert result.passed
        assert [f.rule_id for f in result.failures] == ["unique-messages"]


# ============================================================
# CONCURRENCY
# ============================================================

class TestConcurrency:

    def test_async_checks_run_together(self):
        async def slow(message, context):
            await asyncio.sleep(0.2)
            return True

        catalog = RuleCatalog([_rule(f"r{i}", AsyncCheck(slow)) for i in range(5)])
        start = time.monotonic()
        result = asyncio.run(evaluate(catalog, "x", set(catalog.ids)))
        assert result.passed
        assert time.monotonic() - start < 0.8

    def test_blocking_check_does_not_stall_others(self):
        order = []

        def blocking(message, context):
            time.sleep(0.2)
            order.append("blocking")
            return True

        async def quick(message, context):
            order.append("quick")
            return False

        catalog = RuleCatalog([
            _rule("slow", BlockingCheck(blocking)),
            _rule("fast", AsyncCheck(quick)),
        ])
        result = asyncio.run(evaluate(catalog, "x", {"slow", "fast"}))
        assert order == ["quick", "blocking"]
        assert result.violated_ids == ("fast",)

    def test_context_passed_through(self):
        seen = []
        catalog = RuleCatalog([_rule("ctx", PredicateCheck(lambda m, c: seen.append(c) or True))])
        marker = object()
        asyncio.run(evaluate(catalog, "x", {"ctx"}, marker))
        assert seen == [marker]
