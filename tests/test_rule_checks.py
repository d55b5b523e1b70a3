"""Tests for the rule predicates and check capabilities.

Run: python3 -m pytest tests/test_rule_checks.py -v
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))
import rule_checks as checks


# ============================================================
# PURE PREDICATES
# ============================================================

class TestCasing:

    def test_lowercase(self):
        assert checks.all_lowercase("all quiet here")
        assert not checks.all_lowercase("Not quiet")

    def test_uppercase(self):
        assert checks.all_uppercase("LOUD NOISES!")
        assert not checks.all_uppercase("LOUD noises")

    def test_no_letters_satisfies_both(self):
        assert checks.all_lowercase("123 !!")
        assert checks.all_uppercase("123 !!")


class TestSpacesAndPunctuation:

    def test_no_spaces_example(self):
        assert not checks.no_spaces("a b")
        assert checks.no_spaces("ab")

    @pytest.mark.parametrize("message", ["hi.", "hi,", "hi!", "hi?", "hi:", "hi;"])
    def test_punctuation_detected(self, message):
        assert not checks.no_punctuation(message)

    def test_apostrophe_is_not_punctuation(self):
        assert checks.no_punctuation("don't stop")


class TestEmojis:

    def test_only_emojis(self):
        assert checks.only_emojis(":rocket: :100: :fire:")

    def test_text_mixed_in(self):
        assert not checks.only_emojis(":rocket: to the moon")

    def test_double_space_fails(self):
        assert not checks.only_emojis(":rocket:  :fire:")


class TestLetters:

    def test_never_repeats(self):
        assert checks.never_repeats_letters("The quick")
        assert not checks.never_repeats_letters("hello")

    def test_repeats_ignore_case(self):
        assert not checks.never_repeats_letters("Aa")

    def test_repeats_ignore_non_letters(self):
        assert checks.never_repeats_letters("a1 1b!!")

    def test_every_letter_pangram(self):
        assert checks.every_letter("The quick brown fox jumps over the lazy dog")

    def test_every_letter_missing_one(self):
        assert not checks.every_letter("The quick brown fox jumps over the lay dog")


class TestCommonWords:

    def setup_method(self):
        checks.clear_cache()

    def test_common_word_found(self):
        assert not checks.no_common_words("the aardvark")

    def test_rare_words_pass(self):
        assert checks.no_common_words("zephyr quixotic")

    def test_case_and_punctuation_ignored(self):
        assert not checks.no_common_words("Zephyr, THE!")

    def test_list_is_large(self):
        assert len(checks.load_common_words()) > 900


# ============================================================
# UNIQUE MESSAGE (Slack search)
# ============================================================

def _session(payload):
    session = MagicMock()
    response = MagicMock()
    response.json.return_value = payload
    session.get.return_value = response
    return session


class TestUniqueMessage:

    def test_no_matches_passes(self):
        ctx = checks.CheckContext(slack_token="xoxp-test", session=_session({"ok": True, "messages": {"total": 0}}))
        assert checks.unique_message("brand new", ctx) is True

    def test_match_fails(self):
        ctx = checks.CheckContext(slack_token="xoxp-test", session=_session({"ok": True, "messages": {"total": 3}}))
        assert checks.unique_message("hello", ctx) is False

    def test_sends_query_and_token(self):
        session = _session({"ok": True, "messages": {"total": 0}})
        checks.unique_message("hello", checks.CheckContext(slack_token="xoxp-test", session=session))
        _, kwargs = session.get.call_args
        assert kwargs["params"]["query"] == "hello"
        assert kwargs["headers"]["Authorization"] == "Bearer xoxp-test"

    def test_missing_token_raises(self, monkeypatch):
        monkeypatch.delenv("SLACK_USER_TOKEN", raising=False)
        with pytest.raises(RuntimeError, match="SLACK_USER_TOKEN"):
            checks.unique_message("hello", checks.CheckContext())

    def test_api_error_raises(self):
        ctx = checks.CheckContext(slack_token="xoxp-test", session=_session({"ok": False, "error": "not_authed"}))
        with pytest.raises(RuntimeError, match="not_authed"):
            checks.unique_message("hello", ctx)


# ============================================================
# CAPABILITIES
# ============================================================

class TestCapabilities:

    def test_predicate_check_runs_inline(self):
        check = checks.PredicateCheck(lambda m, c: m == "x")
        assert asyncio.run(check.run("x", None)) is True

    def test_blocking_check_runs_in_thread(self):
        import threading
        main_thread = threading.get_ident()
        seen = []

        def fn(message, context):
            seen.append(threading.get_ident())
            return True

        assert asyncio.run(checks.BlockingCheck(fn).run("x", None)) is True
        assert seen and seen[0] != main_thread

    def test_async_check(self):
        async def fn(message, context):
            await asyncio.sleep(0)
            return False

        assert asyncio.run(checks.AsyncCheck(fn).run("x", None)) is False

    def test_registry_covers_shipped_checks(self):
        assert set(checks.CHECKS) == {
            "all_lowercase", "all_uppercase", "only_emojis", "unique_message",
            "no_common_words", "never_repeats_letters", "every_letter",
            "no_spaces", "no_punctuation",
        }
        assert isinstance(checks.CHECKS["unique_message"], checks.BlockingCheck)
