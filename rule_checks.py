"""Rule predicates: the `check` capability behind every catalog rule.

Each check receives the raw message text and an opaque context object and
answers "does this message obey the rule?". Checks come in two flavours:

  PredicateCheck  pure string test, run inline on the event loop
  BlockingCheck   blocking call (e.g. an HTTP lookup), run in a worker thread
                  so it never stalls the other checks for the same message

Both expose the same `await check.run(message, context)` interface, so the
evaluator never has to inspect what kind of check it is holding.

rules.yaml refers to checks by their key in CHECKS.
"""

import asyncio
import os
import re
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from chameleon_data import data_path

COMMON_WORDS_PATH = data_path("common_words.txt")
SLACK_SEARCH_URL = "https://slack.com/api/search.messages"
SLACK_TIMEOUT = 10  # seconds; belongs to the lookup, not the engine

PUNCTUATION = re.compile(r"[.,!?:;]")
WORD_SPLIT = re.compile(r"[\s\-.,!?]+")
LETTER = re.compile(r"[a-z]")


# ============================================================
# CONTEXT
# ============================================================

@dataclass
class CheckContext:
    """Environment handed to every check. The engine never looks inside."""
    slack_token: Optional[str] = None
    session: Optional[requests.Session] = None


# ============================================================
# CHECK CAPABILITIES
# ============================================================

class RuleCheck:
    """Uniform check interface. Subclasses decide how `fn` is executed."""

    def __init__(self, fn: Callable[[str, object], bool], name: str = ""):
        self.fn = fn
        self.name = name or fn.__name__

    async def run(self, message: str, context) -> bool:
        raise NotImplementedError

    def __repr__(self):
        return f"{type(self).__name__}({self.name})"


class PredicateCheck(RuleCheck):
    async def run(self, message: str, context) -> bool:
        return bool(self.fn(message, context))


class BlockingCheck(RuleCheck):
    async def run(self, message: str, context) -> bool:
        return bool(await asyncio.to_thread(self.fn, message, context))


class AsyncCheck(RuleCheck):
    """Wraps a coroutine function."""

    async def run(self, message: str, context) -> bool:
        return bool(await self.fn(message, context))


# ============================================================
# COMMON WORDS
# ============================================================

_common_words_cache = None


def load_common_words() -> frozenset:
    """Load the common-word list (one word per line). Cached."""
    global _common_words_cache
    if _common_words_cache is None:
        text = COMMON_WORDS_PATH.read_text()
        _common_words_cache = frozenset(
            line.strip().lower() for line in text.splitlines()
            if line.strip() and not line.startswith("#")
        )
    return _common_words_cache


def clear_cache():
    """Clear common-word cache. Public method for testability."""
    global _common_words_cache
    _common_words_cache = None


# ============================================================
# PREDICATES
# ============================================================

def all_lowercase(message: str, context=None) -> bool:
    return message == message.lower()


def all_uppercase(message: str, context=None) -> bool:
    return message == message.upper()


def only_emojis(message: str, context=None) -> bool:
    """Every space-separated word must look like :shortcode:."""
    return all(word.startswith(":") and word.endswith(":") for word in message.split(" "))


def no_common_words(message: str, context=None) -> bool:
    common = load_common_words()
    return all(word.lower() not in common for word in WORD_SPLIT.split(message))


def _letters(message: str) -> list[str]:
    return LETTER.findall(message.lower())


def never_repeats_letters(message: str, context=None) -> bool:
    letters = _letters(message)
    return len(set(letters)) == len(letters)


def every_letter(message: str, context=None) -> bool:
    return len(set(_letters(message))) == 26


def no_spaces(message: str, context=None) -> bool:
    return " " not in message


def no_punctuation(message: str, context=None) -> bool:
    return PUNCTUATION.search(message) is None


def unique_message(message: str, context=None) -> bool:
    """Passes when a workspace message search finds nothing.

    Uses the Slack Web API `search.messages` method, which needs a user token.
    Raises if no token is configured or the API reports an error; the
    evaluator treats that as "unknown", never as a violation.
    """
    token = getattr(context, "slack_token", None) or os.environ.get("SLACK_USER_TOKEN", "")
    if not token:
        raise RuntimeError("SLACK_USER_TOKEN not set")

    session = getattr(context, "session", None) or requests
    resp = session.get(
        SLACK_SEARCH_URL,
        params={"query": message, "count": 1},
        headers={"Authorization": f"Bearer {token}"},
        timeout=SLACK_TIMEOUT,
    )
    resp.raise_for_status()
    data = resp.json()
    if not data.get("ok"):
        raise RuntimeError(f"search.messages failed: {data.get('error', 'unknown error')}")
    total = (data.get("messages") or {}).get("total", 0)
    return total == 0


# ============================================================
# REGISTRY
# ============================================================

CHECKS: dict[str, RuleCheck] = {
    "all_lowercase": PredicateCheck(all_lowercase),
    "all_uppercase": PredicateCheck(all_uppercase),
    "only_emojis": PredicateCheck(only_emojis),
    "unique_message": BlockingCheck(unique_message),
    "no_common_words": PredicateCheck(no_common_words),
    "never_repeats_letters": PredicateCheck(never_repeats_letters),
    "every_letter": PredicateCheck(every_letter),
    "no_spaces": PredicateCheck(no_spaces),
    "no_punctuation": PredicateCheck(no_punctuation),
}
