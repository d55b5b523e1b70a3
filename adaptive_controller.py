"""Adaptive controller: owns the active ruleset and decides when to change it.

The controller is the only thing that mutates engine state (active ruleset,
violation history since the last change, time of the last change). All
mutation goes through one lock, so two concurrent messages can never both
replace the same ruleset, and history counts stay exact.

Decision procedure, run after every recorded message and on every tick:

  1. too soon since the last change          -> nothing
  2. too long since the last change          -> regenerate
  3. not enough messages yet                 -> nothing
  4. too many messages since the last change -> regenerate
  5. with change_probability: fail ratio above band -> easier mutation,
     below band -> harder mutation (regenerate if no mutation qualifies),
     inside band -> nothing
  6. else with full_reset_probability        -> regenerate
  7. otherwise                               -> nothing

"Regenerate" means a fresh random_valid ruleset aimed halfway between the
initial difficulty and the current one.
"""

import random
import threading
import time
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Callable, Iterable, Optional

from event_log import log_event
from rule_catalog import ConfigurationError, Rule, RuleCatalog, read_rules_file
from ruleset_search import RulesetSearch, SearchExhausted
from violation_evaluator import Evaluation, evaluate

# ============================================================
# REASONS
# ============================================================

REASON_INITIAL = "An initial ruleset has been created."
REASON_STALE_TIME = ("The ruleset has been changed entirely, since it has been "
                     "a long time since it was last changed.")
REASON_STALE_MESSAGES = ("The ruleset has been changed entirely, since there have been "
                         "a lot of messages since it was last changed.")
REASON_EASIER = "The ruleset has been made easier since the fail ratio is high."
REASON_EASIER_FALLBACK = ("The fail ratio is high, but the ruleset couldn't be made easier, "
                          "so we're changing it entirely.")
REASON_HARDER = "The ruleset has been made harder since the fail ratio is low."
REASON_HARDER_FALLBACK = ("The fail ratio is low, but the ruleset couldn't be made harder, "
                          "so we're changing it entirely.")
REASON_RANDOM = "The ruleset has been changed entirely by chance."


# ============================================================
# SETTINGS
# ============================================================

@dataclass(frozen=True)
class ControllerSettings:
    min_interval: float = 60 * 5           # seconds
    max_interval: float = 60 * 60 * 5      # seconds
    min_fail_ratio: float = 0.1            # below: make harder
    max_fail_ratio: float = 0.5            # above: make easier
    min_sample_size: int = 10
    max_sample_size: int = 100
    change_probability: float = 0.3
    full_reset_probability: float = 0.05
    initial_difficulty: float = 6

    def validate(self) -> list[str]:
        problems = []
        if self.min_interval < 0 or self.max_interval < self.min_interval:
            problems.append("need 0 <= min_interval <= max_interval")
        if not 0 <= self.min_fail_ratio <= self.max_fail_ratio <= 1:
            problems.append("need 0 <= min_fail_ratio <= max_fail_ratio <= 1")
        if self.min_sample_size < 1 or self.max_sample_size < self.min_sample_size:
            problems.append("need 1 <= min_sample_size <= max_sample_size")
        for name in ("change_probability", "full_reset_probability"):
            if not 0 <= getattr(self, name) <= 1:
                problems.append(f"{name} must be within [0, 1]")
        if self.initial_difficulty <= 0:
            problems.append("initial_difficulty must be positive")
        return problems


def settings_from_dict(data: Optional[dict]) -> ControllerSettings:
    """Build settings from a `controller:` mapping. Missing keys keep defaults."""
    data = data or {}
    known = {f.name for f in fields(ControllerSettings)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"unknown controller setting(s): {sorted(unknown)}")
    try:
        settings = ControllerSettings(**data)
        problems = settings.validate()
    except TypeError as e:
        raise ConfigurationError(f"invalid controller settings: {e}") from e
    if problems:
        raise ConfigurationError("; ".join(problems))
    return settings


def load_settings(path: Optional[Path] = None) -> ControllerSettings:
    """Read the `controller:` section of rules.yaml."""
    return settings_from_dict(read_rules_file(path).get("controller"))


# ============================================================
# EVENTS + SNAPSHOTS
# ============================================================

@dataclass(frozen=True)
class RulesetChange:
    reason: str
    ruleset: frozenset
    previous: Optional[frozenset]
    changed_at: float


@dataclass(frozen=True)
class RuleStatus:
    id: str
    name: str
    description: str
    active: bool


@dataclass(frozen=True)
class ActiveDescription:
    ruleset: frozenset
    per_rule: tuple
    difficulty: int

    def to_dict(self) -> dict:
        return {
            "ruleset": sorted(self.ruleset),
            "per_rule": [asdict(status) for status in self.per_rule],
            "difficulty": self.difficulty,
        }


class NotInitialized(RuntimeError):
    """No ruleset has been installed yet."""


# ============================================================
# CONTROLLER
# ============================================================

class AdaptiveController:

    def __init__(
        self,
        catalog: RuleCatalog,
        settings: Optional[ControllerSettings] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
        context=None,
    ):
        self.catalog = catalog
        self.settings = settings or ControllerSettings()
        self.rng = rng or random.Random()
        self.clock = clock
        self.context = context
        self.search = RulesetSearch(catalog, self.rng)

        self._lock = threading.Lock()
        self._active: Optional[frozenset] = None
        self._history: list[tuple] = []
        self._last_change = clock()
        self._listeners: list[Callable[[RulesetChange], None]] = []

    # --- read-only views ---

    @property
    def active_ruleset(self) -> Optional[frozenset]:
        return self._active

    @property
    def history(self) -> tuple:
        with self._lock:
            return tuple(self._history)

    @property
    def last_change(self) -> float:
        return self._last_change

    def fail_ratio(self) -> float:
        with self._lock:
            return self._fail_ratio()

    def _fail_ratio(self) -> float:
        if not self._history:
            return 0.0
        failing = sum(1 for record in self._history if record)
        return failing / len(self._history)

    def subscribe(self, listener: Callable[[RulesetChange], None]):
        """Register a change listener (e.g. a chat announcer)."""
        self._listeners.append(listener)
        return listener

    # --- operations ---

    def initialize(self, target_difficulty: Optional[float] = None, now: Optional[float] = None) -> frozenset:
        """Generate and install the first ruleset. SearchExhausted propagates."""
        target = self.settings.initial_difficulty if target_difficulty is None else target_difficulty
        now = self.clock() if now is None else now
        with self._lock:
            ruleset = self.search.random_valid(target)
            change = self._install(ruleset, REASON_INITIAL, now)
        self._notify(change)
        return ruleset

    def _snapshot(self) -> frozenset:
        with self._lock:
            if self._active is None:
                raise NotInitialized("call initialize() before evaluating messages")
            return self._active

    async def evaluate_message(self, text: str) -> Evaluation:
        """Check `text` against the ruleset active when this call starts."""
        return await evaluate(self.catalog, text, self._snapshot(), self.context)

    async def handle_message(self, text: str, now: Optional[float] = None):
        """Evaluate, record, and run the decision procedure. Returns (evaluation, change)."""
        evaluation = await self.evaluate_message(text)
        change = self.record_and_maybe_change(evaluation.violated_ids, now)
        return evaluation, change

    def record_outcome(self, violations: Iterable) -> None:
        """Append one message's violations. Never changes the ruleset."""
        record = _as_record(violations)
        with self._lock:
            self._history.append(record)

    def record_and_maybe_change(self, violations: Iterable, now: Optional[float] = None) -> Optional[RulesetChange]:
        record = _as_record(violations)
        now = self.clock() if now is None else now
        with self._lock:
            self._history.append(record)
            change = self._decide(now)
        self._notify(change)
        return change

    def tick(self, now: Optional[float] = None) -> Optional[RulesetChange]:
        """Run the decision procedure without recording anything."""
        now = self.clock() if now is None else now
        with self._lock:
            change = self._decide(now)
        self._notify(change)
        return change

    def describe_active(self) -> ActiveDescription:
        with self._lock:
            active = self._active or frozenset()
        per_rule = tuple(
            RuleStatus(rule.id, rule.name, rule.description, rule.id in active)
            for rule in self.catalog
        )
        return ActiveDescription(active, per_rule, self.search.difficulty(active))

    # --- decision procedure (call with lock held) ---

    def _decide(self, now: float) -> Optional[RulesetChange]:
        if self._active is None:
            raise NotInitialized("call initialize() before running the controller")
        s = self.settings

        elapsed = now - self._last_change
        if elapsed < s.min_interval:
            return None
        if elapsed > s.max_interval:
            return self._regenerate(REASON_STALE_TIME, now)

        samples = len(self._history)
        if samples < s.min_sample_size:
            return None
        if samples > s.max_sample_size:
            return self._regenerate(REASON_STALE_MESSAGES, now)

        if self.rng.random() < s.change_probability:
            ratio = self._fail_ratio()
            if ratio > s.max_fail_ratio:
                result = self.search.nearest_easier(self._active)
                if result.success:
                    return self._install(result.ruleset, REASON_EASIER, now)
                return self._regenerate(REASON_EASIER_FALLBACK, now)
            if ratio < s.min_fail_ratio:
                result = self.search.nearest_harder(self._active)
                if result.success:
                    return self._install(result.ruleset, REASON_HARDER, now)
                return self._regenerate(REASON_HARDER_FALLBACK, now)
            return None

        if self.rng.random() < s.full_reset_probability:
            return self._regenerate(REASON_RANDOM, now)

        return None

    def _regenerate(self, reason: str, now: float) -> Optional[RulesetChange]:
        target = (self.settings.initial_difficulty + self.search.difficulty(self._active)) / 2
        try:
            ruleset = self.search.random_valid(target)
        except SearchExhausted as e:
            log_event("REGEN_FAILED", f"{e}; keeping {sorted(self._active)}")
            return None
        return self._install(ruleset, reason, now)

    def _install(self, ruleset: frozenset, reason: str, now: float) -> RulesetChange:
        change = RulesetChange(reason, frozenset(ruleset), self._active, now)
        self._active = change.ruleset
        self._history = []
        self._last_change = now
        log_event("CHANGE", f"{reason} New ruleset: {', '.join(sorted(change.ruleset))}")
        return change

    def _notify(self, change: Optional[RulesetChange]) -> None:
        if change is None:
            return
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                log_event("LISTENER_FAILED", f"{listener!r}: {type(e).__name__}: {e}")


def _as_record(violations: Iterable) -> tuple:
    return tuple(v.id if isinstance(v, Rule) else v for v in violations)
