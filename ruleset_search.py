"""Ruleset search: validity, difficulty, generation and mutation of rulesets.

A ruleset is a frozenset of rule ids. It is *valid* when no two members
conflict. Everything here is pure with respect to engine state: functions
take the catalog (and a random source) and return new frozensets.

Generation builds a fresh ruleset up to a target difficulty by adding
random admissible rules. Mutation randomly toggles rules on and off,
keeping only toggles that leave the set valid. nearest_easier /
nearest_harder sample a handful of mutations and keep the one closest in
difficulty on the requested side.
"""

import random
from dataclasses import dataclass
from typing import Iterable, Optional

from event_log import log_event
from rule_catalog import RuleCatalog

# ============================================================
# CONSTANTS
# ============================================================

GENERATION_RETRIES = 10       # extra attempts when random_valid comes back empty
MUTATION_CANDIDATES = 15      # mutated rulesets sampled per easier/harder search
MUTATION_AMOUNT = 3           # accepted toggles per mutated candidate
MAX_TOGGLE_ATTEMPTS = 1000    # re-picks allowed for a single toggle


# ============================================================
# ERRORS
# ============================================================

class SearchExhausted(RuntimeError):
    """random_valid produced only empty rulesets."""


class MutationStuck(RuntimeError):
    """No valid toggle was found within MAX_TOGGLE_ATTEMPTS."""


@dataclass(frozen=True)
class SearchResult:
    success: bool
    ruleset: frozenset


# ============================================================
# VALIDITY + DIFFICULTY
# ============================================================

def is_valid(catalog: RuleCatalog, ruleset: Iterable[str]) -> bool:
    ruleset = frozenset(ruleset)
    return all(not (catalog[rid].conflicts_with & ruleset) for rid in ruleset)


def difficulty(catalog: RuleCatalog, ruleset: Iterable[str]) -> int:
    return sum(catalog[rid].difficulty for rid in ruleset)


# ============================================================
# SEARCH
# ============================================================

class RulesetSearch:
    """Generates and perturbs valid rulesets over a fixed catalog.

    `rng` is the single random source; pass a seeded random.Random for
    reproducible runs.
    """

    def __init__(self, catalog: RuleCatalog, rng: Optional[random.Random] = None):
        self.catalog = catalog
        self.rng = rng or random.Random()

    def is_valid(self, ruleset) -> bool:
        return is_valid(self.catalog, ruleset)

    def difficulty(self, ruleset) -> int:
        return difficulty(self.catalog, ruleset)

    def admissible_additions(self, ruleset) -> frozenset:
        """Rule ids not in `ruleset` whose addition keeps it valid."""
        ruleset = frozenset(ruleset)
        blocked = set(ruleset)
        for rid in ruleset:
            blocked |= self.catalog[rid].conflicts_with
        return frozenset(rid for rid in self.catalog.ids if rid not in blocked)

    def _admissible_in_order(self, ruleset) -> list[str]:
        allowed = self.admissible_additions(ruleset)
        return [rid for rid in self.catalog.ids if rid in allowed]

    def random_valid(self, target_difficulty: float) -> frozenset:
        """Build a random valid ruleset with difficulty >= target where possible.

        Raises SearchExhausted if every attempt produced an empty ruleset.
        """
        for attempt in range(GENERATION_RETRIES + 1):
            ruleset = set()
            total = 0
            while total < target_difficulty:
                candidates = self._admissible_in_order(ruleset)
                if not candidates:
                    break
                pick = self.rng.choice(candidates)
                ruleset.add(pick)
                total += self.catalog[pick].difficulty
            if ruleset:
                return frozenset(ruleset)
            if attempt < GENERATION_RETRIES:
                log_event("RETRY", f"empty ruleset for target {target_difficulty} "
                                   f"(attempt {attempt + 1}/{GENERATION_RETRIES + 1})")

        raise SearchExhausted(
            f"could not generate a nonempty valid ruleset for target difficulty "
            f"{target_difficulty} after {GENERATION_RETRIES + 1} attempts"
        )

    def mutate(self, ruleset, k: int) -> frozenset:
        """Apply `k` accepted random toggles. Each toggle keeps the set valid."""
        current = frozenset(ruleset)
        for _ in range(k):
            for _attempt in range(MAX_TOGGLE_ATTEMPTS):
                rid = self.rng.choice(self.catalog.ids)
                toggled = current - {rid} if rid in current else current | {rid}
                if self.is_valid(toggled):
                    current = toggled
                    break
            else:
                raise MutationStuck(
                    f"no valid toggle from {sorted(current)} in {MAX_TOGGLE_ATTEMPTS} attempts"
                )
        return current

    def _candidates(self, current: frozenset) -> list[frozenset]:
        candidates = []
        for _ in range(MUTATION_CANDIDATES):
            try:
                candidates.append(self.mutate(current, MUTATION_AMOUNT))
            except MutationStuck as e:
                log_event("STUCK", str(e))
        return candidates

    def _nearest(self, current, harder: bool) -> SearchResult:
        current = frozenset(current)
        base = self.difficulty(current)
        best, best_distance = None, None
        for candidate in self._candidates(current):
            distance = self.difficulty(candidate) - base
            if not harder:
                distance = -distance
            if distance <= 0:
                continue
            if best is None or distance < best_distance:
                best, best_distance = candidate, distance
        if best is None:
            return SearchResult(False, current)
        return SearchResult(True, best)

    def nearest_easier(self, current) -> SearchResult:
        """Closest sampled mutation with strictly lower difficulty."""
        return self._nearest(current, harder=False)

    def nearest_harder(self, current) -> SearchResult:
        """Closest sampled mutation with strictly higher difficulty."""
        return self._nearest(current, harder=True)
