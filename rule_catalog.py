"""Rule catalog: the static registry of rules and their pairwise conflicts.

Loaded once from rules.yaml. Conflict pairs are declared unordered and
expanded into a symmetric relation at build time; after that the catalog is
read-only for the life of the process.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Iterable, Optional

import yaml

from chameleon_data import data_path
from rule_checks import CHECKS, RuleCheck

# ============================================================
# PATHS
# ============================================================

RULES_PATH = Path(os.environ.get("CHAMELEON_RULES", data_path("rules.yaml")))

REQUIRED_FIELDS = ("id", "name", "description", "check", "difficulty")


# ============================================================
# ERRORS
# ============================================================

class ConfigurationError(Exception):
    """The catalog definition is inconsistent. Fatal at startup."""


class RuleNotFound(KeyError):
    """No rule with this id exists in the catalog."""


# ============================================================
# DATA MODEL
# ============================================================

@dataclass(frozen=True)
class Rule:
    id: str
    name: str
    description: str
    check: RuleCheck = field(compare=False, repr=False)
    difficulty: int = 1
    conflicts_with: frozenset = frozenset()


class RuleCatalog:
    """Immutable rule registry with a symmetric conflict relation."""

    def __init__(self, rules: Iterable[Rule], conflicts: Iterable[tuple[str, str]] = ()):
        rules = list(rules)
        if not rules:
            raise ConfigurationError("catalog has no rules; no nonempty ruleset is reachable")

        adjacency: dict[str, set] = {}
        for rule in rules:
            if rule.id in adjacency:
                raise ConfigurationError(f"duplicate rule id '{rule.id}'")
            if (not isinstance(rule.difficulty, int) or isinstance(rule.difficulty, bool)
                    or rule.difficulty < 1):
                raise ConfigurationError(
                    f"{rule.id}: difficulty must be an integer >= 1, got {rule.difficulty!r}"
                )
            adjacency[rule.id] = set(rule.conflicts_with)

        for rule_id, others in adjacency.items():
            unknown = others - adjacency.keys()
            if unknown:
                raise ConfigurationError(f"{rule_id}: conflicts with unknown rule(s) {sorted(unknown)}")

        for pair in conflicts:
            if len(pair) != 2:
                raise ConfigurationError(f"conflict entry {pair!r} is not a pair")
            a, b = pair
            if a not in adjacency or b not in adjacency:
                raise ConfigurationError(
                    f"Rule with ID {a} or {b} not found when resolving conflicts."
                )
            if a == b:
                raise ConfigurationError(f"rule '{a}' cannot conflict with itself")
            adjacency[a].add(b)
            adjacency[b].add(a)

        # Per-rule declarations may be one-sided; make them symmetric too
        for rule_id, others in list(adjacency.items()):
            if rule_id in others:
                raise ConfigurationError(f"rule '{rule_id}' cannot conflict with itself")
            for other in others:
                adjacency[other].add(rule_id)

        self._rules = {
            rule.id: replace(rule, conflicts_with=frozenset(adjacency[rule.id]))
            for rule in rules
        }
        self.ids = tuple(self._rules)

    def rules_by_id(self, rule_id: str) -> Rule:
        try:
            return self._rules[rule_id]
        except KeyError:
            raise RuleNotFound(rule_id) from None

    __getitem__ = rules_by_id

    def __contains__(self, rule_id) -> bool:
        return rule_id in self._rules

    def __iter__(self):
        return iter(self._rules.values())

    def __len__(self) -> int:
        return len(self._rules)

    def conflicts(self, a: str, b: str) -> bool:
        return b in self.rules_by_id(a).conflicts_with

    def conflict_pairs(self) -> list[tuple[str, str]]:
        """Each conflict once, ordered by catalog position."""
        pairs = []
        for i, a in enumerate(self.ids):
            for b in self.ids[i + 1:]:
                if b in self._rules[a].conflicts_with:
                    pairs.append((a, b))
        return pairs


# ============================================================
# LOADING
# ============================================================

def validate_catalog_data(data: dict, checks: Optional[dict] = None) -> list[str]:
    """Validate raw rules.yaml data against schema constraints. Returns list of warnings."""
    checks = CHECKS if checks is None else checks
    warnings = []
    if not isinstance(data, dict):
        return ["rules file must be a mapping with 'rules' and 'conflicts' keys"]

    seen = set()
    for i, r in enumerate(data.get("rules") or []):
        rid = r.get("id", f"<rule #{i}>") if isinstance(r, dict) else f"<rule #{i}>"
        if not isinstance(r, dict):
            warnings.append(f"{rid}: entry is not a mapping")
            continue
        for key in REQUIRED_FIELDS:
            if key not in r:
                warnings.append(f"{rid}: missing field '{key}'")
        if rid in seen:
            warnings.append(f"{rid}: duplicate id")
        seen.add(rid)
        if "check" in r and r["check"] not in checks:
            warnings.append(f"{rid}: unknown check '{r['check']}' (expected one of {sorted(checks)})")
        weight = r.get("difficulty", 1)
        if not isinstance(weight, int) or isinstance(weight, bool) or weight < 1:
            warnings.append(f"{rid}: difficulty {weight!r} must be an integer >= 1")

    if not seen:
        warnings.append("no rules defined")

    for pair in data.get("conflicts") or []:
        if not isinstance(pair, (list, tuple)) or len(pair) != 2:
            warnings.append(f"conflict entry {pair!r} is not a pair")
            continue
        for rid in pair:
            if rid not in seen:
                warnings.append(f"conflict {pair[0]}/{pair[1]}: rule '{rid}' not found")
        if pair[0] == pair[1]:
            warnings.append(f"conflict {pair[0]}/{pair[1]}: rule conflicts with itself")

    return warnings


def read_rules_file(path: Optional[Path] = None) -> dict:
    """Parse rules.yaml. Raises ConfigurationError if unreadable."""
    path = Path(path) if path else RULES_PATH
    try:
        data = yaml.safe_load(path.read_text())
    except (yaml.YAMLError, OSError) as e:
        raise ConfigurationError(f"cannot read rules file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: expected a mapping at top level")
    return data


def build_catalog(data: dict, checks: Optional[dict] = None) -> RuleCatalog:
    """Build a catalog from already-parsed rules.yaml data."""
    checks = CHECKS if checks is None else checks
    warnings = validate_catalog_data(data, checks)
    if warnings:
        raise ConfigurationError("; ".join(warnings))

    rules = [
        Rule(
            id=r["id"],
            name=r["name"],
            description=r["description"],
            check=checks[r["check"]],
            difficulty=r["difficulty"],
        )
        for r in data["rules"]
    ]
    conflicts = [tuple(pair) for pair in data.get("conflicts") or []]
    return RuleCatalog(rules, conflicts)


def load_catalog(path: Optional[Path] = None, checks: Optional[dict] = None) -> RuleCatalog:
    """Load and build the catalog from rules.yaml."""
    return build_catalog(read_rules_file(path), checks)
