#!/usr/bin/env python3
"""Chameleon: word-game moderator with an adaptive ruleset.

Players post messages and must obey the currently active rules. The ruleset
shifts over time: harder when nearly everyone passes, easier when most
messages fail, and replaced outright when it goes stale.

Usage:
    python3 chameleon.py validate                     # Check rules.yaml
    python3 chameleon.py rules --seed 4               # Generate and show a ruleset
    python3 chameleon.py check "hello world" --active no-spaces,all-lowercase
    python3 chameleon.py play                         # Moderate lines typed on stdin
    python3 chameleon.py simulate --messages 500 --fail-rate 0.4
    python3 chameleon.py log                          # Tail the audit log

Environment:
    CHAMELEON_RULES   path to rules.yaml (default: the bundled chameleon_data/rules.yaml)
    CHAMELEON_LOG     audit log path (default: ~/.chameleon/logs/moderator-audit.log)
    SLACK_USER_TOKEN  user token for the "unique messages" search lookup
"""

import argparse
import asyncio
import json
import os
import random
import sys
from itertools import combinations
from pathlib import Path

from rich.console import Console
from rich.markup import escape as rich_escape
from rich.table import Table

import event_log
from adaptive_controller import AdaptiveController, load_settings
from rule_catalog import (
    ConfigurationError, RuleNotFound, build_catalog, load_catalog, read_rules_file,
    validate_catalog_data,
)
from rule_checks import CheckContext
from rules_announcer import ConsoleAnnouncer, render_rules_message
from ruleset_search import SearchExhausted, is_valid
from violation_evaluator import evaluate

console = Console()

DEFAULT_TICK_SECONDS = 60


# ============================================================
# HELPERS
# ============================================================

def build_controller(rules_path=None, seed=None, clock=None) -> AdaptiveController:
    catalog = load_catalog(rules_path)
    settings = load_settings(rules_path)
    context = CheckContext(slack_token=os.environ.get("SLACK_USER_TOKEN") or None)
    kwargs = {"clock": clock} if clock else {}
    return AdaptiveController(catalog, settings, rng=random.Random(seed), context=context, **kwargs)


def print_evaluation(evaluation):
    if evaluation.passed and not evaluation.failures:
        console.print("[green]OK[/green] no rules violated")
    for rule in evaluation.violations:
        console.print(f"[red]VIOLATION[/red] {rule.id}: {rich_escape(rule.name)}")
    for failure in evaluation.failures:
        console.print(f"[yellow]UNKNOWN[/yellow] {failure.rule_id}: {rich_escape(str(failure.error))}")


# ============================================================
# COMMANDS
# ============================================================

def cmd_validate(args) -> int:
    data = read_rules_file(args.rules)
    warnings = validate_catalog_data(data)
    if not warnings:
        load_settings(args.rules)
        catalog = build_catalog(data)
        console.print(f"[green]All rules valid.[/green] {len(catalog)} rules")
        for a, b in catalog.conflict_pairs():
            console.print(f"  [dim]conflict:[/dim] {a} / {b}")
        return 0
    for w in warnings:
        console.print(f"  [yellow]WARNING:[/yellow] {rich_escape(w)}")
    return 1


def cmd_rules(args) -> int:
    controller = build_controller(args.rules, args.seed)
    controller.initialize(args.difficulty)
    description = controller.describe_active()
    if args.json:
        print(json.dumps(description.to_dict(), indent=2))
    else:
        console.print(rich_escape(render_rules_message(description)), emoji=True)
    return 0


def cmd_check(args) -> int:
    controller = build_controller(args.rules, args.seed)
    catalog = controller.catalog
    if args.active:
        ruleset = frozenset(rid.strip() for rid in args.active.split(",") if rid.strip())
        missing = sorted(rid for rid in ruleset if rid not in catalog)
        if missing:
            raise RuleNotFound(", ".join(missing))
        if not is_valid(catalog, ruleset):
            clashes = [f"{a}/{b}" for a, b in combinations(sorted(ruleset), 2) if catalog.conflicts(a, b)]
            console.print(f"[yellow]Note: this ruleset contains conflicting rules: {', '.join(clashes)}[/yellow]")
    else:
        ruleset = controller.initialize()
        console.print(f"[dim]Generated ruleset: {', '.join(sorted(ruleset))}[/dim]")

    evaluation = asyncio.run(evaluate(catalog, args.message, ruleset, controller.context))
    print_evaluation(evaluation)
    return 0 if evaluation.passed else 1


async def _play(controller, tick_seconds: float):
    async def ticker():
        while True:
            await asyncio.sleep(tick_seconds)
            controller.tick()

    tick_task = asyncio.create_task(ticker())
    try:
        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line or tick_task.done():
                break
            text = line.rstrip("\n")
            if not text.strip():
                continue
            evaluation, _ = await controller.handle_message(text)
            print_evaluation(evaluation)
    finally:
        tick_task.cancel()
        try:
            await tick_task
        except asyncio.CancelledError:
            pass


def cmd_play(args) -> int:
    controller = build_controller(args.rules, args.seed)
    controller.subscribe(ConsoleAnnouncer(controller, console))
    controller.initialize()
    console.print("[dim]Type messages, one per line. Ctrl+D to stop.[/dim]")
    try:
        asyncio.run(_play(controller, args.tick))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
    return 0


def simulate(controller, messages: int, fail_rate: float, seconds_per_message: float, seed=None) -> list:
    """Drive a controller with synthetic outcomes.

    The chance that a message fails scales with the current difficulty
    relative to the initial difficulty, so harder rulesets fail more.
    Returns the list of RulesetChanges.
    """
    players = random.Random(seed)
    changes = []
    now = controller.last_change
    initial = controller.settings.initial_difficulty
    for _ in range(messages):
        now += seconds_per_message
        active = sorted(controller.active_ruleset)
        difficulty = controller.search.difficulty(active)
        p_fail = min(1.0, fail_rate * difficulty / initial)
        violations = [players.choice(active)] if active and players.random() < p_fail else []
        change = controller.record_and_maybe_change(violations, now)
        if change:
            changes.append(change)
    return changes


def cmd_simulate(args) -> int:
    clock_start = 0.0
    controller = build_controller(args.rules, args.seed, clock=lambda: clock_start)
    controller.initialize()
    start = controller.describe_active()
    changes = simulate(controller, args.messages, args.fail_rate, args.seconds_per_message, args.seed)

    table = Table(title=f"Simulated {args.messages} messages")
    table.add_column("t (min)", justify="right")
    table.add_column("difficulty", justify="right")
    table.add_column("reason")
    table.add_column("ruleset")
    table.add_row("0", str(start.difficulty), "initial", ", ".join(sorted(start.ruleset)))
    for change in changes:
        table.add_row(
            f"{change.changed_at / 60:.0f}",
            str(controller.search.difficulty(change.ruleset)),
            rich_escape(change.reason),
            ", ".join(sorted(change.ruleset)),
        )
    console.print(table)
    console.print(f"{len(changes)} change(s); final fail ratio {controller.fail_ratio():.2f}")
    return 0


def cmd_log(args) -> int:
    lines = event_log.read_events(args.limit)
    if not lines:
        console.print(f"[dim]No events in {event_log.LOG_FILE}[/dim]")
    for line in lines:
        console.print(rich_escape(line))
    return 0


# ============================================================
# CLI
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chameleon", description="Adaptive word-game moderator")
    parser.add_argument("--rules", type=Path, default=None, help="path to rules.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("validate", help="validate the rule catalog")

    p = sub.add_parser("rules", help="generate and show a ruleset")
    p.add_argument("--seed", type=int, default=None)
    p.add_argument("--difficulty", type=float, default=None)
    p.add_argument("--json", action="store_true")

    p = sub.add_parser("check", help="check one message")
    p.add_argument("message")
    p.add_argument("--active", help="comma-separated rule ids (default: generate one)")
    p.add_argument("--seed", type=int, default=None)

    p = sub.add_parser("play", help="moderate messages from stdin")
    p.add_argument("--seed", type=int, default=None)
    p.add_argument("--tick", type=float, default=DEFAULT_TICK_SECONDS, help="seconds between ticks")

    p = sub.add_parser("simulate", help="simulate the controller offline")
    p.add_argument("--messages", type=int, default=500)
    p.add_argument("--fail-rate", type=float, default=0.3)
    p.add_argument("--seconds-per-message", type=float, default=60.0)
    p.add_argument("--seed", type=int, default=None)

    p = sub.add_parser("log", help="show recent audit log events")
    p.add_argument("--limit", type=int, default=50)

    return parser


COMMANDS = {
    "validate": cmd_validate,
    "rules": cmd_rules,
    "check": cmd_check,
    "play": cmd_play,
    "simulate": cmd_simulate,
    "log": cmd_log,
}


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return COMMANDS[args.command](args)
    except (ConfigurationError, SearchExhausted) as e:
        console.print(f"[red]Error: {rich_escape(str(e))}[/red]")
        return 1
    except RuleNotFound as e:
        console.print(f"[red]Error: unknown rule {rich_escape(str(e))}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
