"""Rules announcer: turns controller snapshots into chat-ready text.

render_rules_message() is the block posted to the channel (and mirrored into
the channel canvas) whenever the ruleset changes. ConsoleAnnouncer is a
controller listener that prints changes to the terminal.
"""

from typing import Optional

from rich.console import Console
from rich.markup import escape as rich_escape

ACTIVE_EMOJI = ":white_check_mark:"
INACTIVE_EMOJI = ":x:"
STAR_EMOJI = ":star:"
CANVAS_MARKER = "rules are currently active"  # used to find the canvas section


def render_rules_message(description) -> str:
    """`description` is an ActiveDescription from AdaptiveController.describe_active()."""
    total = len(description.per_rule)
    lines = [f"{len(description.ruleset)}/{total} {CANVAS_MARKER}:", ""]
    for status in description.per_rule:
        emoji = ACTIVE_EMOJI if status.active else INACTIVE_EMOJI
        lines.append(f"{emoji} {status.name}: {status.description}")
    lines.append("")
    lines.append(f"Expected difficulty: {description.difficulty} {STAR_EMOJI * description.difficulty}")
    return "\n".join(lines)


def render_change_message(change, description) -> str:
    return f"{change.reason}\n\n{render_rules_message(description)}"


def render_canvas_markdown(description) -> str:
    """Rules message as a markdown block quote (hard line breaks kept)."""
    lines = [line.strip() for line in render_rules_message(description).split("\n")]
    return "> " + "  \n> ".join(lines)


class ConsoleAnnouncer:
    """Controller listener that prints each change with rich."""

    def __init__(self, controller, console: Optional[Console] = None, quiet: bool = False):
        self.controller = controller
        self.console = console or Console()
        self.quiet = quiet

    def __call__(self, change):
        self.console.print(f"[yellow]Ruleset updated: {rich_escape(change.reason)}[/yellow]")
        self.console.print(f"[yellow]New ruleset: {rich_escape(', '.join(sorted(change.ruleset)))}[/yellow]")
        if not self.quiet:
            message = render_rules_message(self.controller.describe_active())
            self.console.print(rich_escape(message), emoji=True)
