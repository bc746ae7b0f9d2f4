from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from orderrrr.src.config import ManagedResourceRule


@dataclass(frozen=True)
class ParsedTimestamp:
    value: datetime
    defaulted: bool


def format_rfc3339(moment: datetime) -> str:
    """Return *moment* as a compact UTC RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return moment.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_restart_timestamp(raw: str | None, now: datetime) -> ParsedTimestamp:
    """Parse a ``last-rolling-restart`` annotation value.

    An absent, unparsable or offset-less value yields *now* with
    ``defaulted=True``: treating the controller as just restarted holds it
    back for a full cooldown instead of restarting it on every tick.
    """
    if not raw:
        return ParsedTimestamp(value=now, defaulted=True)
    try:
        parsed = datetime.fromisoformat(raw.strip())
    except ValueError:
        return ParsedTimestamp(value=now, defaulted=True)
    if parsed.tzinfo is None:
        return ParsedTimestamp(value=now, defaulted=True)
    return ParsedTimestamp(value=parsed, defaulted=False)


def effective_cooldown(default: timedelta, rules: Iterable[ManagedResourceRule]) -> timedelta:
    """Return the most conservative cooldown among *default* and the rule overrides."""
    cooldowns = [rule.restart_cooldown for rule in rules if rule.restart_cooldown is not None]
    return max([default, *cooldowns])


def permitted(
    last_restart: datetime,
    cooldown: timedelta,
    last_global_action: datetime | None,
    stagger: timedelta,
    now: datetime,
) -> bool:
    """Return True if a restart may be issued at *now*.

    Both the per-controller cooldown and the process-wide stagger must have
    fully elapsed; reaching either threshold exactly counts as elapsed.
    ``last_global_action`` is ``None`` until the process issues its first restart.
    """
    if now - last_restart < cooldown:
        return False
    if last_global_action is not None and now - last_global_action < stagger:
        return False
    return True
