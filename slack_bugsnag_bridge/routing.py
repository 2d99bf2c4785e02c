"""Decide which Slack channels receive a Bugsnag error event."""

from __future__ import annotations

from typing import Iterable, List, Set

from slack_bugsnag_bridge.events import ErrorEvent
from slack_bugsnag_bridge.store.records import RoutingRule


def _normalise(value: str | None) -> str:
    return (value or "").strip().lower()


def _dimension_matches(allowed: Iterable[str], value: str | None) -> bool:
    options = {_normalise(item) for item in allowed if _normalise(item)}
    if not options:
        return True
    return _normalise(value) in options


def rule_matches(rule: RoutingRule, event: ErrorEvent) -> bool:
    """Return True when every non-empty filter on *rule* accepts *event*."""

    if rule.project_id != event.project_id:
        return False
    return (
        _dimension_matches(rule.environments, event.environment)
        and _dimension_matches(rule.severities, event.severity)
        and _dimension_matches(rule.events, event.trigger_type)
    )


def match_rules(rules: Iterable[RoutingRule], event: ErrorEvent) -> Set[str]:
    """Return the set of channel ids whose rules match *event*."""

    return {rule.channel_id for rule in rules if rule_matches(rule, event)}


def ordered_destinations(rules: Iterable[RoutingRule], event: ErrorEvent) -> List[str]:
    """Matched channel ids in rule order, without duplicates."""

    destinations: List[str] = []
    for rule in rules:
        if rule_matches(rule, event) and rule.channel_id not in destinations:
            destinations.append(rule.channel_id)
    return destinations
