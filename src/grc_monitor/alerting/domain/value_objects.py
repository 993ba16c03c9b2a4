"""
Alerting Value Objects
======================

Pure predicates and renderers used when turning failing results into alerts.
"""

import re
from typing import Callable, Dict, Optional, Sequence

from grc_monitor.alerting.domain.entities import AlertRule
from grc_monitor.monitoring.domain import Test, TestResult


class RuleMatcher:
    """
    Decides whether an alert rule's match filters accept a (test, result) pair.

    Each non-empty match set must contain the corresponding attribute; an
    empty set accepts anything. Tags match on any intersection. The
    consecutive-failure requirement needs result history and is checked by
    the alert generator, not here.
    """

    @staticmethod
    def _accepts(allowed: Sequence[str], value: Optional[str]) -> bool:
        return not allowed or value in allowed

    @classmethod
    def matches(cls, rule: AlertRule, test: Test, result: TestResult) -> bool:
        if not rule.enabled:
            return False

        if not cls._accepts(rule.match_test_types, test.test_type):
            return False
        if not cls._accepts(rule.match_severities, test.severity):
            return False
        if not cls._accepts(rule.match_result_statuses, result.status):
            return False
        if not cls._accepts(rule.match_control_ids, test.control_id):
            return False
        if rule.match_tags and not set(rule.match_tags) & set(test.tags or []):
            return False

        return True


_PLACEHOLDER = re.compile(r"\{\{[^{}]*\}\}")

_SUBSTITUTIONS: Dict[str, Callable[[Test, TestResult], str]] = {
    "{{test.title}}": lambda test, result: test.title,
    "{{test.identifier}}": lambda test, result: test.identifier,
    "{{test.id}}": lambda test, result: test.id,
    "{{severity}}": lambda test, result: test.severity,
    "{{control_id}}": lambda test, result: test.control_id,
    "{{result.status}}": lambda test, result: result.status,
}


def default_title(test: Test) -> str:
    return f"{test.title} failed on {test.identifier}"


def render_title(template: Optional[str], test: Test, result: TestResult) -> str:
    """
    Render an alert title template.

    Single pass over `{{...}}` tokens with a fixed substitution table.
    Unknown placeholders are left as written; substituted values are never
    re-scanned. An empty template yields the default title.
    """
    if not template or not template.strip():
        return default_title(test)

    def substitute(match: "re.Match[str]") -> str:
        resolver = _SUBSTITUTIONS.get(match.group(0))
        if resolver is None:
            return match.group(0)
        value = resolver(test, result)
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(substitute, template)
