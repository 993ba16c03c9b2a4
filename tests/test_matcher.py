"""Tests for alert rule matching."""

import pytest

from grc_monitor.alerting.domain import RuleMatcher
from grc_monitor.config import ResultStatus, Severity, TestType
from tests.conftest import make_result, make_rule, make_test


@pytest.fixture()
def compliance_test():
    return make_test(tags=["iam", "sox"])


class RuleMatcherTests:
    """Empty match sets accept anything; non-empty sets must contain the value."""

    def test_rule_with_empty_filters_matches_any_status(self, compliance_test) -> None:
        rule = make_rule(match_result_statuses=[])

        for status in (ResultStatus.FAIL, ResultStatus.ERROR, ResultStatus.WARNING):
            assert RuleMatcher.matches(rule, compliance_test, make_result(compliance_test, "run-1", status=status))

    def test_disabled_rule_never_matches(self, compliance_test) -> None:
        rule = make_rule(enabled=False)

        assert not RuleMatcher.matches(rule, compliance_test, make_result(compliance_test, "run-1"))

    def test_result_status_filter(self, compliance_test) -> None:
        rule = make_rule(match_result_statuses=[ResultStatus.FAIL])

        assert RuleMatcher.matches(rule, compliance_test, make_result(compliance_test, "run-1", status=ResultStatus.FAIL))
        assert not RuleMatcher.matches(
            rule, compliance_test, make_result(compliance_test, "run-1", status=ResultStatus.ERROR)
        )

    def test_test_type_filter(self, compliance_test) -> None:
        result = make_result(compliance_test, "run-1")

        assert RuleMatcher.matches(make_rule(match_test_types=[TestType.CUSTOM]), compliance_test, result)
        assert not RuleMatcher.matches(make_rule(match_test_types=[TestType.NETWORK]), compliance_test, result)

    def test_severity_filter_uses_test_severity(self, compliance_test) -> None:
        result = make_result(compliance_test, "run-1")

        assert RuleMatcher.matches(make_rule(match_severities=[Severity.HIGH]), compliance_test, result)
        assert not RuleMatcher.matches(make_rule(match_severities=[Severity.LOW]), compliance_test, result)

    def test_control_filter(self, compliance_test) -> None:
        result = make_result(compliance_test, "run-1")

        assert RuleMatcher.matches(make_rule(match_control_ids=["AC-2", "AC-3"]), compliance_test, result)
        assert not RuleMatcher.matches(make_rule(match_control_ids=["CM-6"]), compliance_test, result)

    def test_tags_match_on_any_intersection(self, compliance_test) -> None:
        result = make_result(compliance_test, "run-1")

        assert RuleMatcher.matches(make_rule(match_tags=["sox", "pci"]), compliance_test, result)
        assert not RuleMatcher.matches(make_rule(match_tags=["pci"]), compliance_test, result)

    def test_untagged_test_fails_tag_filter(self) -> None:
        test = make_test(tags=[])

        assert not RuleMatcher.matches(make_rule(match_tags=["iam"]), test, make_result(test, "run-1"))

    def test_all_filters_must_accept(self, compliance_test) -> None:
        rule = make_rule(
            match_test_types=[TestType.CUSTOM],
            match_severities=[Severity.HIGH],
            match_control_ids=["CM-6"],
        )

        assert not RuleMatcher.matches(rule, compliance_test, make_result(compliance_test, "run-1"))
