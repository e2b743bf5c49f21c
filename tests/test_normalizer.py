"""Tests for result deduplication, merging and ordering."""

import random
from datetime import datetime, timezone

import pytest

from auditpipe.categorizer import categorize, categorize_all
from auditpipe.findings import AIPayload, FindingSource, RawFinding, RulePayload, SecurityPayload
from auditpipe.normalizer import ResultNormalizer, filter_by_severity, get_stats, result_id
from auditpipe.rules.base import Severity

FIXED = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _rule_finding(path, line, rule_id="QUA003", severity=Severity.LOW, suggestion=None, message="Unresolved TODO marker"):
    return RawFinding(
        source=FindingSource.RULE,
        payload=RulePayload(
            file_path=path,
            line_start=line,
            line_end=line,
            rule_id=rule_id,
            category="quality/maintainability",
            severity=severity,
            message=message,
            suggestion=suggestion,
            rule_name="unresolved-marker",
            rule_version="1.0.0",
            registry_version=1,
        ),
    )


def _security_finding(path, line, rule_id="SEC030", severity=Severity.CRITICAL):
    return RawFinding(
        source=FindingSource.SECURITY,
        payload=SecurityPayload(
            file_path=path,
            line_start=line,
            line_end=line,
            rule_id=rule_id,
            category="security/injection",
            severity=severity,
            message="eval() executes arbitrary code",
            vulnerability_type="code_injection",
        ),
    )


def _ai_finding(path, line, target=None, severity=Severity.HIGH, explanation="Looks risky"):
    return RawFinding(
        source=FindingSource.AI,
        payload=AIPayload(
            file_path=path,
            line_start=line,
            line_end=line,
            rule_id="AI001",
            category="ai-review",
            severity=severity,
            message="AI note",
            suggestion="Refactor",
            explanation=explanation,
            target_result_id=target,
            model_confidence=0.7,
        ),
    )


@pytest.fixture
def normalizer():
    return ResultNormalizer("exec_test", languages={"a.py": "python"}, clock=lambda: FIXED)


def test_same_location_and_rule_merge_to_highest_severity(normalizer):
    """A LOW and a MEDIUM QUA003 hit on the same line become one MEDIUM result."""
    findings = categorize_all([
        _rule_finding("a.py", 3, severity=Severity.LOW, suggestion="Resolve it"),
        _rule_finding("a.py", 3, severity=Severity.MEDIUM, suggestion="Track it"),
    ])
    results = normalizer.normalize(findings)
    assert len(results) == 1
    result = results[0]
    assert result.severity is Severity.MEDIUM
    assert result.suggestion.split("\n") == ["Track it", "Resolve it"]
    assert len(result.raw_result["findings"]) == 2
    assert result.deterministic is True
    assert result.language == "python"
    assert result.id == result_id("a.py", 3, "QUA003")


def test_different_rules_stay_separate(normalizer):
    findings = categorize_all([_rule_finding("a.py", 3), _security_finding("a.py", 3)])
    assert len(normalizer.normalize(findings)) == 2


def test_output_independent_of_input_order(normalizer):
    findings = categorize_all([
        _rule_finding("b.py", 9),
        _rule_finding("a.py", 3, severity=Severity.MEDIUM),
        _security_finding("a.py", 7),
        _rule_finding("a.py", 3, suggestion="x"),
        _security_finding("c.py", 1, rule_id="SEC040", severity=Severity.MEDIUM),
    ])
    expected = normalizer.normalize(findings)
    for seed in range(5):
        shuffled = list(findings)
        random.Random(seed).shuffle(shuffled)
        assert normalizer.normalize(shuffled) == expected


def test_results_ordered_by_severity_path_line(normalizer):
    findings = categorize_all([
        _rule_finding("b.py", 2),
        _rule_finding("a.py", 9),
        _security_finding("z.py", 5),
        _rule_finding("a.py", 1),
    ])
    results = normalizer.normalize(findings)
    assert [(r.file_path, r.line_start) for r in results] == [
        ("z.py", 5),
        ("a.py", 1),
        ("a.py", 9),
        ("b.py", 2),
    ]


def test_ids_stable_across_executions():
    findings = categorize_all([_rule_finding("a.py", 3)])
    first = ResultNormalizer("exec_1").normalize(findings)[0]
    second = ResultNormalizer("exec_2").normalize(findings)[0]
    assert first.id == second.id
    assert first.execution_id != second.execution_id


class TestMergeAI:
    def test_ai_annotates_but_never_overrides(self, normalizer):
        """An AI finding on a deterministic result adds text; severity stays."""
        base = normalizer.normalize(categorize_all([_rule_finding("a.py", 3)]))
        target = base[0]
        merged = normalizer.merge_ai(base, [categorize(_ai_finding("a.py", 3, target=target.id))])

        assert len(merged) == 1
        result = merged[0]
        assert result.severity is Severity.LOW
        assert result.deterministic is True
        assert result.message == target.message
        assert result.explanation == "Looks risky"
        assert "Refactor" in result.suggestion
        assert len(result.raw_result["ai"]) == 1

    def test_ai_matches_by_location_without_target(self, normalizer):
        base = normalizer.normalize(categorize_all([_security_finding("a.py", 7)]))
        merged = normalizer.merge_ai(base, [categorize(_ai_finding("a.py", 7))])
        assert len(merged) == 1
        assert merged[0].severity is Severity.CRITICAL
        assert merged[0].explanation == "Looks risky"

    def test_ai_at_new_location_is_non_deterministic(self, normalizer):
        base = normalizer.normalize(categorize_all([_rule_finding("a.py", 3)]))
        merged = normalizer.merge_ai(base, [categorize(_ai_finding("a.py", 20))])
        assert len(merged) == 2
        extra = next(r for r in merged if r.line_start == 20)
        assert extra.deterministic is False
        assert extra.rule_id == "AI001"
        assert extra.confidence == pytest.approx(0.7)

    def test_normalize_routes_ai_input_through_merge(self, normalizer):
        findings = categorize_all([_rule_finding("a.py", 3), _ai_finding("a.py", 3)])
        results = normalizer.normalize(findings)
        assert len(results) == 1
        assert results[0].deterministic is True
        assert results[0].explanation == "Looks risky"


def test_stats_and_filter(normalizer):
    results = normalizer.normalize(categorize_all([
        _rule_finding("a.py", 1),
        _rule_finding("a.py", 2, severity=Severity.MEDIUM),
        _security_finding("a.py", 3),
    ]))
    stats = get_stats(results)
    assert stats["total"] == 3
    assert stats["bySeverity"] == {"CRITICAL": 1, "HIGH": 0, "MEDIUM": 1, "LOW": 1, "INFO": 0}
    assert stats["byCategory"] == {"SECURITY": 1, "QUALITY": 2}
    assert stats["byLanguage"] == {"python": 3}
    assert stats["deterministic"] == 3
    assert [r.severity for r in filter_by_severity(results, "medium")] == [Severity.CRITICAL, Severity.MEDIUM]


def test_wire_shape(normalizer):
    result = normalizer.normalize(categorize_all([_rule_finding("a.py", 3, suggestion="Fix")]))[0]
    wire = result.to_wire()
    assert wire["filePath"] == "a.py"
    assert wire["mainCategory"] == "QUALITY"
    assert wire["subCategory"] == "GENERAL"
    assert wire["severity"] == "LOW"
    assert wire["suggestion"] == "Fix"
    assert "explanation" not in wire
    assert wire["createdAt"] == FIXED.isoformat()
