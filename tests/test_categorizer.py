"""Tests for taxonomy mapping of raw findings."""

import pytest

from auditpipe.categorizer import CATEGORY_TABLE, categorize, categorize_all, lookup
from auditpipe.findings import (
    AIPayload,
    ASTPayload,
    FindingSource,
    MainCategory,
    RawFinding,
    SecurityPayload,
    SubCategory,
)
from auditpipe.rules.base import Severity
from auditpipe.rules.defaults import default_rules


def _ast_finding(category):
    return RawFinding(
        source=FindingSource.AST,
        payload=ASTPayload(
            file_path="a.py",
            line_start=1,
            line_end=1,
            rule_id="AST001",
            category=category,
            severity=Severity.MEDIUM,
            message="m",
        ),
    )


@pytest.mark.parametrize(
    "category, expected",
    [
        ("circular-dependency", (MainCategory.STRUCTURE, SubCategory.CIRCULAR)),
        ("high-complexity", (MainCategory.QUALITY, SubCategory.COMPLEXITY)),
        ("quality/maintainability", (MainCategory.QUALITY, SubCategory.GENERAL)),
        ("Security/XSS", (MainCategory.SECURITY, SubCategory.XSS)),
        ("unpinned_dependency", (MainCategory.OPERATIONS, SubCategory.DEPENDENCY)),
        ("TEST/MISSING_TEST", (MainCategory.TEST, SubCategory.MISSING_TEST)),
    ],
)
def test_lookup(category, expected):
    """Table keys match after case and separator normalization."""
    assert lookup(category) == expected


def test_every_default_rule_category_is_mapped():
    """The shipped rule set never lands in the fallback bucket."""
    for rule in default_rules():
        assert lookup(rule.category) is not None, rule.category


def test_mapped_finding_keeps_base_confidence():
    result = categorize(_ast_finding("long-function"))
    assert result.mapped is True
    assert result.main_category is MainCategory.QUALITY
    assert result.sub_category is SubCategory.COMPLEXITY
    assert result.confidence == pytest.approx(0.95)


def test_unmapped_category_falls_back_with_reduced_confidence():
    result = categorize(_ast_finding("something-new"))
    assert result.mapped is False
    assert (result.main_category, result.sub_category) == (MainCategory.QUALITY, SubCategory.GENERAL)
    assert result.confidence == pytest.approx(0.95 * 0.5)


def test_security_confidence():
    finding = RawFinding(
        source=FindingSource.SECURITY,
        payload=SecurityPayload(
            file_path="a.py",
            line_start=3,
            line_end=3,
            rule_id="SEC030",
            category="security/injection",
            severity=Severity.CRITICAL,
            message="eval",
            vulnerability_type="code_injection",
        ),
    )
    result = categorize(finding)
    assert result.sub_category is SubCategory.INJECTION
    assert result.confidence == pytest.approx(0.85)


def test_ai_confidence_comes_from_model():
    finding = RawFinding(
        source=FindingSource.AI,
        payload=AIPayload(
            file_path="a.py",
            line_start=3,
            line_end=3,
            rule_id="AI001",
            category="ai-review",
            severity=Severity.LOW,
            message="note",
            model_confidence=0.4,
        ),
    )
    assert categorize(finding).confidence == pytest.approx(0.4)


def test_categorize_all_preserves_order():
    findings = [_ast_finding("deep-nesting"), _ast_finding("parse-error")]
    results = categorize_all(findings)
    assert [r.finding for r in results] == findings
    assert results[1].main_category is MainCategory.STANDARDS


def test_table_targets_are_enum_members():
    for main, sub in CATEGORY_TABLE.values():
        assert isinstance(main, MainCategory)
        assert isinstance(sub, SubCategory)


def test_payload_mismatch_rejected():
    with pytest.raises(TypeError):
        RawFinding(source=FindingSource.RULE, payload=_ast_finding("x").payload)
