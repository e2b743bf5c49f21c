"""Centralized severity normalization and finding ordering."""

from auditpipe.rules.base import Severity

SEVERITY_MAPPINGS = {
    4: "CRITICAL",
    3: "HIGH",
    2: "MEDIUM",
    1: "LOW",
    0: "INFO",
    "error": "HIGH",
    "warning": "MEDIUM",
    "warn": "MEDIUM",
    "info": "INFO",
    "note": "LOW",
    "debug": "INFO",
    "fatal": "CRITICAL",
    "blocker": "CRITICAL",
    "major": "HIGH",
    "minor": "LOW",
    "trivial": "LOW",
    "style": "LOW",
    "formatting": "LOW",
    "critical": "CRITICAL",
    "high": "HIGH",
    "medium": "MEDIUM",
    "moderate": "MEDIUM",
    "low": "LOW",
}


def normalize_severity(severity_value, default: Severity = Severity.MEDIUM) -> Severity:
    """Normalize severity from various formats to the closed Severity enum.

    Accepts Severity members, tool labels ("error", "blocker"), numeric levels
    (0-4) and probability-style floats in [0, 1].
    """
    if isinstance(severity_value, Severity):
        return severity_value

    if severity_value is None:
        return default

    if isinstance(severity_value, bool):
        return default

    if isinstance(severity_value, (int, float)):
        if isinstance(severity_value, float) and 0.0 <= severity_value <= 1.0:
            if severity_value >= 0.9:
                return Severity.CRITICAL
            elif severity_value >= 0.7:
                return Severity.HIGH
            elif severity_value >= 0.4:
                return Severity.MEDIUM
            return Severity.LOW

        mapped = SEVERITY_MAPPINGS.get(int(severity_value))
        return Severity(mapped) if mapped else default

    severity_str = str(severity_value).strip()
    if severity_str.upper() in Severity.__members__:
        return Severity[severity_str.upper()]

    mapped = SEVERITY_MAPPINGS.get(severity_str.lower())
    return Severity(mapped) if mapped else default


def result_sort_key(result) -> tuple:
    """Total order for normalized results.

    Severity descending, then file path, then start line. The trailing fields
    only break ties so the order is total.
    """
    return (
        -result.severity.rank,
        result.file_path,
        result.line_start,
        result.rule_id or "",
        result.message,
        result.id,
    )


def sort_results(results):
    """Sort normalized results into report order."""
    if not results:
        return list(results)
    return sorted(results, key=result_sort_key)
