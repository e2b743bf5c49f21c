"""Result normalizer: dedup, merge and order categorized findings.

Findings that share (file_path, line_start, rule_id) collapse into one
NormalizedResult carrying the highest severity seen and every distinct
suggestion. Inputs are sorted canonically before grouping, so the output is
identical regardless of the order agents finished in.

AI findings never displace a deterministic result at the same location; they
only attach an explanation and suggestion to it. AI findings at locations no
deterministic result occupies become non-deterministic results of their own.
"""

import uuid
from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime
from typing import Any

from auditpipe.findings import CategorizedFinding, FindingSource, NormalizedResult
from auditpipe.pipeline.structures import utcnow
from auditpipe.rules.base import Severity
from auditpipe.utils.finding_priority import sort_results

RESULT_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "auditpipe/normalized-result")

SUGGESTION_SEPARATOR = "\n"


def result_id(file_path: str, line_start: int, rule_id: str | None) -> str:
    """Stable fingerprint of a result location."""
    return str(uuid.uuid5(RESULT_NAMESPACE, f"{file_path}\x00{line_start}\x00{rule_id or ''}"))


def _canonical_key(item: CategorizedFinding) -> tuple:
    p = item.finding.payload
    return (
        p.file_path,
        p.line_start,
        p.rule_id or "",
        -p.severity.rank,
        p.line_end,
        p.message,
        p.suggestion or "",
        item.finding.source.value,
    )


def _join_distinct(values: Iterable[str | None]) -> str | None:
    seen: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return SUGGESTION_SEPARATOR.join(seen) if seen else None


class ResultNormalizer:
    def __init__(
        self,
        execution_id: str,
        languages: dict[str, str] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.execution_id = execution_id
        self.languages = languages or {}
        self.clock = clock

    def _merge_group(self, group: list[CategorizedFinding], created_at: datetime) -> NormalizedResult:
        # group is canonically sorted: highest severity first within the key
        lead = group[0]
        p = lead.finding.payload
        explanation = None
        if lead.finding.source is FindingSource.AI:
            explanation = _join_distinct(g.finding.payload.explanation for g in group)
        return NormalizedResult(
            id=result_id(p.file_path, p.line_start, p.rule_id),
            execution_id=self.execution_id,
            file_path=p.file_path,
            line_start=p.line_start,
            line_end=max(g.finding.payload.line_end for g in group),
            language=self.languages.get(p.file_path, "unknown"),
            main_category=lead.main_category,
            sub_category=lead.sub_category,
            rule_id=p.rule_id,
            severity=max((g.finding.payload.severity for g in group), key=lambda s: s.rank),
            message=p.message,
            confidence=max(g.confidence for g in group),
            deterministic=lead.finding.deterministic,
            created_at=created_at,
            suggestion=_join_distinct(g.finding.payload.suggestion for g in group),
            explanation=explanation,
            raw_result={
                "source": lead.finding.source.value,
                "findings": [g.finding.to_dict() for g in group],
                "mapped": all(g.mapped for g in group),
            },
        )

    @staticmethod
    def _group(items: list[CategorizedFinding]) -> list[list[CategorizedFinding]]:
        groups: dict[tuple, list[CategorizedFinding]] = {}
        for item in sorted(items, key=_canonical_key):
            p = item.finding.payload
            groups.setdefault((p.file_path, p.line_start, p.rule_id), []).append(item)
        return list(groups.values())

    def normalize(self, categorized: list[CategorizedFinding]) -> list[NormalizedResult]:
        """Deterministic findings in, ordered results out. AI input is merged per merge_ai."""
        created_at = self.clock()
        deterministic = [c for c in categorized if c.finding.deterministic]
        ai = [c for c in categorized if not c.finding.deterministic]
        results = [self._merge_group(group, created_at) for group in self._group(deterministic)]
        if ai:
            return self.merge_ai(results, ai)
        return sort_results(results)

    def merge_ai(self, results: list[NormalizedResult], ai_findings: list[CategorizedFinding]) -> list[NormalizedResult]:
        """Attach AI output to existing results or add it as new non-deterministic ones."""
        created_at = self.clock()
        by_id = {r.id: r for r in results}
        by_location: dict[tuple[str, int], list[str]] = {}
        for r in sort_results(results):
            if r.deterministic:
                by_location.setdefault((r.file_path, r.line_start), []).append(r.id)

        annotations: dict[str, list[CategorizedFinding]] = {}
        standalone: list[CategorizedFinding] = []
        for item in sorted(ai_findings, key=_canonical_key):
            p = item.finding.payload
            target = None
            if p.target_result_id in by_id and by_id[p.target_result_id].deterministic:
                target = p.target_result_id
            elif (p.file_path, p.line_start) in by_location:
                target = by_location[(p.file_path, p.line_start)][0]
            if target is None:
                standalone.append(item)
            else:
                annotations.setdefault(target, []).append(item)

        merged = []
        for r in results:
            notes = annotations.get(r.id)
            if not notes:
                merged.append(r)
                continue
            raw = dict(r.raw_result)
            raw["ai"] = [n.finding.to_dict() for n in notes]
            merged.append(
                replace(
                    r,
                    explanation=_join_distinct([r.explanation, *(n.finding.payload.explanation for n in notes)]),
                    suggestion=_join_distinct([r.suggestion, *(n.finding.payload.suggestion for n in notes)]),
                    raw_result=raw,
                )
            )

        existing_ids = {r.id for r in merged}
        for group in self._group(standalone):
            result = self._merge_group(group, created_at)
            if result.id not in existing_ids:
                merged.append(result)
                existing_ids.add(result.id)
        return sort_results(merged)


def filter_by_severity(results: list[NormalizedResult], min_severity: Severity | str) -> list[NormalizedResult]:
    minimum = min_severity if isinstance(min_severity, Severity) else Severity[str(min_severity).upper()]
    return [r for r in results if r.severity.rank >= minimum.rank]


def get_stats(results: list[NormalizedResult]) -> dict[str, Any]:
    by_severity = {s.value: 0 for s in Severity}
    by_language: dict[str, int] = {}
    by_category: dict[str, int] = {}
    for r in results:
        by_severity[r.severity.value] += 1
        by_language[r.language] = by_language.get(r.language, 0) + 1
        by_category[r.main_category.value] = by_category.get(r.main_category.value, 0) + 1
    return {
        "total": len(results),
        "bySeverity": by_severity,
        "byLanguage": by_language,
        "byCategory": by_category,
        "deterministic": sum(1 for r in results if r.deterministic),
    }
