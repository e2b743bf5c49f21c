"""Base contracts for rule definitions."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Severity(Enum):
    """Closed severity scale shared by every agent."""

    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"

    @property
    def rank(self) -> int:
        """Higher is more severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 5,
    Severity.HIGH: 4,
    Severity.MEDIUM: 3,
    Severity.LOW: 2,
    Severity.INFO: 1,
}


class PatternKind(Enum):
    """How a rule pattern is matched."""

    REGEX = "regex"
    KEYWORD = "keyword"
    AST = "ast"


AST_FIELDS = frozenset({
    "name",
    "node_type",
    "complexity",
    "max_nesting",
    "param_count",
    "line_count",
})

OPERATORS = frozenset({
    "equals",
    "contains",
    "matches",
    "startswith",
    "endswith",
    "gt",
    "gte",
    "lt",
    "lte",
    "in",
    "exists",
})

# Ordering operators compare numbers, so they only apply to numeric fields.
ORDERING_OPERATORS = frozenset({"gt", "gte", "lt", "lte"})
NUMERIC_FIELDS = frozenset({"complexity", "max_nesting", "param_count", "line_count"})


@dataclass(frozen=True)
class Condition:
    """One predicate over an AST node field."""

    field: str
    operator: str
    value: Any = None
    negate: bool = False

    def check(self, actual: Any) -> bool:
        matched = _compare(actual, self.operator, self.value)
        return not matched if self.negate else matched


def _compare(actual: Any, operator: str, target: Any) -> bool:
    if operator == "exists":
        return actual is not None
    if actual is None:
        return False
    if operator == "equals":
        return actual == target
    if operator == "contains":
        return str(target) in str(actual)
    if operator == "matches":
        return re.search(str(target), str(actual)) is not None
    if operator == "startswith":
        return str(actual).startswith(str(target))
    if operator == "endswith":
        return str(actual).endswith(str(target))
    if operator == "in":
        return actual in target
    if operator == "gt":
        return actual > target
    if operator == "gte":
        return actual >= target
    if operator == "lt":
        return actual < target
    if operator == "lte":
        return actual <= target
    return False


@dataclass(frozen=True)
class RulePattern:
    """Matching condition of a rule.

    REGEX and KEYWORD patterns are applied line by line to file content.
    AST patterns match parsed nodes whose type is in node_types and which
    satisfy every condition.
    """

    kind: PatternKind
    expression: str = ""
    node_types: tuple[str, ...] = ()
    conditions: tuple[Condition, ...] = ()
    ignore_case: bool = False

    @classmethod
    def regex(cls, expression: str, ignore_case: bool = False) -> "RulePattern":
        return cls(kind=PatternKind.REGEX, expression=expression, ignore_case=ignore_case)

    @classmethod
    def keyword(cls, word: str) -> "RulePattern":
        return cls(kind=PatternKind.KEYWORD, expression=word, ignore_case=True)

    @classmethod
    def ast(cls, node_types, *conditions: Condition) -> "RulePattern":
        return cls(kind=PatternKind.AST, node_types=tuple(node_types), conditions=tuple(conditions))


@dataclass(frozen=True)
class RuleDefinition:
    """Declarative rule: a pattern plus the metadata stamped on its findings."""

    id: str
    name: str
    category: str
    severity: Severity
    pattern: RulePattern
    message: str
    description: str = ""
    version: str = "1.0.0"
    enabled: bool = True
    suggestion: str | None = None
    references: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    languages: tuple[str, ...] = ()
    file_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()

    def render_message(self, captures: dict[str, Any]) -> str:
        """Format the message with match captures; unknown placeholders are left as-is."""
        return _safe_format(self.message, captures)

    def render_suggestion(self, captures: dict[str, Any]) -> str | None:
        if self.suggestion is None:
            return None
        return _safe_format(self.suggestion, captures)


class _KeepMissing(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def _safe_format(template: str, captures: dict[str, Any]) -> str:
    try:
        return template.format_map(_KeepMissing(captures))
    except (ValueError, IndexError, AttributeError):
        return template


@dataclass
class RuleMatch:
    """A single location where a rule pattern matched."""

    line_start: int
    line_end: int
    captures: dict[str, Any] = field(default_factory=dict)
