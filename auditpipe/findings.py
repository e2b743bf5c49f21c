"""Finding data contracts.

Raw findings are a tagged union: a FindingSource plus a source-specific
payload. Every payload shares the location/classification fields the
categorizer and normalizer need; variants add their own evidence.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from auditpipe.rules.base import Severity


class FindingSource(Enum):
    """Which agent variant produced a finding."""

    AST = "ast"
    RULE = "rule"
    SECURITY = "security"
    DEPENDENCY = "dependency"
    AI = "ai"

    @property
    def deterministic(self) -> bool:
        return self is not FindingSource.AI


class MainCategory(Enum):
    STRUCTURE = "STRUCTURE"
    QUALITY = "QUALITY"
    SECURITY = "SECURITY"
    OPERATIONS = "OPERATIONS"
    TEST = "TEST"
    STANDARDS = "STANDARDS"


class SubCategory(Enum):
    # STRUCTURE
    LAYER = "LAYER"
    CIRCULAR = "CIRCULAR"
    # QUALITY
    COMPLEXITY = "COMPLEXITY"
    DUPLICATION = "DUPLICATION"
    # SECURITY
    INPUT_VALIDATION = "INPUT_VALIDATION"
    SECRET = "SECRET"
    INJECTION = "INJECTION"
    XSS = "XSS"
    CRYPTO = "CRYPTO"
    # OPERATIONS
    LOGGING = "LOGGING"
    EXCEPTION = "EXCEPTION"
    DEPENDENCY = "DEPENDENCY"
    # TEST
    COVERAGE = "COVERAGE"
    MISSING_TEST = "MISSING_TEST"
    # STANDARDS
    NAMING = "NAMING"
    FORMAT = "FORMAT"
    CONVENTION = "CONVENTION"
    # fallback bucket
    GENERAL = "GENERAL"


@dataclass(frozen=True, kw_only=True)
class FindingPayload:
    """Fields common to every raw finding."""

    file_path: str
    line_start: int
    line_end: int
    rule_id: str | None
    category: str
    severity: Severity
    message: str
    suggestion: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {}
        for name in self.__dataclass_fields__:
            value = getattr(self, name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, tuple):
                value = list(value)
            data[name] = value
        return data


@dataclass(frozen=True, kw_only=True)
class ASTPayload(FindingPayload):
    node_type: str = "file"
    symbol: str | None = None
    metric: str | None = None
    value: float | None = None
    threshold: float | None = None


@dataclass(frozen=True, kw_only=True)
class RulePayload(FindingPayload):
    rule_name: str
    rule_version: str
    registry_version: int
    references: tuple[str, ...] = ()


@dataclass(frozen=True, kw_only=True)
class SecurityPayload(FindingPayload):
    vulnerability_type: str
    cwe_id: str | None = None
    owasp_category: str | None = None
    snippet: str = ""


@dataclass(frozen=True, kw_only=True)
class DependencyPayload(FindingPayload):
    dependency_type: str
    packages: tuple[str, ...] = ()
    cycle: tuple[str, ...] = ()


@dataclass(frozen=True, kw_only=True)
class AIPayload(FindingPayload):
    explanation: str = ""
    target_result_id: str | None = None
    model_confidence: float = 0.6


_PAYLOAD_TYPES = {
    FindingSource.AST: ASTPayload,
    FindingSource.RULE: RulePayload,
    FindingSource.SECURITY: SecurityPayload,
    FindingSource.DEPENDENCY: DependencyPayload,
    FindingSource.AI: AIPayload,
}


@dataclass(frozen=True)
class RawFinding:
    """Tagged union of agent output."""

    source: FindingSource
    payload: FindingPayload

    def __post_init__(self):
        expected = _PAYLOAD_TYPES[self.source]
        if not isinstance(self.payload, expected):
            raise TypeError(
                f"{self.source.value} finding requires {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )

    @property
    def deterministic(self) -> bool:
        return self.source.deterministic

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source.value, "payload": self.payload.to_dict()}


@dataclass(frozen=True)
class CategorizedFinding:
    """A raw finding placed in the closed taxonomy."""

    main_category: MainCategory
    sub_category: SubCategory
    confidence: float
    mapped: bool
    finding: RawFinding


@dataclass(frozen=True)
class NormalizedResult:
    """Canonical, deduplicated finding. Immutable once produced."""

    id: str
    execution_id: str
    file_path: str
    line_start: int
    line_end: int
    language: str
    main_category: MainCategory
    sub_category: SubCategory
    rule_id: str | None
    severity: Severity
    message: str
    confidence: float
    deterministic: bool
    created_at: datetime
    suggestion: str | None = None
    explanation: str | None = None
    raw_result: dict[str, Any] = field(default_factory=dict, compare=False)

    def to_wire(self) -> dict[str, Any]:
        """Stable JSON shape for downstream consumers."""
        wire = {
            "id": self.id,
            "filePath": self.file_path,
            "lineStart": self.line_start,
            "lineEnd": self.line_end,
            "mainCategory": self.main_category.value,
            "subCategory": self.sub_category.value,
            "ruleId": self.rule_id,
            "severity": self.severity.value,
            "message": self.message,
            "confidence": round(self.confidence, 4),
            "deterministic": self.deterministic,
            "createdAt": self.created_at.isoformat(),
        }
        if self.suggestion is not None:
            wire["suggestion"] = self.suggestion
        if self.explanation is not None:
            wire["explanation"] = self.explanation
        return wire
