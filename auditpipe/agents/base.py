"""Analyzer agent contract.

Every agent exposes execute(input) -> list[RawFinding]. The scheduler and the
orchestrator never look at which variant they are invoking; they only read
agent_type and max_duration_hint_ms.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from auditpipe.ast_parser import ParsedFile
from auditpipe.errors import InvalidAgentType, ValidationError
from auditpipe.findings import RawFinding
from auditpipe.pipeline.structures import SourceFile


class AgentType(Enum):
    """The five agent variants."""

    AST = "ast"
    RULE = "rule"
    SECURITY = "security"
    DEPENDENCY = "dependency"
    AI = "ai"

    @classmethod
    def parse(cls, value: Any) -> "AgentType":
        """Resolve an AgentType from a member or its string value."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise InvalidAgentType(value)


@dataclass(frozen=True)
class AnalysisUnit:
    """One source file with its detected language and parse tree."""

    source: SourceFile
    language: str
    parsed: ParsedFile | None = None

    @property
    def path(self) -> str:
        return self.source.path


class AnalyzerAgent(ABC):
    """Base class for analyzer agents."""

    agent_type: AgentType
    # Upper bound the agent expects to need per task; the scheduler uses it to
    # size the per-task timeout.
    max_duration_hint_ms: int | None = None

    def validate_input(self, payload: Any) -> None:
        """Reject malformed input at enqueue time. Raises ValidationError."""

    @abstractmethod
    def execute(self, payload: Any) -> list[RawFinding]:
        """Analyze the payload and return raw findings."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(agent_type={self.agent_type.value})"


class FileBatchAgent(AnalyzerAgent):
    """Agent whose input is a batch of AnalysisUnit objects."""

    def validate_input(self, payload: Any) -> None:
        if not isinstance(payload, (list, tuple)):
            raise ValidationError(
                f"{self.agent_type.value} agent expects a list of AnalysisUnit, "
                f"got {type(payload).__name__}"
            )
        for item in payload:
            if not isinstance(item, AnalysisUnit):
                raise ValidationError(
                    f"{self.agent_type.value} agent received {type(item).__name__}, "
                    "expected AnalysisUnit"
                )

    def execute(self, payload: list[AnalysisUnit]) -> list[RawFinding]:
        findings: list[RawFinding] = []
        for unit in payload:
            findings.extend(self.analyze_unit(unit))
        return findings

    def analyze_unit(self, unit: AnalysisUnit) -> list[RawFinding]:
        raise NotImplementedError
