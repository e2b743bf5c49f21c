"""AST agent: structural metrics over parsed functions and files."""

from auditpipe.agents.base import AgentType, AnalysisUnit, FileBatchAgent
from auditpipe.ast_parser import ASTNode, ASTParser
from auditpipe.findings import ASTPayload, FindingSource, RawFinding
from auditpipe.rules.base import Severity


class ASTAgent(FileBatchAgent):
    """Flags complexity, length, nesting and parameter-count outliers."""

    agent_type = AgentType.AST
    max_duration_hint_ms = 30_000

    def __init__(
        self,
        complexity_threshold: int = 15,
        max_function_lines: int = 50,
        max_file_lines: int = 300,
        max_nesting: int = 4,
        max_params: int = 5,
        parser: ASTParser | None = None,
    ):
        self.complexity_threshold = complexity_threshold
        self.max_function_lines = max_function_lines
        self.max_file_lines = max_file_lines
        self.max_nesting = max_nesting
        self.max_params = max_params
        self.parser = parser or ASTParser()

    def _finding(self, unit, rule_id, category, severity, message, *, node=None, metric=None,
                 value=None, threshold=None, suggestion=None, line_start=1, line_end=1):
        return RawFinding(
            source=FindingSource.AST,
            payload=ASTPayload(
                file_path=unit.path,
                line_start=node.line_start if node else line_start,
                line_end=node.line_end if node else line_end,
                rule_id=rule_id,
                category=category,
                severity=severity,
                message=message,
                suggestion=suggestion,
                node_type=node.node_type if node else "file",
                symbol=node.qualified_name if node else None,
                metric=metric,
                value=value,
                threshold=threshold,
            ),
        )

    def _check_function(self, unit: AnalysisUnit, node: ASTNode) -> list[RawFinding]:
        findings = []
        name = node.qualified_name
        if node.complexity > self.complexity_threshold:
            severity = Severity.HIGH if node.complexity > 2 * self.complexity_threshold else Severity.MEDIUM
            findings.append(self._finding(
                unit, "AST001", "high-complexity", severity,
                f"'{name}' has cyclomatic complexity {node.complexity} (threshold: {self.complexity_threshold})",
                node=node, metric="complexity", value=node.complexity, threshold=self.complexity_threshold,
                suggestion="Break the function into smaller units.",
            ))
        if node.line_count > self.max_function_lines:
            findings.append(self._finding(
                unit, "AST002", "long-function", Severity.MEDIUM,
                f"'{name}' spans {node.line_count} lines (threshold: {self.max_function_lines})",
                node=node, metric="line_count", value=node.line_count, threshold=self.max_function_lines,
            ))
        if node.max_nesting > self.max_nesting:
            findings.append(self._finding(
                unit, "AST004", "deep-nesting", Severity.MEDIUM,
                f"'{name}' nests {node.max_nesting} levels deep (threshold: {self.max_nesting})",
                node=node, metric="max_nesting", value=node.max_nesting, threshold=self.max_nesting,
                suggestion="Flatten with guard clauses.",
            ))
        if node.param_count > self.max_params:
            findings.append(self._finding(
                unit, "AST005", "too-many-parameters", Severity.LOW,
                f"'{name}' takes {node.param_count} parameters (threshold: {self.max_params})",
                node=node, metric="param_count", value=node.param_count, threshold=self.max_params,
            ))
        return findings

    def analyze_unit(self, unit: AnalysisUnit) -> list[RawFinding]:
        parsed = unit.parsed or self.parser.parse_file(unit.source, unit.language)
        findings = []

        if parsed.parse_error:
            findings.append(self._finding(
                unit, "AST006", "parse-error", Severity.INFO,
                f"File could not be parsed: {parsed.parse_error}",
            ))

        if parsed.line_count > self.max_file_lines:
            findings.append(self._finding(
                unit, "AST003", "file-too-long", Severity.LOW,
                f"File has {parsed.line_count} lines (threshold: {self.max_file_lines})",
                metric="line_count", value=parsed.line_count, threshold=self.max_file_lines,
                suggestion="Split the module by responsibility.",
                line_end=parsed.line_count,
            ))

        for node in parsed.functions:
            findings.extend(self._check_function(unit, node))
        return findings
