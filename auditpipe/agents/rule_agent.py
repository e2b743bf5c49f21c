"""Rule agent: evaluates the rule registry against each file of a batch."""

from auditpipe.agents.base import AgentType, AnalysisUnit, FileBatchAgent
from auditpipe.findings import RawFinding
from auditpipe.rules.engine import RuleEngine


class RuleAgent(FileBatchAgent):
    agent_type = AgentType.RULE
    max_duration_hint_ms = 30_000

    def __init__(self, engine: RuleEngine):
        self.engine = engine

    def analyze_unit(self, unit: AnalysisUnit) -> list[RawFinding]:
        return self.engine.evaluate(unit.source, language=unit.language, parsed=unit.parsed)
