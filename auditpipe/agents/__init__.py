"""Analyzer agents: AST, rule, security, dependency and AI variants."""

from auditpipe.agents.ai_agent import AIAgent, AIReviewItem
from auditpipe.agents.ast_agent import ASTAgent
from auditpipe.agents.base import AgentType, AnalysisUnit, AnalyzerAgent, FileBatchAgent
from auditpipe.agents.dependency_agent import DependencyAgent
from auditpipe.agents.rule_agent import RuleAgent
from auditpipe.agents.security_agent import SecurityAgent

__all__ = [
    "AgentType",
    "AnalysisUnit",
    "AnalyzerAgent",
    "FileBatchAgent",
    "ASTAgent",
    "RuleAgent",
    "SecurityAgent",
    "DependencyAgent",
    "AIAgent",
    "AIReviewItem",
]
