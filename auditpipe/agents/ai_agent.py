"""AI agent: asks a completion service to review a batch of normalized results."""

import json
import re
from dataclasses import dataclass
from typing import Any

from auditpipe.agents.base import AgentType, AnalyzerAgent
from auditpipe.ai_client import AICompletionService
from auditpipe.errors import ExecutionError, ValidationError
from auditpipe.findings import AIPayload, FindingSource, NormalizedResult, RawFinding
from auditpipe.utils.finding_priority import normalize_severity
from auditpipe.utils.logging import logger

DEFAULT_AI_RULE_ID = "AI001"
DEFAULT_AI_CATEGORY = "ai-review"

PROMPT_INSTRUCTIONS = (
    "For each finding, explain the risk in one or two sentences and propose a concrete fix. "
    "You may report additional issues you see in the snippets. Respond with "
    '{"findings": [{"id": <finding id or null>, "filePath": str, "lineStart": int, '
    '"lineEnd": int, "severity": "CRITICAL|HIGH|MEDIUM|LOW|INFO", "category": str, '
    '"message": str, "explanation": str, "suggestion": str, "confidence": 0..1}]}'
)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.M)


@dataclass(frozen=True)
class AIReviewItem:
    """A normalized result plus the code around it."""

    result: NormalizedResult
    snippet: str = ""


class AIAgent(AnalyzerAgent):
    agent_type = AgentType.AI
    max_duration_hint_ms = 45_000

    def __init__(self, service: AICompletionService):
        self.service = service

    def validate_input(self, payload: Any) -> None:
        if not isinstance(payload, (list, tuple)) or not all(isinstance(i, AIReviewItem) for i in payload):
            raise ValidationError("ai agent expects a list of AIReviewItem")

    @staticmethod
    def build_prompt(items: list[AIReviewItem]) -> dict[str, Any]:
        return {
            "task": "review-findings",
            "instructions": PROMPT_INSTRUCTIONS,
            "findings": [
                {
                    "id": item.result.id,
                    "filePath": item.result.file_path,
                    "lineStart": item.result.line_start,
                    "lineEnd": item.result.line_end,
                    "ruleId": item.result.rule_id,
                    "severity": item.result.severity.value,
                    "category": f"{item.result.main_category.value}/{item.result.sub_category.value}",
                    "message": item.result.message,
                    "snippet": item.snippet,
                }
                for item in items
            ],
        }

    async def execute(self, payload: list[AIReviewItem]) -> list[RawFinding]:
        if not payload:
            return []
        text = await self.service.complete(self.build_prompt(payload))
        return self.parse_response(text, payload)

    def parse_response(self, text: str, items: list[AIReviewItem]) -> list[RawFinding]:
        """Turn the model's JSON answer into AI findings.

        Raises:
            ExecutionError: the answer is not a JSON object with a findings list
        """
        try:
            data = json.loads(_FENCE.sub("", text.strip()))
        except json.JSONDecodeError as e:
            raise ExecutionError(f"AI response is not valid JSON: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("findings"), list):
            raise ExecutionError("AI response lacks a 'findings' list")

        by_id = {item.result.id: item.result for item in items}
        findings = []
        for entry in data["findings"]:
            finding = self._to_finding(entry, by_id)
            if finding is not None:
                findings.append(finding)
        return findings

    def _to_finding(self, entry: Any, by_id: dict[str, NormalizedResult]) -> RawFinding | None:
        if not isinstance(entry, dict):
            logger.warning(f"Ignoring non-object AI finding: {entry!r}")
            return None
        target = by_id.get(entry.get("id"))
        try:
            file_path = str(entry.get("filePath") or (target.file_path if target else ""))
            line_start = int(entry.get("lineStart") or (target.line_start if target else 0))
            line_end = int(entry.get("lineEnd") or (target.line_end if target else line_start))
        except (TypeError, ValueError):
            logger.warning(f"Ignoring AI finding with bad location: {entry!r}")
            return None
        if not file_path or line_start < 1:
            logger.warning(f"Ignoring AI finding without location: {entry!r}")
            return None

        try:
            confidence = float(entry.get("confidence", 0.6))
        except (TypeError, ValueError):
            confidence = 0.6
        confidence = min(max(confidence, 0.0), 1.0)

        explanation = str(entry.get("explanation") or "")
        message = str(entry.get("message") or explanation or "AI review note")
        rule_id = entry.get("ruleId") or (target.rule_id if target else None) or DEFAULT_AI_RULE_ID
        return RawFinding(
            source=FindingSource.AI,
            payload=AIPayload(
                file_path=file_path,
                line_start=line_start,
                line_end=max(line_end, line_start),
                rule_id=str(rule_id),
                category=str(entry.get("category") or DEFAULT_AI_CATEGORY),
                severity=normalize_severity(entry.get("severity")),
                message=message,
                suggestion=entry.get("suggestion") or None,
                explanation=explanation,
                target_result_id=target.id if target else None,
                model_confidence=confidence,
            ),
        )
