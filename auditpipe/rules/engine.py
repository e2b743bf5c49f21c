"""Versioned rule registry and evaluator.

The registry upserts rules by id and bumps a version counter on every
mutation. Evaluation works on a snapshot of the enabled rules taken under the
lock, so findings carry the rule metadata as it was when evaluation began.
"""

import fnmatch
import re
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

from auditpipe.ast_parser import ParsedFile
from auditpipe.errors import ConfigError, ValidationError
from auditpipe.findings import FindingSource, RawFinding, RulePayload
from auditpipe.pipeline.structures import SourceFile, utcnow
from auditpipe.rules.base import (
    AST_FIELDS,
    NUMERIC_FIELDS,
    OPERATORS,
    ORDERING_OPERATORS,
    Condition,
    PatternKind,
    RuleDefinition,
    RuleMatch,
    RulePattern,
)
from auditpipe.utils.finding_priority import normalize_severity
from auditpipe.utils.logging import logger

AST_NODE_TYPES = frozenset({"function", "method", "class"})


def check_condition(rule_id: str, condition: Condition) -> None:
    """Reject a condition that could not be evaluated against a node.

    Raises:
        ConfigError: unknown field or operator, or a value the operator cannot use
    """
    if condition.field not in AST_FIELDS:
        raise ConfigError(f"Rule {rule_id}: unknown AST field {condition.field!r}")
    operator = condition.operator
    if operator not in OPERATORS:
        raise ConfigError(f"Rule {rule_id}: unknown operator {operator!r}")
    value = condition.value
    if operator == "matches":
        try:
            re.compile(str(value))
        except re.error as e:
            raise ConfigError(f"Rule {rule_id}: invalid regex in condition: {e}") from e
    elif operator == "in":
        if not isinstance(value, (list, tuple, set, frozenset, str)):
            raise ConfigError(
                f"Rule {rule_id}: 'in' on {condition.field!r} needs a list or string value, got {value!r}"
            )
    elif operator in ORDERING_OPERATORS:
        if condition.field not in NUMERIC_FIELDS:
            raise ConfigError(f"Rule {rule_id}: {operator!r} cannot compare non-numeric field {condition.field!r}")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"Rule {rule_id}: {operator!r} on {condition.field!r} needs a number, got {value!r}")


@dataclass(frozen=True)
class RuleChange:
    """One entry of a rule's history."""

    version: int
    action: str
    rule: RuleDefinition
    timestamp: datetime


def _glob_match(path: str, patterns: tuple[str, ...]) -> bool:
    normalized = path.replace("\\", "/")
    name = normalized.rsplit("/", 1)[-1]
    return any(fnmatch.fnmatch(normalized, p) or fnmatch.fnmatch(name, p) for p in patterns)


class RuleEngine:
    """Registry of RuleDefinitions plus the evaluator the rule agent uses."""

    def __init__(self, rules: list[RuleDefinition] | None = None):
        self._lock = threading.RLock()
        self._rules: dict[str, RuleDefinition] = {}
        self._history: dict[str, list[RuleChange]] = {}
        self._compiled: dict[str, re.Pattern] = {}
        self._version = 0
        for rule in rules or []:
            self.register(rule)

    # -- validation ---------------------------------------------------------

    def _compile(self, rule: RuleDefinition) -> re.Pattern | None:
        pattern = rule.pattern
        if not isinstance(pattern, RulePattern):
            raise ConfigError(f"Rule {rule.id}: pattern must be a RulePattern")

        if pattern.kind is PatternKind.REGEX:
            if not pattern.expression:
                raise ConfigError(f"Rule {rule.id}: regex pattern is empty")
            try:
                return re.compile(pattern.expression, re.IGNORECASE if pattern.ignore_case else 0)
            except re.error as e:
                raise ConfigError(f"Rule {rule.id}: invalid regex {pattern.expression!r}: {e}") from e

        if pattern.kind is PatternKind.KEYWORD:
            if not pattern.expression.strip():
                raise ConfigError(f"Rule {rule.id}: keyword pattern is empty")
            return None

        if not pattern.node_types:
            raise ConfigError(f"Rule {rule.id}: AST pattern needs at least one node type")
        unknown = set(pattern.node_types) - AST_NODE_TYPES
        if unknown:
            raise ConfigError(f"Rule {rule.id}: unknown node types {sorted(unknown)}")
        for condition in pattern.conditions:
            check_condition(rule.id, condition)
        return None

    def _validate(self, rule: RuleDefinition) -> re.Pattern | None:
        if not isinstance(rule, RuleDefinition):
            raise ValidationError(f"Expected RuleDefinition, got {type(rule).__name__}")
        if not rule.id or not rule.id.strip():
            raise ValidationError("Rule id must be a non-empty string")
        if not rule.name:
            raise ValidationError(f"Rule {rule.id}: name is required")
        if not rule.category:
            raise ValidationError(f"Rule {rule.id}: category is required")
        if not rule.message:
            raise ValidationError(f"Rule {rule.id}: message is required")
        return self._compile(rule)

    # -- mutation -----------------------------------------------------------

    def _record(self, rule: RuleDefinition, action: str) -> None:
        self._version += 1
        self._history.setdefault(rule.id, []).append(
            RuleChange(version=self._version, action=action, rule=rule, timestamp=utcnow())
        )

    def register(self, rule: RuleDefinition) -> int:
        """Insert or overwrite a rule by id. Returns the registry version.

        Raises:
            ValidationError: missing required fields
            ConfigError: the pattern does not compile or names unknown fields
        """
        compiled = self._validate(rule)
        with self._lock:
            existing = self._rules.get(rule.id)
            if existing == rule:
                return self._version
            self._rules[rule.id] = rule
            if compiled is not None:
                self._compiled[rule.id] = compiled
            else:
                self._compiled.pop(rule.id, None)
            self._record(rule, "registered" if existing is None else "updated")
            logger.debug(f"Rule {rule.id} {'registered' if existing is None else 'updated'} (v{self._version})")
            return self._version

    def register_many(self, rules: list[RuleDefinition]) -> int:
        with self._lock:
            for rule in rules:
                self.register(rule)
            return self._version

    def _set_enabled(self, rule_id: str, enabled: bool) -> int:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise ValidationError(f"Unknown rule: {rule_id}")
            if rule.enabled == enabled:
                return self._version
            updated = replace(rule, enabled=enabled)
            self._rules[rule_id] = updated
            self._record(updated, "enabled" if enabled else "disabled")
            return self._version

    def enable(self, rule_id: str) -> int:
        return self._set_enabled(rule_id, True)

    def disable(self, rule_id: str) -> int:
        return self._set_enabled(rule_id, False)

    # -- reads --------------------------------------------------------------

    def get_version(self) -> int:
        with self._lock:
            return self._version

    def get_rule(self, rule_id: str) -> RuleDefinition | None:
        with self._lock:
            return self._rules.get(rule_id)

    def get_rules(self, category: str | None = None, enabled: bool | None = None) -> list[RuleDefinition]:
        """Rules sorted by id, optionally filtered."""
        with self._lock:
            rules = list(self._rules.values())
        if category is not None:
            wanted = category.lower()
            rules = [r for r in rules if r.category.lower() == wanted or r.category.lower().startswith(wanted + "/")]
        if enabled is not None:
            rules = [r for r in rules if r.enabled == enabled]
        return sorted(rules, key=lambda r: r.id)

    def history(self, rule_id: str) -> list[RuleChange]:
        with self._lock:
            return list(self._history.get(rule_id, []))

    def __len__(self) -> int:
        with self._lock:
            return len(self._rules)

    # -- evaluation ---------------------------------------------------------

    @staticmethod
    def applies_to(rule: RuleDefinition, path: str, language: str | None) -> bool:
        if rule.languages and language not in rule.languages:
            return False
        if rule.file_patterns and not _glob_match(path, rule.file_patterns):
            return False
        if rule.exclude_patterns and _glob_match(path, rule.exclude_patterns):
            return False
        return True

    def _snapshot(self) -> tuple[int, list[tuple[RuleDefinition, re.Pattern | None]]]:
        with self._lock:
            rules = [
                (rule, self._compiled.get(rule.id))
                for rule in sorted(self._rules.values(), key=lambda r: r.id)
                if rule.enabled
            ]
            return self._version, rules

    @staticmethod
    def _text_matches(rule: RuleDefinition, compiled: re.Pattern | None, content: str) -> list[RuleMatch]:
        matches = []
        keyword = rule.pattern.expression.lower()
        for lineno, line in enumerate(content.splitlines(), 1):
            if compiled is not None:
                found = compiled.search(line)
                if found:
                    captures = {"match": found.group(0), "line": line.strip()}
                    captures.update({k: v for k, v in found.groupdict().items() if v is not None})
                    matches.append(RuleMatch(lineno, lineno, captures))
            elif keyword in line.lower():
                matches.append(RuleMatch(lineno, lineno, {"match": rule.pattern.expression, "line": line.strip()}))
        return matches

    @staticmethod
    def _ast_matches(rule: RuleDefinition, parsed: ParsedFile | None) -> list[RuleMatch]:
        if parsed is None:
            return []
        matches = []
        for node in parsed.nodes:
            if node.node_type not in rule.pattern.node_types:
                continue
            fields = node.fields()
            if all(cond.check(fields.get(cond.field)) for cond in rule.pattern.conditions):
                matches.append(RuleMatch(node.line_start, node.line_end, fields))
        return matches

    def evaluate(
        self,
        source: SourceFile,
        language: str | None = None,
        parsed: ParsedFile | None = None,
    ) -> list[RawFinding]:
        """Run every enabled rule against one file."""
        version, rules = self._snapshot()
        findings: list[RawFinding] = []
        for rule, compiled in rules:
            if not self.applies_to(rule, source.path, language):
                continue
            if rule.pattern.kind is PatternKind.AST:
                matches = self._ast_matches(rule, parsed)
            else:
                matches = self._text_matches(rule, compiled, source.content)
            for match in matches:
                findings.append(
                    RawFinding(
                        source=FindingSource.RULE,
                        payload=RulePayload(
                            file_path=source.path,
                            line_start=match.line_start,
                            line_end=match.line_end,
                            rule_id=rule.id,
                            category=rule.category,
                            severity=rule.severity,
                            message=rule.render_message(match.captures),
                            suggestion=rule.render_suggestion(match.captures),
                            rule_name=rule.name,
                            rule_version=rule.version,
                            registry_version=version,
                            references=rule.references,
                        ),
                    )
                )
        return findings

    # -- rule sets ----------------------------------------------------------

    def load_ruleset(self, data: dict[str, Any]) -> list[RuleDefinition]:
        """Register the rules of a parsed rule set, then apply its overrides."""
        if not isinstance(data, dict):
            raise ConfigError("Rule set must be a mapping")
        rules_data = data.get("rules") or []
        if not isinstance(rules_data, list):
            raise ConfigError("Rule set 'rules' must be a list")

        loaded = [rule_from_dict(item) for item in rules_data]
        with self._lock:
            for rule in loaded:
                self.register(rule)
            overrides = data.get("overrides") or {}
            if not isinstance(overrides, dict):
                raise ConfigError("Rule set 'overrides' must be a mapping")
            for rule_id, changes in overrides.items():
                self.apply_override(rule_id, changes)
        logger.info(f"Loaded rule set {data.get('name', '<unnamed>')!r}: {len(loaded)} rules, {len(overrides)} overrides")
        return [self._rules[rule.id] for rule in loaded]

    def load_ruleset_file(self, path: str | Path) -> list[RuleDefinition]:
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise ConfigError(f"Rule set not found: {path}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Rule set {path} is not valid YAML: {e}") from e
        return self.load_ruleset(data or {})

    def apply_override(self, rule_id: str, changes: dict[str, Any]) -> int:
        if not isinstance(changes, dict):
            raise ConfigError(f"Override for {rule_id} must be a mapping")
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None:
                raise ConfigError(f"Override targets unknown rule: {rule_id}")
            allowed = {"severity", "enabled", "message", "suggestion", "languages", "file_patterns", "exclude_patterns"}
            unknown = set(changes) - allowed
            if unknown:
                raise ConfigError(f"Override for {rule_id} has unsupported keys: {sorted(unknown)}")
            updates = dict(changes)
            if "severity" in updates:
                updates["severity"] = normalize_severity(updates["severity"])
            for key in ("languages", "file_patterns", "exclude_patterns"):
                if key in updates:
                    updates[key] = tuple(updates[key] or ())
            return self.register(replace(rule, **updates))


def _pattern_from_dict(rule_id: str, data: Any) -> RulePattern:
    if isinstance(data, str):
        return RulePattern.regex(data)
    if not isinstance(data, dict):
        raise ConfigError(f"Rule {rule_id}: pattern must be a string or mapping")
    kind_name = str(data.get("type", "regex")).lower()
    try:
        kind = PatternKind(kind_name)
    except ValueError as e:
        raise ConfigError(f"Rule {rule_id}: unknown pattern type {kind_name!r}") from e

    if kind is PatternKind.AST:
        conditions = []
        for cond in data.get("conditions") or []:
            if not isinstance(cond, dict) or "field" not in cond or "operator" not in cond:
                raise ConfigError(f"Rule {rule_id}: conditions need 'field' and 'operator'")
            value = cond.get("value")
            if isinstance(value, list):
                value = tuple(value)
            condition = Condition(
                field=cond["field"],
                operator=cond["operator"],
                value=value,
                negate=bool(cond.get("negate", False)),
            )
            check_condition(rule_id, condition)
            conditions.append(condition)
        node_types = data.get("node_types") or ["function", "method"]
        return RulePattern.ast(node_types, *conditions)

    return RulePattern(
        kind=kind,
        expression=str(data.get("expression", "")),
        ignore_case=bool(data.get("ignore_case", kind is PatternKind.KEYWORD)),
    )


def rule_from_dict(data: dict[str, Any]) -> RuleDefinition:
    """Build a RuleDefinition from its YAML/JSON form."""
    if not isinstance(data, dict):
        raise ConfigError(f"Rule entry must be a mapping, got {type(data).__name__}")
    missing = [key for key in ("id", "category", "pattern") if key not in data]
    if missing:
        raise ConfigError(f"Rule entry {data.get('id', '<no id>')} is missing {missing}")
    rule_id = str(data["id"])
    severity = normalize_severity(data.get("severity", "MEDIUM"), default=None)
    if severity is None:
        raise ConfigError(f"Rule {rule_id}: unknown severity {data.get('severity')!r}")
    return RuleDefinition(
        id=rule_id,
        name=str(data.get("name", rule_id)),
        category=str(data["category"]),
        severity=severity,
        pattern=_pattern_from_dict(rule_id, data["pattern"]),
        message=str(data.get("message") or data.get("description") or data.get("name", rule_id)),
        description=str(data.get("description", "")),
        version=str(data.get("version", "1.0.0")),
        enabled=bool(data.get("enabled", True)),
        suggestion=data.get("suggestion"),
        references=tuple(data.get("references") or ()),
        tags=tuple(data.get("tags") or ()),
        languages=tuple(data.get("languages") or ()),
        file_patterns=tuple(data.get("file_patterns") or ()),
        exclude_patterns=tuple(data.get("exclude_patterns") or ()),
    )
