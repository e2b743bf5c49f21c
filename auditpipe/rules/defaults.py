"""Built-in rule set shipped with the package."""

from auditpipe.rules.base import Condition, RuleDefinition, RulePattern, Severity

FUNCTIONS = ("function", "method")
TEST_FILES = ("*test*", "*spec*", "tests/*", "*/tests/*", "__tests__/*", "*/__tests__/*")
JS_TS = ("javascript", "typescript")


def default_rules(
    complexity_threshold: int = 15,
    max_function_lines: int = 50,
    max_nesting: int = 4,
    max_params: int = 5,
) -> list[RuleDefinition]:
    """Quality, standards, operations and test rules."""
    return [
        RuleDefinition(
            id="QUA001",
            name="high-complexity",
            category="quality/complexity",
            severity=Severity.HIGH,
            pattern=RulePattern.ast(FUNCTIONS, Condition("complexity", "gt", complexity_threshold)),
            message=f"Function '{{name}}' has cyclomatic complexity {{complexity}} (threshold: {complexity_threshold})",
            description="Functions with many branches are hard to test and reason about.",
            suggestion="Split '{name}' into smaller functions or replace branching with lookup tables.",
            tags=("complexity",),
        ),
        RuleDefinition(
            id="QUA002",
            name="long-function",
            category="quality/complexity",
            severity=Severity.MEDIUM,
            pattern=RulePattern.ast(FUNCTIONS, Condition("line_count", "gt", max_function_lines)),
            message=f"Function '{{name}}' is {{line_count}} lines long (threshold: {max_function_lines})",
            suggestion="Extract cohesive blocks of '{name}' into helpers.",
        ),
        RuleDefinition(
            id="QUA003",
            name="unresolved-marker",
            category="quality/maintainability",
            severity=Severity.LOW,
            pattern=RulePattern.regex(r"\b(?P<marker>TODO|FIXME|HACK|XXX)\b"),
            message="Unresolved {marker} marker",
            suggestion="Resolve the {marker} or track it in the issue tracker.",
        ),
        RuleDefinition(
            id="QUA004",
            name="deep-nesting",
            category="quality/complexity",
            severity=Severity.MEDIUM,
            pattern=RulePattern.ast(FUNCTIONS, Condition("max_nesting", "gt", max_nesting)),
            message=f"Function '{{name}}' nests blocks {{max_nesting}} levels deep (threshold: {max_nesting})",
            suggestion="Use guard clauses or early returns to flatten '{name}'.",
        ),
        RuleDefinition(
            id="QUA005",
            name="long-parameter-list",
            category="quality/complexity",
            severity=Severity.LOW,
            pattern=RulePattern.ast(FUNCTIONS, Condition("param_count", "gt", max_params)),
            message=f"Function '{{name}}' takes {{param_count}} parameters (threshold: {max_params})",
            suggestion="Group related parameters into an options object or dataclass.",
        ),
        RuleDefinition(
            id="STY001",
            name="js-function-naming",
            category="standards/naming",
            severity=Severity.LOW,
            pattern=RulePattern.ast(("function",), Condition("name", "matches", r"^[A-Z]")),
            message="Function '{name}' should start with a lowercase letter (camelCase)",
            languages=JS_TS,
            # JSX components are PascalCase by convention
            exclude_patterns=("*.tsx", "*.jsx"),
        ),
        RuleDefinition(
            id="STY002",
            name="python-function-naming",
            category="standards/naming",
            severity=Severity.LOW,
            pattern=RulePattern.ast(
                FUNCTIONS, Condition("name", "matches", r"^_{0,2}[a-z0-9_]*$", negate=True)
            ),
            message="Function '{name}' should be snake_case",
            languages=("python",),
        ),
        RuleDefinition(
            id="STY003",
            name="class-naming",
            category="standards/naming",
            severity=Severity.LOW,
            pattern=RulePattern.ast(("class",), Condition("name", "matches", r"^_?[A-Z]", negate=True)),
            message="Class '{name}' should be PascalCase",
        ),
        RuleDefinition(
            id="STY004",
            name="trailing-whitespace",
            category="standards/format",
            severity=Severity.INFO,
            pattern=RulePattern.regex(r"\S[ \t]+$"),
            message="Trailing whitespace",
            enabled=False,
        ),
        RuleDefinition(
            id="OPS001",
            name="console-log",
            category="operations/logging",
            severity=Severity.LOW,
            pattern=RulePattern.regex(r"\bconsole\.(?P<method>log|debug|trace)\("),
            message="console.{method} left in production code",
            suggestion="Use the project logger instead of console.{method}.",
            languages=JS_TS,
            exclude_patterns=TEST_FILES,
        ),
        RuleDefinition(
            id="OPS002",
            name="print-statement",
            category="operations/logging",
            severity=Severity.LOW,
            pattern=RulePattern.regex(r"^\s*print\("),
            message="print() used instead of a logger",
            suggestion="Route output through the logging framework.",
            languages=("python",),
            exclude_patterns=TEST_FILES,
        ),
        RuleDefinition(
            id="OPS003",
            name="empty-catch",
            category="operations/exception",
            severity=Severity.MEDIUM,
            pattern=RulePattern.regex(r"\bcatch\s*(?:\([^)]*\))?\s*\{\s*\}"),
            message="Empty catch block swallows errors",
            suggestion="Log or rethrow the caught error.",
        ),
        RuleDefinition(
            id="OPS004",
            name="bare-except",
            category="operations/exception",
            severity=Severity.MEDIUM,
            pattern=RulePattern.regex(r"^\s*except\s*:"),
            message="Bare except catches SystemExit and KeyboardInterrupt",
            suggestion="Catch a specific exception class.",
            languages=("python",),
        ),
        RuleDefinition(
            id="TST001",
            name="skipped-test",
            category="test/coverage",
            severity=Severity.LOW,
            pattern=RulePattern.regex(r"\b(?:it|describe|test)\.skip\(|@pytest\.mark\.skip\b|\bxit\("),
            message="Skipped test reduces coverage",
            file_patterns=TEST_FILES,
        ),
        RuleDefinition(
            id="TST002",
            name="focused-test",
            category="test/coverage",
            severity=Severity.MEDIUM,
            pattern=RulePattern.regex(r"\b(?:it|describe|test)\.only\(|\bfit\(|\bfdescribe\("),
            message="Focused test disables the rest of the suite",
            suggestion="Remove .only before committing.",
            file_patterns=TEST_FILES,
        ),
    ]
