"""Maps free-form finding categories onto the closed taxonomy.

The table is the single source of truth: every category string an agent or
the shipped rule set emits has an entry. Anything else lands in the
QUALITY/GENERAL bucket with its confidence cut.
"""

from auditpipe.findings import (
    CategorizedFinding,
    FindingSource,
    MainCategory,
    RawFinding,
    SubCategory,
)

M, S = MainCategory, SubCategory

CATEGORY_TABLE: dict[str, tuple[MainCategory, SubCategory]] = {
    # STRUCTURE
    "structure/layer": (M.STRUCTURE, S.LAYER),
    "layer-violation": (M.STRUCTURE, S.LAYER),
    "fat-module": (M.STRUCTURE, S.LAYER),
    "structure/circular": (M.STRUCTURE, S.CIRCULAR),
    "circular-dependency": (M.STRUCTURE, S.CIRCULAR),
    # QUALITY
    "quality/complexity": (M.QUALITY, S.COMPLEXITY),
    "high-complexity": (M.QUALITY, S.COMPLEXITY),
    "long-function": (M.QUALITY, S.COMPLEXITY),
    "file-too-long": (M.QUALITY, S.COMPLEXITY),
    "deep-nesting": (M.QUALITY, S.COMPLEXITY),
    "too-many-parameters": (M.QUALITY, S.COMPLEXITY),
    "high-coupling": (M.QUALITY, S.COMPLEXITY),
    "deep-call-chain": (M.QUALITY, S.COMPLEXITY),
    "quality/duplication": (M.QUALITY, S.DUPLICATION),
    "dead-code": (M.QUALITY, S.DUPLICATION),
    "quality/maintainability": (M.QUALITY, S.GENERAL),
    "quality/general": (M.QUALITY, S.GENERAL),
    "ai-review": (M.QUALITY, S.GENERAL),
    # SECURITY
    "security/secret": (M.SECURITY, S.SECRET),
    "security/injection": (M.SECURITY, S.INJECTION),
    "security/xss": (M.SECURITY, S.XSS),
    "security/crypto": (M.SECURITY, S.CRYPTO),
    "security/input-validation": (M.SECURITY, S.INPUT_VALIDATION),
    "security/dependency": (M.SECURITY, S.DEPENDENCY),
    "typosquat-package": (M.SECURITY, S.DEPENDENCY),
    # OPERATIONS
    "operations/logging": (M.OPERATIONS, S.LOGGING),
    "operations/exception": (M.OPERATIONS, S.EXCEPTION),
    "operations/dependency": (M.OPERATIONS, S.DEPENDENCY),
    "unpinned-dependency": (M.OPERATIONS, S.DEPENDENCY),
    # TEST
    "test/coverage": (M.TEST, S.COVERAGE),
    "test/missing-test": (M.TEST, S.MISSING_TEST),
    # STANDARDS
    "standards/naming": (M.STANDARDS, S.NAMING),
    "standards/format": (M.STANDARDS, S.FORMAT),
    "parse-error": (M.STANDARDS, S.FORMAT),
    "standards/convention": (M.STANDARDS, S.CONVENTION),
}

FALLBACK = (MainCategory.QUALITY, SubCategory.GENERAL)
UNMAPPED_CONFIDENCE_FACTOR = 0.5

BASE_CONFIDENCE = {
    FindingSource.AST: 0.95,
    FindingSource.RULE: 0.9,
    FindingSource.SECURITY: 0.85,
    FindingSource.DEPENDENCY: 0.9,
}


def normalize_category(category: str) -> str:
    return category.strip().lower().replace("_", "-").replace(" ", "-").replace("\\", "/")


def lookup(category: str) -> tuple[MainCategory, SubCategory] | None:
    key = normalize_category(category)
    if key in CATEGORY_TABLE:
        return CATEGORY_TABLE[key]
    # "MAIN/SUB" spelled with the enum names, as the AI prompt shows them
    main, _, sub = key.partition("/")
    try:
        return MainCategory(main.upper()), SubCategory(sub.upper().replace("-", "_"))
    except ValueError:
        return None


def base_confidence(finding: RawFinding) -> float:
    if finding.source is FindingSource.AI:
        return finding.payload.model_confidence
    return BASE_CONFIDENCE[finding.source]


def categorize(finding: RawFinding) -> CategorizedFinding:
    mapping = lookup(finding.payload.category)
    confidence = base_confidence(finding)
    if mapping is None:
        return CategorizedFinding(
            main_category=FALLBACK[0],
            sub_category=FALLBACK[1],
            confidence=confidence * UNMAPPED_CONFIDENCE_FACTOR,
            mapped=False,
            finding=finding,
        )
    return CategorizedFinding(
        main_category=mapping[0],
        sub_category=mapping[1],
        confidence=confidence,
        mapped=True,
        finding=finding,
    )


def categorize_all(findings: list[RawFinding]) -> list[CategorizedFinding]:
    return [categorize(f) for f in findings]
