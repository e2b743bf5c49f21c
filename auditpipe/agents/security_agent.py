"""Security agent: line-oriented signature scan for common vulnerability patterns."""

import re
from dataclasses import dataclass

from auditpipe.agents.base import AgentType, AnalysisUnit, FileBatchAgent
from auditpipe.findings import FindingSource, RawFinding, SecurityPayload
from auditpipe.rules.base import Severity

OWASP_A02 = "A02:2021-Cryptographic Failures"
OWASP_A03 = "A03:2021-Injection"
OWASP_A05 = "A05:2021-Security Misconfiguration"
OWASP_A07 = "A07:2021-Identification and Authentication Failures"
OWASP_A08 = "A08:2021-Software and Data Integrity Failures"
OWASP_A09 = "A09:2021-Security Logging and Monitoring Failures"


@dataclass(frozen=True)
class SecuritySignature:
    id: str
    name: str
    severity: Severity
    pattern: re.Pattern
    message: str
    category: str
    vulnerability_type: str
    cwe_id: str | None = None
    owasp_category: str | None = None
    suggestion: str | None = None
    languages: tuple[str, ...] = ()


def _sig(id, name, severity, pattern, message, category, vuln, cwe, owasp, suggestion, languages=(), flags=0):
    return SecuritySignature(
        id=id,
        name=name,
        severity=severity,
        pattern=re.compile(pattern, flags),
        message=message,
        category=category,
        vulnerability_type=vuln,
        cwe_id=cwe,
        owasp_category=owasp,
        suggestion=suggestion,
        languages=languages,
    )


SECURITY_SIGNATURES: tuple[SecuritySignature, ...] = (
    # Hard-coded secrets
    _sig("SEC001", "hardcoded-aws-key", Severity.CRITICAL,
         r"AWS_ACCESS_KEY_ID\s*[=:]\s*['\"][A-Z0-9]{20}['\"]|\bAKIA[0-9A-Z]{16}\b",
         "AWS access key is hard-coded", "security/secret", "hardcoded_secret", "CWE-798", OWASP_A07,
         "Load credentials from the environment or a secrets manager.", flags=re.I),
    _sig("SEC002", "hardcoded-aws-secret", Severity.CRITICAL,
         r"AWS_SECRET_ACCESS_KEY\s*[=:]\s*['\"][A-Za-z0-9/+=]{40}['\"]",
         "AWS secret key is hard-coded", "security/secret", "hardcoded_secret", "CWE-798", OWASP_A07,
         "Load credentials from the environment or a secrets manager.", flags=re.I),
    _sig("SEC003", "hardcoded-password", Severity.HIGH,
         r"\b(?:password|passwd|pwd)\s*=\s*['\"][^'\"]{6,}['\"]",
         "Password may be hard-coded", "security/secret", "hardcoded_secret", "CWE-798", OWASP_A07,
         "Read the password from configuration or a secrets manager.", flags=re.I),
    _sig("SEC004", "hardcoded-api-key", Severity.HIGH,
         r"\b(?:api[_-]?key|apikey|api[_-]?secret)\s*[=:]\s*['\"][A-Za-z0-9_\-]{20,}['\"]",
         "API key may be hard-coded", "security/secret", "hardcoded_secret", "CWE-798", OWASP_A07,
         "Read the key from an environment variable.", flags=re.I),
    _sig("SEC005", "hardcoded-jwt-secret", Severity.HIGH,
         r"\b(?:jwt[_-]?secret|token[_-]?secret|secret[_-]?key)\s*[=:]\s*['\"][^'\"]{10,}['\"]",
         "Token signing secret is hard-coded", "security/secret", "hardcoded_secret", "CWE-798", OWASP_A02,
         "Read the signing secret from an environment variable.", flags=re.I),
    # Injection
    _sig("SEC010", "sql-injection-interpolation", Severity.HIGH,
         r"(?:query|execute|raw)\s*\(\s*(?:[`'\"].*?\$\{.*?\}.*?[`'\"]|f['\"].*?\{.*?\}.*?['\"])",
         "SQL built with string interpolation", "security/injection", "sql_injection", "CWE-89", OWASP_A03,
         "Use parameterized queries."),
    _sig("SEC011", "sql-injection-concat", Severity.HIGH,
         r"(?:query|execute)\s*\([^)]*(?:\+\s*(?:req\.|request\.|params\.|body\.)|%\s*\(?\s*request\.)",
         "SQL concatenated with request input", "security/injection", "sql_injection", "CWE-89", OWASP_A03,
         "Use parameterized queries."),
    _sig("SEC012", "command-injection", Severity.HIGH,
         r"\bos\.system\s*\(|subprocess\.\w+\([^)]*shell\s*=\s*True|child_process\.exec(?:Sync)?\s*\(\s*`",
         "Shell command built from dynamic input", "security/injection", "command_injection", "CWE-78", OWASP_A03,
         "Pass an argument list without a shell."),
    _sig("SEC030", "eval-usage", Severity.CRITICAL,
         r"(?<![\w.])eval\s*\(",
         "eval() executes arbitrary code", "security/injection", "code_injection", "CWE-95", OWASP_A03,
         "Replace eval with a parser or lookup table."),
    _sig("SEC031", "function-constructor", Severity.HIGH,
         r"\bnew\s+Function\s*\(",
         "new Function() carries the same risk as eval", "security/injection", "code_injection", "CWE-95", OWASP_A03,
         "Avoid constructing functions from strings.", languages=("javascript", "typescript")),
    # XSS
    _sig("SEC020", "xss-innerhtml", Severity.HIGH,
         r"\.innerHTML\s*=\s*(?!['\"`])",
         "Dynamic value assigned to innerHTML", "security/xss", "xss", "CWE-79", OWASP_A03,
         "Use textContent or sanitize with DOMPurify.", languages=("javascript", "typescript")),
    _sig("SEC021", "xss-dangerously-set", Severity.MEDIUM,
         r"dangerouslySetInnerHTML",
         "dangerouslySetInnerHTML renders raw HTML", "security/xss", "xss", "CWE-79", OWASP_A03,
         "Sanitize user input before rendering.", languages=("javascript", "typescript")),
    # Crypto
    _sig("SEC040", "weak-hash-md5", Severity.MEDIUM,
         r"['\"`]md5['\"`]|hashlib\.md5\s*\(",
         "MD5 is a weak hash algorithm", "security/crypto", "weak_crypto", "CWE-328", OWASP_A02,
         "Use SHA-256 or stronger."),
    _sig("SEC041", "weak-hash-sha1", Severity.LOW,
         r"['\"`]sha1['\"`]|hashlib\.sha1\s*\(",
         "SHA-1 is no longer recommended", "security/crypto", "weak_crypto", "CWE-328", OWASP_A02,
         "Use SHA-256 or stronger."),
    # Misconfiguration
    _sig("SEC050", "plain-http", Severity.MEDIUM,
         r"['\"]http://(?!localhost|127\.0\.0\.1|0\.0\.0\.0)",
         "Plain HTTP URL", "security/input-validation", "insecure_transport", "CWE-319", OWASP_A02,
         "Use HTTPS."),
    _sig("SEC051", "cors-allow-all", Severity.MEDIUM,
         r"Access-Control-Allow-Origin['\"]?\s*[,:=]\s*['\"]\*['\"]|\borigin\s*[:=]\s*['\"]\*['\"]",
         "CORS allows every origin", "security/input-validation", "cors_misconfiguration", "CWE-942", OWASP_A05,
         "Allow only the origins that need access.", flags=re.I),
    _sig("SEC052", "debug-enabled", Severity.MEDIUM,
         r"^\s*DEBUG\s*=\s*True\b|\.run\([^)]*debug\s*=\s*True",
         "Debug mode enabled", "security/input-validation", "debug_enabled", "CWE-489", OWASP_A05,
         "Drive debug mode from configuration and keep it off in production."),
    _sig("SEC060", "disabled-auth", Severity.HIGH,
         r"\b(?:auth|authentication|authorize)\s*[=:]\s*(?:false|False)\b",
         "Authentication is disabled", "security/input-validation", "broken_auth", "CWE-306", OWASP_A07,
         "Enable authentication."),
    # Deserialization
    _sig("SEC070", "unsafe-deserialize", Severity.HIGH,
         r"JSON\.parse\s*\(\s*(?:req\.|request\.|body)|\bpickle\.loads?\s*\(|\byaml\.load\s*\((?![^)]*SafeLoader)",
         "Untrusted data deserialized without validation", "security/input-validation",
         "insecure_deserialization", "CWE-502", OWASP_A08,
         "Validate input and use safe loaders."),
    # Logging
    _sig("SEC080", "sensitive-data-logging", Severity.MEDIUM,
         r"(?:console\.log|logger\.\w+|logging\.\w+|print)\s*\([^)]*(?:password|secret|token|credential)",
         "Sensitive value may be written to logs", "operations/logging", "sensitive_logging", "CWE-532", OWASP_A09,
         "Mask sensitive values before logging.", flags=re.I),
)

EXCLUDED_PATH_PATTERNS = (
    re.compile(r"(^|/)(__tests__|tests?|fixtures?|__fixtures__)/"),
    re.compile(r"\.(test|spec)\.[jt]sx?$"),
    re.compile(r"(^|/)test_[^/]*\.py$|_test\.(py|go)$"),
    re.compile(r"(^|/)conftest\.py$"),
)


class SecurityAgent(FileBatchAgent):
    agent_type = AgentType.SECURITY
    max_duration_hint_ms = 30_000

    def __init__(self, signatures: tuple[SecuritySignature, ...] = SECURITY_SIGNATURES):
        self.signatures = signatures

    @staticmethod
    def is_excluded(path: str) -> bool:
        normalized = path.replace("\\", "/")
        return any(p.search(normalized) for p in EXCLUDED_PATH_PATTERNS)

    def analyze_unit(self, unit: AnalysisUnit) -> list[RawFinding]:
        if not unit.source.content or self.is_excluded(unit.path):
            return []
        applicable = [s for s in self.signatures if not s.languages or unit.language in s.languages]
        findings = []
        for lineno, line in enumerate(unit.source.content.splitlines(), 1):
            for sig in applicable:
                if not sig.pattern.search(line):
                    continue
                findings.append(
                    RawFinding(
                        source=FindingSource.SECURITY,
                        payload=SecurityPayload(
                            file_path=unit.path,
                            line_start=lineno,
                            line_end=lineno,
                            rule_id=sig.id,
                            category=sig.category,
                            severity=sig.severity,
                            message=sig.message,
                            suggestion=sig.suggestion,
                            vulnerability_type=sig.vulnerability_type,
                            cwe_id=sig.cwe_id,
                            owasp_category=sig.owasp_category,
                            snippet=line.strip()[:200],
                        ),
                    )
                )
        return findings
