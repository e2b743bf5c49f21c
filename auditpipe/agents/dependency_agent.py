"""Dependency agent: import graph and package manifest checks.

Unlike the other file agents it needs the whole project at once, so the
orchestrator hands it every analyzable file plus the package manifests in a
single task.
"""

import json
import posixpath
import re
from collections import defaultdict

from auditpipe.agents.base import AgentType, AnalysisUnit, FileBatchAgent
from auditpipe.ast_parser import ASTParser
from auditpipe.findings import DependencyPayload, FindingSource, RawFinding
from auditpipe.rules.base import Severity

# Known typo -> intended package. Only names that are not real packages in
# their own right belong here.
PYTHON_TYPOSQUATS = frozenset([
    ("requets", "requests"),
    ("reqeusts", "requests"),
    ("reques", "requests"),
    ("urlib3", "urllib3"),
    ("pythondateutil", "python-dateutil"),
    ("py-yaml", "PyYAML"),
    ("djang0", "django"),
    ("django-rest-framework", "djangorestframework"),
    ("colourama", "colorama"),
    ("python-sqlite", "sqlite3"),
])

JAVASCRIPT_TYPOSQUATS = frozenset([
    ("expres", "express"),
    ("expresss", "express"),
    ("reactjs", "react"),
    ("vuejs", "vue"),
    ("lodahs", "lodash"),
    ("crossenv", "cross-env"),
    ("cross-env.js", "cross-env"),
    ("node-fetchs", "node-fetch"),
    ("babelcli", "babel-cli"),
    ("mongose", "mongoose"),
])

TYPOSQUATTING_MAP: dict[str, str] = dict(PYTHON_TYPOSQUATS | JAVASCRIPT_TYPOSQUATS)

UNPINNED_NPM_VERSIONS = frozenset({"*", "", "latest", "x", "next"})

JS_EXTENSIONS = (".ts", ".tsx", ".mts", ".cts", ".js", ".jsx", ".mjs", ".cjs")

_REQ_NAME = re.compile(r"^\s*([A-Za-z0-9][A-Za-z0-9._\-]*)")


def find_cycles(graph: dict[str, set[str]]) -> list[list[str]]:
    """Strongly connected components with more than one node, or a self-loop.

    Iterative Tarjan. Members of each component are sorted, and so is the
    returned list, so output does not depend on dict order.
    """
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[list[str]] = []
    counter = 0

    for root in sorted(graph):
        if root in index_of:
            continue
        work = [(root, iter(sorted(graph.get(root, ()))))]
        index_of[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        while work:
            node, children = work[-1]
            advanced = False
            for child in children:
                if child not in index_of:
                    index_of[child] = lowlink[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    work.append((child, iter(sorted(graph.get(child, ())))))
                    advanced = True
                    break
                if child in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[child])
            if advanced:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index_of[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1 or node in graph.get(node, ()):
                    components.append(sorted(component))
    return sorted(components)


class DependencyAgent(FileBatchAgent):
    agent_type = AgentType.DEPENDENCY
    max_duration_hint_ms = 20_000

    def __init__(self, max_imports: int = 20, parser: ASTParser | None = None):
        self.max_imports = max_imports
        self.parser = parser or ASTParser()

    def execute(self, payload: list[AnalysisUnit]) -> list[RawFinding]:
        code_units = [u for u in payload if u.language != "manifest"]
        manifests = [u for u in payload if u.language == "manifest"]

        findings = self._graph_findings(code_units)
        for manifest in manifests:
            findings.extend(self.check_manifest(manifest))
        return findings

    # -- import graph ---------------------------------------------------------

    def _resolve(self, importer: str, module: str, language: str, known: set[str]) -> str | None:
        directory = posixpath.dirname(importer)
        if language == "python":
            if module.startswith("."):
                level = len(module) - len(module.lstrip("."))
                base = directory
                for _ in range(level - 1):
                    base = posixpath.dirname(base)
                rest = module.lstrip(".").replace(".", "/")
                stem = posixpath.join(base, rest) if rest else base
            else:
                stem = module.replace(".", "/")
            for candidate in (f"{stem}.py", f"{stem}/__init__.py"):
                candidate = posixpath.normpath(candidate)
                if candidate in known:
                    return candidate
                # absolute imports may be rooted below the project root (src/ layouts)
                for path in known:
                    if path.endswith("/" + candidate):
                        return path
            return None

        if language in ("javascript", "typescript") and module.startswith("."):
            stem = posixpath.normpath(posixpath.join(directory, module))
            candidates = [stem] + [stem + ext for ext in JS_EXTENSIONS]
            candidates += [f"{stem}/index{ext}" for ext in JS_EXTENSIONS]
            for candidate in candidates:
                if candidate in known:
                    return candidate
        return None

    def _graph_findings(self, units: list[AnalysisUnit]) -> list[RawFinding]:
        known = {u.path for u in units}
        graph: dict[str, set[str]] = defaultdict(set)
        import_lines: dict[tuple[str, str], int] = {}
        findings: list[RawFinding] = []

        for unit in sorted(units, key=lambda u: u.path):
            parsed = unit.parsed or self.parser.parse_file(unit.source, unit.language)
            graph.setdefault(unit.path, set())
            modules = set()
            for info in parsed.imports:
                modules.add(info.module)
                candidates = [info.module]
                if unit.language == "python" and info.module.startswith("."):
                    # "from . import sibling" names modules, not attributes
                    sep = "" if info.module.endswith(".") else "."
                    candidates += [f"{info.module}{sep}{name}" for name in info.names if name != "*"]
                for module in candidates:
                    target = self._resolve(unit.path, module, unit.language, known)
                    if target is not None and target != unit.path:
                        graph[unit.path].add(target)
                        import_lines.setdefault((unit.path, target), info.line)

            if len(modules) > self.max_imports:
                findings.append(self._finding(
                    unit.path, 1, "DEP002", "high-coupling", Severity.MEDIUM,
                    f"Module imports {len(modules)} distinct modules (threshold: {self.max_imports})",
                    dependency_type="coupling",
                    packages=tuple(sorted(modules)),
                    suggestion="Split the module or introduce a facade.",
                ))

        for cycle in find_cycles(graph):
            head = cycle[0]
            nxt = next((m for m in cycle[1:] if m in graph[head]), head)
            line = import_lines.get((head, nxt), 1)
            findings.append(self._finding(
                head, line, "DEP001", "circular-dependency", Severity.HIGH,
                f"Circular import between {', '.join(cycle)}",
                dependency_type="cycle",
                cycle=tuple(cycle),
                suggestion="Move the shared code into a module both sides can import.",
            ))
        return findings

    # -- manifests ------------------------------------------------------------

    def check_manifest(self, unit: AnalysisUnit) -> list[RawFinding]:
        name = posixpath.basename(unit.path)
        if name == "package.json":
            return self._check_package_json(unit)
        if name.startswith("requirements") and name.endswith(".txt"):
            return self._check_requirements(unit)
        return []

    def _check_package_json(self, unit: AnalysisUnit) -> list[RawFinding]:
        try:
            data = json.loads(unit.source.content or "{}")
        except json.JSONDecodeError:
            return []
        lines = unit.source.content.splitlines()

        def line_of(package: str) -> int:
            needle = f'"{package}"'
            for lineno, line in enumerate(lines, 1):
                if needle in line:
                    return lineno
            return 1

        findings = []
        for section in ("dependencies", "devDependencies", "peerDependencies", "optionalDependencies"):
            deps = data.get(section) or {}
            if not isinstance(deps, dict):
                continue
            for package, version in sorted(deps.items()):
                findings.extend(self._check_package(unit.path, line_of(package), package, str(version).strip(), npm=True))
        return findings

    def _check_requirements(self, unit: AnalysisUnit) -> list[RawFinding]:
        findings = []
        for lineno, raw in enumerate(unit.source.content.splitlines(), 1):
            line = raw.split("#", 1)[0].strip()
            if not line or line.startswith(("-", "git+", "http://", "https://")):
                continue
            match = _REQ_NAME.match(line)
            if not match:
                continue
            package = match.group(1)
            spec = line[match.end():].split(";", 1)[0].strip()
            findings.extend(self._check_package(unit.path, lineno, package, spec, npm=False))
        return findings

    def _check_package(self, path: str, line: int, package: str, spec: str, npm: bool) -> list[RawFinding]:
        findings = []
        intended = TYPOSQUATTING_MAP.get(package.lower())
        if intended:
            findings.append(self._finding(
                path, line, "DEP004", "typosquat-package", Severity.HIGH,
                f"Package '{package}' looks like a typosquat of '{intended}'",
                dependency_type="typosquat",
                packages=(package, intended),
                suggestion=f"Did you mean '{intended}'?",
            ))

        if npm:
            unpinned = spec.lower() in UNPINNED_NPM_VERSIONS or spec.startswith(">") or spec.endswith(".x")
        else:
            unpinned = "==" not in spec
        if unpinned:
            findings.append(self._finding(
                path, line, "DEP003", "unpinned-dependency", Severity.MEDIUM if npm or not spec else Severity.LOW,
                f"Dependency '{package}' is not pinned ({spec or 'any version'})",
                dependency_type="unpinned",
                packages=(package,),
                suggestion="Pin an exact version or commit a lock file.",
            ))
        return findings

    @staticmethod
    def _finding(path, line, rule_id, category, severity, message, **extra) -> RawFinding:
        suggestion = extra.pop("suggestion", None)
        return RawFinding(
            source=FindingSource.DEPENDENCY,
            payload=DependencyPayload(
                file_path=path,
                line_start=line,
                line_end=line,
                rule_id=rule_id,
                category=category,
                severity=severity,
                message=message,
                suggestion=suggestion,
                **extra,
            ),
        )
