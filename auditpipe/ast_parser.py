"""AST parser producing a language-neutral structural summary of a file.

Python files go through the built-in ``ast`` module. Brace languages
(JavaScript, TypeScript, Java, Go, C#, Rust, C/C++) go through a structural
scanner: comments and string literals are blanked out, declarations are found
with per-language patterns, and bodies are delimited by brace matching.
"""

import ast
import hashlib
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any

from auditpipe.pipeline.structures import SourceFile


@dataclass
class ASTNode:
    """A function, method, or class found in a file."""

    node_type: str
    name: str
    line_start: int
    line_end: int
    complexity: int = 1
    max_nesting: int = 0
    param_count: int = 0
    parent: str | None = None

    @property
    def line_count(self) -> int:
        return self.line_end - self.line_start + 1

    @property
    def qualified_name(self) -> str:
        return f"{self.parent}.{self.name}" if self.parent else self.name

    def fields(self) -> dict[str, Any]:
        """Field view used by AST rule conditions."""
        return {
            "name": self.name,
            "node_type": self.node_type,
            "complexity": self.complexity,
            "max_nesting": self.max_nesting,
            "param_count": self.param_count,
            "line_count": self.line_count,
        }


@dataclass(frozen=True)
class ImportInfo:
    module: str
    line: int
    names: tuple[str, ...] = ()

    @property
    def relative(self) -> bool:
        return self.module.startswith(".")


@dataclass
class ParsedFile:
    file_path: str
    language: str
    nodes: list[ASTNode] = field(default_factory=list)
    imports: list[ImportInfo] = field(default_factory=list)
    line_count: int = 0
    parse_error: str | None = None

    @property
    def functions(self) -> list[ASTNode]:
        return [n for n in self.nodes if n.node_type in ("function", "method")]

    @property
    def classes(self) -> list[ASTNode]:
        return [n for n in self.nodes if n.node_type == "class"]


# ---------------------------------------------------------------------------
# Python
# ---------------------------------------------------------------------------

_PY_BRANCHES = (ast.If, ast.For, ast.AsyncFor, ast.While, ast.IfExp, ast.ExceptHandler, ast.Assert)
_PY_BLOCKS = (ast.If, ast.For, ast.AsyncFor, ast.While, ast.Try, ast.With, ast.AsyncWith)
if hasattr(ast, "TryStar"):
    _PY_BLOCKS = (*_PY_BLOCKS, ast.TryStar)
if hasattr(ast, "Match"):
    _PY_BLOCKS = (*_PY_BLOCKS, ast.Match)

_SCOPES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef, ast.Lambda)


def _walk_local(node: ast.AST):
    """Walk a function body without entering nested functions or classes."""
    stack = list(ast.iter_child_nodes(node))
    while stack:
        current = stack.pop()
        yield current
        if not isinstance(current, _SCOPES):
            stack.extend(ast.iter_child_nodes(current))


def _python_complexity(func: ast.AST) -> int:
    complexity = 1
    for node in _walk_local(func):
        if isinstance(node, _PY_BRANCHES):
            complexity += 1
        elif isinstance(node, ast.BoolOp):
            complexity += len(node.values) - 1
        elif isinstance(node, ast.comprehension):
            complexity += 1 + len(node.ifs)
        elif hasattr(ast, "match_case") and isinstance(node, ast.match_case):
            complexity += 1
    return complexity


def _python_nesting(statements: list[ast.stmt], depth: int = 0) -> int:
    deepest = depth
    for stmt in statements:
        if isinstance(stmt, _SCOPES):
            continue
        inner = depth + 1 if isinstance(stmt, _PY_BLOCKS) else depth
        for attr in ("body", "orelse", "finalbody"):
            deepest = max(deepest, _python_nesting(getattr(stmt, attr, []) or [], inner))
        for handler in getattr(stmt, "handlers", []) or []:
            deepest = max(deepest, _python_nesting(handler.body, inner))
        for case in getattr(stmt, "cases", []) or []:
            deepest = max(deepest, _python_nesting(case.body, inner))
    return deepest


def _python_params(func: ast.FunctionDef | ast.AsyncFunctionDef, is_method: bool) -> int:
    args = func.args
    positional = [*args.posonlyargs, *args.args]
    if is_method and positional and positional[0].arg in ("self", "cls"):
        positional = positional[1:]
    count = len(positional) + len(args.kwonlyargs)
    count += 1 if args.vararg else 0
    count += 1 if args.kwarg else 0
    return count


class _PythonCollector(ast.NodeVisitor):
    def __init__(self):
        self.nodes: list[ASTNode] = []
        self.imports: list[ImportInfo] = []
        self._classes: list[str] = []

    def visit_ClassDef(self, node: ast.ClassDef):
        self.nodes.append(
            ASTNode(
                node_type="class",
                name=node.name,
                line_start=node.lineno,
                line_end=node.end_lineno or node.lineno,
                parent=self._classes[-1] if self._classes else None,
            )
        )
        self._classes.append(node.name)
        self.generic_visit(node)
        self._classes.pop()

    def _visit_function(self, node):
        is_method = bool(self._classes)
        self.nodes.append(
            ASTNode(
                node_type="method" if is_method else "function",
                name=node.name,
                line_start=node.lineno,
                line_end=node.end_lineno or node.lineno,
                complexity=_python_complexity(node),
                max_nesting=_python_nesting(node.body),
                param_count=_python_params(node, is_method),
                parent=self._classes[-1] if is_method else None,
            )
        )
        # Functions nested in a method are not methods themselves.
        saved, self._classes = self._classes, []
        self.generic_visit(node)
        self._classes = saved

    visit_FunctionDef = _visit_function
    visit_AsyncFunctionDef = _visit_function

    def visit_Import(self, node: ast.Import):
        for alias in node.names:
            self.imports.append(ImportInfo(module=alias.name, line=node.lineno))

    def visit_ImportFrom(self, node: ast.ImportFrom):
        module = "." * node.level + (node.module or "")
        names = tuple(alias.name for alias in node.names)
        self.imports.append(ImportInfo(module=module, line=node.lineno, names=names))


@lru_cache(maxsize=2048)
def _parse_python_cached(content_hash: str, content: str) -> tuple[list[ASTNode], list[ImportInfo], str | None]:
    try:
        tree = ast.parse(content)
    except (SyntaxError, ValueError) as e:
        return [], [], f"{type(e).__name__}: {e}"
    collector = _PythonCollector()
    collector.visit(tree)
    nodes = sorted(collector.nodes, key=lambda n: (n.line_start, n.name))
    return nodes, collector.imports, None


# ---------------------------------------------------------------------------
# Brace languages
# ---------------------------------------------------------------------------

BRACE_LANGUAGES = frozenset({"javascript", "typescript", "java", "go", "csharp", "rust", "cpp"})

_CONTROL_WORDS = frozenset(
    {
        "if", "for", "while", "switch", "catch", "return", "function", "else", "do",
        "try", "new", "throw", "typeof", "await", "yield", "delete", "sizeof", "foreach",
        "using", "lock", "fixed", "match", "loop", "unsafe", "super", "this",
    }
)

_IDENT = r"[A-Za-z_$][\w$]*"

_CLASS_RE = re.compile(rf"\b(?:class|interface|struct|trait|enum|impl)\s+({_IDENT})")

_FUNCTION_PATTERNS: dict[str, list[re.Pattern]] = {
    "javascript": [
        re.compile(rf"\bfunction\s*\*?\s*({_IDENT})\s*\(([^)]*)\)"),
        re.compile(
            rf"\b(?:const|let|var)\s+({_IDENT})\s*=\s*(?:async\s+)?(?:function\s*\*?\s*)?"
            rf"\(([^)]*)\)\s*(?::\s*[^=;{{]+)?(?:=>|\{{)"
        ),
        re.compile(
            rf"^[ \t]*(?:(?:public|private|protected|static|async|get|set|readonly|override|abstract)\s+)*"
            rf"\*?({_IDENT})\s*\(([^)]*)\)\s*(?::\s*[^{{;]+)?\{{",
            re.M,
        ),
    ],
    "java": [
        re.compile(
            rf"^[ \t]*(?:[\w<>\[\],.?@]+\s+)+({_IDENT})\s*\(([^)]*)\)\s*(?:throws\s+[\w.,\s]+)?\{{",
            re.M,
        ),
    ],
    "go": [re.compile(rf"\bfunc\s*(?:\([^)]*\)\s*)?({_IDENT})\s*\(([^)]*)\)")],
    "rust": [re.compile(rf"\bfn\s+({_IDENT})\s*(?:<[^>{{]*>)?\s*\(([^)]*)\)")],
    "cpp": [
        re.compile(
            rf"^[ \t]*(?:[\w<>:*&,\[\]]+\s+)+[*&]*((?:{_IDENT}::)*~?{_IDENT})\s*\(([^)]*)\)\s*(?:const\s*)?(?:noexcept\s*)?\{{",
            re.M,
        ),
    ],
}
_FUNCTION_PATTERNS["typescript"] = _FUNCTION_PATTERNS["javascript"]
_FUNCTION_PATTERNS["csharp"] = _FUNCTION_PATTERNS["java"]

_BRANCH_RE = re.compile(r"\b(?:if|for|foreach|while|case|catch|elif)\b|&&|\|\||\?(?![.?:])")

_IMPORT_PATTERNS: dict[str, list[re.Pattern]] = {
    "javascript": [
        re.compile(r"^\s*import\s+(?:[^'\"]*?\s+from\s+)?['\"]([^'\"]+)['\"]"),
        re.compile(r"^\s*export\s+[^'\"]*?\s+from\s+['\"]([^'\"]+)['\"]"),
        re.compile(r"\brequire\(\s*['\"]([^'\"]+)['\"]\s*\)"),
    ],
    "java": [re.compile(r"^\s*import\s+(?:static\s+)?([\w.]+)(?:\.\*)?\s*;")],
    "csharp": [re.compile(r"^\s*using\s+(?:static\s+)?([\w.]+)\s*;")],
    "go": [
        re.compile(r"^\s*import\s+(?:\w+\s+)?\"([^\"]+)\""),
        re.compile(r"^\s*(?:[\w.]+\s+)?\"([^\"]+)\"\s*$"),
    ],
    "rust": [re.compile(r"^\s*(?:pub\s+)?use\s+([\w:]+)")],
    "cpp": [re.compile(r"^\s*#\s*include\s*[<\"]([^>\"]+)[>\"]")],
}
_IMPORT_PATTERNS["typescript"] = _IMPORT_PATTERNS["javascript"]


def _blank_literals(content: str, language: str) -> str:
    """Replace comments and string literal bodies with spaces, keeping newlines."""
    out = list(content)
    i, n = 0, len(content)
    backtick = language in ("javascript", "typescript", "go")
    single_quote_strings = language in ("javascript", "typescript")

    def blank(start: int, end: int):
        for k in range(start, min(end, n)):
            if out[k] != "\n":
                out[k] = " "

    while i < n:
        ch = content[i]
        nxt = content[i + 1] if i + 1 < n else ""
        if ch == "/" and nxt == "/":
            end = content.find("\n", i)
            end = n if end == -1 else end
            blank(i, end)
            i = end
        elif ch == "/" and nxt == "*":
            end = content.find("*/", i + 2)
            end = n if end == -1 else end + 2
            blank(i, end)
            i = end
        elif ch == '"' or (ch == "`" and backtick) or (ch == "'" and single_quote_strings):
            j = i + 1
            while j < n and content[j] != ch:
                if content[j] == "\\":
                    j += 1
                elif content[j] == "\n" and ch != "`":
                    break
                j += 1
            blank(i + 1, j)
            i = j + 1
        elif ch == "'":
            # char literal ('x' or '\n'); anything else is a lifetime or similar
            close = content.find("'", i + 1, i + 4)
            if close != -1 and "\n" not in content[i:close]:
                blank(i + 1, close)
                i = close + 1
            else:
                i += 1
        else:
            i += 1
    return "".join(out)


def _match_brace(text: str, open_index: int) -> int:
    depth = 0
    for k in range(open_index, len(text)):
        if text[k] == "{":
            depth += 1
        elif text[k] == "}":
            depth -= 1
            if depth == 0:
                return k
    return len(text) - 1


def _brace_nesting(body: str) -> int:
    depth = deepest = 0
    for ch in body:
        if ch == "{":
            depth += 1
            deepest = max(deepest, depth)
        elif ch == "}":
            depth -= 1
    # the function's own braces are not nesting
    return max(deepest - 1, 0)


def _count_params(params: str) -> int:
    params = params.strip()
    if not params or params == "void":
        return 0
    depth = 0
    count = 1
    for ch in params:
        if ch in "<([{":
            depth += 1
        elif ch in ">)]}":
            depth -= 1
        elif ch == "," and depth == 0:
            count += 1
    if params.rstrip().endswith(","):
        count -= 1
    return count


class _LineIndex:
    def __init__(self, text: str):
        self._starts = [0]
        for k, ch in enumerate(text):
            if ch == "\n":
                self._starts.append(k + 1)

    def line_of(self, offset: int) -> int:
        lo, hi = 0, len(self._starts) - 1
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if self._starts[mid] <= offset:
                lo = mid
            else:
                hi = mid - 1
        return lo + 1


def _scan_brace_file(content: str, language: str) -> tuple[list[ASTNode], list[ImportInfo]]:
    text = _blank_literals(content, language)
    lines = _LineIndex(text)

    classes: list[tuple[int, int, ASTNode]] = []
    for match in _CLASS_RE.finditer(text):
        brace = text.find("{", match.end())
        semicolon = text.find(";", match.end())
        if brace == -1 or (semicolon != -1 and semicolon < brace):
            continue
        end = _match_brace(text, brace)
        node = ASTNode(
            node_type="class",
            name=match.group(1),
            line_start=lines.line_of(match.start(1)),
            line_end=lines.line_of(end),
        )
        classes.append((brace, end, node))

    seen: set[int] = set()
    nodes = [c[2] for c in classes]
    for pattern in _FUNCTION_PATTERNS.get(language, []):
        for match in pattern.finditer(text):
            name, params = match.group(1), match.group(2) or ""
            if name.split("::")[-1] in _CONTROL_WORDS:
                continue
            start = match.start(1)
            if start in seen:
                continue
            seen.add(start)

            tail = match.group(0).rstrip()
            if tail.endswith("{"):
                open_index = match.end() - 1
            elif tail.endswith("=>"):
                rest = text[match.end():]
                body_start = rest.lstrip()
                if body_start.startswith("{"):
                    open_index = match.end() + len(rest) - len(body_start)
                else:
                    # expression-bodied arrow function
                    open_index = -1
            else:
                brace = text.find("{", match.end())
                semicolon = text.find(";", match.end())
                if brace == -1 or (semicolon != -1 and semicolon < brace):
                    continue
                open_index = brace

            if open_index == -1:
                end_offset = text.find("\n", match.end())
                end_offset = len(text) - 1 if end_offset == -1 else end_offset
                body = ""
            else:
                end_offset = _match_brace(text, open_index)
                body = text[open_index : end_offset + 1]

            owner = None
            for class_start, class_end, class_node in classes:
                if class_start < start < class_end:
                    owner = class_node
            is_method = owner is not None or (language == "go" and text[match.start():start].count("(") > 0)
            nodes.append(
                ASTNode(
                    node_type="method" if is_method else "function",
                    name=name,
                    line_start=lines.line_of(start),
                    line_end=lines.line_of(end_offset),
                    complexity=1 + len(_BRANCH_RE.findall(body)),
                    max_nesting=_brace_nesting(body),
                    param_count=_count_params(params),
                    parent=owner.name if owner else None,
                )
            )

    nodes.sort(key=lambda n: (n.line_start, n.name))
    return nodes, _scan_imports(content, language)


def _scan_imports(content: str, language: str) -> list[ImportInfo]:
    patterns = _IMPORT_PATTERNS.get(language, [])
    imports: list[ImportInfo] = []
    in_go_block = False
    for lineno, line in enumerate(content.splitlines(), 1):
        stripped = line.strip()
        if language == "go":
            if stripped.startswith("import ("):
                in_go_block = True
                continue
            if in_go_block and stripped.startswith(")"):
                in_go_block = False
                continue
            candidates = patterns if in_go_block else patterns[:1]
        else:
            candidates = patterns
        for pattern in candidates:
            match = pattern.search(line)
            if match:
                imports.append(ImportInfo(module=match.group(1), line=lineno))
                break
    return imports


class ASTParser:
    """Turns a SourceFile into a ParsedFile."""

    def supports_language(self, language: str) -> bool:
        return language == "python" or language in BRACE_LANGUAGES

    def parse_file(self, source: SourceFile, language: str) -> ParsedFile:
        """Parse one file. Syntax errors are recorded on the result, not raised."""
        content = source.content
        parsed = ParsedFile(
            file_path=source.path,
            language=language,
            line_count=len(content.splitlines()),
        )
        if language == "python":
            content_hash = hashlib.sha256(content.encode("utf-8", errors="ignore")).hexdigest()
            nodes, imports, error = _parse_python_cached(content_hash, content)
            # cached lists are shared between identical files
            parsed.nodes = [ASTNode(**vars(n)) for n in nodes]
            parsed.imports = list(imports)
            parsed.parse_error = error
        elif language in BRACE_LANGUAGES:
            parsed.nodes, parsed.imports = _scan_brace_file(content, language)
        return parsed

    def parse_content(self, content: str, language: str, filepath: str = "unknown") -> ParsedFile:
        return self.parse_file(SourceFile(path=filepath, content=content), language)
