"""Built-in analyzers that produce annotations for a :class:`CodeGraph`.

* :class:`SecurityScanner` - AST detectors for Python, line rules elsewhere,
  each finding mapped to an OWASP Top 10 category.
* :func:`propagate_findings` - traces serious findings to their callers.
* :class:`QualityAnalyzer` - a 0-100 heuristic score per function and class.
* :class:`RefactorAdvisor` - concrete suggestions for long, deep, wide or
  cyclic code.

Every analyzer exposes ``name`` and ``analyze(graph) -> List[Annotation]``.
"""

from __future__ import annotations

import ast
import logging
import re
import textwrap
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .graph import CodeGraph
from .models import Annotation, FlowHint, Severity, Symbol

logger = logging.getLogger(__name__)

SECURITY_FINDING = "security-finding"
QUALITY_SCORE = "quality-score"
REFACTOR_SUGGESTION = "refactor-suggestion"

OWASP_CATEGORIES: Dict[str, str] = {
    "path_traversal": "A01:2021 – Broken Access Control",
    "hardcoded_secret": "A02:2021 – Cryptographic Failures",
    "sql_injection": "A03:2021 – Injection",
    "command_injection": "A03:2021 – Injection",
    "code_injection": "A03:2021 – Injection",
    "xss": "A03:2021 – Injection",
    "buffer_overflow": "A04:2021 – Insecure Design",
    "unsafe_block": "A04:2021 – Insecure Design",
    "debug_enabled": "A05:2021 – Security Misconfiguration",
    "unsafe_deserialization": "A08:2021 – Software and Data Integrity Failures",
}

OWASP_RECOMMENDATIONS: Dict[str, Tuple[str, ...]] = {
    "A01:2021 – Broken Access Control": (
        "Implement proper authorization checks before sensitive operations",
        "Apply the principle of least privilege",
    ),
    "A02:2021 – Cryptographic Failures": (
        "Store keys and credentials outside the source tree",
        "Implement proper key management and rotation",
    ),
    "A03:2021 – Injection": (
        "Use parameterized queries or prepared statements",
        "Validate and sanitize all user inputs",
    ),
    "A04:2021 – Insecure Design": (
        "Use secure defaults and fail-safe behavior",
        "Document the invariants unsafe code relies on",
    ),
    "A05:2021 – Security Misconfiguration": (
        "Disable debug features outside development",
        "Use environment-specific configuration",
    ),
    "A08:2021 – Software and Data Integrity Failures": (
        "Never deserialize untrusted data with pickle or unsafe YAML loaders",
    ),
}

SEVERITY_SCORES: Dict[Severity, int] = {
    Severity.CRITICAL: 10,
    Severity.HIGH: 7,
    Severity.MEDIUM: 5,
    Severity.LOW: 3,
    Severity.INFO: 1,
}

_JS = ("javascript", "typescript", "tsx")

# (pattern, type, severity, message, suggestion, languages or None for all non-Python)
LINE_RULES: List[Tuple[str, str, str, str, str, Optional[Tuple[str, ...]]]] = [
    (r"(?<![\w.])eval\s*\(", "code_injection", "critical",
     "Use of eval() on dynamic input", "Parse the data explicitly instead of evaluating it", _JS),
    (r"\.innerHTML\s*=", "xss", "high",
     "Assignment to innerHTML", "Use textContent or sanitize the HTML first", _JS),
    (r"(?<![\w.])(?:child_process\.)?exec(?:Sync)?\s*\(", "command_injection", "high",
     "Shell command built at runtime", "Use execFile/spawn with an argument list", _JS),
    (r"\bunsafe\s*\{", "unsafe_block", "medium",
     "unsafe block bypasses memory-safety checks", "Keep unsafe blocks small and document their invariants",
     ("rust",)),
    (r"\bexec\.Command\s*\(\s*\"(?:sh|bash)\"", "command_injection", "high",
     "Command executed through a shell", "Pass the program and arguments directly", ("go",)),
    (r"\b(?:strcpy|strcat|gets|sprintf)\s*\(", "buffer_overflow", "high",
     "Unbounded string function", "Use bounded variants such as snprintf or fgets", ("c", "cpp")),
    (r"\bsystem\s*\(", "command_injection", "high",
     "Call to system()", "Use an exec-family call with an argument vector", ("c", "cpp")),
    (r"Runtime\.getRuntime\(\)\.exec\s*\(", "command_injection", "high",
     "Runtime.exec with a dynamic command", "Use ProcessBuilder with an argument list", ("java",)),
    (r"(?i)\b(?:query|execute\w*|exec|prepare\w*)\s*\(\s*[\"'`][^\"'`]*\b(?:select|insert|update|delete)\b"
     r"[^\"'`]*[\"'`]\s*\+", "sql_injection", "critical",
     "SQL statement built by string concatenation", "Use parameterized queries with placeholders", None),
]


class SecurityScanner:
    """Scan code for security vulnerabilities."""

    name = "security"

    def __init__(self) -> None:
        # Patterns for detecting hardcoded secrets
        self.secret_patterns = [
            (r'api[_-]?key\s*[=:]\s*["\']([^"\']{10,})["\']', "API Key"),
            (r'password\s*[=:]\s*["\']([^"\']+)["\']', "Password"),
            (r'secret\s*[=:]\s*["\']([^"\']{10,})["\']', "Secret"),
            (r'token\s*[=:]\s*["\']([^"\']{10,})["\']', "Token"),
            (r'aws_access_key_id\s*[=:]\s*["\']([^"\']+)["\']', "AWS Access Key"),
            (r'private_key\s*[=:]\s*["\']([^"\']+)["\']', "Private Key"),
        ]

        # Dangerous functions that could lead to injection
        self.dangerous_functions = {
            "eval": "code_injection",
            "exec": "code_injection",
            "compile": "code_injection",
            "__import__": "code_injection",
            "system": "command_injection",
            "popen": "command_injection",
            "spawn": "command_injection",
        }
        self.line_rules = [
            (re.compile(pattern), issue_type, severity, message, suggestion, languages)
            for pattern, issue_type, severity, message, suggestion, languages in LINE_RULES
        ]

    def analyze(self, graph: CodeGraph) -> List[Annotation]:
        annotations: List[Annotation] = []
        for path in graph.table.paths:
            annotations.extend(self.scan_file(graph, path))
        logger.info("Security scan: %d findings", len(annotations))
        return annotations

    def scan_file(self, graph: CodeGraph, file_path: str) -> List[Annotation]:
        """Findings for one file, each attributed to the innermost enclosing symbol."""
        symbols = [s for s in graph.table.symbols_in(file_path) if s.kind != "variable"]
        symbols.sort(key=lambda s: (s.end_line - s.start_line, s.start_line))
        seen: Set[Tuple[int, str]] = set()  # (line, type) dedup
        annotations: List[Annotation] = []
        for symbol in symbols:
            for issue in self.scan_symbol(symbol):
                key = (issue["line"], issue["type"])
                if key in seen:
                    continue
                seen.add(key)
                annotations.append(_issue_annotation(symbol, issue))
        return annotations

    def scan_symbol(self, symbol: Symbol) -> List[Dict]:
        issues: List[Dict] = self._detect_hardcoded_secrets(symbol)
        if symbol.language == "python":
            try:
                tree = ast.parse(textwrap.dedent(symbol.code))
            except (SyntaxError, ValueError):
                return issues
            issues += (
                self._detect_sql_injection(tree, symbol)
                + self._detect_command_injection(tree, symbol)
                + self._detect_path_traversal(tree, symbol)
                + self._detect_unsafe_deserialization(tree, symbol)
            )
        else:
            issues += self._detect_line_rules(symbol)
        return issues

    # ------------------------------------------------------------------
    # Python detectors
    # ------------------------------------------------------------------

    def _detect_sql_injection(self, tree: ast.AST, symbol: Symbol) -> List[Dict]:
        """Detect SQL injection vulnerabilities.

        Catches both direct concatenation in execute() args **and** indirect
        patterns where a variable is assigned a concatenated/formatted string
        and then passed to execute().
        """
        issues = []

        # A variable is "tainted" when its value comes from string
        # concatenation, f-string interpolation, or .format().
        tainted_vars: Set[str] = set()
        for node in ast.walk(tree):
            if isinstance(node, ast.Assign) and _is_built_string(node.value):
                for target in node.targets:
                    if isinstance(target, ast.Name):
                        tainted_vars.add(target.id)

        for node in ast.walk(tree):
            if not (isinstance(node, ast.Call) and isinstance(node.func, ast.Attribute)):
                continue
            if node.func.attr not in ("execute", "executemany", "raw") or not node.args:
                continue
            arg = node.args[0]
            if isinstance(arg, ast.BinOp) and isinstance(arg.op, ast.Add):
                how = "string concatenation"
            elif isinstance(arg, ast.JoinedStr):
                how = "f-string"
            elif _is_built_string(arg):
                how = ".format()"
            elif isinstance(arg, ast.Name) and arg.id in tainted_vars:
                how = "tainted variable"
            else:
                continue
            issues.append(_issue(
                "sql_injection", "critical", symbol, node,
                f"Potential SQL injection via {how}",
                "Use parameterized queries with placeholders (?)",
            ))
        return issues

    def _detect_command_injection(self, tree: ast.AST, symbol: Symbol) -> List[Dict]:
        issues = []
        for node in ast.walk(tree):
            if not isinstance(node, ast.Call):
                continue
            func_name = _call_name(node)
            if func_name in self.dangerous_functions:
                issues.append(_issue(
                    self.dangerous_functions[func_name], "critical", symbol, node,
                    f"Unsafe use of '{func_name}()' with potential user input",
                    "Use subprocess.run() with shell=False and validate inputs",
                ))
            # subprocess with shell=True
            if func_name in ("run", "call", "Popen", "check_output", "check_call"):
                for keyword in node.keywords:
                    if keyword.arg == "shell" and isinstance(keyword.value, ast.Constant) \
                            and keyword.value.value is True:
                        issues.append(_issue(
                            "command_injection", "high", symbol, node,
                            "subprocess called with shell=True",
                            "Use shell=False and pass command as list",
                        ))
        return issues

    def _detect_hardcoded_secrets(self, symbol: Symbol) -> List[Dict]:
        issues = []
        code = symbol.code
        placeholders = ("your_key_here", "xxx", "***", "placeholder", "example", "test", "dummy",
                        "changeme")
        for pattern, secret_type in self.secret_patterns:
            for match in re.finditer(pattern, code, re.IGNORECASE):
                value = match.group(1)
                if any(p in value.lower() for p in placeholders):
                    continue
                # Skip very short values (likely not real secrets)
                if len(value) < 8:
                    continue
                issues.append({
                    "type": "hardcoded_secret",
                    "severity": "high",
                    "line": symbol.start_line + code[:match.start()].count("\n"),
                    "message": f"Hardcoded {secret_type} found",
                    "suggestion": "Use environment variables or secret management (e.g., os.getenv())",
                })
        return issues

    def _detect_path_traversal(self, tree: ast.AST, symbol: Symbol) -> List[Dict]:
        issues = []
        for node in ast.walk(tree):
            if not isinstance(node, ast.Call):
                continue
            if _call_name(node) not in ("open", "read", "write", "remove", "unlink", "rmdir"):
                continue
            if node.args and isinstance(node.args[0], (ast.BinOp, ast.JoinedStr)):
                issues.append(_issue(
                    "path_traversal", "medium", symbol, node,
                    "Potential path traversal if path comes from user input",
                    "Validate paths with Path.resolve() against an allowed directory",
                ))
        return issues

    def _detect_unsafe_deserialization(self, tree: ast.AST, symbol: Symbol) -> List[Dict]:
        issues = []
        for node in ast.walk(tree):
            if not (isinstance(node, ast.Call) and isinstance(node.func, ast.Attribute)):
                continue
            owner = node.func.value
            if not isinstance(owner, ast.Name):
                continue
            if owner.id == "pickle" and node.func.attr in ("loads", "load"):
                issues.append(_issue(
                    "unsafe_deserialization", "high", symbol, node,
                    "Unsafe deserialization with pickle on untrusted data",
                    "Use JSON or validate data source before unpickling",
                ))
            elif owner.id == "yaml" and node.func.attr == "load":
                safe = any(
                    kw.arg == "Loader" and isinstance(kw.value, ast.Attribute)
                    and kw.value.attr in ("SafeLoader", "BaseLoader")
                    for kw in node.keywords
                )
                if not safe:
                    issues.append(_issue(
                        "unsafe_deserialization", "high", symbol, node,
                        "yaml.load() without SafeLoader",
                        "Use yaml.safe_load() or yaml.load(data, Loader=yaml.SafeLoader)",
                    ))
        return issues

    # ------------------------------------------------------------------
    # Other languages
    # ------------------------------------------------------------------

    def _detect_line_rules(self, symbol: Symbol) -> List[Dict]:
        issues = []
        for offset, line in enumerate(symbol.code.splitlines()):
            stripped = line.strip()
            if stripped.startswith(("//", "/*", "*", "#")):
                continue
            for pattern, issue_type, severity, message, suggestion, languages in self.line_rules:
                if languages is not None and symbol.language not in languages:
                    continue
                if pattern.search(line):
                    issues.append({
                        "type": issue_type,
                        "severity": severity,
                        "line": symbol.start_line + offset,
                        "message": message,
                        "suggestion": suggestion,
                    })
        return issues


def _is_built_string(value: ast.AST) -> bool:
    return (
        (isinstance(value, ast.BinOp) and isinstance(value.op, ast.Add))
        or isinstance(value, ast.JoinedStr)
        or (isinstance(value, ast.Call)
            and isinstance(value.func, ast.Attribute)
            and value.func.attr == "format")
    )


def _call_name(node: ast.Call) -> Optional[str]:
    if isinstance(node.func, ast.Name):
        return node.func.id
    if isinstance(node.func, ast.Attribute):
        return node.func.attr
    return None


def _issue(issue_type: str, severity: str, symbol: Symbol, node: ast.AST,
           message: str, suggestion: str) -> Dict:
    return {
        "type": issue_type,
        "severity": severity,
        "line": symbol.start_line + getattr(node, "lineno", 1) - 1,
        "message": message,
        "suggestion": suggestion,
    }


def _issue_annotation(symbol: Symbol, issue: Dict) -> Annotation:
    owasp = OWASP_CATEGORIES.get(issue["type"], "")
    tag = f" [{owasp}]" if owasp else ""
    payload = f"{issue['message']}{tag}. Suggestion: {issue['suggestion']}"
    guidance = OWASP_RECOMMENDATIONS.get(owasp, ())
    if guidance:
        payload += f". OWASP guidance: {'; '.join(guidance)}"
    return Annotation(
        key=symbol.symbol_id,
        kind=SECURITY_FINDING,
        severity=Severity.parse(issue["severity"]),
        payload=payload,
        source="security",
        line=issue["line"],
        category=issue["type"],
    )


def owasp_category(annotation: Annotation) -> str:
    return OWASP_CATEGORIES.get(annotation.category, "")


# ===================================================================
# Security traces
# ===================================================================

def propagate_findings(graph: CodeGraph, findings: Sequence[Annotation]) -> List[Annotation]:
    """Attach a trace to every call edge that reaches a medium-or-worse finding.

    The traced annotation is keyed on the call edge and is one level less
    severe than the finding it points at.
    """
    traces: List[Annotation] = []
    for finding in findings:
        if finding.kind != SECURITY_FINDING or finding.severity.rank < Severity.MEDIUM.rank:
            continue
        target = graph.symbols.get(finding.key)
        if target is None or not target.is_callable:
            continue
        for edge in graph.callers(finding.key):
            if edge.unresolved:
                continue
            traces.append(Annotation(
                key=edge.edge_id,
                kind=SECURITY_FINDING,
                severity=finding.severity.lowered(),
                payload=f"Calls {target.qualname}, which has {finding.category.replace('_', ' ')} "
                        f"at line {finding.line}",
                source="security-trace",
                line=edge.line,
                category=finding.category,
            ))
    return traces


@dataclass(frozen=True)
class Hotspot:
    file_path: str
    risk_score: int
    findings: int
    worst: Severity

    def to_dict(self) -> Dict[str, object]:
        return {"file": self.file_path, "risk_score": self.risk_score,
                "findings": self.findings, "worst": self.worst.value}


def security_hotspots(annotated, limit: int = 10) -> List[Hotspot]:
    """Files of an :class:`~codewiki.annotations.AnnotatedGraph` ranked by the
    summed score of their medium-or-worse findings."""
    hotspots = []
    for path in annotated.graph.table.paths:
        serious = [a for a in annotated.for_file(path)
                   if a.kind == SECURITY_FINDING and a.severity.rank >= Severity.MEDIUM.rank]
        if not serious:
            continue
        hotspots.append(Hotspot(
            file_path=path,
            risk_score=sum(SEVERITY_SCORES[a.severity] for a in serious),
            findings=len(serious),
            worst=max((a.severity for a in serious), key=lambda s: s.rank),
        ))
    hotspots.sort(key=lambda h: (-h.risk_score, h.file_path))
    return hotspots[:limit]


# ===================================================================
# Quality and refactoring
# ===================================================================

_COMPLEXITY_KEYWORDS = {
    "python": ("if ", "elif ", "for ", "while ", "except ", " and ", " or ", "case "),
}
_DEFAULT_COMPLEXITY_KEYWORDS = ("if ", "if(", "for ", "for(", "while ", "while(", "case ",
                                "catch", "&&", "||", "match ")


def estimate_complexity(symbol: Symbol) -> int:
    """Rough cyclomatic complexity from branch keywords in the body."""
    keywords = _COMPLEXITY_KEYWORDS.get(symbol.language, _DEFAULT_COMPLEXITY_KEYWORDS)
    body = "\n".join(symbol.code.splitlines()[1:])
    return 1 + sum(body.count(k) for k in keywords)


def nesting_depth(hints: Sequence[FlowHint]) -> int:
    depth = 0
    for hint in hints:
        if hint.kind in ("branch", "loop", "try", "handler"):
            inner = max(nesting_depth(hint.body), nesting_depth(hint.orelse),
                        nesting_depth(hint.handlers) - 1)
            depth = max(depth, 1 + inner)
    return depth


def parameter_count(signature: str) -> int:
    start, end = signature.find("("), signature.rfind(")")
    if start < 0 or end <= start:
        return 0
    inner = signature[start + 1:end]
    params, level, current = [], 0, ""
    for char in inner:
        if char in "([{<":
            level += 1
        elif char in ")]}>":
            level -= 1
        if char == "," and level == 0:
            params.append(current)
            current = ""
        else:
            current += char
    params.append(current)
    names = [p.strip().split(":")[0].split("=")[0].strip() for p in params]
    return len([n for n in names if n and n not in ("self", "cls", "&self", "&mut self", "*", "/")])


class QualityAnalyzer:
    """Heuristic 0-100 quality score for every function, method and class."""

    name = "quality"

    MAX_LINES = 50
    MAX_PARAMS = 5
    MAX_NESTING = 3

    def analyze(self, graph: CodeGraph) -> List[Annotation]:
        annotations = []
        for symbol in graph.symbols.values():
            if not (symbol.is_callable or symbol.kind == "class"):
                continue
            score, notes = self.score(symbol, graph.table.flows.get(symbol.symbol_id, []))
            annotations.append(Annotation(
                key=symbol.symbol_id,
                kind=QUALITY_SCORE,
                severity=_quality_severity(score),
                payload=f"quality score {score}/100" + (f": {'; '.join(notes)}" if notes else ""),
                source=self.name,
                line=symbol.start_line,
                category="quality",
            ))
        return annotations

    def score(self, symbol: Symbol, hints: Sequence[FlowHint]) -> Tuple[int, List[str]]:
        notes: List[str] = []
        points = 0.0
        if symbol.docstring:
            points += 40
        else:
            points += 12
            notes.append("missing docstring")

        length = symbol.end_line - symbol.start_line + 1
        if length < self.MAX_LINES:
            points += 30
        else:
            points += max(0.0, 30 * (1 - (length - self.MAX_LINES) / self.MAX_LINES))
            notes.append(f"{length} lines")

        if symbol.is_callable:
            params = parameter_count(symbol.signature)
            if params <= self.MAX_PARAMS:
                points += 15
            else:
                notes.append(f"{params} parameters")
            depth = nesting_depth(hints)
            if depth <= self.MAX_NESTING:
                points += 15
            else:
                notes.append(f"nesting depth {depth}")
        else:
            points += 30
        return int(round(min(points, 100))), notes


def _quality_severity(score: int) -> Severity:
    if score >= 80:
        return Severity.INFO
    if score >= 60:
        return Severity.LOW
    if score >= 40:
        return Severity.MEDIUM
    return Severity.HIGH


class RefactorAdvisor:
    """Suggests refactorings for long, deeply nested, wide or cyclic code."""

    name = "refactoring"

    LONG_FUNCTION = 50
    MAX_PARAMS = 5
    MAX_NESTING = 3
    MAX_FAN_OUT = 10

    def analyze(self, graph: CodeGraph) -> List[Annotation]:
        annotations: List[Annotation] = []
        for symbol in graph.symbols.values():
            if not symbol.is_callable:
                continue
            for severity, category, text in self.suggestions_for(graph, symbol):
                annotations.append(Annotation(
                    key=symbol.symbol_id, kind=REFACTOR_SUGGESTION, severity=severity,
                    payload=text, source=self.name, line=symbol.start_line, category=category,
                ))
        for cycle in graph.find_cycles():
            if len(cycle) < 2:
                continue
            names = " -> ".join(graph.label(member) for member in cycle)
            for member in cycle:
                annotations.append(Annotation(
                    key=member, kind=REFACTOR_SUGGESTION, severity=Severity.MEDIUM,
                    payload=f"Part of a call cycle ({names}); break it with an interface or callback",
                    source=self.name, line=graph.symbols[member].start_line, category="call-cycle",
                ))
        return annotations

    def suggestions_for(self, graph: CodeGraph, symbol: Symbol) -> List[Tuple[Severity, str, str]]:
        found: List[Tuple[Severity, str, str]] = []
        length = symbol.end_line - symbol.start_line + 1
        if length > self.LONG_FUNCTION:
            severity = Severity.MEDIUM if length > 2 * self.LONG_FUNCTION else Severity.LOW
            found.append((severity, "long-function",
                          f"{length} lines long; extract smaller helper functions"))
        params = parameter_count(symbol.signature)
        if params > self.MAX_PARAMS:
            found.append((Severity.LOW, "long-parameter-list",
                          f"takes {params} parameters; introduce a parameter object"))
        depth = nesting_depth(graph.table.flows.get(symbol.symbol_id, []))
        if depth > self.MAX_NESTING:
            found.append((Severity.MEDIUM if depth > self.MAX_NESTING + 1 else Severity.LOW,
                          "deep-nesting",
                          f"nesting depth {depth}; flatten with guard clauses or early returns"))
        complexity = estimate_complexity(symbol)
        if complexity > 10:
            found.append((Severity.MEDIUM, "high-complexity",
                          f"estimated cyclomatic complexity {complexity}; split the decision logic"))
        fan_out = len({e.dst for e in graph.callees(symbol.symbol_id) if not e.unresolved})
        if fan_out > self.MAX_FAN_OUT:
            found.append((Severity.LOW, "high-fan-out",
                          f"calls {fan_out} project functions; split responsibilities"))
        return found
