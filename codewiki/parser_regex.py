"""Line-oriented adapter for brace-delimited languages without a grammar.

Declarations are found with per-language patterns and bodies are delimited by
brace matching (string literals and ``//`` comments stripped first).  Methods
are attached to the innermost enclosing class / struct / impl / trait.  The
adapter emits no flow hints, so control-flow graphs for these languages are
single-block.  An unbalanced body marks the outcome ``PartialError``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern, Tuple

from .models import ParseOutcome, SourceUnit
from .parser import OutcomeBuilder

logger = logging.getLogger(__name__)

_VIS = r"(?P<vis>(?:pub(?:\([^)]*\))?|public|private|protected|internal|export|static)\s+)?"

_RUST = [
    (re.compile(r"^\s*" + _VIS + r"(?:default\s+)?(?:const\s+)?(?:async\s+)?(?:unsafe\s+)?"
                r"(?:extern\s+\"[^\"]*\"\s+)?fn\s+(?P<name>\w+)"), "function"),
    (re.compile(r"^\s*" + _VIS + r"(?:struct|enum|union|trait)\s+(?P<name>\w+)"), "type"),
    (re.compile(r"^\s*(?:unsafe\s+)?impl(?:<[^>]*>)?\s+(?:[\w:<>, ]+?\s+for\s+)?(?P<name>\w+)"), "impl"),
]

_GO = [
    (re.compile(r"^func\s+\(\s*\w*\s*\*?\s*(?P<recv>\w+)[^)]*\)\s*(?P<name>\w+)"), "method"),
    (re.compile(r"^func\s+(?P<name>\w+)"), "function"),
    (re.compile(r"^type\s+(?P<name>\w+)\s+(?:struct|interface)"), "type"),
]

_JAVA_LIKE = [
    (re.compile(r"^\s*" + _VIS + r"(?:(?:static|abstract|final|sealed|partial|readonly)\s+)*"
                r"(?:class|interface|enum|record|struct)\s+(?P<name>\w+)"), "class"),
    (re.compile(r"^\s*" + _VIS + r"(?:(?:static|final|abstract|synchronized|async|override|"
                r"virtual|native)\s+)*[\w<>\[\],.?]+\s+(?P<name>\w+)\s*\([^;]*$"), "function"),
]

_C_LIKE = [
    (re.compile(r"^\s*(?:typedef\s+)?(?P<vis>)(?:struct|class|union|enum)\s+(?P<name>\w+)"
                r"\s*(?::[^{;]*)?\{?\s*$"), "class"),
    (re.compile(r"^" + _VIS + r"(?:inline\s+|extern\s+|virtual\s+)*[\w\*&:<>]+(?:\s+[\w\*&:<>]+)*"
                r"\s+[\*&]*(?P<name>[A-Za-z_][\w:~]*)\s*\([^;]*$"), "function"),
]

_TS_LIKE = [
    (re.compile(r"^\s*" + _VIS + r"(?:default\s+)?(?:async\s+)?function\s*\*?\s*(?P<name>\w+)"), "function"),
    (re.compile(r"^\s*" + _VIS + r"(?:default\s+)?(?:abstract\s+)?class\s+(?P<name>\w+)"), "class"),
    (re.compile(r"^\s*" + _VIS + r"(?:const|let|var)\s+(?P<name>\w+)\s*(?::[^=]+)?=\s*"
                r"(?:async\s+)?(?:\([^)]*\)|\w+)\s*(?::[^=]+)?=>"), "function"),
    (re.compile(r"^\s*" + _VIS + r"(?:interface|type)\s+(?P<name>\w+)"), "type"),
]

DECLARATIONS: Dict[str, List[Tuple[Pattern[str], str]]] = {
    "rust": _RUST,
    "go": _GO,
    "java": _JAVA_LIKE,
    "c_sharp": _JAVA_LIKE,
    "c": _C_LIKE,
    "cpp": _C_LIKE,
    "javascript": _TS_LIKE,
    "typescript": _TS_LIKE,
    "tsx": _TS_LIKE,
}

IMPORTS: Dict[str, List[Pattern[str]]] = {
    "rust": [re.compile(r"^\s*(?:pub\s+)?use\s+([\w:]+)")],
    "go": [re.compile(r"^\s*import\s+(?:\w+\s+)?\"([^\"]+)\""),
           re.compile(r"^\s+(?:\w+\s+)?\"([^\"]+)\"\s*$")],
    "java": [re.compile(r"^\s*import\s+(?:static\s+)?([\w.]+)")],
    "c_sharp": [re.compile(r"^\s*using\s+(?:static\s+)?([\w.]+)\s*;")],
    "c": [re.compile(r"^\s*#\s*include\s*[<\"]([^>\"]+)[>\"]")],
    "cpp": [re.compile(r"^\s*#\s*include\s*[<\"]([^>\"]+)[>\"]")],
    "javascript": [re.compile(r"^\s*import\s.*?from\s+['\"]([^'\"]+)['\"]"),
                   re.compile(r"require\(\s*['\"]([^'\"]+)['\"]\s*\)")],
}
IMPORTS["typescript"] = IMPORTS["javascript"]
IMPORTS["tsx"] = IMPORTS["javascript"]

_TS_NAMED_IMPORT = re.compile(
    r"^\s*import\s+(?:(?P<default>\w+)\s*,?\s*)?(?:\{(?P<named>[^}]*)\})?\s*"
    r"(?:\*\s+as\s+(?P<ns>\w+))?\s*from\s+['\"]"
)

_CALL = re.compile(r"\b([A-Za-z_]\w*(?:(?:\.|::|->)[A-Za-z_]\w*)*)\s*\(")
_STRIP = re.compile(r"\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])'|`[^`]*`|/\*.*?\*/|//.*$")

KEYWORDS = frozenset({
    "if", "else", "for", "while", "do", "switch", "case", "return", "match", "loop",
    "catch", "try", "throw", "sizeof", "typeof", "new", "delete", "fn", "func",
    "function", "defer", "go", "select", "using", "lock", "foreach", "synchronized",
    "await", "yield", "assert", "super", "this", "self", "where", "impl", "as", "in",
})

_LOOKAHEAD_LINES = 5


@dataclass
class _Declaration:
    kind: str
    name: str
    start: int  # 0-based line index
    end: int
    visibility: str
    receiver: str = ""
    body_line: int = -1
    body_col: int = -1


class RegexAdapter:
    """Declarations, calls and imports from line patterns and brace matching."""

    name = "regex"
    languages: Tuple[str, ...] = tuple(sorted(DECLARATIONS))

    def parse(self, unit: SourceUnit) -> ParseOutcome:
        b = OutcomeBuilder(unit)
        module = b.add_module(_leading_doc(b.lines))
        stripped = [_STRIP.sub('""', line) for line in b.lines]
        has_exports = any(line.lstrip().startswith("export ") for line in b.lines)

        declarations = self._declarations(unit.language, b, stripped, has_exports)
        containers = [d for d in declarations if d.kind in ("class", "type", "impl")]
        symbol_ids: Dict[Tuple[str, str], str] = {}

        for decl in sorted(declarations, key=lambda d: (d.start, -d.end)):
            if decl.kind == "impl":
                continue
            owner = decl.receiver or _innermost_container(decl, containers)
            is_member = bool(owner) and decl.kind in ("function", "method")
            kind = "method" if is_member else decl.kind
            qual_parts = [b.module_name] + ([owner] if is_member else []) + [decl.name]
            parent_id = symbol_ids.get(("type", owner)) if is_member else None
            symbol = b.add_symbol(
                kind, decl.name, ".".join(qual_parts),
                decl.start + 1, decl.end + 1, parent_id or module.symbol_id,
                visibility=decl.visibility,
                signature=b.lines[decl.start].strip().rstrip("{").strip(),
                docstring=_doc_above(b.lines, decl.start),
            )
            if kind in ("class", "type"):
                symbol_ids[("type", decl.name)] = symbol.symbol_id
            if kind in ("function", "method") and decl.body_line >= 0:
                for name, line in self._calls(stripped, decl):
                    b.reference(symbol.symbol_id, name, "calls", line)
        self._imports(unit.language, b, module.symbol_id)
        return b.finish()

    def _declarations(self, language: str, b: OutcomeBuilder, stripped: List[str],
                      has_exports: bool) -> List[_Declaration]:
        patterns = DECLARATIONS.get(language, [])
        found: List[_Declaration] = []
        for index, line in enumerate(stripped):
            for pattern, kind in patterns:
                match = pattern.match(line)
                if match is None:
                    continue
                name = match.group("name")
                if name in KEYWORDS:
                    continue
                groups = match.groupdict()
                vis_raw = (groups.get("vis") or "").strip()
                decl = _Declaration(
                    kind=kind, name=name.split("::")[-1], start=index, end=index,
                    visibility=_visibility(language, vis_raw, name, has_exports),
                    receiver=groups.get("recv") or "",
                )
                if kind == "method":
                    decl.kind = "function"
                end, body_line, body_col, balanced = _block_extent(stripped, index)
                if body_line >= 0:
                    decl.end, decl.body_line, decl.body_col = end, body_line, body_col
                if not balanced:
                    b.diagnostic(f"unbalanced braces in body of '{decl.name}'", index + 1)
                found.append(decl)
                break
        return found

    @staticmethod
    def _calls(stripped: List[str], decl: _Declaration) -> List[Tuple[str, int]]:
        calls: List[Tuple[str, int]] = []
        for index in range(decl.body_line, decl.end + 1):
            text = stripped[index]
            if index == decl.body_line:
                text = text[decl.body_col + 1:]
            for match in _CALL.finditer(text):
                name = match.group(1).replace("::", ".").replace("->", ".")
                head = name.split(".")[0]
                if name in KEYWORDS or (head in KEYWORDS and head not in ("self", "this")):
                    continue
                calls.append((name, index + 1))
        return calls

    @staticmethod
    def _imports(language: str, b: OutcomeBuilder, module_id: str) -> None:
        patterns = IMPORTS.get(language, [])
        in_go_block = False
        for index, line in enumerate(b.lines):
            if language == "go":
                if re.match(r"^\s*import\s*\($", line):
                    in_go_block = True
                    continue
                if in_go_block and line.strip() == ")":
                    in_go_block = False
                    continue
            for pos, pattern in enumerate(patterns):
                if language == "go" and pos == 1 and not in_go_block:
                    continue
                match = pattern.search(line)
                if match is None:
                    continue
                spec = match.group(1)
                if language == "rust":
                    spec = spec.rstrip(":").replace("::", ".")
                bindings: Tuple[Tuple[str, str], ...] = ()
                if language in ("javascript", "typescript", "tsx"):
                    bindings = _ts_bindings(line)
                elif language == "rust" and "." in spec:
                    last = spec.rsplit(".", 1)[-1]
                    bindings = ((last, ""),) if last[:1].islower() else ((last, last),)
                b.reference(module_id, spec, "imports", index + 1, bindings=bindings)
                break


def _visibility(language: str, vis_raw: str, name: str, has_exports: bool) -> str:
    if language == "go":
        return "public" if name[:1].isupper() else "private"
    if language == "rust":
        return "public" if vis_raw.startswith("pub") else "private"
    if language in ("c", "cpp"):
        return "private" if vis_raw == "static" else "public"
    if language in ("javascript", "typescript", "tsx"):
        return "public" if vis_raw == "export" or not has_exports else "private"
    return "private" if vis_raw == "private" else "public"


def _block_extent(stripped: List[str], start: int) -> Tuple[int, int, int, bool]:
    """``(end_index, open_line, open_col, balanced)`` for a declaration at *start*.

    ``open_line`` is -1 when a ``;`` ends the declaration before any ``{``
    (prototypes, trait signatures).
    """
    open_line, open_col = -1, -1
    for index in range(start, min(start + _LOOKAHEAD_LINES, len(stripped))):
        text = stripped[index]
        brace = text.find("{")
        semi = text.find(";")
        if brace >= 0 and (semi < 0 or brace < semi):
            open_line, open_col = index, brace
            break
        if semi >= 0:
            return start, -1, -1, True
    if open_line < 0:
        return start, -1, -1, True

    depth = 0
    for index in range(open_line, len(stripped)):
        text = stripped[index][open_col:] if index == open_line else stripped[index]
        for char in text:
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return index, open_line, open_col, True
    return len(stripped) - 1, open_line, open_col, False


def _innermost_container(decl: _Declaration, containers: List[_Declaration]) -> str:
    best: Optional[_Declaration] = None
    for container in containers:
        if container is decl or container.body_line < 0:
            continue
        if container.start < decl.start and container.end >= decl.end:
            if best is None or container.start > best.start:
                best = container
    return best.name if best is not None else ""


def _ts_bindings(line: str) -> Tuple[Tuple[str, str], ...]:
    match = _TS_NAMED_IMPORT.match(line)
    if match is None:
        return ()
    bindings: List[Tuple[str, str]] = []
    if match.group("default"):
        bindings.append((match.group("default"), "default"))
    if match.group("ns"):
        bindings.append((match.group("ns"), ""))
    for item in (match.group("named") or "").split(","):
        parts = item.strip().split(" as ")
        if parts and parts[0].strip():
            original = parts[0].strip()
            bindings.append(((parts[1] if len(parts) > 1 else original).strip(), original))
    return tuple(bindings)


def _doc_above(lines: List[str], index: int) -> str:
    """Consecutive ``///``, ``//`` or ``*`` comment lines right above a declaration."""
    collected: List[str] = []
    cursor = index - 1
    while cursor >= 0:
        text = lines[cursor].strip()
        if text.startswith(("///", "//", "*", "/**", "#[")):
            if not text.startswith("#["):
                collected.append(text.lstrip("/*! ").rstrip("*/ ").strip())
            cursor -= 1
            continue
        break
    return "\n".join(line for line in reversed(collected) if line)


def _leading_doc(lines: List[str]) -> str:
    collected: List[str] = []
    for line in lines:
        text = line.strip()
        if text.startswith(("//!", "/*!", "/**")) or (collected and text.startswith(("*", "//"))):
            collected.append(text.lstrip("/*! ").rstrip("*/ ").strip())
            if text.endswith("*/"):
                break
            continue
        break
    return "\n".join(line for line in collected if line)
