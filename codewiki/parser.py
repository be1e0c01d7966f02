"""Language adapters: turn a SourceUnit into symbols, raw references and flow hints.

Every adapter satisfies :class:`LanguageAdapter` and is looked up through an
:class:`AdapterRegistry` by language tag.  Python is parsed with Tree-sitter
(error tolerant) and falls back to the built-in ``ast`` module, re-parsing the
longest valid prefix when the file has a syntax error.  JavaScript lives in
:mod:`codewiki.parser_js`, brace-delimited languages without a grammar in
:mod:`codewiki.parser_regex`.

Adapters never raise on bad input: syntax problems become ``PartialError``
outcomes carrying ``RecoverablePerFile`` diagnostics.
"""

from __future__ import annotations

import ast
import importlib
import logging
import threading
from pathlib import PurePosixPath
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from .errors import ErrorKind
from .models import (
    Diagnostic,
    FlowHint,
    ParseOutcome,
    ParseStatus,
    RawReference,
    SourceUnit,
    Symbol,
    make_symbol_id,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Language <-> file-extension mapping (extensible)
# ---------------------------------------------------------------------------
LANGUAGE_MAP: Dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".hpp": "cpp",
    ".c": "c",
    ".h": "c",
    ".cs": "c_sharp",
}

# Interpreter names recognised on a ``#!`` line of an extension-less script.
SHEBANG_MAP: Dict[str, str] = {
    "python": "python",
    "node": "javascript",
}

MAX_SYNTAX_DIAGNOSTICS = 20


def detect_language(path: str, head: str = "") -> Optional[str]:
    """Language tag for *path*, or None when no adapter could want it.

    Extension wins; extension-less files are classified by their shebang.
    """
    suffix = PurePosixPath(path).suffix.lower()
    if suffix:
        return LANGUAGE_MAP.get(suffix)
    first = head.splitlines()[0] if head else ""
    if first.startswith("#!"):
        for interpreter, language in SHEBANG_MAP.items():
            if interpreter in first:
                return language
    return None


def module_name_for(path: str) -> str:
    """Dotted module name for a project-relative path."""
    pure = PurePosixPath(path)
    parts = list(pure.with_suffix("").parts) if pure.suffix else list(pure.parts)
    if len(parts) > 1 and parts[-1] == "__init__":
        parts = parts[:-1]
    return ".".join(parts) or pure.stem


# ===================================================================
# Adapter interface and registry
# ===================================================================

class LanguageAdapter(Protocol):
    """Anything that can turn a SourceUnit into a ParseOutcome."""

    name: str
    languages: Tuple[str, ...]

    def parse(self, unit: SourceUnit) -> ParseOutcome:
        ...


class AdapterRegistry:
    """Maps language tags to adapters; later registrations win."""

    def __init__(self, adapters: Iterable[LanguageAdapter] = ()) -> None:
        self._by_language: Dict[str, LanguageAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: LanguageAdapter) -> None:
        for language in adapter.languages:
            self._by_language[language] = adapter

    def adapter_for(self, language: str) -> Optional[LanguageAdapter]:
        return self._by_language.get(language)

    def supports(self, language: Optional[str]) -> bool:
        return language is not None and language in self._by_language

    @property
    def languages(self) -> List[str]:
        return sorted(self._by_language)

    def __len__(self) -> int:
        return len(self._by_language)

    def describe(self) -> Dict[str, str]:
        return {lang: self._by_language[lang].name for lang in self.languages}

    @classmethod
    def default(cls) -> "AdapterRegistry":
        """Registry with every adapter this installation can run.

        Tree-sitter grammars are used where installed; the regex adapter
        covers the remaining brace-delimited languages.
        """
        from .parser_js import JavaScriptAdapter
        from .parser_regex import RegexAdapter

        registry = cls()
        registry.register(RegexAdapter())
        for language in ("javascript", "typescript", "tsx"):
            if load_grammar(language) is not None:
                registry.register(JavaScriptAdapter(language))
        registry.register(PythonAdapter())
        logger.debug("Adapters: %s", registry.describe())
        return registry


# ===================================================================
# Tree-sitter grammar loading
# ===================================================================

# Map language name -> (module, factory) that provides the tree-sitter Language
_GRAMMAR_MODULES: Dict[str, Tuple[str, str]] = {
    "python": ("tree_sitter_python", "language"),
    "javascript": ("tree_sitter_javascript", "language"),
    "typescript": ("tree_sitter_typescript", "language_typescript"),
    "tsx": ("tree_sitter_typescript", "language_tsx"),
}

_GRAMMARS: Dict[str, Any] = {}
_GRAMMAR_LOCK = threading.Lock()


def load_grammar(language: str) -> Optional[Any]:
    """Return the cached tree-sitter ``Language`` for *language*, or None."""
    with _GRAMMAR_LOCK:
        if language in _GRAMMARS:
            return _GRAMMARS[language]
        _GRAMMARS[language] = _load_grammar_uncached(language)
        return _GRAMMARS[language]


def _load_grammar_uncached(language: str) -> Optional[Any]:
    spec = _GRAMMAR_MODULES.get(language)
    if spec is None:
        return None
    try:
        from tree_sitter import Language  # type: ignore[import-untyped]
    except ImportError:
        logger.warning(
            "tree-sitter is not installed -- "
            "Tree-sitter parsing unavailable. "
            "Install with: pip install tree-sitter tree-sitter-python"
        )
        return None

    mod_name, factory = spec
    try:
        mod = importlib.import_module(mod_name)
        # tree-sitter >=0.22 per-language packages expose a factory that
        # returns the Language capsule.
        ts_lang = Language(getattr(mod, factory)())
        logger.debug("Loaded tree-sitter grammar for %s", language)
        return ts_lang
    except ImportError:
        logger.warning(
            "Grammar package '%s' not installed for language '%s'. "
            "Install with: pip install %s",
            mod_name, language, mod_name.replace("_", "-"),
        )
    except Exception as exc:
        logger.warning("Could not load tree-sitter grammar for %s: %s", language, exc)
    return None


def new_ts_parser(ts_lang: Any) -> Any:
    """A fresh tree-sitter parser; parser objects are not shared across threads."""
    from tree_sitter import Parser as TSParser  # type: ignore[import-untyped]

    return TSParser(ts_lang)


def ts_text(node: Any) -> str:
    if node is None:
        return ""
    return node.text.decode("utf-8", errors="replace")


def ts_line(node: Any) -> int:
    return node.start_point[0] + 1


def short_label(text: str, limit: int = 48) -> str:
    """First line of *text*, clipped for use as a CFG label."""
    first = text.strip().splitlines()[0] if text.strip() else ""
    return first if len(first) <= limit else first[: limit - 3] + "..."


def collect_syntax_errors(root: Any, builder: "OutcomeBuilder") -> None:
    """Record ERROR and MISSING nodes of a tree-sitter tree as diagnostics."""
    if not root.has_error:
        return
    found = 0
    stack = [root]
    while stack and found < MAX_SYNTAX_DIAGNOSTICS:
        node = stack.pop()
        if node.type == "ERROR":
            builder.diagnostic(f"syntax error near '{short_label(ts_text(node), 32)}'", ts_line(node))
            found += 1
            continue
        if node.is_missing:
            builder.diagnostic(f"missing '{node.type}'", ts_line(node))
            found += 1
            continue
        if node.has_error:
            stack.extend(reversed(node.children))


# ===================================================================
# Outcome builder (shared by every adapter)
# ===================================================================

class OutcomeBuilder:
    """Accumulates symbols, references, diagnostics and flows for one unit."""

    def __init__(self, unit: SourceUnit) -> None:
        self.unit = unit
        self.lines = unit.text.splitlines()
        self.module_name = module_name_for(unit.path)
        self.outcome = ParseOutcome(unit=unit)
        self._seen: Set[str] = set()

    def add_module(self, docstring: str = "") -> Symbol:
        return self._append(Symbol(
            symbol_id=make_symbol_id(self.unit.path, self.module_name, "module"),
            kind="module",
            name=self.module_name.split(".")[-1],
            qualname=self.module_name,
            file_path=self.unit.path,
            start_line=1,
            end_line=max(len(self.lines), 1),
            language=self.unit.language,
            docstring=docstring,
            code=self.unit.text,
        ))

    def add_symbol(
        self,
        kind: str,
        name: str,
        qualname: str,
        start_line: int,
        end_line: int,
        parent_id: Optional[str],
        visibility: str = "public",
        signature: str = "",
        docstring: str = "",
    ) -> Symbol:
        end_line = max(end_line, start_line)
        return self._append(Symbol(
            symbol_id=make_symbol_id(self.unit.path, qualname, kind),
            kind=kind,
            name=name,
            qualname=qualname,
            file_path=self.unit.path,
            start_line=start_line,
            end_line=end_line,
            language=self.unit.language,
            visibility=visibility,
            parent_id=parent_id,
            signature=signature,
            docstring=docstring,
            code="\n".join(self.lines[start_line - 1: end_line]),
        ))

    def _append(self, symbol: Symbol) -> Symbol:
        # A redefinition in the same file keeps the later body.
        if symbol.symbol_id in self._seen:
            self.outcome.symbols = [s for s in self.outcome.symbols
                                    if s.symbol_id != symbol.symbol_id]
        self._seen.add(symbol.symbol_id)
        self.outcome.symbols.append(symbol)
        return symbol

    def reference(
        self,
        source_id: str,
        target: str,
        kind: str,
        line: int,
        bindings: Tuple[Tuple[str, str], ...] = (),
    ) -> None:
        if not target:
            return
        self.outcome.references.append(RawReference(
            source_id=source_id,
            target_name=target,
            kind=kind,
            file_path=self.unit.path,
            line=line,
            bindings=bindings,
        ))

    def diagnostic(self, message: str, line: Optional[int] = None) -> None:
        self.outcome.diagnostics.append(Diagnostic(
            kind=ErrorKind.RECOVERABLE_PER_FILE,
            location=self.unit.path,
            message=message,
            line=line,
        ))

    def flow(self, symbol_id: str, hints: List[FlowHint]) -> None:
        self.outcome.flows[symbol_id] = hints

    def finish(self) -> ParseOutcome:
        if self.outcome.diagnostics and self.outcome.status == ParseStatus.OK:
            self.outcome.status = ParseStatus.PARTIAL_ERROR
        return self.outcome


def python_visibility(name: str) -> str:
    if name.startswith("__") and name.endswith("__"):
        return "public"
    return "private" if name.startswith("_") else "public"


# ===================================================================
# Python adapter
# ===================================================================

class PythonAdapter:
    """Python adapter: Tree-sitter when the grammar loads, ``ast`` otherwise."""

    name = "python"
    languages: Tuple[str, ...] = ("python",)

    def __init__(self, use_tree_sitter: bool = True) -> None:
        self._ts_lang = load_grammar("python") if use_tree_sitter else None
        if self._ts_lang is not None:
            logger.info("Using Tree-sitter parser for Python (error-tolerant)")
        else:
            logger.info("Using AST fallback parser for Python")

    @property
    def backend(self) -> str:
        return "tree-sitter" if self._ts_lang is not None else "ast"

    def parse(self, unit: SourceUnit) -> ParseOutcome:
        if self._ts_lang is not None:
            return _TreeSitterPythonWalker(unit, self._ts_lang).run()
        return _AstPythonWalker(unit).run()


_TS_DEFINITIONS = ("function_definition", "class_definition", "decorated_definition")


class _TreeSitterPythonWalker:
    def __init__(self, unit: SourceUnit, ts_lang: Any) -> None:
        self.b = OutcomeBuilder(unit)
        self.ts_lang = ts_lang
        self.module_vars: Set[str] = set()

    def run(self) -> ParseOutcome:
        tree = new_ts_parser(self.ts_lang).parse(self.b.unit.text.encode("utf-8"))
        root = tree.root_node
        module = self.b.add_module(_ts_module_docstring(root))
        self._module_variables(root, module)
        self._walk(root, [module.qualname], [module.symbol_id], in_class=False)
        for call_name, line in _ts_python_calls(root):
            self.b.reference(module.symbol_id, call_name, "calls", line)
        self._imports(root, module.symbol_id)
        collect_syntax_errors(root, self.b)
        return self.b.finish()

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def _walk(self, node: Any, scope: List[str], scope_ids: List[str], in_class: bool) -> None:
        """Extract class / function definitions below *node*."""
        for child in node.children:
            actual = child
            # Unwrap @decorated_definition -> inner function/class
            if child.type == "decorated_definition":
                actual = child.child_by_field_name("definition")
                if actual is None:
                    continue
            if actual.type == "function_definition":
                self._function(child, actual, scope, scope_ids, in_class)
            elif actual.type == "class_definition":
                self._class(child, actual, scope, scope_ids)
            elif child.type == "ERROR":
                # Recovered definitions can sit inside an ERROR node.
                self._walk(child, scope, scope_ids, in_class)

    def _function(self, outer: Any, func: Any, scope: List[str],
                  scope_ids: List[str], in_class: bool) -> None:
        name_node = func.child_by_field_name("name")
        if name_node is None:
            return
        name = ts_text(name_node)
        params = ts_text(func.child_by_field_name("parameters")) or "()"
        returns = func.child_by_field_name("return_type")
        prefix = "async def" if func.children and func.children[0].type == "async" else "def"
        signature = f"{prefix} {name}{params}"
        if returns is not None:
            signature += f" -> {ts_text(returns)}"

        symbol = self.b.add_symbol(
            "method" if in_class else "function",
            name,
            ".".join(scope + [name]),
            ts_line(outer),
            outer.end_point[0] + 1,
            scope_ids[-1],
            visibility=python_visibility(name),
            signature=signature,
            docstring=_ts_docstring(func),
        )

        body = func.child_by_field_name("body")
        if body is None:
            return
        for call_name, line in _ts_python_calls(body):
            self.b.reference(symbol.symbol_id, call_name, "calls", line)
        self._data_references(body, symbol.symbol_id)
        self.b.flow(symbol.symbol_id, self._flow(body))
        self._walk(body, scope + [name], scope_ids + [symbol.symbol_id], in_class=False)

    def _class(self, outer: Any, cls: Any, scope: List[str], scope_ids: List[str]) -> None:
        name_node = cls.child_by_field_name("name")
        if name_node is None:
            return
        name = ts_text(name_node)
        supers = cls.child_by_field_name("superclasses")
        symbol = self.b.add_symbol(
            "class",
            name,
            ".".join(scope + [name]),
            ts_line(outer),
            outer.end_point[0] + 1,
            scope_ids[-1],
            visibility=python_visibility(name),
            signature=f"class {name}{ts_text(supers)}",
            docstring=_ts_docstring(cls),
        )
        if supers is not None:
            for arg in supers.named_children:
                if arg.type in ("identifier", "attribute"):
                    self.b.reference(symbol.symbol_id, ts_text(arg), "extends", ts_line(arg))

        body = cls.child_by_field_name("body")
        if body is not None:
            self._walk(body, scope + [name], scope_ids + [symbol.symbol_id], in_class=True)

    def _module_variables(self, root: Any, module: Symbol) -> None:
        pending = list(root.children)
        while pending:
            child = pending.pop(0)
            if child.type == "ERROR":
                pending[:0] = list(child.children)
                continue
            if child.type != "expression_statement":
                continue
            for sub in child.named_children:
                if sub.type != "assignment":
                    continue
                left = sub.child_by_field_name("left")
                if left is None or left.type != "identifier":
                    continue
                name = ts_text(left)
                if name in self.module_vars:
                    continue
                self.module_vars.add(name)
                self.b.add_symbol(
                    "variable", name, f"{module.qualname}.{name}",
                    ts_line(child), child.end_point[0] + 1, module.symbol_id,
                    visibility=python_visibility(name),
                    signature=short_label(ts_text(child), 80),
                )

    def _data_references(self, body: Any, symbol_id: str) -> None:
        """``reads`` of module variables and ``writes`` through ``global``."""
        if not self.module_vars:
            return
        reads: Dict[str, int] = {}
        writes: Dict[str, int] = {}
        stack = [body]
        while stack:
            node = stack.pop()
            if node.type in _TS_DEFINITIONS:
                continue
            if node.type == "global_statement":
                for ident in node.named_children:
                    name = ts_text(ident)
                    if name in self.module_vars:
                        writes.setdefault(name, ts_line(ident))
                continue
            if node.type == "identifier":
                name = ts_text(node)
                parent = node.parent
                is_attr = (
                    parent is not None and parent.type == "attribute"
                    and parent.child_by_field_name("object") is not None
                    and parent.child_by_field_name("object").start_byte != node.start_byte
                )
                if name in self.module_vars and not is_attr:
                    reads.setdefault(name, ts_line(node))
                continue
            stack.extend(reversed(node.children))
        for name, line in sorted(reads.items()):
            self.b.reference(symbol_id, name, "reads", line)
        for name, line in sorted(writes.items()):
            self.b.reference(symbol_id, name, "writes", line)

    # ------------------------------------------------------------------
    # Imports
    # ------------------------------------------------------------------

    def _imports(self, root: Any, module_id: str) -> None:
        pending = list(root.children)
        while pending:
            child = pending.pop(0)
            if child.type == "ERROR":
                pending[:0] = list(child.children)
            elif child.type == "import_statement":
                for sub in child.named_children:
                    if sub.type == "dotted_name":
                        mod = ts_text(sub)
                        self.b.reference(module_id, mod, "imports", ts_line(child),
                                         bindings=((mod, ""),))
                    elif sub.type == "aliased_import":
                        mod = ts_text(sub.child_by_field_name("name"))
                        alias = ts_text(sub.child_by_field_name("alias")) or mod
                        self.b.reference(module_id, mod, "imports", ts_line(child),
                                         bindings=((alias, ""),))
            elif child.type == "import_from_statement":
                mod_node = child.child_by_field_name("module_name")
                if mod_node is None:
                    continue
                bindings: List[Tuple[str, str]] = []
                for name_node in child.children_by_field_name("name"):
                    if name_node.type == "aliased_import":
                        original = ts_text(name_node.child_by_field_name("name"))
                        alias = ts_text(name_node.child_by_field_name("alias")) or original
                        bindings.append((alias, original))
                    else:
                        original = ts_text(name_node)
                        bindings.append((original, original))
                self.b.reference(module_id, ts_text(mod_node), "imports", ts_line(child),
                                 bindings=tuple(bindings))

    # ------------------------------------------------------------------
    # Flow hints
    # ------------------------------------------------------------------

    def _flow(self, block: Any) -> List[FlowHint]:
        hints: List[FlowHint] = []
        if block is None:
            return hints
        for stmt in block.named_children:
            kind = stmt.type
            line = ts_line(stmt)
            if kind == "comment":
                continue
            if kind == "if_statement":
                hints.append(FlowHint(
                    "branch", line,
                    label="if " + short_label(ts_text(stmt.child_by_field_name("condition"))),
                    body=self._flow(stmt.child_by_field_name("consequence")),
                    orelse=self._alternatives(stmt.children_by_field_name("alternative")),
                ))
            elif kind in ("for_statement", "while_statement"):
                if kind == "for_statement":
                    label = "for " + short_label(ts_text(stmt.child_by_field_name("left")))
                else:
                    label = "while " + short_label(ts_text(stmt.child_by_field_name("condition")))
                alternative = stmt.child_by_field_name("alternative")
                hints.append(FlowHint(
                    "loop", line, label=label,
                    body=self._flow(stmt.child_by_field_name("body")),
                    orelse=self._flow(_field_or_block(alternative)),
                ))
            elif kind == "try_statement":
                handlers: List[FlowHint] = []
                final: List[FlowHint] = []
                for clause in stmt.named_children:
                    if clause.type in ("except_clause", "except_group_clause"):
                        handlers.append(FlowHint(
                            "handler", ts_line(clause),
                            label=short_label(ts_text(clause).split(":")[0]),
                            body=self._flow(_field_or_block(clause)),
                        ))
                    elif clause.type == "finally_clause":
                        final = self._flow(_field_or_block(clause))
                hints.append(FlowHint(
                    "try", line, label="try",
                    body=self._flow(stmt.child_by_field_name("body")),
                    handlers=handlers, orelse=final,
                ))
            elif kind == "with_statement":
                hints.append(FlowHint("statement", line, label=short_label(ts_text(stmt).split(":")[0])))
                hints.extend(self._flow(stmt.child_by_field_name("body")))
            elif kind == "return_statement":
                hints.append(FlowHint("return", line, label=short_label(ts_text(stmt))))
            elif kind == "raise_statement":
                hints.append(FlowHint("raise", line, label=short_label(ts_text(stmt))))
            elif kind in _TS_DEFINITIONS:
                hints.append(FlowHint("statement", line, label=short_label(ts_text(stmt))))
            else:
                calls = _ts_python_calls(stmt)
                if calls:
                    hints.append(FlowHint("call", line, label=calls[0][0]))
                else:
                    hints.append(FlowHint("statement", line, label=short_label(ts_text(stmt))))
        return hints

    def _alternatives(self, alternatives: List[Any]) -> List[FlowHint]:
        if not alternatives:
            return []
        first, rest = alternatives[0], alternatives[1:]
        if first.type == "elif_clause":
            return [FlowHint(
                "branch", ts_line(first),
                label="elif " + short_label(ts_text(first.child_by_field_name("condition"))),
                body=self._flow(first.child_by_field_name("consequence")),
                orelse=self._alternatives(rest),
            )]
        return self._flow(_field_or_block(first))


def _field_or_block(node: Any) -> Any:
    """The ``body`` field of a clause, or its first ``block`` child."""
    if node is None:
        return None
    body = node.child_by_field_name("body")
    if body is not None:
        return body
    for child in node.named_children:
        if child.type == "block":
            return child
    return None


def _ts_python_calls(node: Any) -> List[Tuple[str, int]]:
    """Every call name below *node*, skipping nested definitions."""
    calls: List[Tuple[str, int]] = []

    def _find(current: Any) -> None:
        if current.type == "call":
            func = current.child_by_field_name("function")
            if func is not None:
                name = _resolve_ts_call_name(func)
                if name:
                    calls.append((name, ts_line(current)))
        for child in current.children:
            if child.type in _TS_DEFINITIONS:
                continue
            _find(child)

    _find(node)
    return calls


def _resolve_ts_call_name(func_node: Any) -> Optional[str]:
    """Resolve a Tree-sitter call-function node to a dotted name string."""
    if func_node.type == "identifier":
        return ts_text(func_node)
    if func_node.type == "attribute":
        parts: List[str] = []
        current = func_node
        while current is not None and current.type == "attribute":
            attr = current.child_by_field_name("attribute")
            if attr is not None:
                parts.append(ts_text(attr))
            current = current.child_by_field_name("object")
        if current is not None and current.type == "identifier":
            parts.append(ts_text(current))
        return ".".join(reversed(parts)) if parts else None
    if func_node.type == "call":
        inner = func_node.child_by_field_name("function")
        if inner is not None:
            return _resolve_ts_call_name(inner)
    return None


def _strip_string_literal(raw: str) -> str:
    for prefix in ("r", "u", "b", "R", "U", "B"):
        if raw.startswith(prefix) and raw[1:2] in ("'", '"'):
            raw = raw[1:]
            break
    for q in ('"""', "'''"):
        if raw.startswith(q) and raw.endswith(q) and len(raw) >= 6:
            return raw[3:-3].strip()
    for q in ('"', "'"):
        if raw.startswith(q) and raw.endswith(q) and len(raw) >= 2:
            return raw[1:-1].strip()
    return raw.strip()


def _ts_docstring(def_node: Any) -> str:
    """Extract the docstring from a function / class definition node."""
    body = def_node.child_by_field_name("body")
    if body is None:
        return ""
    for child in body.children:
        if child.type == "expression_statement":
            for expr in child.children:
                if expr.type == "string":
                    return _strip_string_literal(ts_text(expr))
            break
        elif child.type != "comment":
            break
    return ""


def _ts_module_docstring(root: Any) -> str:
    for child in root.children:
        if child.type == "expression_statement":
            for expr in child.children:
                if expr.type == "string":
                    return _strip_string_literal(ts_text(expr))
            break
        elif child.type != "comment":
            break
    return ""


# ===================================================================
# AST fallback (when tree-sitter is not installed)
# ===================================================================

class _AstPythonWalker:
    """Pure-Python fallback built on ``ast``.

    On a SyntaxError the longest parseable prefix of the file is used, so
    definitions before the error still come through.
    """

    MAX_PREFIX_ATTEMPTS = 50

    def __init__(self, unit: SourceUnit) -> None:
        self.b = OutcomeBuilder(unit)
        self.module_vars: Set[str] = set()

    def run(self) -> ParseOutcome:
        try:
            tree: Optional[ast.Module] = ast.parse(self.b.unit.text)
        except SyntaxError as exc:
            self.b.diagnostic(f"SyntaxError: {exc.msg}", exc.lineno)
            tree = self._parse_prefix(exc.lineno)
        except ValueError as exc:
            # e.g. source containing null bytes
            self.b.diagnostic(f"unparseable source: {exc}")
            tree = None

        if tree is None:
            self.b.add_module()
            return self.b.finish()

        module = self.b.add_module(ast.get_docstring(tree) or "")
        self._module_variables(tree, module)
        self._body(tree.body, [module.qualname], [module.symbol_id], in_class=False)
        for call_name, line in _ast_calls(tree.body):
            self.b.reference(module.symbol_id, call_name, "calls", line)
        self._imports(tree, module.symbol_id)
        return self.b.finish()

    def _parse_prefix(self, error_line: Optional[int]) -> Optional[ast.Module]:
        lines = self.b.lines
        cut = (error_line or len(lines)) - 1
        for _ in range(self.MAX_PREFIX_ATTEMPTS):
            if cut <= 0:
                return None
            try:
                return ast.parse("\n".join(lines[:cut]))
            except SyntaxError as exc:
                retry = (exc.lineno or cut) - 1
                cut = min(cut - 1, retry) if retry > 0 else cut - 1
            except ValueError:
                return None
        return None

    def _body(self, stmts: List[ast.stmt], scope: List[str], scope_ids: List[str],
              in_class: bool) -> None:
        for stmt in stmts:
            if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
                self._function(stmt, scope, scope_ids, in_class)
            elif isinstance(stmt, ast.ClassDef):
                self._class(stmt, scope, scope_ids)

    def _function(self, node: Any, scope: List[str], scope_ids: List[str], in_class: bool) -> None:
        start = node.decorator_list[0].lineno if node.decorator_list else node.lineno
        prefix = "async def" if isinstance(node, ast.AsyncFunctionDef) else "def"
        signature = f"{prefix} {node.name}({ast.unparse(node.args)})"
        if node.returns is not None:
            signature += f" -> {ast.unparse(node.returns)}"
        symbol = self.b.add_symbol(
            "method" if in_class else "function",
            node.name,
            ".".join(scope + [node.name]),
            start,
            getattr(node, "end_lineno", node.lineno),
            scope_ids[-1],
            visibility=python_visibility(node.name),
            signature=signature,
            docstring=ast.get_docstring(node) or "",
        )
        for call_name, line in _ast_calls(node.body):
            self.b.reference(symbol.symbol_id, call_name, "calls", line)
        self._data_references(node.body, symbol.symbol_id)
        self.b.flow(symbol.symbol_id, _ast_flow(node.body))
        self._body(node.body, scope + [node.name], scope_ids + [symbol.symbol_id], in_class=False)

    def _class(self, node: ast.ClassDef, scope: List[str], scope_ids: List[str]) -> None:
        start = node.decorator_list[0].lineno if node.decorator_list else node.lineno
        bases = ", ".join(ast.unparse(b) for b in node.bases)
        symbol = self.b.add_symbol(
            "class",
            node.name,
            ".".join(scope + [node.name]),
            start,
            getattr(node, "end_lineno", node.lineno),
            scope_ids[-1],
            visibility=python_visibility(node.name),
            signature=f"class {node.name}({bases})" if bases else f"class {node.name}",
            docstring=ast.get_docstring(node) or "",
        )
        for base in node.bases:
            name = _ast_name_from_expr(base)
            if name:
                self.b.reference(symbol.symbol_id, name, "extends", base.lineno)
        self._body(node.body, scope + [node.name], scope_ids + [symbol.symbol_id], in_class=True)

    def _module_variables(self, tree: ast.Module, module: Symbol) -> None:
        for stmt in tree.body:
            targets: List[ast.expr] = []
            if isinstance(stmt, ast.Assign):
                targets = list(stmt.targets)
            elif isinstance(stmt, ast.AnnAssign):
                targets = [stmt.target]
            for target in targets:
                if not isinstance(target, ast.Name) or target.id in self.module_vars:
                    continue
                self.module_vars.add(target.id)
                self.b.add_symbol(
                    "variable", target.id, f"{module.qualname}.{target.id}",
                    stmt.lineno, getattr(stmt, "end_lineno", stmt.lineno), module.symbol_id,
                    visibility=python_visibility(target.id),
                    signature=short_label(ast.get_source_segment(self.b.unit.text, stmt) or target.id, 80),
                )

    def _data_references(self, body: List[ast.stmt], symbol_id: str) -> None:
        if not self.module_vars:
            return
        reads: Dict[str, int] = {}
        writes: Dict[str, int] = {}
        for node in _walk_shallow(body):
            if isinstance(node, ast.Global):
                for name in node.names:
                    if name in self.module_vars:
                        writes.setdefault(name, node.lineno)
            elif isinstance(node, ast.Name) and node.id in self.module_vars:
                reads.setdefault(node.id, node.lineno)
        for name, line in sorted(reads.items()):
            self.b.reference(symbol_id, name, "reads", line)
        for name, line in sorted(writes.items()):
            self.b.reference(symbol_id, name, "writes", line)

    def _imports(self, tree: ast.Module, module_id: str) -> None:
        for stmt in tree.body:
            if isinstance(stmt, ast.Import):
                for alias in stmt.names:
                    self.b.reference(module_id, alias.name, "imports", stmt.lineno,
                                     bindings=((alias.asname or alias.name, ""),))
            elif isinstance(stmt, ast.ImportFrom):
                spec = "." * (stmt.level or 0) + (stmt.module or "")
                bindings = tuple(
                    (alias.asname or alias.name, alias.name)
                    for alias in stmt.names if alias.name != "*"
                )
                self.b.reference(module_id, spec, "imports", stmt.lineno, bindings=bindings)


_AST_DEFINITIONS = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)


def _walk_shallow(stmts: List[ast.stmt]) -> Iterable[ast.AST]:
    """``ast.walk`` over *stmts* that does not enter nested definitions."""
    stack: List[ast.AST] = list(reversed(stmts))
    while stack:
        node = stack.pop()
        if isinstance(node, _AST_DEFINITIONS):
            continue
        yield node
        stack.extend(reversed(list(ast.iter_child_nodes(node))))


def _ast_calls(stmts: List[ast.stmt]) -> List[Tuple[str, int]]:
    calls: List[Tuple[str, int]] = []
    for node in _walk_shallow(stmts):
        if isinstance(node, ast.Call):
            name = _ast_name_from_expr(node.func)
            if name:
                calls.append((name, node.lineno))
    return calls


def _ast_flow(stmts: List[ast.stmt]) -> List[FlowHint]:
    hints: List[FlowHint] = []
    for stmt in stmts:
        line = stmt.lineno
        if isinstance(stmt, ast.If):
            hints.append(FlowHint(
                "branch", line, label="if " + short_label(ast.unparse(stmt.test)),
                body=_ast_flow(stmt.body), orelse=_ast_flow(stmt.orelse),
            ))
        elif isinstance(stmt, (ast.For, ast.AsyncFor)):
            hints.append(FlowHint(
                "loop", line, label="for " + short_label(ast.unparse(stmt.target)),
                body=_ast_flow(stmt.body), orelse=_ast_flow(stmt.orelse),
            ))
        elif isinstance(stmt, ast.While):
            hints.append(FlowHint(
                "loop", line, label="while " + short_label(ast.unparse(stmt.test)),
                body=_ast_flow(stmt.body), orelse=_ast_flow(stmt.orelse),
            ))
        elif isinstance(stmt, ast.Try):
            handlers = [
                FlowHint("handler", h.lineno,
                         label="except " + (ast.unparse(h.type) if h.type is not None else ""),
                         body=_ast_flow(h.body))
                for h in stmt.handlers
            ]
            hints.append(FlowHint(
                "try", line, label="try", body=_ast_flow(stmt.body + stmt.orelse),
                handlers=handlers, orelse=_ast_flow(stmt.finalbody),
            ))
        elif isinstance(stmt, (ast.With, ast.AsyncWith)):
            items = ", ".join(ast.unparse(i.context_expr) for i in stmt.items)
            hints.append(FlowHint("statement", line, label=short_label("with " + items)))
            hints.extend(_ast_flow(stmt.body))
        elif isinstance(stmt, ast.Return):
            hints.append(FlowHint("return", line, label=short_label(ast.unparse(stmt))))
        elif isinstance(stmt, ast.Raise):
            hints.append(FlowHint("raise", line, label=short_label(ast.unparse(stmt))))
        else:
            calls = _ast_calls([stmt])
            if calls:
                hints.append(FlowHint("call", line, label=calls[0][0]))
            else:
                hints.append(FlowHint("statement", line, label=short_label(ast.unparse(stmt))))
    return hints


def _ast_name_from_expr(expr: ast.AST) -> Optional[str]:
    if isinstance(expr, ast.Name):
        return expr.id
    if isinstance(expr, ast.Attribute):
        parts: List[str] = []
        current: ast.AST = expr
        while isinstance(current, ast.Attribute):
            parts.append(current.attr)
            current = current.value
        if isinstance(current, ast.Name):
            parts.append(current.id)
        return ".".join(reversed(parts)) if parts else None
    if isinstance(expr, ast.Call):
        return _ast_name_from_expr(expr.func)
    return None
