"""JavaScript / TypeScript adapter built on Tree-sitter.

Handles ES modules and CommonJS: ``import`` statements and top-level
``require()`` calls both become import references.  In a file that exports
anything, top-level declarations without ``export`` are private.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple

from .models import FlowHint, ParseOutcome, SourceUnit, Symbol
from .parser import (
    OutcomeBuilder,
    collect_syntax_errors,
    load_grammar,
    new_ts_parser,
    short_label,
    ts_line,
    ts_text,
)

logger = logging.getLogger(__name__)

_FUNCTION_VALUES = ("arrow_function", "function_expression", "function",
                    "generator_function")
# Nodes that become symbols of their own; their calls are not attributed to the parent.
_SYMBOL_NODES = ("function_declaration", "generator_function_declaration",
                 "class_declaration", "method_definition", "class")
_LOOPS = ("for_statement", "for_in_statement", "while_statement", "do_statement")


class JavaScriptAdapter:
    """Tree-sitter adapter for one of ``javascript``, ``typescript`` or ``tsx``."""

    name = "tree-sitter-js"

    def __init__(self, language: str = "javascript") -> None:
        self.language = language
        self.languages: Tuple[str, ...] = (language,)
        self._ts_lang = load_grammar(language)
        if self._ts_lang is None:
            raise ValueError(f"No tree-sitter grammar available for {language}")

    def parse(self, unit: SourceUnit) -> ParseOutcome:
        return _JsWalker(unit, self._ts_lang).run()


class _JsWalker:
    def __init__(self, unit: SourceUnit, ts_lang: Any) -> None:
        self.b = OutcomeBuilder(unit)
        self.ts_lang = ts_lang
        self.has_exports = False

    def run(self) -> ParseOutcome:
        tree = new_ts_parser(self.ts_lang).parse(self.b.unit.text.encode("utf-8"))
        root = tree.root_node
        self.has_exports = any(c.type == "export_statement" for c in root.children)
        module = self.b.add_module(_leading_comment(root))
        self._walk(root, [module.qualname], [module.symbol_id], module_level=True)
        for call_name, line in _js_calls(root):
            if call_name != "require":
                self.b.reference(module.symbol_id, call_name, "calls", line)
        self._imports(root, module.symbol_id)
        collect_syntax_errors(root, self.b)
        return self.b.finish()

    def _visibility(self, exported: bool) -> str:
        return "public" if exported or not self.has_exports else "private"

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def _walk(self, node: Any, scope: List[str], scope_ids: List[str], module_level: bool) -> None:
        for child in node.children:
            if child.type == "export_statement":
                decl = child.child_by_field_name("declaration")
                if decl is not None:
                    self._declaration(decl, child, scope, scope_ids, module_level, exported=True)
            elif child.type == "ERROR":
                self._walk(child, scope, scope_ids, module_level)
            else:
                self._declaration(child, child, scope, scope_ids, module_level, exported=False)

    def _declaration(self, node: Any, outer: Any, scope: List[str], scope_ids: List[str],
                     module_level: bool, exported: bool) -> None:
        kind = node.type
        if kind in ("function_declaration", "generator_function_declaration"):
            name = ts_text(node.child_by_field_name("name"))
            if name:
                self._function(outer, node, name, scope, scope_ids, "function",
                               self._visibility(exported) if module_level else "private")
        elif kind == "class_declaration":
            self._class(outer, node, scope, scope_ids,
                        self._visibility(exported) if module_level else "private")
        elif kind in ("lexical_declaration", "variable_declaration"):
            for declarator in node.named_children:
                if declarator.type == "variable_declarator":
                    self._declarator(declarator, outer, scope, scope_ids, module_level, exported)

    def _declarator(self, declarator: Any, outer: Any, scope: List[str], scope_ids: List[str],
                    module_level: bool, exported: bool) -> None:
        name_node = declarator.child_by_field_name("name")
        value = declarator.child_by_field_name("value")
        if name_node is None:
            return
        visibility = self._visibility(exported) if module_level else "private"
        if value is not None and value.type in _FUNCTION_VALUES and name_node.type == "identifier":
            self._function(outer, value, ts_text(name_node), scope, scope_ids, "function", visibility)
        elif value is not None and value.type == "class":
            self._class(outer, value, scope, scope_ids, visibility, name=ts_text(name_node))
        elif module_level and name_node.type == "identifier" and not _is_require(value):
            name = ts_text(name_node)
            self.b.add_symbol(
                "variable", name, ".".join(scope + [name]),
                ts_line(outer), outer.end_point[0] + 1, scope_ids[-1],
                visibility=visibility, signature=short_label(ts_text(outer), 80),
            )

    def _function(self, outer: Any, fn: Any, name: str, scope: List[str], scope_ids: List[str],
                  kind: str, visibility: str) -> Symbol:
        params = fn.child_by_field_name("parameters") or fn.child_by_field_name("parameter")
        params_text = ts_text(params) or "()"
        if not params_text.startswith("("):
            params_text = f"({params_text})"
        if kind == "method":
            signature = f"{name}{params_text}"
        else:
            signature = f"function {name}{params_text}"
        returns = fn.child_by_field_name("return_type")
        if returns is not None:
            signature += ts_text(returns)

        symbol = self.b.add_symbol(
            kind, name, ".".join(scope + [name]),
            ts_line(outer), outer.end_point[0] + 1, scope_ids[-1],
            visibility=visibility, signature=signature,
            docstring=_doc_comment(outer),
        )
        body = fn.child_by_field_name("body")
        if body is None:
            return symbol
        for call_name, line in _js_calls(body):
            self.b.reference(symbol.symbol_id, call_name, "calls", line)
        if body.type == "statement_block":
            self.b.flow(symbol.symbol_id, self._flow(body))
            self._walk(body, scope + [name], scope_ids + [symbol.symbol_id], module_level=False)
        return symbol

    def _class(self, outer: Any, cls: Any, scope: List[str], scope_ids: List[str],
               visibility: str, name: Optional[str] = None) -> None:
        name = name or ts_text(cls.child_by_field_name("name"))
        if not name:
            return
        symbol = self.b.add_symbol(
            "class", name, ".".join(scope + [name]),
            ts_line(outer), outer.end_point[0] + 1, scope_ids[-1],
            visibility=visibility, signature=f"class {name}",
            docstring=_doc_comment(outer),
        )
        for child in cls.children:
            if child.type == "class_heritage":
                for parent in _heritage_targets(child):
                    self.b.reference(symbol.symbol_id, ts_text(parent), "extends", ts_line(parent))

        body = cls.child_by_field_name("body")
        if body is None:
            return
        for member in body.named_children:
            if member.type == "method_definition":
                method_name = ts_text(member.child_by_field_name("name"))
                if method_name:
                    self._function(
                        member, member, method_name, scope + [name],
                        scope_ids + [symbol.symbol_id], "method",
                        "private" if method_name.startswith("#") else "public",
                    )

    # ------------------------------------------------------------------
    # Imports
    # ------------------------------------------------------------------

    def _imports(self, root: Any, module_id: str) -> None:
        for child in root.children:
            if child.type == "import_statement":
                source = _string_value(child.child_by_field_name("source"))
                bindings: List[Tuple[str, str]] = []
                for clause in child.named_children:
                    if clause.type == "import_clause":
                        bindings.extend(_import_clause_bindings(clause))
                self.b.reference(module_id, source, "imports", ts_line(child),
                                 bindings=tuple(bindings))
            elif child.type in ("lexical_declaration", "variable_declaration"):
                for declarator in child.named_children:
                    value = declarator.child_by_field_name("value") \
                        if declarator.type == "variable_declarator" else None
                    if not _is_require(value):
                        continue
                    args = value.child_by_field_name("arguments")
                    source = _string_value(args.named_children[0]) if args.named_children else ""
                    self.b.reference(module_id, source, "imports", ts_line(child),
                                     bindings=_pattern_bindings(declarator.child_by_field_name("name")))

    # ------------------------------------------------------------------
    # Flow hints
    # ------------------------------------------------------------------

    def _flow(self, node: Any) -> List[FlowHint]:
        if node is None:
            return []
        stmts = node.named_children if node.type == "statement_block" else [node]
        hints: List[FlowHint] = []
        for stmt in stmts:
            kind = stmt.type
            line = ts_line(stmt)
            if kind == "comment":
                continue
            if kind == "if_statement":
                alternative = stmt.child_by_field_name("alternative")
                orelse: List[FlowHint] = []
                if alternative is not None:
                    inner = alternative.named_children
                    orelse = self._flow(inner[0]) if inner else []
                hints.append(FlowHint(
                    "branch", line,
                    label="if " + short_label(ts_text(stmt.child_by_field_name("condition"))),
                    body=self._flow(stmt.child_by_field_name("consequence")),
                    orelse=orelse,
                ))
            elif kind in _LOOPS:
                hints.append(FlowHint(
                    "loop", line, label=short_label(ts_text(stmt).split("{")[0]),
                    body=self._flow(stmt.child_by_field_name("body")),
                ))
            elif kind == "try_statement":
                handler = stmt.child_by_field_name("handler")
                finalizer = stmt.child_by_field_name("finalizer")
                handlers = []
                if handler is not None:
                    handlers.append(FlowHint(
                        "handler", ts_line(handler), label="catch",
                        body=self._flow(handler.child_by_field_name("body")),
                    ))
                hints.append(FlowHint(
                    "try", line, label="try",
                    body=self._flow(stmt.child_by_field_name("body")),
                    handlers=handlers,
                    orelse=self._flow(finalizer.child_by_field_name("body")) if finalizer else [],
                ))
            elif kind == "statement_block":
                hints.extend(self._flow(stmt))
            elif kind == "return_statement":
                hints.append(FlowHint("return", line, label=short_label(ts_text(stmt))))
            elif kind == "throw_statement":
                hints.append(FlowHint("raise", line, label=short_label(ts_text(stmt))))
            else:
                calls = _js_calls(stmt)
                if calls:
                    hints.append(FlowHint("call", line, label=calls[0][0]))
                else:
                    hints.append(FlowHint("statement", line, label=short_label(ts_text(stmt))))
        return hints


# ===================================================================
# Helpers
# ===================================================================

def _js_calls(node: Any) -> List[Tuple[str, int]]:
    """Call names below *node*; named functions and classes are skipped."""
    calls: List[Tuple[str, int]] = []

    def _find(current: Any) -> None:
        if current.type == "call_expression":
            name = _callee_name(current.child_by_field_name("function"))
            if name:
                calls.append((name, ts_line(current)))
        elif current.type == "new_expression":
            name = _callee_name(current.child_by_field_name("constructor"))
            if name:
                calls.append((name, ts_line(current)))
        for child in current.children:
            if child.type in _SYMBOL_NODES:
                continue
            if child.type in _FUNCTION_VALUES and current.type == "variable_declarator":
                continue
            _find(child)

    _find(node)
    return calls


def _callee_name(node: Any) -> Optional[str]:
    if node is None:
        return None
    if node.type in ("identifier", "this"):
        return ts_text(node)
    if node.type == "member_expression":
        obj = _callee_name(node.child_by_field_name("object"))
        prop = ts_text(node.child_by_field_name("property"))
        if obj and prop:
            return f"{obj}.{prop}"
        return prop or None
    return None


def _is_require(value: Any) -> bool:
    if value is None or value.type != "call_expression":
        return False
    func = value.child_by_field_name("function")
    return func is not None and ts_text(func) == "require"


def _string_value(node: Any) -> str:
    raw = ts_text(node).strip()
    if len(raw) >= 2 and raw[0] in "'\"`" and raw[-1] == raw[0]:
        return raw[1:-1]
    return raw


def _import_clause_bindings(clause: Any) -> List[Tuple[str, str]]:
    bindings: List[Tuple[str, str]] = []
    for child in clause.named_children:
        if child.type == "identifier":
            bindings.append((ts_text(child), "default"))
        elif child.type == "namespace_import":
            for ident in child.named_children:
                bindings.append((ts_text(ident), ""))
        elif child.type == "named_imports":
            for spec in child.named_children:
                if spec.type != "import_specifier":
                    continue
                original = ts_text(spec.child_by_field_name("name"))
                alias = ts_text(spec.child_by_field_name("alias")) or original
                bindings.append((alias, original))
    return bindings


def _pattern_bindings(pattern: Any) -> Tuple[Tuple[str, str], ...]:
    """Bindings for ``const x = require(...)`` and ``const {a, b} = require(...)``."""
    if pattern is None:
        return ()
    if pattern.type == "identifier":
        return ((ts_text(pattern), ""),)
    bindings: List[Tuple[str, str]] = []
    if pattern.type == "object_pattern":
        for child in pattern.named_children:
            if child.type == "shorthand_property_identifier_pattern":
                bindings.append((ts_text(child), ts_text(child)))
            elif child.type == "pair_pattern":
                key = ts_text(child.child_by_field_name("key"))
                value = ts_text(child.child_by_field_name("value"))
                if key and value:
                    bindings.append((value, key))
    return tuple(bindings)


def _heritage_targets(heritage: Any) -> List[Any]:
    targets: List[Any] = []
    for child in heritage.named_children:
        if child.type == "extends_clause":
            value = child.child_by_field_name("value")
            targets.extend([value] if value is not None else child.named_children[:1])
        elif child.type in ("identifier", "member_expression"):
            targets.append(child)
    return targets


def _clean_comment(raw: str) -> str:
    text = raw.strip()
    if text.startswith("/*"):
        text = text[2:-2] if text.endswith("*/") else text[2:]
        lines = [line.strip().lstrip("*").strip() for line in text.splitlines()]
        return "\n".join(line for line in lines if line).strip()
    return text.lstrip("/").strip()


def _doc_comment(node: Any) -> str:
    """The JSDoc-style comment directly above *node*, if any."""
    prev = node.prev_named_sibling
    if prev is not None and prev.type == "comment" and prev.end_point[0] + 1 >= node.start_point[0]:
        return _clean_comment(ts_text(prev))
    return ""


def _leading_comment(root: Any) -> str:
    for child in root.children:
        if child.type == "comment":
            text = ts_text(child)
            if text.startswith("/**") or text.startswith("/*!"):
                return _clean_comment(text)
            continue
        break
    return ""
