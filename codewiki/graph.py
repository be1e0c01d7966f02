"""Code graph: symbols as nodes plus call, reference, dependency and CFG overlays.

Name resolution for a reference tries, in order: ``self``/``this``/``cls``
members of the enclosing class, the enclosing scopes of the same file, names
bound by the file's imports, public symbols anywhere in the project, and
finally a fully dotted qualified name.  Several candidates at the same step
produce one ``ambiguous`` edge per candidate; no candidate produces an edge to
the external sentinel plus an :class:`UnresolvedReference` with a best guess.
"""

from __future__ import annotations

import builtins
import difflib
import logging
import posixpath
from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .extractor import SymbolTable
from .models import (
    EXTERNAL_NODE_ID,
    CfgBlock,
    CfgEdge,
    ControlFlowGraph,
    Edge,
    FlowHint,
    RawReference,
    Symbol,
    UnresolvedReference,
)
from .parser import module_name_for

logger = logging.getLogger(__name__)

BUILTIN_NAMES = frozenset(dir(builtins))
SELF_NAMES = ("self", "this", "cls")
_JS_LANGUAGES = ("javascript", "typescript", "tsx")
_JS_SUFFIXES = (".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx")


@dataclass(frozen=True)
class GraphSlice:
    """Everything the graph knows around one unit (a file or a function)."""

    unit_id: str
    unit_kind: str
    file_path: str
    language: str
    symbols: Tuple[Symbol, ...]
    callees: Tuple[str, ...]
    callers: Tuple[str, ...]
    transitive: Tuple[str, ...]
    node_ids: Tuple[str, ...]
    edge_ids: Tuple[str, ...]


class CodeGraph:
    """Immutable result of :class:`GraphBuilder`; every edge endpoint is a node."""

    def __init__(
        self,
        table: SymbolTable,
        call_edges: Sequence[Edge],
        reference_edges: Sequence[Edge],
        dependency_edges: Sequence[Edge],
        contains_edges: Sequence[Edge],
        cfgs: Dict[str, ControlFlowGraph],
        unresolved: Dict[str, Sequence[UnresolvedReference]],
    ) -> None:
        self.table = table
        self.call_edges: Tuple[Edge, ...] = tuple(call_edges)
        self.reference_edges: Tuple[Edge, ...] = tuple(reference_edges)
        self.dependency_edges: Tuple[Edge, ...] = tuple(dependency_edges)
        self.contains_edges: Tuple[Edge, ...] = tuple(contains_edges)
        self.cfgs = dict(sorted(cfgs.items()))
        self.unresolved_by_edge: Dict[str, Tuple[UnresolvedReference, ...]] = {
            edge_id: tuple(sorted(refs, key=lambda r: (r.target_name, r.guess or "")))
            for edge_id, refs in sorted(unresolved.items())
        }
        self._edge_index: Dict[str, Edge] = {
            e.edge_id: e for e in self.all_edges()
        }
        self._callers: Dict[str, List[Edge]] = {}
        self._callees: Dict[str, List[Edge]] = {}
        for edge in self.call_edges:
            self._callees.setdefault(edge.src, []).append(edge)
            self._callers.setdefault(edge.dst, []).append(edge)

    # ------------------------------------------------------------------
    # Nodes and edges
    # ------------------------------------------------------------------

    @property
    def symbols(self) -> Dict[str, Symbol]:
        return self.table.symbols

    def has_node(self, node_id: str) -> bool:
        return node_id == EXTERNAL_NODE_ID or node_id in self.table.symbols

    def has_edge(self, edge_id: str) -> bool:
        return edge_id in self._edge_index

    def edge(self, edge_id: str) -> Optional[Edge]:
        return self._edge_index.get(edge_id)

    def all_edges(self) -> List[Edge]:
        return list(self.call_edges) + list(self.reference_edges) \
            + list(self.dependency_edges) + list(self.contains_edges)

    def node_ids(self) -> List[str]:
        ids = list(self.table.symbols)
        if any(e.unresolved for e in self.all_edges()):
            ids.append(EXTERNAL_NODE_ID)
        return ids

    def dangling_edges(self) -> List[Edge]:
        """Edges with an endpoint that is not a node (always empty for built graphs)."""
        return [e for e in self.all_edges() if not (self.has_node(e.src) and self.has_node(e.dst))]

    @property
    def unresolved(self) -> List[UnresolvedReference]:
        return [ref for refs in self.unresolved_by_edge.values() for ref in refs]

    def label(self, node_id: str) -> str:
        symbol = self.table.symbols.get(node_id)
        if symbol is not None:
            return symbol.qualname
        return "external/unknown" if node_id == EXTERNAL_NODE_ID else node_id

    def edge_label(self, edge: Edge, end: str) -> str:
        """Readable name for one end of *edge*; unresolved targets show their guess."""
        node_id = edge.dst if end == "dst" else edge.src
        if node_id == EXTERNAL_NODE_ID:
            refs = self.unresolved_by_edge.get(edge.edge_id)
            if refs:
                return ", ".join(dict.fromkeys(
                    f"{ref.target_name} [unresolved]" + (f" (guess: {ref.guess})" if ref.guess else "")
                    for ref in refs
                ))
        return self.label(node_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def callers(self, symbol_id: str) -> List[Edge]:
        return list(self._callers.get(symbol_id, []))

    def callees(self, symbol_id: str) -> List[Edge]:
        return list(self._callees.get(symbol_id, []))

    def neighbors(self, symbol_id: str, depth: int = 1) -> Dict[str, int]:
        """Resolved call-graph neighbours within *depth* hops, with their distance."""
        seen: Dict[str, int] = {symbol_id: 0}
        queue = deque([symbol_id])
        while queue:
            current = queue.popleft()
            if seen[current] >= depth:
                continue
            adjacent = [e.dst for e in self._callees.get(current, [])] + \
                       [e.src for e in self._callers.get(current, [])]
            for other in adjacent:
                if other == EXTERNAL_NODE_ID or other in seen:
                    continue
                seen[other] = seen[current] + 1
                queue.append(other)
        seen.pop(symbol_id)
        return dict(sorted(seen.items()))

    def decision_points(self, function_id: str) -> List[str]:
        cfg = self.cfgs.get(function_id)
        return cfg.decision_points() if cfg is not None else []

    def find_cycles(self) -> List[List[str]]:
        """Strongly connected call cycles (Tarjan), including direct recursion."""
        adjacency: Dict[str, List[str]] = {}
        for edge in self.call_edges:
            if edge.unresolved:
                continue
            adjacency.setdefault(edge.src, []).append(edge.dst)

        index_of: Dict[str, int] = {}
        low: Dict[str, int] = {}
        on_stack: Set[str] = set()
        stack: List[str] = []
        cycles: List[List[str]] = []
        counter = 0

        for start in sorted(adjacency):
            if start in index_of:
                continue
            work: List[Tuple[str, int]] = [(start, 0)]
            while work:
                node, child_pos = work.pop()
                if child_pos == 0:
                    index_of[node] = low[node] = counter
                    counter += 1
                    stack.append(node)
                    on_stack.add(node)
                children = adjacency.get(node, [])
                descended = False
                for pos in range(child_pos, len(children)):
                    child = children[pos]
                    if child not in index_of:
                        work.append((node, pos + 1))
                        work.append((child, 0))
                        descended = True
                        break
                    if child in on_stack:
                        low[node] = min(low[node], index_of[child])
                if descended:
                    continue
                if low[node] == index_of[node]:
                    component: List[str] = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    if len(component) > 1 or node in adjacency.get(node, []):
                        cycles.append(sorted(component))
                if work:
                    parent = work[-1][0]
                    low[parent] = min(low[parent], low[node])
        return sorted(cycles)

    def slice_for(self, unit_id: str) -> GraphSlice:
        """Graph neighbourhood of a file path or a symbol id."""
        if unit_id in self.table.units:
            unit = self.table.units[unit_id]
            members = self.table.symbols_in(unit_id)
            unit_kind, file_path, language = "file", unit.path, unit.language
        else:
            symbol = self.table.symbols.get(unit_id)
            if symbol is None:
                raise KeyError(unit_id)
            members = [symbol] + [s for s in self.table.symbols_in(symbol.file_path)
                                  if s.parent_id == unit_id]
            unit_kind, file_path, language = "function", symbol.file_path, symbol.language

        member_ids = {s.symbol_id for s in members}
        callees: List[str] = []
        callers: List[str] = []
        edge_ids: List[str] = []
        for edge in self.all_edges():
            if edge.src in member_ids or edge.dst in member_ids:
                edge_ids.append(edge.edge_id)
        for symbol_id in sorted(member_ids):
            for edge in self._callees.get(symbol_id, []):
                if edge.dst not in member_ids:
                    callees.append(self.edge_label(edge, "dst"))
            for edge in self._callers.get(symbol_id, []):
                if edge.src not in member_ids:
                    callers.append(self.edge_label(edge, "src"))

        direct = {e.dst for sid in member_ids for e in self._callees.get(sid, [])} | \
                 {e.src for sid in member_ids for e in self._callers.get(sid, [])}
        transitive: Set[str] = set()
        for symbol_id in member_ids:
            for other, distance in self.neighbors(symbol_id, depth=2).items():
                if distance == 2 and other not in member_ids and other not in direct:
                    transitive.add(self.label(other))

        return GraphSlice(
            unit_id=unit_id,
            unit_kind=unit_kind,
            file_path=file_path,
            language=language,
            symbols=tuple(members),
            callees=tuple(dict.fromkeys(callees)),
            callers=tuple(dict.fromkeys(callers)),
            transitive=tuple(sorted(transitive)),
            node_ids=tuple(sorted(member_ids)),
            edge_ids=tuple(sorted(set(edge_ids))),
        )


# ===================================================================
# Builder
# ===================================================================

class GraphBuilder:
    """Resolves raw references and derives the dependency and CFG overlays."""

    def build(self, table: SymbolTable) -> CodeGraph:
        resolver = _Resolver(table)
        calls: Dict[Tuple[object, ...], Edge] = {}
        references: Dict[Tuple[object, ...], Edge] = {}
        unresolved: Dict[str, List[UnresolvedReference]] = {}

        for ref in table.references:
            source = self._source_for(ref, table)
            if ref.kind == "imports":
                targets = resolver.resolve_module(ref.target_name, ref.file_path)
            else:
                targets = resolver.resolve(ref, source)
            bucket = calls if ref.kind == "calls" else references
            if not targets:
                edge = Edge(source, EXTERNAL_NODE_ID, ref.kind, ref.line, unresolved=True)
                _add_edge(bucket, edge)
                unresolved.setdefault(edge.edge_id, []).append(UnresolvedReference(
                    source_id=source,
                    target_name=ref.target_name,
                    guess=resolver.guess(ref),
                    kind=ref.kind,
                    file_path=ref.file_path,
                    line=ref.line,
                ))
                continue
            ambiguous = len(targets) > 1
            for target in targets:
                _add_edge(bucket, Edge(source, target.symbol_id, ref.kind, ref.line,
                                       ambiguous=ambiguous))

        call_edges = _sorted_edges(calls.values())
        reference_edges = _sorted_edges(references.values())
        dependency_edges = self._dependencies(table, call_edges + reference_edges)
        contains_edges = _sorted_edges(
            Edge(s.parent_id, s.symbol_id, "contains")
            for s in table.symbols.values()
            if s.parent_id and s.parent_id in table.symbols
        )
        cfgs = {
            s.symbol_id: CfgBuilder(s).build(table.flows.get(s.symbol_id, []))
            for s in table.symbols.values() if s.is_callable
        }

        graph = CodeGraph(table, call_edges, reference_edges, dependency_edges,
                          contains_edges, cfgs, unresolved)
        logger.info(
            "Graph: %d symbols, %d call edges, %d reference edges, %d dependencies, %d unresolved",
            len(table.symbols), len(call_edges), len(reference_edges),
            len(dependency_edges), sum(len(refs) for refs in unresolved.values()),
        )
        return graph

    @staticmethod
    def _source_for(ref: RawReference, table: SymbolTable) -> str:
        if ref.source_id in table.symbols:
            return ref.source_id
        module = table.module_for(ref.file_path)
        return module.symbol_id if module is not None else EXTERNAL_NODE_ID

    @staticmethod
    def _dependencies(table: SymbolTable, edges: Iterable[Edge]) -> List[Edge]:
        """Collapse symbol-level edges into file-level dependency edges."""
        weights: Dict[Tuple[str, str, bool], int] = {}
        for edge in edges:
            src = table.symbols.get(edge.src)
            if src is None:
                continue
            src_module = table.module_for(src.file_path)
            if src_module is None:
                continue
            if edge.unresolved:
                if edge.kind != "imports":
                    continue
                key = (src_module.symbol_id, EXTERNAL_NODE_ID, True)
            else:
                dst = table.symbols.get(edge.dst)
                if dst is None or dst.file_path == src.file_path:
                    continue
                dst_module = table.module_for(dst.file_path)
                if dst_module is None:
                    continue
                key = (src_module.symbol_id, dst_module.symbol_id, False)
            weights[key] = weights.get(key, 0) + 1
        return _sorted_edges(
            Edge(src, dst, "depends_on", unresolved=unres, weight=weight)
            for (src, dst, unres), weight in weights.items()
        )


def _add_edge(bucket: Dict[Tuple[object, ...], Edge], edge: Edge) -> None:
    key = (edge.src, edge.dst, edge.kind, edge.line)
    existing = bucket.get(key)
    if existing is None:
        bucket[key] = edge
    else:
        bucket[key] = Edge(existing.src, existing.dst, existing.kind, existing.line,
                           ambiguous=existing.ambiguous or edge.ambiguous,
                           unresolved=existing.unresolved, weight=existing.weight + 1)


def _sorted_edges(edges: Iterable[Edge]) -> List[Edge]:
    return sorted(edges, key=lambda e: (e.src, e.line, e.kind, e.dst))


# ===================================================================
# Name resolution
# ===================================================================

class _Resolver:
    def __init__(self, table: SymbolTable) -> None:
        self.table = table
        self.by_qualname: Dict[str, List[Symbol]] = {}
        self.modules: Dict[str, Symbol] = {}
        self.modules_by_stem: Dict[str, Symbol] = {}
        for symbol in table.symbols.values():
            self.by_qualname.setdefault(symbol.qualname, []).append(symbol)
            if symbol.kind == "module":
                self.modules[symbol.qualname] = symbol
                stem = symbol.file_path
                for suffix in _JS_SUFFIXES:
                    if stem.endswith(suffix):
                        self.modules_by_stem[stem[: -len(suffix)]] = symbol
                        break
        self.bindings: Dict[str, Dict[str, Tuple[str, str]]] = {}
        for ref in table.references:
            if ref.kind == "imports":
                scope = self.bindings.setdefault(ref.file_path, {})
                for local, imported in ref.bindings:
                    scope[local] = (ref.target_name, imported)
        self.all_names = sorted({s.name for s in table.symbols.values()})

    def resolve(self, ref: RawReference, source_id: str) -> List[Symbol]:
        parts = ref.target_name.split(".")
        head, member = parts[0], parts[-1]
        source = self.table.symbols.get(source_id)

        if head in SELF_NAMES:
            if len(parts) == 2 and source is not None:
                owner = self._enclosing_class(source)
                if owner is not None:
                    found = [s for s in self.table.children_of(owner.symbol_id) if s.name == member]
                    if found:
                        return found
            return self._project_wide(member, ref.file_path, callables_only=True)

        if len(parts) == 1:
            local = [s for s in self.table.by_name(head)
                     if s.file_path == ref.file_path and s.kind != "module"]
            if local:
                return self._innermost(local, source)

        binding = self._binding(ref.file_path, parts)
        if binding is not None:
            spec, imported, consumed = binding
            modules = self.resolve_module(spec, ref.file_path)
            if not modules:
                return []
            tail = parts[consumed:]
            if imported not in ("", "default", "*"):
                tail = [imported] + tail
            if not tail:
                if ref.kind != "calls":
                    return modules
            else:
                found = []
                for module in modules:
                    found.extend(self.by_qualname.get(".".join([module.qualname] + tail), []))
                if found:
                    return found

        if len(parts) > 1:
            exact = self.by_qualname.get(ref.target_name, [])
            if exact:
                return list(exact)
        return self._project_wide(member, ref.file_path, callables_only=len(parts) > 1)

    def _project_wide(self, name: str, file_path: str, callables_only: bool) -> List[Symbol]:
        found = []
        for symbol in self.table.by_name(name):
            if symbol.kind == "module":
                continue
            if callables_only and not symbol.is_callable:
                continue
            if symbol.visibility == "public" or symbol.file_path == file_path:
                found.append(symbol)
        return found

    def _binding(self, file_path: str, parts: List[str]) -> Optional[Tuple[str, str, int]]:
        """Longest dotted prefix of *parts* bound by an import in *file_path*."""
        scope = self.bindings.get(file_path)
        if not scope:
            return None
        for size in range(len(parts), 0, -1):
            key = ".".join(parts[:size])
            if key in scope:
                spec, imported = scope[key]
                return spec, imported, size
        return None

    def _enclosing_class(self, symbol: Symbol) -> Optional[Symbol]:
        current: Optional[Symbol] = symbol
        while current is not None:
            if current.kind in ("class", "type"):
                return current
            current = self.table.symbols.get(current.parent_id) if current.parent_id else None
        return None

    def _innermost(self, candidates: List[Symbol], source: Optional[Symbol]) -> List[Symbol]:
        chain: List[str] = []
        current = source
        while current is not None:
            chain.append(current.symbol_id)
            current = self.table.symbols.get(current.parent_id) if current.parent_id else None
        for scope_id in chain:
            found = [c for c in candidates if c.parent_id == scope_id]
            if found:
                return found
        return candidates

    def resolve_module(self, spec: str, importer: str) -> List[Symbol]:
        """Module symbols an import specifier refers to (empty when external)."""
        if not spec:
            return []
        unit = self.table.units.get(importer)
        language = unit.language if unit is not None else ""

        if language in _JS_LANGUAGES or spec.startswith(("./", "../")):
            if not spec.startswith((".", "/")):
                return []
            base = posixpath.normpath(posixpath.join(posixpath.dirname(importer), spec))
            for suffix in _JS_SUFFIXES:
                if base.endswith(suffix):
                    base = base[: -len(suffix)]
                    break
            found = self.modules_by_stem.get(base) or self.modules_by_stem.get(base + "/index")
            return [found] if found is not None else []

        if spec.startswith("."):
            dots = len(spec) - len(spec.lstrip("."))
            rest = spec[dots:]
            package = module_name_for(importer).split(".")
            if not importer.endswith("__init__.py"):
                package = package[:-1]
            if dots > 1:
                package = package[: max(len(package) - (dots - 1), 0)]
            target = ".".join(package + ([rest] if rest else []))
            found = self.modules.get(target)
            return [found] if found is not None else []

        if spec in self.modules:
            return [self.modules[spec]]
        suffix_matches = [m for q, m in self.modules.items() if q.endswith("." + spec)]
        return sorted(suffix_matches, key=lambda m: m.file_path)

    def guess(self, ref: RawReference) -> str:
        """Best guess at where an unresolved name lives."""
        if ref.kind == "imports":
            return ref.target_name.lstrip("./").split("/")[0].split(".")[0] or ref.target_name
        parts = ref.target_name.split(".")
        binding = self._binding(ref.file_path, parts)
        if binding is not None:
            return binding[0]
        if len(parts) > 1:
            return ".".join(parts[:-1])
        unit = self.table.units.get(ref.file_path)
        if unit is not None and unit.language == "python" and parts[0] in BUILTIN_NAMES:
            return "builtins"
        close = difflib.get_close_matches(parts[0], self.all_names, n=1, cutoff=0.8)
        return close[0] if close else ""


# ===================================================================
# Control-flow graphs
# ===================================================================

class _Draft:
    def __init__(self, block_id: str, kind: str, line: int) -> None:
        self.block_id = block_id
        self.kind = kind
        self.labels: List[str] = []
        self.start_line = line
        self.end_line = line

    def add(self, label: str, line: int) -> None:
        if label:
            self.labels.append(label)
        self.end_line = max(self.end_line, line)

    def freeze(self) -> CfgBlock:
        label = "; ".join(self.labels[:3])
        if len(self.labels) > 3:
            label += f"; ... (+{len(self.labels) - 3})"
        return CfgBlock(self.block_id, self.kind, label, self.start_line, self.end_line)


class CfgBuilder:
    """Builds a function's control-flow graph from its flow hints.

    Branches and loops get a decision block with ``true``/``false`` out-edges,
    ``try`` bodies get ``exception`` edges to each handler, and ``return`` /
    ``raise`` end the current block with an edge to exit.  A function without
    hints is a single block that is both entry and exit.
    """

    def __init__(self, symbol: Symbol) -> None:
        self.symbol = symbol
        self._blocks: List[_Draft] = []
        self._edges: Dict[Tuple[str, str, str], CfgEdge] = {}
        self._exit: Optional[_Draft] = None

    def build(self, hints: List[FlowHint]) -> ControlFlowGraph:
        if not hints:
            only = _Draft(self._block_id(0), "body", self.symbol.start_line)
            only.end_line = self.symbol.end_line
            only.labels.append(self.symbol.name)
            return ControlFlowGraph(self.symbol.symbol_id, (only.freeze(),), (),
                                    only.block_id, only.block_id)

        entry = self._new("entry", self.symbol.start_line)
        entry.labels.append(self.symbol.name)
        exit_ = self._new("exit", self.symbol.end_line)
        self._exit = exit_
        first = self._new("block", hints[0].line)
        self._edge(entry, first, "unconditional")
        last = self._sequence(hints, first)
        if last is not None:
            self._edge(last, exit_, "unconditional")
        return ControlFlowGraph(
            self.symbol.symbol_id,
            tuple(d.freeze() for d in self._blocks),
            tuple(self._edges.values()),
            entry.block_id,
            exit_.block_id,
        )

    def _block_id(self, index: int) -> str:
        return f"{self.symbol.symbol_id}:b{index}"

    def _new(self, kind: str, line: int) -> _Draft:
        draft = _Draft(self._block_id(len(self._blocks)), kind, line)
        self._blocks.append(draft)
        return draft

    def _edge(self, src: _Draft, dst: _Draft, tag: str) -> None:
        self._edges.setdefault((src.block_id, dst.block_id, tag),
                               CfgEdge(src.block_id, dst.block_id, tag))

    def _sequence(self, hints: List[FlowHint], current: Optional[_Draft]) -> Optional[_Draft]:
        for hint in hints:
            if current is None:
                current = self._new("unreachable", hint.line)
            current = self._visit(hint, current)
        return current

    def _visit(self, hint: FlowHint, current: _Draft) -> Optional[_Draft]:
        if hint.kind == "branch":
            decision = self._new("branch", hint.line)
            decision.add(hint.label, hint.line)
            self._edge(current, decision, "unconditional")
            then_block = self._new("block", hint.line)
            self._edge(decision, then_block, "true")
            then_end = self._sequence(hint.body, then_block)
            join = self._new("block", hint.line)
            if then_end is not None:
                self._edge(then_end, join, "unconditional")
            if hint.orelse:
                else_block = self._new("block", hint.orelse[0].line)
                self._edge(decision, else_block, "false")
                else_end = self._sequence(hint.orelse, else_block)
                if else_end is not None:
                    self._edge(else_end, join, "unconditional")
            else:
                self._edge(decision, join, "false")
            return join

        if hint.kind == "loop":
            header = self._new("loop", hint.line)
            header.add(hint.label, hint.line)
            self._edge(current, header, "unconditional")
            body = self._new("block", hint.line)
            self._edge(header, body, "true")
            body_end = self._sequence(hint.body, body)
            if body_end is not None:
                self._edge(body_end, header, "unconditional")
            after = self._new("block", hint.line)
            if hint.orelse:
                else_block = self._new("block", hint.orelse[0].line)
                self._edge(header, else_block, "false")
                else_end = self._sequence(hint.orelse, else_block)
                if else_end is not None:
                    self._edge(else_end, after, "unconditional")
            else:
                self._edge(header, after, "false")
            return after

        if hint.kind == "try":
            body = self._new("try", hint.line)
            body.add(hint.label, hint.line)
            self._edge(current, body, "unconditional")
            body_end = self._sequence(hint.body, body)
            join = self._new("block", hint.line)
            if body_end is not None:
                self._edge(body_end, join, "unconditional")
            for handler in hint.handlers:
                handler_block = self._new("handler", handler.line)
                handler_block.add(handler.label, handler.line)
                self._edge(body, handler_block, "exception")
                handler_end = self._sequence(handler.body, handler_block)
                if handler_end is not None:
                    self._edge(handler_end, join, "unconditional")
            if hint.orelse:
                final = self._new("finally", hint.orelse[0].line)
                self._edge(join, final, "unconditional")
                return self._sequence(hint.orelse, final)
            return join

        current.add(hint.label or hint.kind, hint.line)
        if hint.kind == "return":
            self._edge(current, self._exit, "unconditional")
            return None
        if hint.kind == "raise":
            self._edge(current, self._exit, "exception")
            return None
        return current
