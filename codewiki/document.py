"""Document model: the immutable per-run tree handed to renderers, plus the search index."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .analyzers import SECURITY_FINDING, Hotspot, security_hotspots
from .annotations import AnnotatedGraph
from .models import (
    EXTERNAL_NODE_ID,
    Annotation,
    ControlFlowGraph,
    Diagnostic,
    Edge,
    EnrichmentResult,
    Symbol,
    UnresolvedReference,
)

logger = logging.getLogger(__name__)

FILE_TYPES = ("source", "test", "example", "script")
DIAGRAM_KINDS = ("flowchart", "sequence", "class")


def sanitize_filename(path: str) -> str:
    return path.replace("/", "_").replace("\n", "_").replace(" ", "_")


def anchorize(name: str) -> str:
    return name.replace(" ", "-").replace(":", "-").lower()


def classify_file(path: str, language: str = "") -> str:
    """``test``, ``example``, ``script`` or ``source`` from the path alone."""
    pure = PurePosixPath(path)
    dirs = {part.lower() for part in pure.parts[:-1]}
    name = pure.name.lower()
    if dirs & {"test", "tests", "__tests__", "spec"} or name.startswith("test_") \
            or re.search(r"(_test|\.test|\.spec)\.\w+$", name) or name == "conftest.py":
        return "test"
    if dirs & {"example", "examples", "demo", "demos", "samples"}:
        return "example"
    if dirs & {"scripts", "bin", "tools"} or not pure.suffix:
        return "script"
    return "source"


def _first_sentence(text: str, limit: int = 200) -> str:
    stripped = text.strip()
    if not stripped:
        return ""
    first = stripped.splitlines()[0]
    match = re.search(r"[.!?](\s|$)", first)
    sentence = first[:match.end()].strip() if match else first
    return sentence if len(sentence) <= limit else sentence[:limit - 3].rstrip() + "..."


# ===================================================================
# Document tree
# ===================================================================

@dataclass(frozen=True)
class FileDocument:
    path: str
    language: str
    file_type: str
    line_count: int
    status: str
    diagnostics: Tuple[Diagnostic, ...]
    symbols: Tuple[Symbol, ...]
    call_edges: Tuple[Edge, ...]
    reference_edges: Tuple[Edge, ...]
    dependency_edges: Tuple[Edge, ...]
    cfgs: Tuple[ControlFlowGraph, ...]
    unresolved: Tuple[UnresolvedReference, ...]
    annotations: Tuple[Annotation, ...]
    enrichment: Optional[EnrichmentResult]
    function_enrichments: Tuple[EnrichmentResult, ...]
    security_level: str
    diagram: str
    labels: Tuple[Tuple[str, str], ...]

    @property
    def page(self) -> str:
        return f"pages/{sanitize_filename(self.path)}.html"

    @property
    def functions(self) -> List[Symbol]:
        return [s for s in self.symbols if s.is_callable]

    def label(self, node_id: str) -> str:
        for key, value in self.labels:
            if key == node_id:
                return value
        return node_id

    def to_dict(self) -> Dict[str, object]:
        return {
            "path": self.path,
            "page": self.page,
            "language": self.language,
            "file_type": self.file_type,
            "lines": self.line_count,
            "status": self.status,
            "security_level": self.security_level,
            "diagram": self.diagram,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "symbols": [s.to_dict() for s in self.symbols],
            "call_edges": [e.to_dict() for e in self.call_edges],
            "reference_edges": [e.to_dict() for e in self.reference_edges],
            "dependency_edges": [e.to_dict() for e in self.dependency_edges],
            "cfgs": [c.to_dict() for c in self.cfgs],
            "unresolved": [u.to_dict() for u in self.unresolved],
            "annotations": [a.to_dict() for a in self.annotations],
            "enrichment": self.enrichment.to_dict() if self.enrichment else None,
            "function_enrichments": [r.to_dict() for r in self.function_enrichments],
            "labels": dict(self.labels),
        }


@dataclass(frozen=True)
class ProjectOverview:
    title: str
    file_count: int
    symbol_count: int
    line_count: int
    languages: Tuple[Tuple[str, int], ...]
    call_edge_count: int
    unresolved_count: int
    dependency_edges: Tuple[Edge, ...]
    cycles: Tuple[Tuple[str, ...], ...]
    hotspots: Tuple[Hotspot, ...]

    def to_dict(self) -> Dict[str, object]:
        return {
            "title": self.title,
            "files": self.file_count,
            "symbols": self.symbol_count,
            "lines": self.line_count,
            "languages": dict(self.languages),
            "call_edges": self.call_edge_count,
            "unresolved": self.unresolved_count,
            "dependency_edges": [e.to_dict() for e in self.dependency_edges],
            "cycles": [list(c) for c in self.cycles],
            "hotspots": [h.to_dict() for h in self.hotspots],
        }


@dataclass(frozen=True)
class RunReport:
    diagnostics: Tuple[Diagnostic, ...] = ()
    overflow: Tuple[Annotation, ...] = ()

    @property
    def ok(self) -> bool:
        return not any(d.kind.is_fatal for d in self.diagnostics)

    def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for diagnostic in self.diagnostics:
            counts[diagnostic.kind.value] = counts.get(diagnostic.kind.value, 0) + 1
        return dict(sorted(counts.items()))

    def to_dict(self) -> Dict[str, object]:
        return {
            "counts": self.counts(),
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "overflow": [a.to_dict() for a in self.overflow],
        }


@dataclass(frozen=True)
class Document:
    overview: ProjectOverview
    files: Tuple[FileDocument, ...]
    report: RunReport

    def file(self, path: str) -> Optional[FileDocument]:
        for file_doc in self.files:
            if file_doc.path == path:
                return file_doc
        return None

    def to_dict(self) -> Dict[str, object]:
        return {
            "overview": self.overview.to_dict(),
            "files": [f.to_dict() for f in self.files],
            "report": self.report.to_dict(),
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)


@dataclass(frozen=True)
class SearchRecord:
    path: str
    title: str
    description: str
    symbols: Tuple[str, ...]
    language: str
    file_type: str
    security_level: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "path": self.path,
            "title": self.title,
            "description": self.description,
            "symbols": list(self.symbols),
            "language": self.language,
            "file_type": self.file_type,
            "security_level": self.security_level,
        }

    def matches(self, term: str) -> bool:
        term = term.lower()
        return (term in self.title.lower() or term in self.description.lower()
                or any(term in s.lower() for s in self.symbols))


@dataclass(frozen=True)
class SearchIndex:
    records: Tuple[SearchRecord, ...]

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    def filter(
        self,
        text: str = "",
        language: Optional[str] = None,
        file_type: Optional[str] = None,
        security_level: Optional[str] = None,
    ) -> List[SearchRecord]:
        """Exact match on the facets, substring match on title, description and symbols."""
        return [
            r for r in self.records
            if (language is None or r.language == language)
            and (file_type is None or r.file_type == file_type)
            and (security_level is None or r.security_level == security_level)
            and (not text or r.matches(text))
        ]

    def to_json(self, indent: Optional[int] = None) -> str:
        return json.dumps([r.to_dict() for r in self.records], indent=indent, ensure_ascii=False)


# ===================================================================
# Emitter
# ===================================================================

class DocumentEmitter:
    """Folds an annotated graph and enrichment results into a :class:`Document`."""

    def __init__(self, title: str = "Code Wiki"):
        self.title = title

    def emit(
        self,
        annotated: AnnotatedGraph,
        enrichments: Dict[str, EnrichmentResult],
        diagnostics: Sequence[Diagnostic] = (),
    ) -> Document:
        graph = annotated.graph
        table = graph.table
        files = tuple(self._file_document(annotated, path, enrichments) for path in table.paths)

        languages: Dict[str, int] = {}
        for unit in table.units.values():
            languages[unit.language] = languages.get(unit.language, 0) + 1
        overview = ProjectOverview(
            title=self.title,
            file_count=len(files),
            symbol_count=len(table.symbols),
            line_count=sum(f.line_count for f in files),
            languages=tuple(sorted(languages.items())),
            call_edge_count=len(graph.call_edges),
            unresolved_count=len(graph.unresolved),
            dependency_edges=graph.dependency_edges,
            cycles=tuple(tuple(graph.label(m) for m in cycle) for cycle in graph.find_cycles()),
            hotspots=tuple(security_hotspots(annotated)),
        )

        all_diagnostics = list(table.diagnostics) + annotated.diagnostics() + list(diagnostics)
        report = RunReport(
            diagnostics=tuple(sorted(set(all_diagnostics),
                                     key=lambda d: (d.location, d.line or 0, d.kind.value, d.message))),
            overflow=annotated.overflow,
        )
        logger.info("Document: %d files, %d diagnostics", len(files), len(report.diagnostics))
        return Document(overview=overview, files=files, report=report)

    def _file_document(
        self,
        annotated: AnnotatedGraph,
        path: str,
        enrichments: Dict[str, EnrichmentResult],
    ) -> FileDocument:
        graph = annotated.graph
        table = graph.table
        unit = table.units[path]
        symbols = tuple(table.symbols_in(path))
        member_ids = {s.symbol_id for s in symbols}
        module = table.module_for(path)
        module_id = module.symbol_id if module is not None else None

        def touches(edge: Edge) -> bool:
            return edge.src in member_ids or edge.dst in member_ids

        call_edges = tuple(e for e in graph.call_edges if touches(e))
        reference_edges = tuple(e for e in graph.reference_edges if touches(e))
        dependency_edges = tuple(e for e in graph.dependency_edges
                                 if module_id in (e.src, e.dst))
        cfgs = tuple(graph.cfgs[s.symbol_id] for s in symbols if s.symbol_id in graph.cfgs)
        unresolved = tuple(
            ref
            for e in call_edges + reference_edges
            if e.src in member_ids
            for ref in graph.unresolved_by_edge.get(e.edge_id, ())
        )

        annotations = tuple(annotated.for_file(path))
        security = annotated.max_severity(path, SECURITY_FINDING)

        labels: Dict[str, str] = {}
        for edge in call_edges + reference_edges + dependency_edges:
            for end in ("src", "dst"):
                node_id = getattr(edge, end)
                if node_id == EXTERNAL_NODE_ID:
                    continue
                labels[node_id] = graph.label(node_id)
        for symbol in symbols:
            labels[symbol.symbol_id] = symbol.qualname

        functions = [s for s in symbols if s.is_callable]
        function_enrichments = tuple(
            enrichments[s.symbol_id] for s in functions if s.symbol_id in enrichments
        )
        return FileDocument(
            path=path,
            language=unit.language,
            file_type=classify_file(path, unit.language),
            line_count=unit.line_count,
            status=table.statuses[path].value,
            diagnostics=tuple(d for d in table.diagnostics if d.location == path),
            symbols=symbols,
            call_edges=call_edges,
            reference_edges=reference_edges,
            dependency_edges=dependency_edges,
            cfgs=cfgs,
            unresolved=unresolved,
            annotations=annotations,
            enrichment=enrichments.get(path),
            function_enrichments=function_enrichments,
            security_level=security.value if security is not None else "",
            diagram=_choose_diagram(cfgs, functions),
            labels=tuple(sorted(labels.items())),
        )

    def index(self, document: Document) -> SearchIndex:
        records = []
        for file_doc in document.files:
            named = [s for s in file_doc.symbols if s.kind != "module"]
            anchor = f"#symbol-{anchorize(named[0].name)}" if named else ""
            description = f"{len(named)} symbols, {file_doc.line_count} lines"
            if file_doc.enrichment is not None:
                sentence = _first_sentence(file_doc.enrichment.text)
                if sentence:
                    description += f". {sentence}"
            records.append(SearchRecord(
                path=file_doc.page + anchor,
                title=file_doc.path,
                description=description,
                symbols=tuple(s.name for s in named),
                language=file_doc.language,
                file_type=file_doc.file_type,
                security_level=file_doc.security_level,
            ))
        return SearchIndex(tuple(records))


def _choose_diagram(cfgs: Iterable[ControlFlowGraph], functions: Sequence[Symbol]) -> str:
    if any(cfg.decision_points() for cfg in cfgs):
        return "flowchart"
    if len(functions) >= 2:
        return "sequence"
    return "class"
