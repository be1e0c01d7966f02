"""Run orchestration: source tree in, :class:`Document` and :class:`SearchIndex` out."""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .analyzers import QualityAnalyzer, RefactorAdvisor, SecurityScanner, propagate_findings
from .annotations import AnnotatedGraph
from .config import WikiConfig
from .document import Document, DocumentEmitter, SearchIndex
from .enrichment import (
    ContextAssembler,
    ContextPayload,
    Enricher,
    annotations_for_slice,
    enrichment_diagnostics,
)
from .errors import ErrorKind, FatalConfigurationError, FatalResourceExhaustionError
from .extractor import SymbolExtractor, discover_units
from .graph import CodeGraph, GraphBuilder
from .llm import LLMProvider, create_provider
from .models import Annotation, Diagnostic, EnrichmentResult
from .parser import AdapterRegistry

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    document: Document
    index: SearchIndex
    annotated: AnnotatedGraph
    enrichments: Dict[str, EnrichmentResult]
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def graph(self) -> CodeGraph:
        return self.annotated.graph

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return list(self.document.report.diagnostics)


class Pipeline:
    """Parse, resolve, annotate, enrich and emit, in that order."""

    def __init__(
        self,
        config: Optional[WikiConfig] = None,
        registry: Optional[AdapterRegistry] = None,
        provider: Optional[LLMProvider] = None,
        analyzers: Optional[Sequence[object]] = None,
    ) -> None:
        self.config = (config or WikiConfig()).validate()
        self.registry = registry if registry is not None else AdapterRegistry.default()
        if not self.config.ai_enabled:
            self.provider = None
        else:
            self.provider = provider if provider is not None else self._default_provider()
        self.analyzers = list(analyzers) if analyzers is not None else self._default_analyzers()

    def _default_provider(self) -> LLMProvider:
        name = "mock" if self.config.ai_use_mock else self.config.ai_provider
        try:
            return create_provider(name, self.config.ai_model, self.config.ai_api_key,
                                   self.config.ai_endpoint or None)
        except ValueError as exc:
            raise FatalConfigurationError(str(exc)) from exc

    def _default_analyzers(self) -> List[object]:
        analyzers: List[object] = []
        if self.config.security_enabled:
            analyzers.append(SecurityScanner())
        analyzers.append(QualityAnalyzer())
        if self.config.refactoring_enabled:
            analyzers.append(RefactorAdvisor())
        return analyzers

    def run(self, root: Path, extra_annotations: Iterable[Annotation] = ()) -> RunResult:
        root = Path(root)
        if not root.exists():
            raise FatalConfigurationError(f"Root path does not exist: {root}")
        if not root.is_dir():
            raise FatalConfigurationError(f"Root path is not a directory: {root}")
        if len(self.registry) == 0:
            raise FatalConfigurationError("No language adapters are available")

        collected: List[Diagnostic] = []
        timings: Dict[str, float] = {}
        try:
            started = time.monotonic()
            units, discovery = discover_units(root, self.registry, self.config.max_file_bytes)
            collected.extend(discovery)
            extractor = SymbolExtractor(self.registry, self.config.max_workers,
                                        self.config.parse_timeout)
            table = extractor.extract(units)
            collected.extend(table.diagnostics)
            timings["parse"] = time.monotonic() - started

            started = time.monotonic()
            graph = GraphBuilder().build(table)
            timings["graph"] = time.monotonic() - started

            started = time.monotonic()
            annotated = self.annotate(graph, extra_annotations, collected)
            collected.extend(annotated.diagnostics())
            timings["annotate"] = time.monotonic() - started

            started = time.monotonic()
            payloads = self.payloads(annotated)
            enricher = Enricher(self.provider, self.config.enrichment_timeout)
            enrichments = enricher.enrich_all(payloads, self.config.max_workers)
            enrich_diagnostics = enrichment_diagnostics(enrichments)
            collected.extend(enrich_diagnostics)
            timings["enrich"] = time.monotonic() - started

            started = time.monotonic()
            emitter = DocumentEmitter(self.config.site_title)
            document = emitter.emit(annotated, enrichments, collected)
            index = emitter.index(document)
            timings["emit"] = time.monotonic() - started
        except MemoryError as exc:
            raise FatalResourceExhaustionError(
                "Ran out of memory during the run", diagnostics=collected,
            ) from exc

        for stage, seconds in timings.items():
            logger.info("Stage %s finished in %.2fs", stage, seconds)
        return RunResult(document, index, annotated, enrichments, timings)

    def annotate(
        self,
        graph: CodeGraph,
        extra_annotations: Iterable[Annotation] = (),
        collected: Optional[List[Diagnostic]] = None,
    ) -> AnnotatedGraph:
        """Run every analyzer concurrently and merge batches as they complete."""
        annotated = AnnotatedGraph(graph).merged_with(extra_annotations)
        if not self.analyzers:
            return annotated
        with ThreadPoolExecutor(max_workers=len(self.analyzers),
                                thread_name_prefix="codewiki-analyze") as pool:
            futures = {pool.submit(a.analyze, graph): a for a in self.analyzers}
            for future in as_completed(futures):
                analyzer = futures[future]
                try:
                    batch = future.result()
                except MemoryError:
                    raise
                except Exception as exc:
                    logger.warning("Analyzer %s failed: %s", analyzer.name, exc)
                    if collected is not None:
                        collected.append(Diagnostic(
                            ErrorKind.RECOVERABLE_ANNOTATION, analyzer.name,
                            f"analyzer failed: {exc}",
                        ))
                    continue
                annotated = annotated.merged_with(batch)
                if isinstance(analyzer, SecurityScanner):
                    annotated = annotated.merged_with(propagate_findings(graph, batch))
        return annotated

    def payloads(self, annotated: AnnotatedGraph) -> List[ContextPayload]:
        graph = annotated.graph
        assembler = ContextAssembler(self.config.context_budget)
        unit_ids = list(graph.table.paths)
        if self.config.function_docs:
            unit_ids += [s.symbol_id for s in graph.symbols.values() if s.is_callable]
        payloads = []
        for unit_id in unit_ids:
            graph_slice = graph.slice_for(unit_id)
            payloads.append(assembler.assemble(
                unit_id, graph_slice, annotations_for_slice(annotated, graph_slice),
            ))
        return payloads


def run(root: Path, config: Optional[WikiConfig] = None, **kwargs) -> RunResult:
    return Pipeline(config, **kwargs).run(root)
