"""AI context assembly and enrichment with a deterministic fallback.

A :class:`ContextPayload` is a size-bounded set of prioritized sections about
one unit (a file or a function).  :class:`Enricher` sends its prompt to a
provider under a timeout and falls back to a templated summary built only
from the payload whenever the provider is disabled, slow or broken.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import config
from .errors import ErrorKind, ProviderError
from .graph import GraphSlice
from .llm import LLMProvider
from .models import Annotation, Diagnostic, EnrichmentResult, Fallback, Generated

logger = logging.getLogger(__name__)

AI_DISABLED = "AI enrichment disabled"

# Lower value survives longer when the budget is tight
PRIORITY_SIGNATURE = 0
PRIORITY_CALLS = 1
PRIORITY_SECURITY = 2
PRIORITY_TRANSITIVE = 3
PRIORITY_QUALITY = 4


@dataclass(frozen=True)
class ContextSection:
    title: str
    priority: int
    body: str

    def render(self) -> str:
        return f"## {self.title}\n{self.body}"


@dataclass(frozen=True)
class ContextPayload:
    unit_id: str
    unit_kind: str
    label: str
    language: str
    sections: Tuple[ContextSection, ...]
    dropped: Tuple[str, ...] = ()
    budget: int = config.DEFAULT_CONTEXT_BUDGET

    @property
    def text(self) -> str:
        return "\n\n".join(section.render() for section in self.sections)

    @property
    def prompt(self) -> str:
        return (
            f"Unit: {self.label}\n"
            f"Kind: {self.unit_kind}\nLanguage: {self.language}\n\n"
            "Write a concise technical description of this code for a documentation "
            "site. Start with a one-sentence summary, then describe its responsibilities "
            "and notable risks. Use only the context below.\n\n"
            f"{self.text}"
        )

    def section(self, title: str) -> Optional[ContextSection]:
        for section in self.sections:
            if section.title == title:
                return section
        return None


class ContextAssembler:
    """Builds a :class:`ContextPayload` that never exceeds ``budget`` characters."""

    def __init__(self, budget: int = config.DEFAULT_CONTEXT_BUDGET):
        self.budget = budget

    def assemble(
        self,
        unit_id: str,
        graph_slice: GraphSlice,
        annotations: Sequence[Annotation],
    ) -> ContextPayload:
        sections = [s for s in self._sections(graph_slice, annotations) if s.body]
        sections, dropped = self._fit(sections)
        if graph_slice.unit_kind == "file":
            label = graph_slice.file_path
        else:
            label = graph_slice.symbols[0].qualname
        return ContextPayload(
            unit_id=unit_id,
            unit_kind=graph_slice.unit_kind,
            label=label,
            language=graph_slice.language,
            sections=tuple(sections),
            dropped=tuple(dropped),
            budget=self.budget,
        )

    def _sections(self, graph_slice: GraphSlice, annotations: Sequence[Annotation]) -> List[ContextSection]:
        signatures = []
        for symbol in graph_slice.symbols:
            if symbol.kind == "module":
                if symbol.docstring:
                    signatures.append(_first_line(symbol.docstring))
                continue
            line = f"{symbol.kind} {symbol.qualname}"
            if symbol.signature:
                line += f": {symbol.signature}"
            if symbol.docstring:
                line += f"  # {_first_line(symbol.docstring)}"
            signatures.append(line)

        neighbours = []
        if graph_slice.callees:
            neighbours.append("Calls: " + ", ".join(graph_slice.callees))
        if graph_slice.callers:
            neighbours.append("Called by: " + ", ".join(graph_slice.callers))

        security = [_describe(a) for a in annotations if a.kind == "security-finding"]
        quality = [_describe(a) for a in annotations if a.kind != "security-finding"]

        return [
            ContextSection("Signature", PRIORITY_SIGNATURE, "\n".join(signatures)),
            ContextSection("Call neighbours", PRIORITY_CALLS, "\n".join(neighbours)),
            ContextSection("Security findings", PRIORITY_SECURITY, "\n".join(security)),
            ContextSection("Transitive neighbours", PRIORITY_TRANSITIVE,
                           ", ".join(graph_slice.transitive)),
            ContextSection("Quality", PRIORITY_QUALITY, "\n".join(quality)),
        ]

    def _fit(self, sections: List[ContextSection]) -> Tuple[List[ContextSection], List[str]]:
        kept = sorted(sections, key=lambda s: s.priority)
        dropped: List[str] = []
        while kept and _length(kept) > self.budget:
            if len(kept) == 1:
                only = kept[0]
                room = max(self.budget - len(only.render()) + len(only.body), 0)
                kept = [ContextSection(only.title, only.priority, only.body[:room])]
                break
            dropped.append(kept.pop().title)
        return kept, dropped


def _length(sections: Iterable[ContextSection]) -> int:
    return len("\n\n".join(s.render() for s in sections))


def _first_line(text: str) -> str:
    return text.strip().splitlines()[0] if text.strip() else ""


def _describe(annotation: Annotation) -> str:
    where = f" (line {annotation.line})" if annotation.line else ""
    return f"[{annotation.severity.value}] {annotation.payload}{where}"


def annotations_for_slice(annotated, graph_slice: GraphSlice) -> List[Annotation]:
    """Annotations on the slice's own nodes and edges, canonically ordered."""
    found: List[Annotation] = []
    for key in graph_slice.node_ids + graph_slice.edge_ids:
        found.extend(annotated.annotations_for(key))
    return sorted(set(found), key=Annotation.sort_key)


# ===================================================================
# Enrichment
# ===================================================================

def fallback_text(payload: ContextPayload) -> str:
    """Templated description built only from *payload*; same input, same text."""
    signature = payload.section("Signature")
    entries = len(signature.body.splitlines()) if signature else 0
    summary = f"{payload.label} is a {payload.language or 'source'} {payload.unit_kind}"
    if payload.unit_kind == "file":
        summary += f" with {entries} documented entr{'y' if entries == 1 else 'ies'}."
    else:
        summary += "."
    lines = [summary]
    for section in payload.sections:
        if section.title == "Signature":
            continue
        count = len([line for line in section.body.splitlines() if line.strip()])
        lines.append(f"{section.title}: {count} item{'s' if count != 1 else ''}.")
    if signature is not None and signature.body:
        lines.append("")
        lines.append(signature.body)
    return "\n".join(lines)


class Enricher:
    """Runs a provider under a per-call timeout; never raises for provider trouble."""

    def __init__(self, provider: Optional[LLMProvider], timeout: float = config.DEFAULT_ENRICHMENT_TIMEOUT):
        self.provider = provider
        self.timeout = timeout

    def enrich(self, payload: ContextPayload) -> EnrichmentResult:
        if self.provider is None:
            return Fallback(payload.unit_id, fallback_text(payload), AI_DISABLED)

        # Private executor so a hung call never blocks other units
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="codewiki-enrich")
        try:
            future = executor.submit(self.provider.generate, payload.prompt, self.timeout)
            try:
                text = future.result(timeout=self.timeout)
            except FutureTimeout:
                future.cancel()
                return self._fallback(payload, f"provider timed out after {self.timeout:g}s")
            except ProviderError as exc:
                return self._fallback(payload, f"provider error: {exc.reason}")
            except Exception as exc:
                logger.warning("Provider %s crashed on %s: %s", self.provider.name, payload.unit_id, exc)
                return self._fallback(payload, f"provider error: {exc}")
        finally:
            executor.shutdown(wait=False)

        if not isinstance(text, str) or not text.strip():
            return self._fallback(payload, "malformed provider response")
        return Generated(payload.unit_id, text.strip(), self.provider.name)

    def _fallback(self, payload: ContextPayload, reason: str) -> Fallback:
        logger.info("Enrichment fallback for %s: %s", payload.unit_id, reason)
        return Fallback(payload.unit_id, fallback_text(payload), reason)

    def enrich_all(
        self,
        payloads: Sequence[ContextPayload],
        max_workers: int = config.DEFAULT_MAX_WORKERS,
    ) -> Dict[str, EnrichmentResult]:
        """One result per payload, keyed and sorted by unit id."""
        if not payloads:
            return {}
        results: Dict[str, EnrichmentResult] = {}
        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(payloads))),
                                thread_name_prefix="codewiki-units") as pool:
            futures = {pool.submit(self.enrich, payload): payload for payload in payloads}
            for future, payload in futures.items():
                results[payload.unit_id] = future.result()
        return dict(sorted(results.items()))


def enrichment_diagnostics(results: Dict[str, EnrichmentResult]) -> List[Diagnostic]:
    return [
        Diagnostic(ErrorKind.RECOVERABLE_ENRICHMENT, unit_id, result.reason)
        for unit_id, result in results.items()
        if isinstance(result, Fallback) and result.reason != AI_DISABLED
    ]
