"""Annotation merging.

An :class:`AnnotatedGraph` pairs a :class:`CodeGraph` with annotations keyed
by node or edge id.  Merging is a multiset union followed by a canonical sort,
so batches can arrive in any order and the result is the same value.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import ErrorKind
from .graph import CodeGraph
from .models import EXTERNAL_NODE_ID, Annotation, Diagnostic, Severity

logger = logging.getLogger(__name__)


def _canonical(annotations: Iterable[Annotation]) -> Tuple[Annotation, ...]:
    return tuple(sorted(annotations, key=Annotation.sort_key))


class AnnotatedGraph:
    """Immutable graph plus annotations; :meth:`merged_with` returns a new value."""

    def __init__(
        self,
        graph: CodeGraph,
        annotations: Optional[Dict[str, Tuple[Annotation, ...]]] = None,
        overflow: Sequence[Annotation] = (),
    ) -> None:
        self.graph = graph
        self._annotations: Dict[str, Tuple[Annotation, ...]] = {
            key: _canonical(items) for key, items in sorted((annotations or {}).items()) if items
        }
        self._overflow: Tuple[Annotation, ...] = _canonical(overflow)
        self._by_file: Optional[Dict[str, Tuple[Annotation, ...]]] = None

    @property
    def annotations(self) -> Dict[str, Tuple[Annotation, ...]]:
        return dict(self._annotations)

    @property
    def overflow(self) -> Tuple[Annotation, ...]:
        return self._overflow

    def merged_with(self, batch: Iterable[Annotation]) -> "AnnotatedGraph":
        grouped: Dict[str, List[Annotation]] = {k: list(v) for k, v in self._annotations.items()}
        overflow = list(self._overflow)
        for annotation in batch:
            if self._is_known(annotation.key):
                grouped.setdefault(annotation.key, []).append(annotation)
            else:
                overflow.append(annotation)
        return AnnotatedGraph(
            self.graph,
            {k: tuple(v) for k, v in grouped.items()},
            overflow,
        )

    def _is_known(self, key: str) -> bool:
        if key == EXTERNAL_NODE_ID:
            return False
        return self.graph.has_node(key) or self.graph.has_edge(key)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def annotations_for(self, key: str) -> Tuple[Annotation, ...]:
        return self._annotations.get(key, ())

    def all(self) -> List[Annotation]:
        return [a for items in self._annotations.values() for a in items]

    def for_file(self, path: str) -> List[Annotation]:
        """Annotations on the file's symbols and on edges that start in the file."""
        return list(self._file_index().get(path, ()))

    def _file_index(self) -> Dict[str, Tuple[Annotation, ...]]:
        if self._by_file is None:
            grouped: Dict[str, List[Annotation]] = {}
            for key, items in self._annotations.items():
                owner = self.graph.symbols.get(key)
                if owner is None:
                    edge = self.graph.edge(key)
                    owner = self.graph.symbols.get(edge.src) if edge is not None else None
                if owner is not None:
                    grouped.setdefault(owner.file_path, []).extend(items)
            self._by_file = {path: _canonical(items) for path, items in grouped.items()}
        return self._by_file

    def max_severity(self, path: str, kind: Optional[str] = None) -> Optional[Severity]:
        levels = [a.severity for a in self.for_file(path) if kind is None or a.kind == kind]
        if not levels:
            return None
        return max(levels, key=lambda s: s.rank)

    def diagnostics(self) -> List[Diagnostic]:
        return [
            Diagnostic(
                ErrorKind.RECOVERABLE_ANNOTATION,
                a.key,
                f"annotation from '{a.source}' targets unknown id {a.key}",
                a.line or None,
            )
            for a in self._overflow
        ]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AnnotatedGraph):
            return NotImplemented
        return (self.graph is other.graph
                and self._annotations == other._annotations
                and self._overflow == other._overflow)

    def __hash__(self) -> int:
        return hash((id(self.graph), tuple(self._annotations.items()), self._overflow))

    def __len__(self) -> int:
        return sum(len(v) for v in self._annotations.values())


class AnnotationMerger:
    """Folds analyzer batches into an :class:`AnnotatedGraph`."""

    def merge(self, graph: CodeGraph, batches: Iterable[Sequence[Annotation]]) -> AnnotatedGraph:
        annotated = AnnotatedGraph(graph)
        for batch in batches:
            annotated = annotated.merged_with(batch)
        if annotated.overflow:
            logger.warning("%d annotations target unknown ids", len(annotated.overflow))
        return annotated


def merge(graph: CodeGraph, batches: Iterable[Sequence[Annotation]]) -> AnnotatedGraph:
    return AnnotationMerger().merge(graph, batches)
