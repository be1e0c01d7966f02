"""Core data models shared by every pipeline stage."""

from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from .errors import ErrorKind

EXTERNAL_NODE_ID = "external:unknown"

SYMBOL_KINDS = ("module", "class", "function", "method", "variable", "type")
REFERENCE_KINDS = ("calls", "imports", "extends", "reads", "writes")
CFG_EDGE_TAGS = ("true", "false", "unconditional", "exception")


def _short_hash(*parts: object) -> str:
    raw = "\0".join(str(p) for p in parts)
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


def make_symbol_id(file_path: str, qualname: str, kind: str) -> str:
    """Stable id derived only from path, qualified name and kind."""
    return _short_hash(file_path, qualname, kind)


class ParseStatus(str, enum.Enum):
    OK = "Ok"
    PARTIAL_ERROR = "PartialError"
    FATAL = "Fatal"


class Severity(str, enum.Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def lowered(self) -> "Severity":
        """One level less severe (floors at INFO)."""
        order = list(Severity)
        return order[max(self.rank - 1, 0)]

    @classmethod
    def parse(cls, value: Union[str, "Severity"]) -> "Severity":
        if isinstance(value, Severity):
            return value
        return cls(str(value).strip().lower())


_SEVERITY_RANK: Dict[Severity, int] = {sev: i for i, sev in enumerate(Severity)}


@dataclass(frozen=True)
class SourceUnit:
    path: str
    language: str
    text: str
    timestamp: float = 0.0

    @property
    def unit_id(self) -> str:
        return self.path

    @property
    def line_count(self) -> int:
        return len(self.text.splitlines())


@dataclass(frozen=True)
class Diagnostic:
    kind: ErrorKind
    location: str
    message: str
    line: Optional[int] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind.value,
            "location": self.location,
            "message": self.message,
            "line": self.line,
        }


@dataclass(frozen=True)
class Symbol:
    symbol_id: str
    kind: str
    name: str
    qualname: str
    file_path: str
    start_line: int
    end_line: int
    language: str
    visibility: str = "public"
    parent_id: Optional[str] = None
    signature: str = ""
    docstring: str = ""
    code: str = ""

    @property
    def is_callable(self) -> bool:
        return self.kind in ("function", "method")

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.symbol_id,
            "kind": self.kind,
            "name": self.name,
            "qualname": self.qualname,
            "file": self.file_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "language": self.language,
            "visibility": self.visibility,
            "parent": self.parent_id,
            "signature": self.signature,
            "docstring": self.docstring,
        }


@dataclass(frozen=True)
class RawReference:
    """A reference as an adapter sees it: the target is still just a name.

    Import references carry ``bindings``: ``(local_name, imported_name)``
    pairs, where an empty ``imported_name`` binds the module itself.
    """

    source_id: str
    target_name: str
    kind: str
    file_path: str
    line: int
    bindings: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class Edge:
    src: str
    dst: str
    kind: str
    line: int = 0
    ambiguous: bool = False
    unresolved: bool = False
    weight: int = 1

    @property
    def edge_id(self) -> str:
        return _short_hash(self.src, self.dst, self.kind, self.line)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.edge_id,
            "src": self.src,
            "dst": self.dst,
            "kind": self.kind,
            "line": self.line,
            "ambiguous": self.ambiguous,
            "unresolved": self.unresolved,
            "weight": self.weight,
        }


@dataclass(frozen=True)
class UnresolvedReference:
    source_id: str
    target_name: str
    guess: str
    kind: str
    file_path: str
    line: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "source": self.source_id,
            "target": self.target_name,
            "guess": self.guess,
            "kind": self.kind,
            "file": self.file_path,
            "line": self.line,
        }


@dataclass
class FlowHint:
    """Statement outline used to build a control-flow graph.

    ``kind`` is one of ``statement``, ``call``, ``branch``, ``loop``,
    ``try``, ``handler``, ``return`` or ``raise``.  Branches use
    ``body``/``orelse``, loops use ``body`` (and ``orelse`` for Python's
    ``for ... else``), ``try`` uses ``body``, ``handlers`` (each a
    ``handler`` hint with its own ``body``) and ``orelse`` (the finally part).
    """

    kind: str
    line: int
    label: str = ""
    body: List["FlowHint"] = field(default_factory=list)
    orelse: List["FlowHint"] = field(default_factory=list)
    handlers: List["FlowHint"] = field(default_factory=list)


@dataclass(frozen=True)
class CfgBlock:
    block_id: str
    kind: str
    label: str
    start_line: int
    end_line: int


@dataclass(frozen=True)
class CfgEdge:
    src: str
    dst: str
    tag: str


@dataclass(frozen=True)
class ControlFlowGraph:
    function_id: str
    blocks: Tuple[CfgBlock, ...]
    edges: Tuple[CfgEdge, ...]
    entry_id: str
    exit_id: str

    @property
    def is_single_block(self) -> bool:
        return self.entry_id == self.exit_id

    def decision_points(self) -> List[str]:
        """Blocks with labelled true/false out-edges."""
        seen: List[str] = []
        for edge in self.edges:
            if edge.tag in ("true", "false") and edge.src not in seen:
                seen.append(edge.src)
        return seen

    def to_dict(self) -> Dict[str, object]:
        return {
            "function": self.function_id,
            "entry": self.entry_id,
            "exit": self.exit_id,
            "blocks": [
                {"id": b.block_id, "kind": b.kind, "label": b.label,
                 "start_line": b.start_line, "end_line": b.end_line}
                for b in self.blocks
            ],
            "edges": [{"src": e.src, "dst": e.dst, "tag": e.tag} for e in self.edges],
        }


@dataclass
class ParseOutcome:
    """What an adapter returns for a single SourceUnit."""

    unit: SourceUnit
    status: ParseStatus = ParseStatus.OK
    symbols: List[Symbol] = field(default_factory=list)
    references: List[RawReference] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    flows: Dict[str, List[FlowHint]] = field(default_factory=dict)


@dataclass(frozen=True)
class Annotation:
    key: str
    kind: str
    severity: Severity
    payload: str
    source: str
    line: int = 0
    category: str = ""

    def sort_key(self) -> Tuple[object, ...]:
        return (self.key, self.kind, -self.severity.rank, self.source,
                self.category, self.line, self.payload)

    def to_dict(self) -> Dict[str, object]:
        return {
            "key": self.key,
            "kind": self.kind,
            "severity": self.severity.value,
            "payload": self.payload,
            "source": self.source,
            "line": self.line,
            "category": self.category,
        }


ANNOTATION_KINDS = ("security-finding", "quality-score", "refactor-suggestion")


@dataclass(frozen=True)
class Generated:
    unit_id: str
    text: str
    provider: str

    is_fallback = False

    def to_dict(self) -> Dict[str, object]:
        return {"unit": self.unit_id, "status": "Generated", "text": self.text,
                "provider": self.provider}


@dataclass(frozen=True)
class Fallback:
    unit_id: str
    text: str
    reason: str

    is_fallback = True

    def to_dict(self) -> Dict[str, object]:
        return {"unit": self.unit_id, "status": "Fallback", "text": self.text,
                "reason": self.reason}


EnrichmentResult = Union[Generated, Fallback]
