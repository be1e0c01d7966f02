"""Diagram files derived from a :class:`Document`: Mermaid per file and DOT for the project."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Dict, List

from .document import Document, FileDocument, sanitize_filename
from .models import EXTERNAL_NODE_ID


def mermaid_for_file(file_doc: FileDocument) -> str:
    """Mermaid source for the diagram kind chosen for *file_doc*."""
    if file_doc.diagram == "flowchart":
        return _flowchart(file_doc)
    if file_doc.diagram == "sequence":
        return _sequence(file_doc)
    return _class_diagram(file_doc)


def _flowchart(file_doc: FileDocument) -> str:
    lines = ["flowchart TD"]
    for cfg in file_doc.cfgs:
        if cfg.is_single_block:
            continue
        ids = {b.block_id: _node_id(b.block_id) for b in cfg.blocks}
        lines.append(f"  subgraph {_node_id(cfg.function_id)}[\"{_esc(file_doc.label(cfg.function_id))}\"]")
        for block in cfg.blocks:
            text = _esc(block.label or block.kind)
            if block.kind in ("branch", "loop"):
                lines.append(f"    {ids[block.block_id]}{{\"{text}\"}}")
            else:
                lines.append(f"    {ids[block.block_id]}[\"{text}\"]")
        for edge in cfg.edges:
            if edge.tag in ("true", "false"):
                lines.append(f"    {ids[edge.src]} -->|{edge.tag}| {ids[edge.dst]}")
            elif edge.tag == "exception":
                lines.append(f"    {ids[edge.src]} -.->|exception| {ids[edge.dst]}")
            else:
                lines.append(f"    {ids[edge.src]} --> {ids[edge.dst]}")
        lines.append("  end")
    return "\n".join(lines)


def _sequence(file_doc: FileDocument) -> str:
    lines = ["sequenceDiagram"]
    participants: List[str] = []
    messages: List[str] = []
    for edge in file_doc.call_edges:
        if edge.dst == EXTERNAL_NODE_ID:
            continue
        src, dst = _participant(file_doc.label(edge.src)), _participant(file_doc.label(edge.dst))
        for name in (src, dst):
            if name not in participants:
                participants.append(name)
        messages.append(f"  {src}->>{dst}: call")
    lines.extend(f"  participant {name}" for name in participants)
    lines.extend(messages)
    return "\n".join(lines)


def _class_diagram(file_doc: FileDocument) -> str:
    lines = ["classDiagram"]
    classes = [s for s in file_doc.symbols if s.kind in ("class", "type")]
    for cls in classes:
        lines.append(f"  class {_participant(cls.name)} {{")
        for member in file_doc.symbols:
            if member.parent_id == cls.symbol_id and member.is_callable:
                lines.append(f"    +{member.name}()")
        lines.append("  }")
    if not classes:
        module = next((s for s in file_doc.symbols if s.kind == "module"), None)
        name = _participant(module.name if module else file_doc.path)
        lines.append(f"  class {name} {{")
        for member in file_doc.symbols:
            if member.is_callable:
                lines.append(f"    +{member.name}()")
        lines.append("  }")
    for edge in file_doc.reference_edges:
        if edge.kind == "extends" and edge.dst != EXTERNAL_NODE_ID:
            parent = _participant(file_doc.label(edge.dst).rsplit(".", 1)[-1])
            child = _participant(file_doc.label(edge.src).rsplit(".", 1)[-1])
            lines.append(f"  {parent} <|-- {child}")
    return "\n".join(lines)


def dependency_mermaid(document: Document) -> str:
    labels: Dict[str, str] = {}
    for file_doc in document.files:
        labels.update(dict(file_doc.labels))
    lines = ["graph LR"]
    for edge in document.overview.dependency_edges:
        src = labels.get(edge.src, edge.src)
        if edge.dst == EXTERNAL_NODE_ID:
            dst_id, dst = "external", "external/unknown"
        else:
            dst_id, dst = _node_id(edge.dst), labels.get(edge.dst, edge.dst)
        lines.append(f"  {_node_id(edge.src)}[\"{_esc(src)}\"] -->|{edge.weight}| {dst_id}[\"{_esc(dst)}\"]")
    return "\n".join(lines)


def export_mermaid(document: Document, output_dir: Path) -> List[Path]:
    """One ``.mmd`` file per source file plus ``dependencies.mmd``."""
    output_dir.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []
    for file_doc in document.files:
        target = output_dir / f"{sanitize_filename(file_doc.path)}.mmd"
        target.write_text(mermaid_for_file(file_doc), encoding="utf-8")
        written.append(target)
    target = output_dir / "dependencies.mmd"
    target.write_text(dependency_mermaid(document), encoding="utf-8")
    written.append(target)
    return written


def export_dot(document: Document, output_file: Path) -> None:
    """File-level dependency graph in Graphviz DOT."""
    lines = ["digraph CodeWiki {"]
    lines.append("  rankdir=LR;")
    labels: Dict[str, str] = {}
    for file_doc in document.files:
        labels.update(dict(file_doc.labels))
        module = next((s for s in file_doc.symbols if s.kind == "module"), None)
        if module is not None:
            lines.append(f'  "{module.symbol_id}" [label="{_esc(file_doc.path)}"];')
    if any(e.dst == EXTERNAL_NODE_ID for e in document.overview.dependency_edges):
        lines.append(f'  "{EXTERNAL_NODE_ID}" [label="external/unknown", style=dashed];')
    for edge in document.overview.dependency_edges:
        style = ", style=dashed" if edge.unresolved else ""
        lines.append(f'  "{edge.src}" -> "{edge.dst}" [label="{edge.weight}"{style}];')
    lines.append("}")
    output_file.write_text("\n".join(lines), encoding="utf-8")


def _node_id(raw: str) -> str:
    return "n" + hashlib.sha1(raw.encode("utf-8")).hexdigest()[:10]


def _participant(name: str) -> str:
    return "".join(ch if ch.isalnum() or ch == "_" else "_" for ch in name) or "_"


def _esc(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', "'").replace("\n", " ")
