"""Symbol extraction: discover source files and run adapters over them in parallel."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import config
from .errors import ErrorKind
from .models import (
    Diagnostic,
    FlowHint,
    ParseOutcome,
    ParseStatus,
    RawReference,
    SourceUnit,
    Symbol,
)
from .parser import AdapterRegistry, detect_language

logger = logging.getLogger(__name__)


def discover_units(
    root: Path,
    registry: AdapterRegistry,
    max_file_bytes: int = config.DEFAULT_MAX_FILE_BYTES,
) -> Tuple[List[SourceUnit], List[Diagnostic]]:
    """Collect every file under *root* that some adapter can parse.

    Files in :data:`config.SKIP_DIRS` are ignored.  Oversized or unreadable
    files are skipped with a ``RecoverablePerFile`` diagnostic.  Paths are
    project-relative POSIX strings and the result is sorted by path.
    """
    units: List[SourceUnit] = []
    diagnostics: List[Diagnostic] = []
    for file_path in sorted(root.rglob("*")):
        rel = file_path.relative_to(root)
        if any(part in config.SKIP_DIRS or part.endswith(".egg-info") for part in rel.parts[:-1]):
            continue
        if not file_path.is_file():
            continue
        rel_path = rel.as_posix()

        head = ""
        if not file_path.suffix:
            try:
                with open(file_path, "r", encoding="utf-8", errors="replace") as f:
                    head = f.readline()
            except OSError:
                continue
        language = detect_language(rel_path, head)
        if not registry.supports(language):
            continue

        try:
            stat = file_path.stat()
            if stat.st_size > max_file_bytes:
                diagnostics.append(Diagnostic(
                    ErrorKind.RECOVERABLE_PER_FILE, rel_path,
                    f"skipped: file is {stat.st_size} bytes (limit {max_file_bytes})",
                ))
                continue
            text = file_path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("Could not read %s: %s", rel_path, exc)
            diagnostics.append(Diagnostic(
                ErrorKind.RECOVERABLE_PER_FILE, rel_path, f"unreadable: {exc}",
            ))
            continue
        units.append(SourceUnit(rel_path, language or "", text, stat.st_mtime))

    logger.info("Discovered %d source files under %s", len(units), root)
    return units, diagnostics


class SymbolTable:
    """All symbols, raw references and flow hints of one run, keyed for lookup."""

    def __init__(self) -> None:
        self.units: Dict[str, SourceUnit] = {}
        self.statuses: Dict[str, ParseStatus] = {}
        self.symbols: Dict[str, Symbol] = {}
        self.references: List[RawReference] = []
        self.flows: Dict[str, List[FlowHint]] = {}
        self.diagnostics: List[Diagnostic] = []
        self._by_name: Dict[str, List[Symbol]] = {}
        self._by_file: Dict[str, List[Symbol]] = {}

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[ParseOutcome]) -> "SymbolTable":
        """Merge adapter outcomes.

        Outcomes for the same path resolve last-write-wins by unit timestamp,
        so a re-parse of a file replaces everything the earlier parse produced.
        """
        table = cls()
        ordered = sorted(enumerate(outcomes), key=lambda p: (p[1].unit.timestamp, p[0]))
        latest: Dict[str, ParseOutcome] = {}
        for _, outcome in ordered:
            latest[outcome.unit.path] = outcome
        references: Dict[RawReference, None] = {}
        for outcome in latest.values():
            path = outcome.unit.path
            table.units[path] = outcome.unit
            table.statuses[path] = outcome.status
            for symbol in outcome.symbols:
                table.symbols[symbol.symbol_id] = symbol
            for ref in outcome.references:
                references[ref] = None
            table.flows.update(outcome.flows)
            table.diagnostics.extend(outcome.diagnostics)
        table.references = sorted(references, key=lambda r: (
            r.file_path, r.line, r.source_id, r.kind, r.target_name))
        table._reindex()
        return table

    def _reindex(self) -> None:
        self.symbols = dict(sorted(
            self.symbols.items(),
            key=lambda item: (item[1].file_path, item[1].start_line, item[1].kind != "module",
                              -item[1].end_line, item[1].kind, item[0]),
        ))
        self._by_name = {}
        self._by_file = {}
        for symbol in self.symbols.values():
            self._by_name.setdefault(symbol.name, []).append(symbol)
            self._by_file.setdefault(symbol.file_path, []).append(symbol)
        self.flows = {k: v for k, v in self.flows.items() if k in self.symbols}
        self.diagnostics.sort(key=lambda d: (d.location, d.line or 0, d.message))

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def by_name(self, name: str) -> List[Symbol]:
        return list(self._by_name.get(name, []))

    def by_qualname(self, qualname: str) -> List[Symbol]:
        return [s for s in self._by_name.get(qualname.rsplit(".", 1)[-1], [])
                if s.qualname == qualname]

    def symbols_in(self, path: str) -> List[Symbol]:
        return list(self._by_file.get(path, []))

    def module_for(self, path: str) -> Optional[Symbol]:
        for symbol in self._by_file.get(path, []):
            if symbol.kind == "module":
                return symbol
        return None

    def children_of(self, symbol_id: str) -> List[Symbol]:
        symbol = self.symbols.get(symbol_id)
        if symbol is None:
            return []
        return [s for s in self._by_file.get(symbol.file_path, []) if s.parent_id == symbol_id]

    @property
    def paths(self) -> List[str]:
        return sorted(self.units)

    def error_report(self) -> Dict[str, object]:
        """Parse status counts plus every diagnostic, for the run report."""
        counts = {status.value: 0 for status in ParseStatus}
        for status in self.statuses.values():
            counts[status.value] += 1
        return {
            "files": len(self.units),
            "statuses": counts,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


class SymbolExtractor:
    """Runs language adapters over source units with a bounded worker pool.

    Each file gets ``parse_timeout`` seconds from the moment its own parse
    starts; a file that exceeds it, or whose adapter raises, is marked
    ``Fatal`` with a diagnostic and its worker slot goes to the next file.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        max_workers: int = config.DEFAULT_MAX_WORKERS,
        parse_timeout: float = config.DEFAULT_PARSE_TIMEOUT,
    ) -> None:
        self.registry = registry
        self.max_workers = max(1, max_workers)
        self.parse_timeout = parse_timeout

    def extract(self, units: Sequence[SourceUnit]) -> SymbolTable:
        return SymbolTable.from_outcomes(self.parse_all(units))

    def parse_all(self, units: Sequence[SourceUnit]) -> List[ParseOutcome]:
        if not units:
            return []
        started = time.monotonic()
        results: Dict[int, ParseOutcome] = {}
        pending = deque(enumerate(units))
        running: Dict[int, Tuple[SourceUnit, float]] = {}
        done: "queue.Queue[Tuple[int, Optional[ParseOutcome], Optional[BaseException]]]" = queue.Queue()

        while pending or running:
            while pending and len(running) < self.max_workers:
                index, unit = pending.popleft()
                running[index] = (unit, time.monotonic() + self.parse_timeout)
                # Daemon threads: a hung adapter is abandoned, never joined.
                threading.Thread(target=self._parse_into, args=(index, unit, done),
                                 name=f"codewiki-parse-{index}", daemon=True).start()

            wait = max(0.0, min(deadline for _, deadline in running.values()) - time.monotonic())
            try:
                index, outcome, error = done.get(timeout=wait)
            except queue.Empty:
                now = time.monotonic()
                for index, (unit, deadline) in sorted(running.items()):
                    if deadline <= now:
                        del running[index]
                        logger.warning("Parsing %s timed out after %.1fs", unit.path, self.parse_timeout)
                        results[index] = _fatal_outcome(
                            unit, f"parse timed out after {self.parse_timeout:g}s")
                continue
            if index not in running:
                continue
            del running[index]
            if error is not None:
                raise error
            results[index] = outcome

        logger.info("Parsed %d files in %.2fs", len(results), time.monotonic() - started)
        return [results[index] for index in range(len(units))]

    def _parse_into(self, index: int, unit: SourceUnit, done: "queue.Queue") -> None:
        try:
            done.put((index, self._parse_one(unit), None))
        except MemoryError as exc:
            done.put((index, None, exc))

    def _parse_one(self, unit: SourceUnit) -> ParseOutcome:
        adapter = self.registry.adapter_for(unit.language)
        if adapter is None:
            return _fatal_outcome(unit, f"no adapter for language '{unit.language}'")
        try:
            outcome = adapter.parse(unit)
        except MemoryError:
            raise
        except Exception as exc:
            logger.warning("Adapter %s failed on %s: %s", adapter.name, unit.path, exc)
            return _fatal_outcome(unit, f"{adapter.name} adapter failed: {exc}")
        if outcome.status != ParseStatus.OK:
            logger.debug("%s parsed with status %s", unit.path, outcome.status.value)
        return outcome


def _fatal_outcome(unit: SourceUnit, message: str) -> ParseOutcome:
    return ParseOutcome(
        unit=unit,
        status=ParseStatus.FATAL,
        diagnostics=[Diagnostic(ErrorKind.RECOVERABLE_PER_FILE, unit.path, message)],
    )
