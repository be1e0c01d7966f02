"""Tests for the quality and refactoring analyzers."""

from codewiki.analyzers import (
    QUALITY_SCORE,
    REFACTOR_SUGGESTION,
    QualityAnalyzer,
    RefactorAdvisor,
    estimate_complexity,
    nesting_depth,
    parameter_count,
)
from codewiki.models import FlowHint, Severity

DEEP = (
    "def deep(a):\n"
    "    if a:\n"
    "        for x in a:\n"
    "            if x:\n"
    "                while x:\n"
    "                    if x > 1:\n"
    "                        x -= 1\n"
    "    return a\n"
)


def _annotations_for(annotations, graph, qualname):
    symbol_id = graph.table.by_qualname(qualname)[0].symbol_id
    return [a for a in annotations if a.key == symbol_id]


class TestHelpers:
    """Test the metric helpers."""

    def test_parameter_count(self):
        """Test counting parameters across languages."""
        assert parameter_count("def f(self, a, b=1, *, c: int = 2)") == 3
        assert parameter_count("fn start(&self) -> u32") == 0
        assert parameter_count("function add(a, b)") == 2
        assert parameter_count("def f(m: Dict[str, int], n)") == 2
        assert parameter_count("class Thing") == 0

    def test_nesting_depth(self):
        """Test depth of nested flow hints."""
        hints = [
            FlowHint("branch", 1, body=[
                FlowHint("loop", 2, body=[FlowHint("branch", 3)]),
            ]),
            FlowHint("return", 4),
        ]

        assert nesting_depth(hints) == 3
        assert nesting_depth([]) == 0

    def test_estimate_complexity(self, build_table):
        """Test keyword-based complexity."""
        table = build_table({"m.py": DEEP})
        deep = table.by_qualname("m.deep")[0]

        assert estimate_complexity(deep) == 6


class TestQualityAnalyzer:
    """Test quality scores."""

    def test_documented_function_scores_high(self, build_graph):
        """Test that a short documented function scores 100."""
        graph = build_graph({"m.py": 'def ok(a):\n    """Fine."""\n    return a\n'})
        annotations = QualityAnalyzer().analyze(graph)

        assert len(annotations) == 1
        assert annotations[0].kind == QUALITY_SCORE
        assert annotations[0].payload == "quality score 100/100"
        assert annotations[0].severity == Severity.INFO

    def test_missing_docstring_is_noted(self, build_graph):
        """Test that an undocumented function loses points."""
        graph = build_graph({"m.py": "def bare(a):\n    return a\n"})
        annotation = QualityAnalyzer().analyze(graph)[0]

        assert annotation.payload == "quality score 72/100: missing docstring"
        assert annotation.severity == Severity.LOW

    def test_classes_and_methods_are_scored(self, build_graph, sample_python_code):
        """Test that classes and methods get scores but modules do not."""
        graph = build_graph({"calc.py": sample_python_code})
        keys = {a.key for a in QualityAnalyzer().analyze(graph)}
        scored = {graph.symbols[k].qualname for k in keys}

        assert scored == {"calc.hello", "calc.Calculator", "calc.Calculator.add",
                          "calc.Calculator.multiply"}

    def test_deep_nesting_lowers_score(self, build_graph):
        """Test that nesting beyond the limit is reported."""
        graph = build_graph({"m.py": DEEP})
        annotation = QualityAnalyzer().analyze(graph)[0]

        assert "nesting depth 5" in annotation.payload


class TestRefactorAdvisor:
    """Test refactoring suggestions."""

    def test_clean_function_has_no_suggestions(self, build_graph):
        """Test that small functions produce nothing."""
        graph = build_graph({"m.py": "def ok(a):\n    return a\n"})

        assert RefactorAdvisor().analyze(graph) == []

    def test_long_parameter_list(self, build_graph):
        """Test the parameter object suggestion."""
        graph = build_graph({"m.py": "def wide(a, b, c, d, e, f, g):\n    return a\n"})
        annotations = RefactorAdvisor().analyze(graph)

        assert [a.category for a in annotations] == ["long-parameter-list"]
        assert annotations[0].kind == REFACTOR_SUGGESTION
        assert "7 parameters" in annotations[0].payload

    def test_deep_nesting(self, build_graph):
        """Test the guard clause suggestion."""
        graph = build_graph({"m.py": DEEP})
        annotations = _annotations_for(RefactorAdvisor().analyze(graph), graph, "m.deep")

        deep = [a for a in annotations if a.category == "deep-nesting"]
        assert len(deep) == 1
        assert deep[0].severity == Severity.MEDIUM

    def test_long_function(self, build_graph):
        """Test the extract-helper suggestion."""
        body = "".join(f"    x{i} = {i}\n" for i in range(60))
        graph = build_graph({"m.py": "def long():\n" + body})
        annotations = RefactorAdvisor().analyze(graph)

        assert [a.category for a in annotations] == ["long-function"]
        assert annotations[0].severity == Severity.LOW

    def test_call_cycle(self, build_graph):
        """Test that every member of a mutual recursion is flagged."""
        graph = build_graph({
            "loops.py": "def ping():\n    pong()\n\ndef pong():\n    ping()\n",
        })
        annotations = [a for a in RefactorAdvisor().analyze(graph) if a.category == "call-cycle"]

        assert len(annotations) == 2
        assert all("loops.ping" in a.payload and "loops.pong" in a.payload for a in annotations)
        assert {a.key for a in annotations} == {s.symbol_id for s in graph.symbols.values()
                                                if s.is_callable}
