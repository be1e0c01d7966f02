"""End-to-end tests for the generation pipeline."""

import pytest

from codewiki.analyzers import QualityAnalyzer, SecurityScanner
from codewiki.config import WikiConfig
from codewiki.errors import ErrorKind, FatalConfigurationError, FatalResourceExhaustionError
from codewiki.llm import LLMProvider
from codewiki.models import Annotation, Fallback, Generated, ParseStatus, Severity
from codewiki.parser import AdapterRegistry
from codewiki.pipeline import Pipeline, run


class FlakyProvider(LLMProvider):
    """Returns nothing useful for one file and a description for the rest."""

    name = "flaky"

    def __init__(self, bad_label):
        self.bad_label = bad_label

    def generate(self, prompt, timeout):
        if f"Unit: {self.bad_label}\n" in prompt:
            return "   "
        return "A well-behaved unit."


class BrokenAnalyzer:
    name = "broken"

    def analyze(self, graph):
        raise RuntimeError("analyzer exploded")


class GreedyAnalyzer:
    name = "greedy"

    def analyze(self, graph):
        raise MemoryError()


def _config(**kwargs):
    kwargs.setdefault("max_workers", 2)
    return WikiConfig(**kwargs)


class TestPipeline:
    """Test whole runs over small projects."""

    def test_broken_callee_keeps_caller(self, make_project):
        """Test that a caller whose callee file fails partway is still fully documented."""
        root = make_project({
            "a.py": (
                "from b import helper\nfrom c import shout\n\n"
                "def main():\n    value = helper()\n    return shout(value)\n"
            ),
            "b.py": "def helper():\n    return 1\n\ndef broken(:\n    return 2\n",
            "c.py": "def shout(text):\n    return text\n",
        })
        result = Pipeline(_config()).run(root)
        document = result.document
        table = result.graph.table

        assert [f.path for f in document.files] == ["a.py", "b.py", "c.py"]
        assert document.file("b.py").status == ParseStatus.PARTIAL_ERROR.value
        assert "helper" in [s.name for s in table.symbols_in("b.py")]

        main = table.by_qualname("a.main")[0]
        helper = table.by_qualname("b.helper")[0]
        shout = table.by_qualname("c.shout")[0]
        callees = result.graph.callees(main.symbol_id)
        assert sorted(e.dst for e in callees) == sorted([helper.symbol_id, shout.symbol_id])
        assert not any(e.unresolved for e in callees)
        assert result.graph.dangling_edges() == []

        records = {r.title: r for r in result.index}
        assert sorted(records) == ["a.py", "b.py", "c.py"]
        assert records["b.py"].security_level == ""
        assert any(d.kind == ErrorKind.RECOVERABLE_PER_FILE and d.location == "b.py"
                   for d in result.diagnostics)
        assert document.report.ok

    def test_two_analyzers_on_one_symbol(self, make_project):
        """Test that findings from both analyzers survive and the file takes the highest level."""
        root = make_project({"svc.py": "import os\n\ndef run(cmd):\n    os.system(cmd)\n"})
        pipeline = Pipeline(_config(), analyzers=[SecurityScanner(), QualityAnalyzer()])
        run_id = pipeline.run(root).graph.table.by_qualname("svc.run")[0].symbol_id
        reviewed = Annotation(run_id, "security-finding", Severity.LOW, "reviewed", "manual")
        result = pipeline.run(root, extra_annotations=[reviewed])
        annotations = result.annotated.annotations_for(run_id)
        kinds = sorted(set(a.kind for a in annotations))
        security = sorted({a.severity.value for a in annotations if a.kind == "security-finding"})

        assert kinds == ["quality-score", "security-finding"]
        assert security == ["critical", "low"]
        record = next(r for r in result.index if r.title == "svc.py")
        assert record.security_level == "critical"
        assert result.document.file("svc.py").security_level == "critical"

    def test_provider_failure_is_per_unit(self, make_project):
        """Test that a malformed response for one file only affects that file."""
        root = make_project({
            "a.py": "def one():\n    pass\n",
            "b.py": "def two():\n    pass\n",
        })
        pipeline = Pipeline(_config(ai_enabled=True), provider=FlakyProvider("b.py"))
        result = pipeline.run(root)

        assert isinstance(result.enrichments["a.py"], Generated)
        fallback = result.enrichments["b.py"]
        assert isinstance(fallback, Fallback)
        assert fallback.reason == "malformed provider response"
        enrich = [d for d in result.diagnostics if d.kind == ErrorKind.RECOVERABLE_ENRICHMENT]
        assert [d.location for d in enrich] == ["b.py"]

    def test_ai_disabled_uses_fallbacks_without_diagnostics(self, make_project):
        """Test the default run without a provider."""
        root = make_project({"a.py": "def one():\n    pass\n"})
        result = Pipeline(_config()).run(root)

        assert all(r.is_fallback for r in result.enrichments.values())
        assert not any(d.kind == ErrorKind.RECOVERABLE_ENRICHMENT for d in result.diagnostics)

    def test_function_docs(self, make_project):
        """Test that function units are enriched when requested."""
        root = make_project({"a.py": "def one():\n    pass\n\ndef two():\n    one()\n"})
        result = Pipeline(_config(ai_enabled=True, ai_use_mock=True, function_docs=True)).run(root)
        a = result.document.file("a.py")

        assert len(result.enrichments) == 3
        assert len(a.function_enrichments) == 2

    def test_run_is_deterministic(self, mixed_project_path):
        """Test that two runs over the same tree emit identical JSON."""
        first = Pipeline(_config(ai_enabled=True, ai_use_mock=True, max_workers=1)).run(mixed_project_path)
        second = Pipeline(_config(ai_enabled=True, ai_use_mock=True, max_workers=4)).run(mixed_project_path)

        assert first.document.to_json() == second.document.to_json()
        assert first.index.to_json() == second.index.to_json()

    def test_mixed_project(self, mixed_project_path):
        """Test that every language in the sample is documented."""
        result = run(mixed_project_path, _config())
        languages = dict(result.document.overview.languages)

        assert languages["python"] == 4
        assert languages["rust"] == 1
        assert languages["javascript"] == 2
        assert result.document.file("app.py").security_level == "high"
        assert result.document.file("engine/src/lib.rs").security_level == "medium"
        assert result.document.file("scripts/deploy").file_type == "script"
        assert result.document.file("tests/test_helpers.py").file_type == "test"

    def test_extra_annotations_are_merged(self, make_project):
        """Test caller-supplied annotations, including ones on unknown ids."""
        root = make_project({"a.py": "def one():\n    pass\n"})
        pipeline = Pipeline(_config())
        graph_result = pipeline.run(root)
        one = graph_result.graph.table.by_qualname("a.one")[0]
        extra = [
            Annotation(one.symbol_id, "security-finding", Severity.LOW, "reviewed", "manual"),
            Annotation("missing", "security-finding", Severity.LOW, "stale", "manual"),
        ]
        result = pipeline.run(root, extra_annotations=extra)

        assert any(a.source == "manual" for a in result.annotated.annotations_for(one.symbol_id))
        assert [a.key for a in result.document.report.overflow] == ["missing"]
        assert any(d.kind == ErrorKind.RECOVERABLE_ANNOTATION for d in result.diagnostics)


class TestFailures:
    """Test fatal and recoverable failures."""

    def test_missing_root(self, temp_dir):
        """Test that a missing root is a configuration error."""
        with pytest.raises(FatalConfigurationError, match="does not exist"):
            Pipeline(_config()).run(temp_dir / "nope")

    def test_root_is_a_file(self, temp_dir):
        """Test that a file root is a configuration error."""
        target = temp_dir / "file.py"
        target.write_text("x = 1\n")
        with pytest.raises(FatalConfigurationError, match="not a directory"):
            Pipeline(_config()).run(target)

    def test_empty_registry(self, temp_dir):
        """Test that running with no adapters is a configuration error."""
        with pytest.raises(FatalConfigurationError, match="No language adapters"):
            Pipeline(_config(), registry=AdapterRegistry()).run(temp_dir)

    def test_invalid_config(self):
        """Test that invalid settings are rejected up front."""
        with pytest.raises(FatalConfigurationError):
            Pipeline(_config(max_workers=0))

    def test_unknown_provider(self):
        """Test that an unknown provider name is a configuration error."""
        with pytest.raises(FatalConfigurationError, match="Unknown provider"):
            Pipeline(_config(ai_enabled=True, ai_provider="skynet"))

    def test_failing_analyzer_is_a_diagnostic(self, make_project):
        """Test that one analyzer crashing does not stop the others."""
        root = make_project({"a.py": "def one():\n    pass\n"})
        result = Pipeline(_config(), analyzers=[BrokenAnalyzer(), QualityAnalyzer()]).run(root)

        assert len(result.annotated) == 1
        failures = [d for d in result.diagnostics if d.location == "broken"]
        assert failures[0].kind == ErrorKind.RECOVERABLE_ANNOTATION
        assert "analyzer exploded" in failures[0].message

    def test_memory_error_is_fatal(self, make_project):
        """Test that running out of memory aborts with partial diagnostics."""
        root = make_project({"a.py": "def one():\n    pass\n", "b.py": "def two(:\n"})
        with pytest.raises(FatalResourceExhaustionError) as excinfo:
            Pipeline(_config(), analyzers=[GreedyAnalyzer()]).run(root)

        assert excinfo.value.kind == ErrorKind.FATAL_RESOURCE_EXHAUSTION
        assert any(d.location == "b.py" for d in excinfo.value.diagnostics)
