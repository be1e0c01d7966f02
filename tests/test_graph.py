"""Tests for name resolution, overlays and control-flow graphs."""

import pytest

from codewiki.extractor import SymbolExtractor, discover_units
from codewiki.graph import GraphBuilder
from codewiki.models import EXTERNAL_NODE_ID, SourceUnit
from codewiki.parser import AdapterRegistry, PythonAdapter


def _symbol(graph, qualname):
    found = graph.table.by_qualname(qualname)
    assert found, f"no symbol {qualname}"
    return found[0]


def _targets(graph, qualname, kind="calls"):
    source = _symbol(graph, qualname)
    edges = graph.call_edges if kind == "calls" else graph.reference_edges
    return [e for e in edges if e.src == source.symbol_id and e.kind == kind]


def _blocks(cfg, kind):
    return [b for b in cfg.blocks if b.kind == kind]


class TestResolution:
    """Test how raw references become edges."""

    def test_cross_file_import(self, build_graph):
        """Test that an imported function resolves to its defining file."""
        graph = build_graph({
            "helpers.py": "def normalize(x):\n    return x\n",
            "app.py": "from helpers import normalize\n\ndef run():\n    return normalize(1)\n",
        })
        edges = _targets(graph, "app.run")

        assert len(edges) == 1
        assert edges[0].dst == _symbol(graph, "helpers.normalize").symbol_id
        assert not edges[0].ambiguous
        assert not edges[0].unresolved

    def test_aliased_import(self, build_graph):
        """Test that an alias binding resolves to the original name."""
        graph = build_graph({
            "helpers.py": "def normalize(x):\n    return x\n",
            "app.py": "from helpers import normalize as norm\n\ndef run():\n    return norm(1)\n",
        })
        edges = _targets(graph, "app.run")

        assert edges[0].dst == _symbol(graph, "helpers.normalize").symbol_id

    def test_module_attribute_call(self, build_graph):
        """Test ``import pkg.mod`` followed by ``pkg.mod.func()``."""
        graph = build_graph({
            "pkg/__init__.py": "",
            "pkg/tools.py": "def shout(s):\n    return s.upper()\n",
            "app.py": "import pkg.tools\n\ndef run():\n    return pkg.tools.shout('x')\n",
        })
        edges = _targets(graph, "app.run")

        assert [e.dst for e in edges] == [_symbol(graph, "pkg.tools.shout").symbol_id]

    def test_relative_imports(self, sample_project_path):
        """Test relative imports inside the sample package."""
        registry = AdapterRegistry([PythonAdapter()])
        units, _ = discover_units(sample_project_path, registry)
        graph = GraphBuilder().build(SymbolExtractor(registry).extract(units))

        create_user = _symbol(graph, "processor.UserProcessor.create_user")
        validate = _symbol(graph, "utils.validate_email")
        assert any(e.dst == validate.symbol_id for e in graph.callees(create_user.symbol_id))
        processor = _symbol(graph, "processor")
        models = _symbol(graph, "models")
        assert any(e.src == processor.symbol_id and e.dst == models.symbol_id and e.kind == "imports"
                   for e in graph.reference_edges)

    def test_local_definition_wins(self, build_graph):
        """Test that a same-file definition shadows one elsewhere."""
        graph = build_graph({
            "a.py": "def helper():\n    return 1\n\ndef main():\n    return helper()\n",
            "b.py": "def helper():\n    return 2\n",
        })
        edges = _targets(graph, "a.main")

        assert [e.dst for e in edges] == [_symbol(graph, "a.helper").symbol_id]
        assert not edges[0].ambiguous

    def test_innermost_scope_wins(self, build_graph):
        """Test that a nested function shadows a module-level one."""
        graph = build_graph({
            "m.py": (
                "def step():\n"
                "    return 0\n"
                "\n"
                "def outer():\n"
                "    def step():\n"
                "        return 1\n"
                "    return step()\n"
            ),
        })
        edges = _targets(graph, "m.outer")

        assert [e.dst for e in edges] == [_symbol(graph, "m.outer.step").symbol_id]

    def test_self_method_call(self, build_graph, sample_python_code):
        """Test that ``self.add`` resolves to the method of the same class."""
        graph = build_graph({"calc.py": sample_python_code})
        add = _symbol(graph, "calc.Calculator.add")

        edges = [e for e in _targets(graph, "calc.Calculator.multiply") if e.dst == add.symbol_id]
        assert edges
        assert all(not e.ambiguous for e in edges)

    def test_ambiguous_candidates(self, build_graph):
        """Test that equally good candidates produce one ambiguous edge each."""
        graph = build_graph({
            "x.py": "def process():\n    pass\n",
            "y.py": "def process():\n    pass\n",
            "main.py": "def go():\n    process()\n",
        })
        edges = _targets(graph, "main.go")

        assert len(edges) == 2
        assert all(e.ambiguous for e in edges)
        assert {e.dst for e in edges} == {
            _symbol(graph, "x.process").symbol_id,
            _symbol(graph, "y.process").symbol_id,
        }

    def test_private_symbol_is_not_visible(self, build_graph):
        """Test that a private name in another file stays unresolved with a guess."""
        graph = build_graph({
            "lib.py": "def _secret():\n    pass\n",
            "main.py": "def go():\n    _secret()\n",
        })
        edges = _targets(graph, "main.go")

        assert len(edges) == 1
        assert edges[0].dst == EXTERNAL_NODE_ID
        assert edges[0].unresolved
        ref = graph.unresolved_by_edge[edges[0].edge_id][0]
        assert ref.target_name == "_secret"
        assert ref.guess == "_secret"

    def test_external_import_guess(self, build_graph):
        """Test that calls through an external import guess the package."""
        graph = build_graph({
            "main.py": "import requests\n\ndef fetch():\n    return requests.get('u')\n",
        })
        edges = _targets(graph, "main.fetch")

        assert edges[0].dst == EXTERNAL_NODE_ID
        assert graph.unresolved_by_edge[edges[0].edge_id][0].guess == "requests"
        module = _symbol(graph, "main")
        deps = [e for e in graph.dependency_edges if e.src == module.symbol_id]
        assert len(deps) == 1
        assert deps[0].dst == EXTERNAL_NODE_ID
        assert deps[0].unresolved

    def test_builtin_guess(self, build_graph):
        """Test that Python builtins are guessed as such."""
        graph = build_graph({"main.py": "def show(x):\n    print(x)\n"})
        edges = _targets(graph, "main.show")

        assert graph.unresolved_by_edge[edges[0].edge_id][0].guess == "builtins"

    def test_unresolved_calls_on_one_line_are_all_kept(self, build_graph):
        """Test that nested unresolved calls on one line each keep their own record."""
        graph = build_graph({"m.py": "def f(x):\n    print(len(x))\n"})
        edges = _targets(graph, "m.f")

        assert len(edges) == 1
        assert edges[0].weight == 2
        assert sorted(u.target_name for u in graph.unresolved) == ["len", "print"]
        assert [u.guess for u in graph.unresolved_by_edge[edges[0].edge_id]] == ["builtins", "builtins"]
        assert graph.edge_label(edges[0], "dst") == (
            "len [unresolved] (guess: builtins), print [unresolved] (guess: builtins)"
        )

    def test_reads_module_variable(self, build_graph):
        """Test that a read of a module variable resolves to the variable symbol."""
        graph = build_graph({
            "limits.py": "LIMIT = 10\n\ndef check(v):\n    return v < LIMIT\n",
        })
        edges = _targets(graph, "limits.check", kind="reads")

        assert [e.dst for e in edges] == [_symbol(graph, "limits.LIMIT").symbol_id]

    def test_extends_edge(self, build_graph):
        """Test inheritance across files."""
        graph = build_graph({
            "base.py": "class Base:\n    pass\n",
            "child.py": "from base import Base\n\nclass Child(Base):\n    pass\n",
        })
        edges = _targets(graph, "child.Child", kind="extends")

        assert [e.dst for e in edges] == [_symbol(graph, "base.Base").symbol_id]


class TestOverlays:
    """Test dependency and containment overlays."""

    def test_dependency_weights(self, build_graph):
        """Test that symbol edges collapse into weighted file dependencies."""
        graph = build_graph({
            "helpers.py": "def a():\n    pass\n\ndef b():\n    pass\n",
            "app.py": (
                "from helpers import a, b\n"
                "\n"
                "def run():\n"
                "    a()\n"
                "    b()\n"
            ),
        })
        app = _symbol(graph, "app")
        helpers = _symbol(graph, "helpers")
        deps = [e for e in graph.dependency_edges if e.src == app.symbol_id]

        assert len(deps) == 1
        assert deps[0].dst == helpers.symbol_id
        # one import edge plus two calls
        assert deps[0].weight == 3
        assert deps[0].kind == "depends_on"

    def test_same_file_edges_are_not_dependencies(self, build_graph):
        """Test that calls inside one file add no dependency."""
        graph = build_graph({"a.py": "def f():\n    g()\n\ndef g():\n    pass\n"})

        assert graph.dependency_edges == ()

    def test_contains_edges(self, build_graph, sample_python_code):
        """Test class to method containment."""
        graph = build_graph({"calc.py": sample_python_code})
        calculator = _symbol(graph, "calc.Calculator")
        children = {e.dst for e in graph.contains_edges if e.src == calculator.symbol_id}

        assert children == {
            _symbol(graph, "calc.Calculator.add").symbol_id,
            _symbol(graph, "calc.Calculator.multiply").symbol_id,
        }

    def test_no_dangling_edges(self, mixed_project_path):
        """Test that every edge endpoint is a node, the sentinel included."""
        registry = AdapterRegistry.default()
        units, _ = discover_units(mixed_project_path, registry)
        graph = GraphBuilder().build(SymbolExtractor(registry).extract(units))

        assert graph.dangling_edges() == []
        assert EXTERNAL_NODE_ID in graph.node_ids()
        for edge in graph.all_edges():
            assert graph.has_edge(edge.edge_id)

    def test_mixed_languages_resolve(self, mixed_project_path):
        """Test Python imports and Rust self calls in the mixed sample."""
        registry = AdapterRegistry.default()
        units, _ = discover_units(mixed_project_path, registry)
        graph = GraphBuilder().build(SymbolExtractor(registry).extract(units))

        run = _symbol(graph, "app.run")
        normalize = _symbol(graph, "helpers.normalize")
        assert any(e.dst == normalize.symbol_id for e in graph.callees(run.symbol_id))
        start = _symbol(graph, "engine.src.lib.Engine.start")
        warm_up = _symbol(graph, "engine.src.lib.Engine.warm_up")
        assert [e.dst for e in graph.callees(start.symbol_id)] == [warm_up.symbol_id]


class TestQueries:
    """Test graph queries."""

    @pytest.fixture
    def chain(self, build_graph):
        return build_graph({
            "chain.py": (
                "def a():\n"
                "    b()\n"
                "\n"
                "def b():\n"
                "    c()\n"
                "\n"
                "def c():\n"
                "    print('done')\n"
            ),
        })

    def test_callers_and_callees(self, chain):
        """Test direct caller and callee lookup."""
        b = _symbol(chain, "chain.b")

        assert [e.src for e in chain.callers(b.symbol_id)] == [_symbol(chain, "chain.a").symbol_id]
        assert [e.dst for e in chain.callees(b.symbol_id)] == [_symbol(chain, "chain.c").symbol_id]

    def test_neighbors_by_depth(self, chain):
        """Test neighbourhoods at depth one and two."""
        a = _symbol(chain, "chain.a")
        b = _symbol(chain, "chain.b")
        c = _symbol(chain, "chain.c")

        assert chain.neighbors(a.symbol_id, depth=1) == {b.symbol_id: 1}
        assert chain.neighbors(a.symbol_id, depth=2) == {b.symbol_id: 1, c.symbol_id: 2}

    def test_cycles(self, build_graph):
        """Test mutual and direct recursion detection."""
        graph = build_graph({
            "loops.py": (
                "def ping():\n"
                "    pong()\n"
                "\n"
                "def pong():\n"
                "    ping()\n"
                "\n"
                "def again():\n"
                "    again()\n"
                "\n"
                "def alone():\n"
                "    pass\n"
            ),
        })
        cycles = [{graph.label(m) for m in cycle} for cycle in graph.find_cycles()]

        assert len(cycles) == 2
        assert {"loops.ping", "loops.pong"} in cycles
        assert {"loops.again"} in cycles

    def test_slice_for_file(self, build_graph):
        """Test the neighbourhood of a file unit."""
        graph = build_graph({
            "helpers.py": "def normalize(x):\n    return x\n",
            "app.py": "from helpers import normalize\n\ndef run():\n    print(normalize(1))\n",
        })
        app_slice = graph.slice_for("app.py")

        assert app_slice.unit_kind == "file"
        assert app_slice.language == "python"
        assert "helpers.normalize" in app_slice.callees
        assert "print [unresolved] (guess: builtins)" in app_slice.callees
        helpers_slice = graph.slice_for("helpers.py")
        assert helpers_slice.callers == ("app.run",)

    def test_slice_for_function(self, chain):
        """Test the neighbourhood of a function unit, transitive included."""
        a = _symbol(chain, "chain.a")
        function_slice = chain.slice_for(a.symbol_id)

        assert function_slice.unit_kind == "function"
        assert function_slice.symbols[0] == a
        assert function_slice.callees == ("chain.b",)
        assert function_slice.transitive == ("chain.c",)

    def test_slice_for_unknown_unit(self, chain):
        """Test that an unknown unit id raises KeyError."""
        with pytest.raises(KeyError):
            chain.slice_for("nope")

    def test_edge_label_for_unresolved(self, build_graph):
        """Test that unresolved targets display their guess."""
        graph = build_graph({"main.py": "def show(x):\n    print(x)\n"})
        edge = _targets(graph, "main.show")[0]

        assert graph.edge_label(edge, "dst") == "print [unresolved] (guess: builtins)"
        assert graph.edge_label(edge, "src") == "main.show"


class TestControlFlowGraphs:
    """Test CFG construction from flow hints."""

    def _cfg(self, build_graph, code, qualname="m.f"):
        graph = build_graph({"m.py": code})
        return graph.cfgs[_symbol(graph, qualname).symbol_id]

    def test_branch_has_true_and_false_edges(self, build_graph):
        """Test that an if statement yields one decision point."""
        cfg = self._cfg(build_graph, (
            "def f(x):\n"
            "    if x > 0:\n"
            "        return 1\n"
            "    return -1\n"
        ))
        decisions = cfg.decision_points()

        assert len(decisions) == 1
        tags = {e.tag for e in cfg.edges if e.src == decisions[0]}
        assert tags == {"true", "false"}
        assert _blocks(cfg, "branch")[0].label.startswith("if x > 0")
        assert cfg.entry_id == f"{cfg.function_id}:b0"
        assert cfg.exit_id == f"{cfg.function_id}:b1"

    def test_every_block_id_is_scoped_to_the_function(self, build_graph):
        """Test block id format and that edges only join known blocks."""
        cfg = self._cfg(build_graph, (
            "def f(xs):\n"
            "    for x in xs:\n"
            "        if x:\n"
            "            continue\n"
            "    return xs\n"
        ))
        ids = {b.block_id for b in cfg.blocks}

        assert all(block_id.startswith(cfg.function_id + ":b") for block_id in ids)
        assert all(e.src in ids and e.dst in ids for e in cfg.edges)

    def test_loop_header_is_a_decision(self, build_graph):
        """Test that loops branch on true and false."""
        cfg = self._cfg(build_graph, "def f(xs):\n    for x in xs:\n        print(x)\n")
        header = _blocks(cfg, "loop")[0]

        assert header.block_id in cfg.decision_points()
        assert any(e.src != header.block_id and e.dst == header.block_id for e in cfg.edges)

    def test_code_after_return_is_unreachable(self, build_graph):
        """Test that statements after a return form an unreachable block."""
        cfg = self._cfg(build_graph, "def f():\n    return 1\n    x = 2\n")
        unreachable = _blocks(cfg, "unreachable")

        assert len(unreachable) == 1
        assert not any(e.dst == unreachable[0].block_id for e in cfg.edges)

    def test_raise_reaches_exit_as_exception(self, build_graph):
        """Test that raise ends the block with an exception edge."""
        cfg = self._cfg(build_graph, "def f():\n    raise ValueError('x')\n")

        assert any(e.dst == cfg.exit_id and e.tag == "exception" for e in cfg.edges)

    def test_try_handler(self, build_graph):
        """Test that try bodies get exception edges to their handlers."""
        cfg = self._cfg(build_graph, (
            "def f():\n"
            "    try:\n"
            "        g()\n"
            "    except OSError:\n"
            "        return None\n"
            "    finally:\n"
            "        print('done')\n"
        ))
        try_block = _blocks(cfg, "try")[0]
        handler = _blocks(cfg, "handler")[0]

        assert any(e.src == try_block.block_id and e.dst == handler.block_id
                   and e.tag == "exception" for e in cfg.edges)
        assert handler.label.startswith("except OSError")
        assert len(_blocks(cfg, "finally")) == 1

    def test_regex_function_is_single_block(self, build_graph):
        """Test that functions without flow hints are one block."""
        graph = build_graph({"lib.rs": "pub fn answer() -> u32 {\n    42\n}\n"})
        cfg = graph.cfgs[_symbol(graph, "lib.answer").symbol_id]

        assert cfg.is_single_block
        assert [b.kind for b in cfg.blocks] == ["body"]
        assert cfg.edges == ()
        assert graph.decision_points(cfg.function_id) == []

    def test_every_callable_has_a_cfg(self, build_graph, sample_python_code):
        """Test CFG coverage."""
        graph = build_graph({"calc.py": sample_python_code})
        callables = {s.symbol_id for s in graph.symbols.values() if s.is_callable}

        assert set(graph.cfgs) == callables


class TestDeterminism:
    """Test that the graph depends only on its input."""

    def test_worker_count_and_unit_order_do_not_matter(self, mixed_project_path):
        """Test identical graphs for different unit orders and pool sizes."""
        registry = AdapterRegistry.default()
        units, _ = discover_units(mixed_project_path, registry)

        first = GraphBuilder().build(SymbolExtractor(registry, max_workers=1).extract(units))
        reordered = [
            SourceUnit(u.path, u.language, u.text, u.timestamp) for u in reversed(units)
        ]
        second = GraphBuilder().build(SymbolExtractor(registry, max_workers=4).extract(reordered))

        assert list(first.symbols) == list(second.symbols)
        assert [e.to_dict() for e in first.all_edges()] == [e.to_dict() for e in second.all_edges()]
        assert [c.to_dict() for c in first.cfgs.values()] == [c.to_dict() for c in second.cfgs.values()]
        assert [u.to_dict() for u in first.unresolved] == [u.to_dict() for u in second.unresolved]
