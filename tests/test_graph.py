"""Tests for the dependency graph."""

import pytest

from milestone_orchestrator.core.graph import DependencyGraph
from milestone_orchestrator.errors import CycleError


@pytest.fixture
def chain():
    """a requires b, b requires c."""
    g = DependencyGraph()
    for node_id in ("a", "b", "c"):
        g.add_node(node_id)
    g.add_edge("a", "b")
    g.add_edge("b", "c")
    return g


class TestCycles:
    def test_closing_edge_rejected_with_path(self, chain):
        with pytest.raises(CycleError) as exc:
            chain.add_edge("c", "a")
        assert exc.value.cycle == ["c", "a", "b", "c"]
        assert "c -> a -> b -> c" in str(exc.value)

    def test_graph_unchanged_after_rejection(self, chain):
        before = chain.to_dict()
        with pytest.raises(CycleError):
            chain.add_edge("c", "a")
        assert chain.to_dict() == before
        assert chain.dependencies("c") == set()

    def test_self_edge(self, chain):
        with pytest.raises(CycleError):
            chain.add_edge("a", "a")

    def test_unknown_node(self, chain):
        with pytest.raises(KeyError):
            chain.add_edge("a", "zzz")

    def test_duplicate_edge_is_noop(self, chain):
        chain.add_edge("a", "b")
        assert chain.edges() == [("a", "b"), ("b", "c")]


class TestAddNode:
    def test_node_arrives_with_its_requirements(self, chain):
        chain.add_node("d", effort=2, requires=["a", "c"])
        assert chain.dependencies("d") == {"a", "c"}
        assert "d" not in chain.ready_nodes()

    def test_unknown_requirement_leaves_graph_unchanged(self, chain):
        before = chain.to_dict()
        with pytest.raises(KeyError):
            chain.add_node("d", requires=["c", "zzz"])
        assert chain.to_dict() == before
        assert "d" not in chain


class TestQueries:
    def test_topological_order(self, chain):
        chain.add_node("d")
        chain.add_edge("d", "b")
        order = chain.topological_order()
        for frm, to in chain.edges():
            assert order.index(to) < order.index(frm)

    def test_ready_nodes(self, chain):
        assert chain.ready_nodes() == ["c"]
        chain.set_status("c", "completed")
        assert chain.ready_nodes() == ["b"]
        assert chain.is_ready("b")
        assert not chain.is_ready("a")

    def test_dependents(self, chain):
        assert chain.dependents("b") == {"a"}
        assert chain.dependencies("b") == {"c"}

    def test_remove_node_drops_edges(self, chain):
        chain.remove_node("b")
        assert chain.edges() == []
        assert "b" not in chain
        assert len(chain) == 2

    def test_remove_edge(self, chain):
        assert chain.remove_edge("a", "b")
        assert not chain.remove_edge("a", "b")
        chain.add_edge("c", "a")

    def test_round_trip(self, chain):
        chain.set_status("c", "completed")
        again = DependencyGraph.from_dict(chain.to_dict())
        assert again.to_dict() == chain.to_dict()


class TestCriticalPath:
    @pytest.fixture
    def graph(self):
        g = DependencyGraph()
        g.add_node("a", effort=2)
        g.add_node("b", effort=3)
        g.add_node("c", effort=1)
        g.add_edge("a", "b")
        g.add_edge("c", "b")
        return g

    def test_longest_chain(self, graph):
        path = graph.critical_path()
        assert path.nodes == ["b", "a"]
        assert path.effort == 5

    def test_remaining_only_ignores_completed(self, graph):
        graph.set_status("b", "completed")
        path = graph.critical_path(remaining_only=True)
        assert path.nodes[-1] == "a"
        assert path.effort == 2

    def test_empty_graph(self):
        path = DependencyGraph().critical_path()
        assert path.nodes == []
        assert path.effort == 0
