"""Tests for the force simulation: bounds, settling, reheating and divergence guards."""

from __future__ import annotations

import math
import random

import pytest

from scrapgraph import (
    EntityGraph,
    ForceSettings,
    GraphEdge,
    GraphNode,
    SimulationState,
    is_settled,
    layout_bounds,
    random_position,
    reheat,
    step_simulation,
    warm_start,
)

WIDTH = 80
HEIGHT = 24


def _star_graph(state: SimulationState, settings: ForceSettings, spokes: int = 3) -> EntityGraph:
    graph = EntityGraph()
    graph.add_node(GraphNode(id="root", label="root", role="query", x=WIDTH / 2, y=HEIGHT / 2))
    for idx in range(spokes):
        x, y = random_position(state, settings, WIDTH, HEIGHT)
        graph.add_node(GraphNode(id=f"n{idx}", label=f"n{idx}", x=x, y=y))
        graph.add_edge(GraphEdge(source="root", target=f"n{idx}"))
    return graph


def _positions(graph: EntityGraph) -> list[tuple[float, float]]:
    return [(node.x, node.y) for node in graph.nodes]


def test_positions_stay_inside_viewport_every_tick() -> None:
    settings = ForceSettings()
    state = SimulationState(rng=random.Random(1))
    graph = _star_graph(state, settings, spokes=12)
    for _ in range(400):
        step_simulation(graph, settings, state, WIDTH, HEIGHT)
        for node in graph.nodes:
            assert 1.0 <= node.x <= WIDTH - 1
            assert 1.0 <= node.y <= HEIGHT - 1


def test_positions_respect_label_margin() -> None:
    settings = ForceSettings()
    max_x, max_y = layout_bounds(settings, WIDTH, HEIGHT)
    assert max_x == WIDTH - settings.label_margin
    assert max_y == HEIGHT - 2


@pytest.mark.parametrize("width, height", [(4, 2), (3, 3), (12, 4), (2, 2)])
def test_tiny_viewport_keeps_nodes_on_the_grid(width: int, height: int) -> None:
    settings = ForceSettings()
    max_x, max_y = layout_bounds(settings, width, height)
    assert 1.0 <= max_x <= width - 1
    assert 1.0 <= max_y <= height - 1

    state = SimulationState(rng=random.Random(8))
    graph = EntityGraph()
    for idx in range(4):
        x, y = random_position(state, settings, width, height)
        graph.add_node(GraphNode(id=f"n{idx}", label=f"n{idx}", x=x, y=y))
    graph.add_edge(GraphEdge(source="n0", target="n1"))
    for _ in range(20):
        step_simulation(graph, settings, state, width, height)
        for node in graph.nodes:
            assert 1.0 <= node.x <= width - 1
            assert 1.0 <= node.y <= height - 1


def test_warm_start_settles_layout() -> None:
    settings = ForceSettings()
    state = SimulationState(rng=random.Random(2))
    graph = _star_graph(state, settings)
    warm_start(graph, settings, state, WIDTH, HEIGHT)
    assert state.ticks == settings.warm_start_ticks

    before = _positions(graph)
    step_simulation(graph, settings, state, WIDTH, HEIGHT)
    after = _positions(graph)
    for (x0, y0), (x1, y1) in zip(before, after):
        assert math.hypot(x1 - x0, y1 - y0) < 0.05


def test_reheat_restores_energy_and_layout_resettles() -> None:
    settings = ForceSettings()
    state = SimulationState(rng=random.Random(3))
    graph = _star_graph(state, settings)
    warm_start(graph, settings, state, WIDTH, HEIGHT)

    reheat(state)
    assert state.alpha == 1.0
    assert not is_settled(state)

    previous = _positions(graph)
    delta = 0.0
    for _ in range(400):
        step_simulation(graph, settings, state, WIDTH, HEIGHT)
        current = _positions(graph)
        delta = max(math.hypot(x1 - x0, y1 - y0) for (x0, y0), (x1, y1) in zip(previous, current))
        previous = current
    assert delta < 0.05
    assert is_settled(state)


def test_linked_pair_ends_closer_than_unlinked_pair() -> None:
    settings = ForceSettings()
    state = SimulationState(rng=random.Random(4))
    graph = EntityGraph()
    # Two pairs start the same distance apart; only the first is joined by an edge.
    for node_id, x, y in (("a", 10.0, 6.0), ("b", 50.0, 6.0), ("c", 10.0, 18.0), ("d", 50.0, 18.0)):
        graph.add_node(GraphNode(id=node_id, label=node_id, x=x, y=y))
    graph.add_edge(GraphEdge(source="a", target="b"))
    warm_start(graph, settings, state, WIDTH, HEIGHT)

    a, b, c, d = graph.nodes
    linked = math.hypot(a.x - b.x, a.y - b.y)
    unlinked = math.hypot(c.x - d.x, c.y - d.y)
    assert linked < unlinked
    assert abs(linked - settings.link_distance) < 5.0


def test_coincident_nodes_are_pushed_apart() -> None:
    settings = ForceSettings()
    state = SimulationState(rng=random.Random(5))
    graph = EntityGraph()
    graph.add_node(GraphNode(id="a", label="a", x=20.0, y=10.0))
    graph.add_node(GraphNode(id="b", label="b", x=20.0, y=10.0))
    for _ in range(20):
        step_simulation(graph, settings, state, WIDTH, HEIGHT)
    a, b = graph.nodes
    assert (a.x, a.y) != (b.x, b.y)
    assert all(math.isfinite(value) for value in (a.x, a.y, b.x, b.y))


def test_non_finite_state_is_recovered() -> None:
    settings = ForceSettings()
    state = SimulationState(rng=random.Random(6))
    graph = EntityGraph()
    graph.add_node(GraphNode(id="a", label="a", x=float("nan"), y=5.0))
    graph.add_node(GraphNode(id="b", label="b", x=10.0, y=5.0, vx=float("inf")))
    step_simulation(graph, settings, state, WIDTH, HEIGHT)
    for node in graph.nodes:
        assert math.isfinite(node.x) and math.isfinite(node.y)
        assert math.isfinite(node.vx) and math.isfinite(node.vy)


def test_velocity_is_clamped() -> None:
    settings = ForceSettings(max_velocity=2.0)
    state = SimulationState(rng=random.Random(7))
    graph = EntityGraph()
    graph.add_node(GraphNode(id="a", label="a", x=20.0, y=10.0))
    graph.add_node(GraphNode(id="b", label="b", x=20.01, y=10.0))
    step_simulation(graph, settings, state, WIDTH, HEIGHT)
    for node in graph.nodes:
        assert abs(node.vx) <= 2.0
        assert abs(node.vy) <= 2.0


def test_empty_graph_tick_is_harmless() -> None:
    settings = ForceSettings()
    state = SimulationState()
    step_simulation(EntityGraph(), settings, state, WIDTH, HEIGHT)
    assert state.ticks == 1
