"""Tests for the character-grid rasterizer."""

from __future__ import annotations

import itertools

from rich.text import Text

from scrapgraph import (
    EDGE_GLYPH,
    NODE_GLYPH,
    QUERY_GLYPH,
    SELECTED_GLYPH,
    EntityGraph,
    GraphEdge,
    GraphNode,
    blank_canvas,
    bresenham_cells,
    canvas_to_markup,
    canvas_to_text,
    draw_line,
    rasterize_graph,
    render_graph_markup,
)


def _graph() -> EntityGraph:
    graph = EntityGraph()
    graph.add_node(GraphNode(id="OpenAI", label="OpenAI", role="query", x=10.0, y=5.0))
    graph.add_node(GraphNode(id="Anthropic", label="Anthropic", x=30.0, y=2.0))
    graph.add_node(GraphNode(id="Microsoft", label="Microsoft", x=4.0, y=9.0))
    graph.add_edge(GraphEdge(source="OpenAI", target="Anthropic"))
    graph.add_edge(GraphEdge(source="Microsoft", target="OpenAI"))
    return graph


def test_line_cells_are_symmetric() -> None:
    points = [(0, 0), (7, 3), (2, 9), (5, 5), (9, 1), (3, 3)]
    for p, q in itertools.combinations(points, 2):
        assert set(bresenham_cells(*p, *q)) == set(bresenham_cells(*q, *p))


def test_line_is_connected_and_hits_both_ends() -> None:
    cells = bresenham_cells(0, 0, 6, 2)
    assert cells[0] == (0, 0)
    assert cells[-1] == (6, 2)
    for (x0, y0), (x1, y1) in zip(cells, cells[1:]):
        assert max(abs(x1 - x0), abs(y1 - y0)) == 1


def test_draw_line_only_fills_blank_cells() -> None:
    canvas = blank_canvas(10, 3)
    canvas[1][4] = ("X", "")
    draw_line(canvas, 0, 1, 9, 1)
    row = "".join(char for char, _ in canvas[1])
    assert row == EDGE_GLYPH * 4 + "X" + EDGE_GLYPH * 5


def test_draw_line_ignores_out_of_range_cells() -> None:
    canvas = blank_canvas(5, 5)
    draw_line(canvas, -3, -3, 8, 8)
    assert [canvas[i][i][0] for i in range(5)] == [EDGE_GLYPH] * 5


def test_rasterize_is_idempotent() -> None:
    graph = _graph()
    first = rasterize_graph(graph, 1, 40, 12)
    second = rasterize_graph(graph, 1, 40, 12)
    assert first == second
    assert render_graph_markup(graph, 1, 40, 12) == render_graph_markup(graph, 1, 40, 12)


def test_rasterize_does_not_move_nodes() -> None:
    graph = _graph()
    before = [(node.x, node.y, node.vx, node.vy) for node in graph.nodes]
    rasterize_graph(graph, 0, 40, 12)
    assert [(node.x, node.y, node.vx, node.vy) for node in graph.nodes] == before


def test_glyphs_follow_role_and_selection() -> None:
    graph = _graph()
    canvas = rasterize_graph(graph, 1, 40, 12)
    assert canvas[5][10][0] == QUERY_GLYPH
    assert canvas[2][30][0] == SELECTED_GLYPH
    assert canvas[9][4][0] == NODE_GLYPH


def test_query_glyph_wins_over_selection() -> None:
    canvas = rasterize_graph(_graph(), 0, 40, 12)
    assert canvas[5][10][0] == QUERY_GLYPH


def test_label_follows_glyph_and_is_truncated_at_edge() -> None:
    graph = _graph()
    lines = canvas_to_text(rasterize_graph(graph, 1, 36, 12)).split("\n")
    assert lines[5][11:17] == "OpenAI"
    assert lines[2][30:] == SELECTED_GLYPH + "Anthr"
    assert all(len(line) == 36 for line in lines)
    assert len(lines) == 12


def test_label_width_limit() -> None:
    graph = _graph()
    lines = canvas_to_text(rasterize_graph(graph, 0, 60, 12, label_width=4)).split("\n")
    assert lines[9][5:9] == "Micr"
    assert lines[9][9] != "o"


def test_out_of_range_positions_are_clamped() -> None:
    graph = EntityGraph()
    graph.add_node(GraphNode(id="far", label="far", x=500.0, y=-20.0))
    graph.add_node(GraphNode(id="nan", label="nan", x=float("nan"), y=3.0))
    canvas = rasterize_graph(graph, -1, 20, 6)
    assert canvas[0][19][0] == NODE_GLYPH
    assert canvas[3][0][0] == NODE_GLYPH


def test_nodes_overwrite_edges() -> None:
    graph = EntityGraph()
    graph.add_node(GraphNode(id="a", label="", x=1.0, y=1.0))
    graph.add_node(GraphNode(id="b", label="", x=8.0, y=1.0))
    graph.add_edge(GraphEdge(source="a", target="b"))
    row = canvas_to_text(rasterize_graph(graph, -1, 10, 3)).split("\n")[1]
    assert row == " " + NODE_GLYPH + EDGE_GLYPH * 6 + NODE_GLYPH + " "


def test_markup_escapes_labels_and_round_trips_to_plain_text() -> None:
    graph = EntityGraph()
    graph.add_node(GraphNode(id="q", label="[bold]x", role="query", x=1.0, y=1.0))
    graph.add_node(GraphNode(id="n", label="path\\", x=1.0, y=3.0))
    canvas = rasterize_graph(graph, 1, 20, 5)
    markup = canvas_to_markup(canvas)
    assert Text.from_markup(markup).plain == canvas_to_text(canvas)


def test_markup_styles_root_glyph() -> None:
    graph = _graph()
    markup = render_graph_markup(graph, 1, 40, 12)
    assert f"[#ff1a90]{QUERY_GLYPH}[/]" in markup
