from __future__ import annotations

import argparse
import functools
import html
import math
import os
import queue
import random
import re
import select
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
import termios
import tty

import requests
from dateutil import parser as date_parser
from dotenv import load_dotenv
from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

DEFAULT_TABLE = "scraps"
DEFAULT_SELECT_FIELDS = "scrap_id,id,created_at,source,type,title,url,summary,relationships"
DEFAULT_PAGE_SIZE = 1000
DEFAULT_TICK_MS = 100
DEFAULT_LABEL_WIDTH = 10
STATUS_LOG_MAX = 12
IDLE_POLL_SECONDS = 0.05

ROLE_QUERY = "query"
ROLE_CONNECTED = "connected"
DEFAULT_RELATIONSHIP = "RELATED_TO"

QUERY_GLYPH = "◆"
SELECTED_GLYPH = "●"
NODE_GLYPH = "○"
EDGE_GLYPH = "─"
BLANK = " "
ACCENT = "#ff1a90"
MUTED = "#595959"

GRAPH_COLUMN_RATIO = 7
SIDE_COLUMN_RATIO = 3
FOOTER_HEIGHT = 4
MIN_VIEWPORT_WIDTH = 10
MIN_VIEWPORT_HEIGHT = 5

ACTION_TOGGLE = "toggle-animation"
ACTION_PREVIOUS = "navigate-previous"
ACTION_NEXT = "navigate-next"
ACTION_EXPAND = "expand-selected"
ACTION_EXPAND_ALL = "expand-all-neighbors"
ACTION_CONNECTIONS = "list-connections"
ACTION_JUMP = "jump-to-connection"
ACTION_DRILL = "recursive-drill"
ACTION_RESET = "reset-layout"
ACTION_QUIT = "quit"
ACTIONS = (
    ACTION_TOGGLE,
    ACTION_PREVIOUS,
    ACTION_NEXT,
    ACTION_EXPAND,
    ACTION_EXPAND_ALL,
    ACTION_CONNECTIONS,
    ACTION_JUMP,
    ACTION_DRILL,
    ACTION_RESET,
    ACTION_QUIT,
)
DEFAULT_KEY_BINDINGS: dict[str, str] = {
    " ": ACTION_TOGGLE,
    "f": ACTION_TOGGLE,
    "UP": ACTION_PREVIOUS,
    "k": ACTION_PREVIOUS,
    "DOWN": ACTION_NEXT,
    "j": ACTION_NEXT,
    "e": ACTION_EXPAND,
    "a": ACTION_EXPAND_ALL,
    "c": ACTION_CONNECTIONS,
    "n": ACTION_JUMP,
    "ENTER": ACTION_DRILL,
    "r": ACTION_RESET,
    "q": ACTION_QUIT,
    "ESC": ACTION_QUIT,
    "QUIT": ACTION_QUIT,
}

HTML_TAG_RE = re.compile(r"<[^>]+>")
WHITESPACE_RE = re.compile(r"\s+")

Cell = tuple[str, str]
QueryFn = Callable[[str], dict[str, Any]]


@dataclass
class ForceSettings:
    center_gain: float = 0.001
    repulsion: float = 5.0
    link_strength: float = 0.1
    link_distance: float = 10.0
    damping: float = 0.9
    distance_floor: float = 0.1
    max_velocity: float = 4.0
    alpha_decay: float = 1.0 - 0.001 ** (1.0 / 300.0)
    alpha_min: float = 0.001
    label_margin: int = 10
    warm_start_ticks: int = 300


@dataclass
class AppConfig:
    entity: str
    supabase_url: str
    supabase_key: str
    table: str
    select_fields: str
    page_size: int
    timeout_seconds: int
    tick_ms: int
    label_width: int
    seed: int | None
    top: int
    once: bool
    force_settings: ForceSettings
    key_bindings: dict[str, str]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def normalize_text(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, (list, tuple)):
        raw = " ".join(str(piece) for piece in raw)
    if not isinstance(raw, str):
        raw = str(raw)
    unescaped = html.unescape(raw)
    no_html = HTML_TAG_RE.sub(" ", unescaped)
    return WHITESPACE_RE.sub(" ", no_html).strip()


def parse_date(raw: Any) -> datetime | None:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        parsed = raw
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    try:
        parsed = date_parser.parse(str(raw))
    except (TypeError, ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def human_age(published_at: datetime) -> str:
    delta = now_utc() - published_at
    seconds = max(int(delta.total_seconds()), 0)
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 48:
        return f"{hours}h"
    return f"{hours // 24}d"


def truncate(value: str, width: int) -> str:
    if len(value) <= width:
        return value
    if width <= 1:
        return value[:width]
    return f"{value[: width - 1]}…"


def coerce_int(raw: Any, default: int = 0) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


@dataclass
class GraphNode:
    id: str
    label: str
    role: str = ROLE_CONNECTED
    weight: int = 0
    x: float = 0.0
    y: float = 0.0
    vx: float = 0.0
    vy: float = 0.0


@dataclass
class GraphEdge:
    source: str
    target: str
    relationship: str = DEFAULT_RELATIONSHIP
    direction: str = "outgoing"
    weight: int = 0


def edge_key(source: str, target: str) -> frozenset[str]:
    return frozenset((source, target))


# Append-only: node ids are unique, at most one edge per unordered pair.
class EntityGraph:
    def __init__(self) -> None:
        self.nodes: list[GraphNode] = []
        self.edges: list[GraphEdge] = []
        self._index: dict[str, GraphNode] = {}
        self._pairs: set[frozenset[str]] = set()
        self._folded: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._index

    def add_node(self, node: GraphNode) -> bool:
        if node.id in self._index:
            return False
        self._index[node.id] = node
        self._folded.setdefault(node.id.casefold(), node.id)
        self.nodes.append(node)
        return True

    def has_edge(self, source: str, target: str) -> bool:
        return edge_key(source, target) in self._pairs

    def add_edge(self, edge: GraphEdge) -> bool:
        for endpoint in (edge.source, edge.target):
            if endpoint not in self._index:
                raise KeyError(f"Edge endpoint '{endpoint}' is not in the graph.")
        if edge.source == edge.target:
            return False
        key = edge_key(edge.source, edge.target)
        if key in self._pairs:
            return False
        self._pairs.add(key)
        self.edges.append(edge)
        return True

    def merge(self, nodes: list[GraphNode], edges: list[GraphEdge]) -> tuple[int, int]:
        added_nodes = 0
        for node in nodes:
            if self.add_node(node):
                added_nodes += 1
        added_edges = 0
        for edge in edges:
            if edge.source not in self._index or edge.target not in self._index:
                continue
            if self.add_edge(edge):
                added_edges += 1
        return added_nodes, added_edges

    def find_node(self, node_id: str) -> GraphNode | None:
        return self._index.get(node_id)

    def resolve_id(self, node_id: str) -> str | None:
        if node_id in self._index:
            return node_id
        return self._folded.get(node_id.casefold())

    def index_of(self, node_id: str) -> int:
        for index, node in enumerate(self.nodes):
            if node.id == node_id:
                return index
        return -1

    def edges_for(self, node_id: str) -> list[GraphEdge]:
        return [edge for edge in self.edges if node_id in (edge.source, edge.target)]

    def neighbors(self, node_id: str) -> list[str]:
        out: list[str] = []
        for edge in self.edges_for(node_id):
            other = edge.target if edge.source == node_id else edge.source
            if other not in out:
                out.append(other)
        return out


@dataclass
class SimulationState:
    alpha: float = 1.0
    ticks: int = 0
    rng: random.Random = field(default_factory=random.Random)


def clamp_viewport(width: int, height: int) -> tuple[int, int]:
    return max(MIN_VIEWPORT_WIDTH, int(width)), max(MIN_VIEWPORT_HEIGHT, int(height))


def layout_bounds(settings: ForceSettings, width: int, height: int) -> tuple[float, float]:
    width, height = int(width), int(height)
    # Leave room to the right of each glyph for its label; never past width-1 / height-1.
    margin = max(1, min(settings.label_margin, width // 2))
    return max(1.0, float(width - margin)), max(1.0, float(height - 2))


def random_position(
    state: SimulationState,
    settings: ForceSettings,
    width: int,
    height: int,
) -> tuple[float, float]:
    max_x, max_y = layout_bounds(settings, width, height)
    return state.rng.uniform(1.0, max_x), state.rng.uniform(1.0, max_y)


def center_position(settings: ForceSettings, width: int, height: int) -> tuple[float, float]:
    max_x, max_y = layout_bounds(settings, width, height)
    return max(1.0, min(max_x, width / 2.0)), max(1.0, min(max_y, height / 2.0))


def clamp_velocity(value: float, limit: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(-limit, min(limit, value))


def reheat(state: SimulationState) -> None:
    state.alpha = 1.0


def is_settled(state: SimulationState) -> bool:
    return state.alpha <= 0.0


def step_simulation(
    graph: EntityGraph,
    settings: ForceSettings,
    state: SimulationState,
    width: int,
    height: int,
) -> None:
    nodes = graph.nodes
    state.ticks += 1
    if not nodes:
        return
    alpha = state.alpha
    center_x = width / 2.0
    center_y = height / 2.0

    for node in nodes:
        node.vx += (center_x - node.x) * settings.center_gain * alpha
        node.vy += (center_y - node.y) * settings.center_gain * alpha

    for position, node in enumerate(nodes):
        for other in nodes[position + 1 :]:
            dx = node.x - other.x
            dy = node.y - other.y
            if dx == 0.0 and dy == 0.0:
                # Coincident nodes have no direction to push along.
                dx = state.rng.uniform(-0.5, 0.5)
                dy = state.rng.uniform(-0.5, 0.5)
            distance = math.hypot(dx, dy) + settings.distance_floor
            force = settings.repulsion / (distance * distance) * alpha
            fx = dx / distance * force
            fy = dy / distance * force
            node.vx += fx
            node.vy += fy
            other.vx -= fx
            other.vy -= fy

    for edge in graph.edges:
        source = graph.find_node(edge.source)
        target = graph.find_node(edge.target)
        if source is None or target is None:
            continue
        dx = target.x - source.x
        dy = target.y - source.y
        distance = math.hypot(dx, dy) + settings.distance_floor
        force = (distance - settings.link_distance) * settings.link_strength * alpha
        fx = dx / distance * force
        fy = dy / distance * force
        source.vx += fx
        source.vy += fy
        target.vx -= fx
        target.vy -= fy

    max_x, max_y = layout_bounds(settings, width, height)
    for node in nodes:
        node.vx = clamp_velocity(node.vx * settings.damping, settings.max_velocity)
        node.vy = clamp_velocity(node.vy * settings.damping, settings.max_velocity)
        x = node.x + node.vx
        y = node.y + node.vy
        if not (math.isfinite(x) and math.isfinite(y)):
            x, y = center_position(settings, width, height)
            node.vx = 0.0
            node.vy = 0.0
        node.x = max(1.0, min(max_x, x))
        node.y = max(1.0, min(max_y, y))

    state.alpha *= 1.0 - settings.alpha_decay
    if state.alpha < settings.alpha_min:
        state.alpha = 0.0


def warm_start(
    graph: EntityGraph,
    settings: ForceSettings,
    state: SimulationState,
    width: int,
    height: int,
    ticks: int | None = None,
) -> None:
    count = settings.warm_start_ticks if ticks is None else ticks
    for _ in range(max(0, count)):
        step_simulation(graph, settings, state, width, height)


def blank_canvas(width: int, height: int) -> list[list[Cell]]:
    return [[(BLANK, "") for _ in range(max(1, width))] for _ in range(max(1, height))]


def grid_coordinate(value: float, limit: int) -> int:
    if not math.isfinite(value):
        return 0
    return max(0, min(limit - 1, int(math.floor(value + 0.5))))


def bresenham_cells(x0: int, y0: int, x1: int, y1: int) -> list[tuple[int, int]]:
    # Canonical endpoint order: the cell set must not depend on edge direction.
    if (x1, y1) < (x0, y0):
        x0, y0, x1, y1 = x1, y1, x0, y0
    dx = abs(x1 - x0)
    dy = abs(y1 - y0)
    sx = 1 if x0 < x1 else -1
    sy = 1 if y0 < y1 else -1
    err = dx - dy

    cells: list[tuple[int, int]] = []
    x, y = x0, y0
    while True:
        cells.append((x, y))
        if x == x1 and y == y1:
            break
        e2 = 2 * err
        if e2 > -dy:
            err -= dy
            x += sx
        if e2 < dx:
            err += dx
            y += sy
    return cells


def draw_line(
    canvas: list[list[Cell]],
    x0: int,
    y0: int,
    x1: int,
    y1: int,
    char: str = EDGE_GLYPH,
    style: str = MUTED,
) -> None:
    height = len(canvas)
    width = len(canvas[0]) if canvas else 0
    for x, y in bresenham_cells(x0, y0, x1, y1):
        if 0 <= x < width and 0 <= y < height and canvas[y][x][0] == BLANK:
            canvas[y][x] = (char, style)


def rasterize_graph(
    graph: EntityGraph,
    selected_index: int,
    width: int,
    height: int,
    label_width: int = DEFAULT_LABEL_WIDTH,
) -> list[list[Cell]]:
    width = max(1, width)
    height = max(1, height)
    canvas = blank_canvas(width, height)

    for edge in graph.edges:
        source = graph.find_node(edge.source)
        target = graph.find_node(edge.target)
        if source is None or target is None:
            continue
        draw_line(
            canvas,
            grid_coordinate(source.x, width),
            grid_coordinate(source.y, height),
            grid_coordinate(target.x, width),
            grid_coordinate(target.y, height),
        )

    for index, node in enumerate(graph.nodes):
        x = grid_coordinate(node.x, width)
        y = grid_coordinate(node.y, height)
        is_selected = index == selected_index
        if node.role == ROLE_QUERY:
            glyph, style = QUERY_GLYPH, ACCENT
        elif is_selected:
            glyph, style = SELECTED_GLYPH, f"bold {ACCENT}"
        else:
            glyph, style = NODE_GLYPH, ""
        row = canvas[y]
        row[x] = (glyph, style)
        label_style = "bold" if is_selected else ""
        for offset, char in enumerate(node.label[:label_width], start=1):
            if x + offset >= width:
                break
            row[x + offset] = (char, label_style)
    return canvas


def canvas_to_text(canvas: list[list[Cell]]) -> str:
    return "\n".join("".join(char for char, _ in row) for row in canvas)


def markup_run(text: str, style: str) -> str:
    escaped = escape(text)
    if not style and not text.endswith("\\"):
        return escaped
    # escape() doubles a trailing backslash, which only reads back correctly before a tag.
    return f"[{style or 'none'}]{escaped}[/]"


def canvas_to_markup(canvas: list[list[Cell]]) -> str:
    lines: list[str] = []
    for row in canvas:
        parts: list[str] = []
        run: list[str] = []
        run_style = ""
        for char, style in row:
            if run and style != run_style:
                parts.append(markup_run("".join(run), run_style))
                run = []
            run_style = style
            run.append(char)
        if run:
            parts.append(markup_run("".join(run), run_style))
        lines.append("".join(parts))
    return "\n".join(lines)


def render_graph_markup(
    graph: EntityGraph,
    selected_index: int,
    width: int,
    height: int,
    label_width: int = DEFAULT_LABEL_WIDTH,
) -> str:
    return canvas_to_markup(rasterize_graph(graph, selected_index, width, height, label_width))


def sanitize_base_url(url: str) -> str:
    return url.strip().rstrip("/")


def record_id(record: dict[str, Any]) -> str:
    return str(record.get("scrap_id") or record.get("id") or "")


def relationship_endpoint(raw: Any) -> str:
    if isinstance(raw, dict):
        raw = raw.get("name")
    return normalize_text(raw)


def fetch_related_records(config: AppConfig) -> list[dict[str, Any]]:
    base = sanitize_base_url(config.supabase_url)
    if not base or not config.supabase_key:
        raise ValueError(
            "Missing Supabase configuration. Set SUPABASE_URL and SUPABASE_KEY "
            "in the environment or pass --supabase-url/--supabase-key."
        )

    endpoint = f"{base}/rest/v1/{config.table}"
    params = {"select": config.select_fields, "relationships": "not.is.null"}
    records: list[dict[str, Any]] = []
    start = 0
    while True:
        headers = {
            "apikey": config.supabase_key,
            "Authorization": f"Bearer {config.supabase_key}",
            "Range-Unit": "items",
            "Range": f"{start}-{start + config.page_size - 1}",
        }
        response = requests.get(
            endpoint,
            params=params,
            headers=headers,
            timeout=config.timeout_seconds,
        )
        response.raise_for_status()
        page = response.json()
        if not isinstance(page, list):
            raise ValueError(f"Unexpected response from {endpoint}: expected a list of rows.")
        records.extend(row for row in page if isinstance(row, dict))
        if len(page) < config.page_size:
            break
        start += config.page_size
    return records


def relationship_mentions(rel: Any, normalized_query: str) -> bool:
    if not isinstance(rel, dict):
        return False
    source = relationship_endpoint(rel.get("source")).lower()
    target = relationship_endpoint(rel.get("target")).lower()
    if not source or not target:
        return False
    return normalized_query in source or normalized_query in target


def build_entity_payload(records: list[dict[str, Any]], entity_name: str) -> dict[str, Any]:
    normalized_query = entity_name.lower().strip()
    matching: list[dict[str, Any]] = []
    if normalized_query:
        for record in records:
            relationships = record.get("relationships") if isinstance(record, dict) else None
            if not isinstance(relationships, list):
                continue
            if any(relationship_mentions(rel, normalized_query) for rel in relationships):
                matching.append(record)

    grouped: dict[tuple[str, str, str], dict[str, Any]] = {}
    connected_records: dict[str, dict[str, Any]] = {}
    for record in matching:
        for rel in record["relationships"]:
            if not isinstance(rel, dict):
                continue
            source = relationship_endpoint(rel.get("source"))
            target = relationship_endpoint(rel.get("target"))
            if not source or not target:
                continue
            source_lower = source.lower()
            target_lower = target.lower()
            is_source = normalized_query in source_lower or source_lower in normalized_query
            is_target = normalized_query in target_lower or target_lower in normalized_query
            if not (is_source or is_target):
                continue

            connected = target if is_source else source
            if connected.lower() == normalized_query:
                continue
            relationship = normalize_text(rel.get("relationship") or rel.get("type")) or DEFAULT_RELATIONSHIP
            direction = "outgoing" if is_source else "incoming"
            key = (connected, relationship, direction)
            if key not in grouped:
                grouped[key] = {
                    "entity": connected,
                    "relationship": relationship,
                    "direction": direction,
                    "count": 0,
                    "records": [],
                }
            rid = record_id(record)
            grouped[key]["count"] += 1
            grouped[key]["records"].append(rid)
            connected_records.setdefault(rid, record)

    connections = sorted(grouped.values(), key=lambda conn: conn["count"], reverse=True)
    nodes = [{"id": entity_name, "role": ROLE_QUERY, "weight": len(matching)}]
    nodes.extend(
        {"id": conn["entity"], "role": ROLE_CONNECTED, "weight": conn["count"]}
        for conn in connections
    )
    edges = [
        {
            "source": entity_name if conn["direction"] == "outgoing" else conn["entity"],
            "target": conn["entity"] if conn["direction"] == "outgoing" else entity_name,
            "relationship": conn["relationship"],
            "direction": conn["direction"],
            "weight": conn["count"],
        }
        for conn in connections
    ]
    return {
        "query": entity_name,
        "total_records": len(matching),
        "records": list(connected_records.values()),
        "connections": connections,
        "graph": {"nodes": nodes, "edges": edges},
    }


def query_by_entity(entity_name: str, config: AppConfig) -> dict[str, Any]:
    return build_entity_payload(fetch_related_records(config), entity_name)


def rank_entities(records: list[dict[str, Any]], limit: int = 20) -> list[dict[str, Any]]:
    stats: dict[str, dict[str, Any]] = {}
    for record in records:
        relationships = record.get("relationships")
        if not isinstance(relationships, list):
            continue
        for rel in relationships:
            if not isinstance(rel, dict):
                continue
            source = relationship_endpoint(rel.get("source"))
            target = relationship_endpoint(rel.get("target"))
            if not source or not target:
                continue
            relationship = normalize_text(rel.get("relationship") or rel.get("type")) or DEFAULT_RELATIONSHIP
            for entity, other in ((source, target), (target, source)):
                entry = stats.setdefault(
                    entity,
                    {"entity": entity, "connections": set(), "relationship_types": set(), "mentions": 0},
                )
                entry["connections"].add(other)
                entry["relationship_types"].add(relationship)
                entry["mentions"] += 1

    ranked = [
        {
            "entity": entry["entity"],
            "connections": len(entry["connections"]),
            "relationship_types": len(entry["relationship_types"]),
            "mentions": entry["mentions"],
        }
        for entry in stats.values()
    ]
    ranked.sort(key=lambda item: (-item["connections"], -item["mentions"], item["entity"].lower()))
    return ranked[: max(limit, 0)]


@dataclass
class ExpansionResult:
    entity: str
    generation: int
    payload: dict[str, Any] | None
    error: str


@dataclass
class GraphView:
    root_entity: str
    graph: EntityGraph
    query_fn: QueryFn
    settings: ForceSettings
    simulation: SimulationState
    tick_seconds: float = DEFAULT_TICK_MS / 1000.0
    label_width: int = DEFAULT_LABEL_WIDTH
    total_records: int = 0
    selected_index: int = 0
    running: bool = False
    next_tick_at: float | None = None
    expanded_entities: set[str] = field(default_factory=set)
    depth: int = 0
    generation: int = 0
    pending_expansions: int = 0
    connections: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    records: dict[str, dict[str, Any]] = field(default_factory=dict)
    status_log: list[str] = field(default_factory=list)
    details: str = ""
    results: queue.Queue[ExpansionResult] = field(default_factory=queue.Queue)
    stop_event: threading.Event = field(default_factory=threading.Event)
    closed: bool = False


def append_status_log(view: GraphView, message: str, max_entries: int = STATUS_LOG_MAX) -> None:
    timestamp = now_utc().strftime("%H:%M:%S")
    view.status_log.append(f"[{timestamp}] {message}")
    if len(view.status_log) > max_entries:
        view.status_log = view.status_log[-max_entries:]


def clamp_selection(index: int, items: list[Any]) -> int:
    if not items:
        return 0
    if index < 0:
        return 0
    if index >= len(items):
        return len(items) - 1
    return index


def cycle_selection(index: int, items: list[Any], delta: int) -> int:
    if not items:
        return 0
    return (index + delta) % len(items)


def selected_node(view: GraphView) -> GraphNode | None:
    if not view.graph.nodes:
        return None
    return view.graph.nodes[clamp_selection(view.selected_index, view.graph.nodes)]


def payload_to_batch(
    payload: dict[str, Any],
    graph: EntityGraph,
    settings: ForceSettings,
    state: SimulationState,
    width: int,
    height: int,
) -> tuple[list[GraphNode], list[GraphEdge]]:
    graph_data = payload.get("graph")
    if not isinstance(graph_data, dict):
        graph_data = {}
    raw_nodes = graph_data.get("nodes")
    raw_edges = graph_data.get("edges")

    batch_nodes: dict[str, GraphNode] = {}

    # Records spell the same entity differently; ids match case-insensitively.
    def place(node_id: str, weight: int) -> str:
        existing = graph.resolve_id(node_id)
        if existing is not None:
            return existing
        folded = node_id.casefold()
        if folded in batch_nodes:
            return batch_nodes[folded].id
        x, y = random_position(state, settings, width, height)
        batch_nodes[folded] = GraphNode(
            id=node_id,
            label=node_id,
            role=ROLE_CONNECTED,
            weight=weight,
            x=x,
            y=y,
        )
        return node_id

    for raw in raw_nodes if isinstance(raw_nodes, list) else []:
        if not isinstance(raw, dict):
            continue
        node_id = normalize_text(raw.get("id"))
        if not node_id:
            continue
        place(node_id, coerce_int(raw.get("weight", raw.get("count"))))

    edges: list[GraphEdge] = []
    for raw in raw_edges if isinstance(raw_edges, list) else []:
        if not isinstance(raw, dict):
            continue
        source = normalize_text(raw.get("source"))
        target = normalize_text(raw.get("target"))
        if not source or not target:
            continue
        # Endpoints missing from both the graph and the batch are created with the edge.
        source = place(source, 0)
        target = place(target, 0)
        edges.append(
            GraphEdge(
                source=source,
                target=target,
                relationship=normalize_text(raw.get("relationship")) or DEFAULT_RELATIONSHIP,
                direction="incoming" if raw.get("direction") == "incoming" else "outgoing",
                weight=coerce_int(raw.get("weight", raw.get("count"))),
            )
        )
    return list(batch_nodes.values()), edges


def record_query_result(view: GraphView, entity: str, payload: dict[str, Any]) -> None:
    connections = payload.get("connections")
    view.connections[entity] = [
        conn for conn in (connections if isinstance(connections, list) else []) if isinstance(conn, dict)
    ]
    records = payload.get("records")
    for record in records if isinstance(records, list) else []:
        if isinstance(record, dict) and record_id(record):
            view.records.setdefault(record_id(record), record)


def create_graph_view(
    entity_data: dict[str, Any],
    entity_name: str,
    query_fn: QueryFn,
    settings: ForceSettings | None = None,
    width: int = 80,
    height: int = 24,
    tick_seconds: float = DEFAULT_TICK_MS / 1000.0,
    label_width: int = DEFAULT_LABEL_WIDTH,
    seed: int | None = None,
) -> GraphView:
    entity_name = normalize_text(entity_name)
    if not isinstance(entity_data, dict):
        entity_data = {}
    total_records = coerce_int(entity_data.get("total_records"))
    if total_records <= 0:
        raise ValueError(f"No relationships found for entity: {entity_name}")

    settings = settings or ForceSettings()
    simulation = SimulationState(rng=random.Random(seed))
    graph = EntityGraph()
    center_x, center_y = center_position(settings, width, height)
    graph.add_node(
        GraphNode(
            id=entity_name,
            label=entity_name,
            role=ROLE_QUERY,
            weight=total_records,
            x=center_x,
            y=center_y,
        )
    )
    nodes, edges = payload_to_batch(entity_data, graph, settings, simulation, width, height)
    graph.merge(nodes, edges)
    warm_start(graph, settings, simulation, width, height)

    view = GraphView(
        root_entity=entity_name,
        graph=graph,
        query_fn=query_fn,
        settings=settings,
        simulation=simulation,
        tick_seconds=tick_seconds,
        label_width=label_width,
        total_records=total_records,
    )
    view.expanded_entities.add(entity_name)
    record_query_result(view, entity_name, entity_data)
    view.details = format_node_markdown(view, graph.nodes[0])
    append_status_log(
        view,
        f"Loaded {entity_name}: {len(graph.nodes)} nodes, {len(graph.edges)} edges.",
    )
    return view


def open_graph_view(
    entity_name: str,
    query_fn: QueryFn,
    settings: ForceSettings | None = None,
    width: int = 80,
    height: int = 24,
    tick_seconds: float = DEFAULT_TICK_MS / 1000.0,
    label_width: int = DEFAULT_LABEL_WIDTH,
    seed: int | None = None,
) -> GraphView:
    payload = query_fn(entity_name)
    return create_graph_view(
        payload,
        entity_name,
        query_fn,
        settings=settings,
        width=width,
        height=height,
        tick_seconds=tick_seconds,
        label_width=label_width,
        seed=seed,
    )


def start_animation(view: GraphView, now: float | None = None) -> None:
    if view.running or view.closed:
        return
    view.running = True
    view.next_tick_at = time.monotonic() if now is None else now


def stop_animation(view: GraphView) -> None:
    view.next_tick_at = None
    view.running = False


def toggle_animation(view: GraphView, now: float | None = None) -> None:
    if view.running:
        stop_animation(view)
        append_status_log(view, "Animation paused.")
    else:
        start_animation(view, now)
        append_status_log(view, "Force simulation running.")


def advance_animation(
    view: GraphView,
    width: int,
    height: int,
    now: float | None = None,
) -> bool:
    if not view.running or view.next_tick_at is None:
        return False
    now = time.monotonic() if now is None else now
    if now < view.next_tick_at:
        return False
    step_simulation(view.graph, view.settings, view.simulation, width, height)
    view.next_tick_at = now + view.tick_seconds
    return True


def seconds_until_tick(view: GraphView, now: float | None = None) -> float:
    if not view.running or view.next_tick_at is None:
        return IDLE_POLL_SECONDS
    now = time.monotonic() if now is None else now
    return max(0.0, min(IDLE_POLL_SECONDS, view.next_tick_at - now))


def navigate(view: GraphView, delta: int) -> bool:
    if not view.graph.nodes:
        return False
    view.selected_index = cycle_selection(view.selected_index, view.graph.nodes, delta)
    node = view.graph.nodes[view.selected_index]
    view.details = format_node_markdown(view, node)
    return True


def expansion_worker(
    query_fn: QueryFn,
    entity_ids: list[str],
    generation: int,
    results: queue.Queue[ExpansionResult],
    stop_event: threading.Event,
) -> None:
    for entity in entity_ids:
        if stop_event.is_set():
            return
        try:
            payload = query_fn(entity)
        except Exception as exc:
            message = normalize_text(str(exc))[:120] or exc.__class__.__name__
            results.put(ExpansionResult(entity=entity, generation=generation, payload=None, error=message))
            continue
        results.put(ExpansionResult(entity=entity, generation=generation, payload=payload, error=""))


def request_expansion(view: GraphView, entity_ids: list[str]) -> list[str]:
    if view.closed:
        return []
    requested: list[str] = []
    for entity in entity_ids:
        if entity == view.root_entity:
            append_status_log(view, f"{entity} is the root entity; nothing to expand.")
            continue
        if entity in view.expanded_entities:
            append_status_log(view, f"{entity} already expanded.")
            continue
        # Claimed before the fetch starts so a second request cannot race the first.
        view.expanded_entities.add(entity)
        requested.append(entity)
    if not requested:
        return requested

    view.pending_expansions += len(requested)
    worker = threading.Thread(
        target=expansion_worker,
        args=(view.query_fn, list(requested), view.generation, view.results, view.stop_event),
        daemon=True,
    )
    worker.start()
    append_status_log(view, truncate(f"Expanding {', '.join(requested)}...", 120))
    return requested


def expand_selected(view: GraphView) -> list[str]:
    node = selected_node(view)
    if node is None:
        append_status_log(view, "No node selected.")
        return []
    if node.role == ROLE_QUERY:
        append_status_log(view, f"{node.id} is the root entity; nothing to expand.")
        return []
    return request_expansion(view, [node.id])


def expand_all_neighbors(view: GraphView) -> list[str]:
    node = selected_node(view)
    if node is None:
        append_status_log(view, "No node selected.")
        return []
    neighbors = view.graph.neighbors(node.id)
    if not neighbors:
        append_status_log(view, f"{node.id} has no connections to expand.")
        return []
    candidates = [
        neighbor
        for neighbor in neighbors
        if neighbor != view.root_entity and neighbor not in view.expanded_entities
    ]
    if not candidates:
        append_status_log(view, f"All neighbors of {node.id} already expanded.")
        return []
    return request_expansion(view, candidates)


def apply_expansion_result(
    view: GraphView,
    result: ExpansionResult,
    width: int,
    height: int,
) -> bool:
    if result.error:
        view.expanded_entities.discard(result.entity)
        append_status_log(view, f"Expansion of {result.entity} failed: {result.error}")
        return False
    payload = result.payload if isinstance(result.payload, dict) else {}
    if coerce_int(payload.get("total_records")) <= 0:
        append_status_log(view, f"No relationships found for {result.entity}.")
        return False

    nodes, edges = payload_to_batch(payload, view.graph, view.settings, view.simulation, width, height)
    added_nodes, added_edges = view.graph.merge(nodes, edges)
    record_query_result(view, result.entity, payload)
    view.depth += 1
    reheat(view.simulation)
    start_animation(view)
    append_status_log(
        view,
        f"Expanded {result.entity}: +{added_nodes} nodes, +{added_edges} edges (depth {view.depth}).",
    )
    return True


def drain_expansion_results(
    view: GraphView,
    width: int,
    height: int,
    timeout: float = 0.0,
) -> int:
    merged = 0
    wait = timeout > 0
    while True:
        try:
            result = view.results.get(timeout=timeout) if wait else view.results.get_nowait()
        except queue.Empty:
            break
        wait = False
        if result.generation != view.generation:
            continue
        view.pending_expansions = max(0, view.pending_expansions - 1)
        if apply_expansion_result(view, result, width, height):
            merged += 1
    return merged


def connection_records(view: GraphView, node_id: str) -> list[str]:
    out: list[str] = []
    for entity, connections in view.connections.items():
        for conn in connections:
            if entity != node_id and conn.get("entity") != node_id:
                continue
            for rid in conn.get("records") or []:
                if rid and rid not in out:
                    out.append(rid)
    return out


def find_connection(view: GraphView, node_id: str) -> dict[str, Any] | None:
    for connections in view.connections.values():
        for conn in connections:
            if conn.get("entity") == node_id:
                return conn
    return None


def describe_record(view: GraphView, rid: str) -> str:
    record = view.records.get(rid)
    if not record:
        return f"`{rid}`"
    title = truncate(normalize_text(record.get("title") or record.get("summary")), 48)
    created = parse_date(record.get("created_at"))
    age = f" ({human_age(created)} ago)" if created else ""
    if title:
        return f"`{rid}` {title}{age}"
    return f"`{rid}`{age}"


def format_node_markdown(view: GraphView, node: GraphNode) -> str:
    lines = [
        f"### {node.label}",
        "",
        f"- Role: `{node.role}`",
        f"- Mentions: `{node.weight}`",
        f"- Position: `({int(node.x)}, {int(node.y)})`",
        f"- Expanded: `{'yes' if node.id in view.expanded_entities else 'no'}`",
    ]
    connection = find_connection(view, node.id)
    if connection:
        arrow = "→" if connection.get("direction") == "outgoing" else "←"
        records = connection.get("records") or []
        lines.extend(
            [
                "",
                "#### Relationship",
                f"- {connection.get('relationship', DEFAULT_RELATIONSHIP)} {arrow}",
                f"- Count: `{connection.get('count', 0)}x`",
                "",
                "#### Found in records",
            ]
        )
        lines.extend(f"- {describe_record(view, rid)}" for rid in records[:5])
        if len(records) > 5:
            lines.append(f"- ... and {len(records) - 5} more")
    return "\n".join(lines)


def list_connections(view: GraphView) -> str:
    node = selected_node(view)
    if node is None:
        append_status_log(view, "No node selected.")
        return ""
    edges = view.graph.edges_for(node.id)
    lines = [f"### Connections of {node.label} ({len(edges)})", ""]
    for edge in edges:
        other = edge.target if edge.source == node.id else edge.source
        arrow = "→" if edge.source == node.id else "←"
        weight = f" ({edge.weight}x)" if edge.weight else ""
        lines.append(f"- {arrow} {other}{weight} - {edge.relationship}")
    if not edges:
        lines.append("_No known relationships._")

    record_ids = connection_records(view, node.id)
    lines.extend(["", f"#### Source records ({len(record_ids)})"])
    lines.extend(f"- {describe_record(view, rid)}" for rid in record_ids[:10])
    if len(record_ids) > 10:
        lines.append(f"- ... and {len(record_ids) - 10} more")
    view.details = "\n".join(lines)
    return view.details


def jump_to_connection(view: GraphView) -> str | None:
    targets: list[str] = []
    for conn in view.connections.get(view.root_entity, []):
        node_id = view.graph.resolve_id(normalize_text(conn.get("entity")))
        if node_id and node_id not in targets:
            targets.append(node_id)
    if not targets:
        append_status_log(view, "No connections to jump to.")
        return None

    node = selected_node(view)
    current = node.id if node else ""
    # Rows are visited in table order, wrapping after the last one.
    position = targets.index(current) + 1 if current in targets else 0
    target = targets[position % len(targets)]
    view.selected_index = view.graph.index_of(target)
    view.details = format_node_markdown(view, view.graph.nodes[view.selected_index])
    return target


def reset_layout(view: GraphView) -> None:
    reheat(view.simulation)
    start_animation(view)
    append_status_log(view, "Layout reheated.")


def teardown_view(view: GraphView) -> None:
    stop_animation(view)
    view.stop_event.set()
    view.generation += 1
    view.closed = True


def drill_target(view: GraphView) -> str | None:
    node = selected_node(view)
    if node is None or node.role == ROLE_QUERY:
        append_status_log(view, "Select a connected entity to drill into.")
        return None
    return node.id


def recursive_drill(view: GraphView, width: int, height: int) -> GraphView:
    target = drill_target(view)
    if target is None:
        return view
    try:
        payload = view.query_fn(target)
    except Exception as exc:
        append_status_log(view, f"Query for {target} failed: {normalize_text(str(exc))[:120]}")
        return view
    if not isinstance(payload, dict) or coerce_int(payload.get("total_records")) <= 0:
        append_status_log(view, f"No relationships found for entity: {target}")
        return view

    teardown_view(view)
    fresh = create_graph_view(
        payload,
        target,
        view.query_fn,
        settings=view.settings,
        width=width,
        height=height,
        tick_seconds=view.tick_seconds,
        label_width=view.label_width,
        seed=view.simulation.rng.randrange(2**32),
    )
    start_animation(fresh)
    append_status_log(fresh, f"Drilled into {target} from {view.root_entity}.")
    return fresh


def key_to_action(key: str, bindings: dict[str, str]) -> str:
    if key in bindings:
        return bindings[key]
    if len(key) == 1 and key.lower() in bindings:
        return bindings[key.lower()]
    return ""


def dispatch_action(
    view: GraphView,
    action: str,
    width: int,
    height: int,
) -> tuple[GraphView, bool]:
    if action == ACTION_QUIT:
        teardown_view(view)
        return view, True
    if action == ACTION_TOGGLE:
        toggle_animation(view)
    elif action == ACTION_PREVIOUS:
        navigate(view, -1)
    elif action == ACTION_NEXT:
        navigate(view, 1)
    elif action == ACTION_EXPAND:
        expand_selected(view)
    elif action == ACTION_EXPAND_ALL:
        expand_all_neighbors(view)
    elif action == ACTION_JUMP:
        jump_to_connection(view)
    elif action == ACTION_CONNECTIONS:
        list_connections(view)
    elif action == ACTION_DRILL:
        return recursive_drill(view, width, height), False
    elif action == ACTION_RESET:
        reset_layout(view)
    else:
        append_status_log(view, f"Unknown action: {action}")
    return view, False


def graph_viewport(terminal_width: int, terminal_height: int) -> tuple[int, int]:
    ratio_total = GRAPH_COLUMN_RATIO + SIDE_COLUMN_RATIO
    # Panel border plus horizontal padding on each side.
    width = terminal_width * GRAPH_COLUMN_RATIO // ratio_total - 4
    height = terminal_height - FOOTER_HEIGHT - 2
    return clamp_viewport(width, height)


def render_connections_table(view: GraphView, max_rows: int) -> Table:
    table = Table(expand=True, show_edge=False, pad_edge=False)
    table.add_column("", width=1)
    table.add_column("Entity", no_wrap=True, overflow="ellipsis")
    table.add_column("#", justify="right", width=4)
    table.add_column("Relationship", no_wrap=True, overflow="ellipsis")

    node = selected_node(view)
    selected_id = node.id if node else ""
    connections = view.connections.get(view.root_entity, [])
    for conn in connections[: max(max_rows, 1)]:
        arrow = "→" if conn.get("direction") == "outgoing" else "←"
        entity = str(conn.get("entity", ""))
        table.add_row(
            arrow,
            escape(entity),
            f"{conn.get('count', 0)}x",
            escape(str(conn.get("relationship", DEFAULT_RELATIONSHIP))),
            style=f"bold black on {ACCENT}" if entity.casefold() == selected_id.casefold() else "",
        )
    if not connections:
        table.add_row("-", "No connections", "-", "-")
    return table


def render_footer_text(view: GraphView, terminal_width: int) -> Text:
    max_chars = max(40, terminal_width - 4)
    last = view.status_log[-1] if view.status_log else "Ready."
    state = "running" if view.running else "paused"
    pending = f" | fetching {view.pending_expansions}" if view.pending_expansions else ""
    status = (
        f"Status: {last} | {len(view.graph.nodes)} nodes, {len(view.graph.edges)} edges | "
        f"depth {view.depth} | {state}{pending}"
    )
    hint = (
        "[SPACE] Toggle animation  [↑↓/jk] Navigate  [e] Expand  [a] Expand neighbors  "
        "[c] Connections  [n] Next connection  [ENTER] Drill  [r] Reset  [q] Quit"
    )
    text = Text(truncate(status, max_chars), style="cyan")
    text.append("\n")
    text.append(truncate(hint, max_chars), style=MUTED)
    return text


def build_graph_screen(view: GraphView, terminal_width: int, terminal_height: int) -> Layout:
    width, height = graph_viewport(terminal_width, terminal_height)
    markup = render_graph_markup(view.graph, view.selected_index, width, height, view.label_width)
    graph_text = Text.from_markup(markup, emoji=False, overflow="crop")
    graph_text.no_wrap = True

    layout = Layout()
    layout.split_column(Layout(name="body"), Layout(name="footer", size=FOOTER_HEIGHT))
    layout["body"].split_row(
        Layout(name="graph", ratio=GRAPH_COLUMN_RATIO),
        Layout(name="side", ratio=SIDE_COLUMN_RATIO),
    )
    layout["side"].split_column(
        Layout(name="details", ratio=7),
        Layout(name="connections", ratio=3),
    )
    layout["graph"].update(
        Panel(
            graph_text,
            title=f"Entity: {escape(view.root_entity)} [{view.total_records} records]",
            border_style=ACCENT,
        )
    )
    layout["details"].update(
        Panel(Markdown(view.details or "_Select a node._"), title="Details", border_style=MUTED)
    )
    connection_rows = max(1, (terminal_height - FOOTER_HEIGHT) * 3 // 10 - 4)
    layout["connections"].update(
        Panel(render_connections_table(view, connection_rows), title="Connections", border_style=MUTED)
    )
    layout["footer"].update(Panel(render_footer_text(view, terminal_width), border_style=MUTED))
    return layout


def render_entity_ranking_table(ranking: list[dict[str, Any]]) -> Table:
    table = Table(title="Most Connected Entities", expand=True)
    table.add_column("#", justify="right", style="dim", width=3)
    table.add_column("Entity", no_wrap=True, overflow="ellipsis")
    table.add_column("Connections", justify="right")
    table.add_column("Rel types", justify="right")
    table.add_column("Mentions", justify="right")
    for idx, entry in enumerate(ranking, start=1):
        table.add_row(
            str(idx),
            escape(entry["entity"]),
            str(entry["connections"]),
            str(entry["relationship_types"]),
            str(entry["mentions"]),
        )
    if not ranking:
        table.add_row("-", "No relationships found", "-", "-", "-")
    return table


def parse_args(argv: list[str]) -> AppConfig:
    defaults = ForceSettings()
    parser = argparse.ArgumentParser(
        description="Interactive force-directed graph of entities in the scrapbook."
    )
    parser.add_argument("entity", nargs="?", default="", help="Entity to center the graph on.")
    parser.add_argument("--supabase-url", default=os.getenv("SUPABASE_URL", ""))
    parser.add_argument("--supabase-key", default=os.getenv("SUPABASE_KEY", ""))
    parser.add_argument("--table", default=DEFAULT_TABLE)
    parser.add_argument("--select", default=DEFAULT_SELECT_FIELDS)
    parser.add_argument("--page-size", type=int, default=DEFAULT_PAGE_SIZE)
    parser.add_argument("--timeout-seconds", type=int, default=30)
    parser.add_argument("--tick-ms", type=int, default=DEFAULT_TICK_MS)
    parser.add_argument("--label-width", type=int, default=DEFAULT_LABEL_WIDTH)
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--top", type=int, default=20, help="Entities listed when no entity is given.")
    parser.add_argument("--warm-start-ticks", type=int, default=defaults.warm_start_ticks)
    parser.add_argument("--center-gain", type=float, default=defaults.center_gain)
    parser.add_argument("--repulsion", type=float, default=defaults.repulsion)
    parser.add_argument("--link-strength", type=float, default=defaults.link_strength)
    parser.add_argument("--link-distance", type=float, default=defaults.link_distance)
    parser.add_argument("--damping", type=float, default=defaults.damping)
    parser.add_argument("--once", action="store_true", help="Render one settled frame and exit.")

    args = parser.parse_args(argv)

    if args.page_size < 1:
        raise ValueError("--page-size must be >= 1")
    if args.timeout_seconds < 1:
        raise ValueError("--timeout-seconds must be >= 1")
    if args.tick_ms < 10:
        raise ValueError("--tick-ms must be >= 10")
    if args.label_width < 1:
        raise ValueError("--label-width must be >= 1")
    if args.top < 1:
        raise ValueError("--top must be >= 1")
    if args.warm_start_ticks < 0:
        raise ValueError("--warm-start-ticks must be >= 0")
    if not 0.0 < args.damping < 1.0:
        raise ValueError("--damping must be between 0 and 1 (exclusive)")
    if args.repulsion < 0 or args.link_strength < 0 or args.center_gain < 0:
        raise ValueError("force constants must be >= 0")
    if args.link_distance <= 0:
        raise ValueError("--link-distance must be > 0")

    force_settings = ForceSettings(
        center_gain=args.center_gain,
        repulsion=args.repulsion,
        link_strength=args.link_strength,
        link_distance=args.link_distance,
        damping=args.damping,
        label_margin=max(defaults.label_margin, args.label_width),
        warm_start_ticks=args.warm_start_ticks,
    )
    return AppConfig(
        entity=args.entity.strip(),
        supabase_url=args.supabase_url,
        supabase_key=args.supabase_key,
        table=args.table,
        select_fields=args.select,
        page_size=args.page_size,
        timeout_seconds=args.timeout_seconds,
        tick_ms=args.tick_ms,
        label_width=args.label_width,
        seed=args.seed,
        top=args.top,
        once=args.once,
        force_settings=force_settings,
        key_bindings=dict(DEFAULT_KEY_BINDINGS),
    )


def _line_input_worker(
    key_queue: queue.Queue[tuple[str, str]],
    stop_event: threading.Event,
) -> None:
    while not stop_event.is_set():
        try:
            line = sys.stdin.readline()
        except Exception:
            if stop_event.wait(0.2):
                break
            continue
        if line == "":
            if stop_event.wait(0.2):
                break
            continue
        value = line.strip()
        if value in ACTIONS:
            key_queue.put(("action", value))
        else:
            key_queue.put(("key", value or "ENTER"))


def key_input_worker(
    key_queue: queue.Queue[tuple[str, str]],
    stop_event: threading.Event,
) -> None:
    if not sys.stdin.isatty():
        _line_input_worker(key_queue, stop_event)
        return

    try:
        fd = sys.stdin.fileno()
        old_settings = termios.tcgetattr(fd)
    except Exception:
        _line_input_worker(key_queue, stop_event)
        return

    try:
        tty.setcbreak(fd)
        while not stop_event.is_set():
            ready, _, _ = select.select([fd], [], [], 0.2)
            if not ready:
                continue
            data = os.read(fd, 1)
            if not data:
                continue
            key = data.decode("utf-8", errors="ignore")
            if not key:
                continue
            if key in {"\r", "\n"}:
                key_queue.put(("key", "ENTER"))
                continue
            if key == "\x1b":
                sequence = ""
                while select.select([fd], [], [], 0.001)[0]:
                    sequence += os.read(fd, 1).decode("utf-8", errors="ignore")
                    if not sequence:
                        continue
                    if sequence[-1].isalpha() or sequence.endswith("~") or len(sequence) >= 6:
                        break
                if sequence == "[A":
                    key_queue.put(("key", "UP"))
                elif sequence == "[B":
                    key_queue.put(("key", "DOWN"))
                else:
                    key_queue.put(("key", "ESC"))
                continue
            if key == "\x03":
                key_queue.put(("key", "QUIT"))
                continue
            key_queue.put(("key", key))
    finally:
        try:
            termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
        except Exception:
            pass


def run_entity_ranking(config: AppConfig, console: Console) -> int:
    try:
        records = fetch_related_records(config)
    except (requests.RequestException, ValueError) as exc:
        console.print(f"[red]Query failed:[/red] {escape(str(exc))}")
        return 1
    console.print(render_entity_ranking_table(rank_entities(records, config.top)))
    console.print("[dim]Pass an entity name to open its relationship graph.[/dim]")
    return 0


def run(config: AppConfig, console: Console) -> int:
    if not config.entity:
        return run_entity_ranking(config, console)

    query_fn = functools.partial(query_by_entity, config=config)
    width, height = graph_viewport(console.size.width, console.size.height)
    try:
        view = open_graph_view(
            config.entity,
            query_fn,
            settings=config.force_settings,
            width=width,
            height=height,
            tick_seconds=config.tick_ms / 1000.0,
            label_width=config.label_width,
            seed=config.seed,
        )
    except requests.RequestException as exc:
        console.print(f"[red]Query failed:[/red] {escape(str(exc))}")
        return 1
    except ValueError as exc:
        console.print(f"[yellow]{escape(str(exc))}[/yellow]")
        return 1

    if config.once:
        console.print(build_graph_screen(view, console.size.width, console.size.height))
        teardown_view(view)
        return 0

    start_animation(view)
    stop_event = threading.Event()
    key_queue: queue.Queue[tuple[str, str]] = queue.Queue()
    key_worker = threading.Thread(
        target=key_input_worker,
        args=(key_queue, stop_event),
        daemon=True,
    )
    key_worker.start()

    with Live(
        build_graph_screen(view, console.size.width, console.size.height),
        console=console,
        refresh_per_second=10,
        screen=True,
        vertical_overflow="crop",
    ) as live:
        try:
            while True:
                terminal_width = console.size.width
                terminal_height = console.size.height
                width, height = graph_viewport(terminal_width, terminal_height)

                exit_requested = False
                while True:
                    try:
                        event_type, event_value = key_queue.get_nowait()
                    except queue.Empty:
                        break
                    if event_type == "action":
                        action = event_value
                    else:
                        action = key_to_action(event_value, config.key_bindings)
                    if not action:
                        continue
                    view, exit_requested = dispatch_action(view, action, width, height)
                    if exit_requested:
                        break
                if exit_requested:
                    return 0

                drain_expansion_results(view, width, height)
                advance_animation(view, width, height)
                live.update(build_graph_screen(view, terminal_width, terminal_height))
                time.sleep(seconds_until_tick(view))
        finally:
            teardown_view(view)
            stop_event.set()
            key_worker.join(timeout=2)


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    console = Console()
    try:
        config = parse_args(argv if argv is not None else sys.argv[1:])
    except Exception as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        return 2

    try:
        return run(config, console)
    except KeyboardInterrupt:
        console.print("\n[bold]Stopped.[/bold]")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
