"""Shared fixtures: a small scrapbook with entity relationships and an in-memory query function."""

from __future__ import annotations

import pytest

import scrapgraph


@pytest.fixture
def scrap_records() -> list[dict]:
    return [
        {
            "scrap_id": "s1",
            "title": "OpenAI and its partners",
            "created_at": "2026-10-01T12:00:00Z",
            "relationships": [
                {"source": "OpenAI", "target": "Anthropic", "relationship": "COMPETES_WITH"},
                {"source": "OpenAI", "target": "Microsoft", "relationship": "PARTNERS_WITH"},
            ],
        },
        {
            "scrap_id": "s2",
            "title": "Leadership profile",
            "created_at": "2026-10-02T08:30:00Z",
            "relationships": [
                {"source": "Sam Altman", "target": "OpenAI", "relationship": "LEADS"},
                {},
                "not-a-relationship",
            ],
        },
        {
            "scrap_id": "s3",
            "title": "Anthropic funding round",
            "created_at": "2026-10-03T17:45:00Z",
            "relationships": [
                {"source": "Anthropic", "target": "Google", "relationship": "FUNDED_BY"},
                {"source": "Amazon", "target": "Anthropic", "relationship": "INVESTS_IN"},
                {"source": "Anthropic", "target": ""},
            ],
        },
        {"scrap_id": "s4", "title": "No graph data", "relationships": None},
    ]


@pytest.fixture
def query_fn(scrap_records):
    calls: list[str] = []

    def query(entity_name: str) -> dict:
        calls.append(entity_name)
        return scrapgraph.build_entity_payload(scrap_records, entity_name)

    query.calls = calls
    return query


@pytest.fixture
def openai_view(query_fn):
    view = scrapgraph.open_graph_view("OpenAI", query_fn, width=80, height=24, seed=7)
    yield view
    scrapgraph.teardown_view(view)
