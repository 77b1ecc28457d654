"""
Pytest configuration for Storyloom tests

Provides fixtures shared across all test files: a fresh SQLite database per
test, a seeder for story graph rows, and a scripted fake of the model invoker.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pytest

from storyloom.errors import UnparseableResponseError
from storyloom.infrastructure.database import db_transaction, init_database, reset_pool
from storyloom.llm.invoker import ImageResult, StructuredResult, TextResult
from storyloom.observability.telemetry import reset_telemetry
from storyloom.storage.graph import SQLiteGraphStore

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"


@pytest.fixture(autouse=True)
def _clean_telemetry():
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Initialized database in a temp dir; the pool is rebuilt around each test."""
    path = tmp_path / "storyloom.db"
    monkeypatch.setenv("STORYLOOM_DB_PATH", str(path))
    reset_pool()
    init_database()
    yield path
    reset_pool()


@pytest.fixture
def store(db_path):
    return SQLiteGraphStore()


class GraphSeeder:
    """Inserts story graph rows directly, the way the editor's CRUD service would."""

    def timeline(
        self,
        timeline_id: str = "tl-1",
        user_id: str = "user-1",
        system_prompt: str | None = "A noir mystery in a drowned city.",
        visual_theme: str | None = None,
        vision_blurb: str | None = None,
    ) -> str:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO timelines (id, user_id, title, system_prompt, visual_theme, vision_blurb)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (timeline_id, user_id, "Untitled", system_prompt, visual_theme, vision_blurb),
            )
        return timeline_id

    def node(
        self,
        node_id: str,
        timeline_id: str = "tl-1",
        parent_id: str | None = None,
        content: str = "",
        title: str = "",
        branch_id: str | None = None,
        image_url: str | None = None,
    ) -> str:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO timeline_nodes
                    (id, timeline_id, parent_id, branch_id, title, content, image_url)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (node_id, timeline_id, parent_id, branch_id, title, content or f"Content of {node_id}", image_url),
            )
        return node_id

    def chain(self, node_ids: list[str], timeline_id: str = "tl-1") -> list[str]:
        parent = None
        for node_id in node_ids:
            self.node(node_id, timeline_id=timeline_id, parent_id=parent)
            parent = node_id
        return node_ids

    def set_parent(self, node_id: str, parent_id: str) -> None:
        with db_transaction() as conn:
            conn.execute("UPDATE timeline_nodes SET parent_id = ? WHERE id = ?", (parent_id, node_id))

    def canon(self, branch_id: str, timeline_id: str = "tl-1", **fields: Any) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO branch_canon (branch_id, timeline_id, setting, characters, tone, themes, rules)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    branch_id,
                    timeline_id,
                    fields.get("setting"),
                    json.dumps(fields["characters"]) if "characters" in fields else None,
                    fields.get("tone"),
                    json.dumps(fields["themes"]) if "themes" in fields else None,
                    json.dumps(fields["rules"]) if "rules" in fields else None,
                ),
            )

    def profile(self, user_id: str = "user-1", exploration_ratio: float | None = 0.3, **fields: Any) -> None:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO creator_profiles
                    (user_id, preferred_genres, writing_style, favorite_themes,
                     disliked_elements, exploration_ratio)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    json.dumps(fields.get("preferred_genres", [])),
                    fields.get("writing_style"),
                    json.dumps(fields.get("favorite_themes", [])),
                    json.dumps(fields.get("disliked_elements", [])),
                    exploration_ratio,
                ),
            )

    def character(
        self,
        character_id: str,
        name: str,
        timeline_id: str = "tl-1",
        aliases: list[str] | None = None,
        appearance_guide: str | None = None,
    ) -> str:
        with db_transaction() as conn:
            conn.execute(
                """
                INSERT INTO character_bible (id, timeline_id, name, aliases, appearance_guide)
                VALUES (?, ?, ?, ?, ?)
                """,
                (character_id, timeline_id, name, json.dumps(aliases or []), appearance_guide),
            )
        return character_id

    def quota(self, user_id: str, daily: int | None = None, monthly: int | None = None) -> None:
        with db_transaction() as conn:
            conn.execute(
                "INSERT INTO user_quotas (user_id, daily_requests, monthly_requests) VALUES (?, ?, ?)",
                (user_id, daily, monthly),
            )


@pytest.fixture
def seed(db_path):
    return GraphSeeder()


class FakeInvoker:
    """
    Scripted stand-in for GeminiInvoker.

    Structured responses are looked up by the schema they are requested with
    (or a callable receiving the prompt); a value that is an exception
    instance is raised instead of returned. Every call is recorded.
    """

    def __init__(self) -> None:
        self.structured: dict[Any, Any] = {}
        self.default_structured: Any = {}
        self.image: ImageResult | Exception = ImageResult(
            image=PNG_BYTES, mime_type="image/png", model="fake-image"
        )
        self.calls: list[tuple[str, str]] = []

    def generate_text(self, prompt: str, model: str | None = None, max_tokens: int | None = None) -> TextResult:
        self.calls.append(("text", prompt))
        return TextResult(text="text", model=model or "fake-text")

    def generate_structured(
        self,
        prompt: str,
        model: str | None = None,
        max_tokens: int | None = None,
        schema: type | None = None,
    ) -> StructuredResult:
        self.calls.append(("structured", prompt))
        response = self.structured.get(schema, self.default_structured)
        if isinstance(response, Callable) and not isinstance(response, type):
            response = response(prompt)
        if isinstance(response, Exception):
            raise response
        data = schema.model_validate(response) if schema is not None else response
        return StructuredResult(
            data=data, raw=json.dumps(response), model=model or "fake-text", tokens_in=10, tokens_out=20
        )

    def generate_image(self, prompt: str, model: str | None = None) -> ImageResult:
        self.calls.append(("image", prompt))
        if isinstance(self.image, Exception):
            raise self.image
        return self.image

    def count(self, kind: str) -> int:
        return sum(1 for call_kind, _ in self.calls if call_kind == kind)

    def prompts(self, kind: str) -> list[str]:
        return [prompt for call_kind, prompt in self.calls if call_kind == kind]


@pytest.fixture
def fake_invoker():
    return FakeInvoker()


@pytest.fixture
def unparseable():
    return UnparseableResponseError("bad json", raw="not json")
