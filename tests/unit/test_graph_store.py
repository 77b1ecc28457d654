"""Unit tests for SQLite graph storage writes and character lookups"""

from __future__ import annotations

from storyloom.infrastructure.database import get_db_connection


def test_set_node_image_updates_row(store, seed):
    seed.timeline()
    seed.node("n1")

    assert store.set_node_image("tl-1", "n1", "data:image/png;base64,AAA") is True
    assert store.get_node("n1").image_url == "data:image/png;base64,AAA"


def test_set_node_image_wrong_timeline_is_false(store, seed):
    seed.timeline()
    seed.node("n1")

    assert store.set_node_image("tl-other", "n1", "data:image/png;base64,AAA") is False
    assert store.get_node("n1").image_url is None


def test_list_characters_decodes_aliases(store, seed):
    seed.timeline()
    seed.character("c1", "Mara", aliases=["The Ferryman"])

    characters = store.list_characters("tl-1")

    assert [c.name for c in characters] == ["Mara"]
    assert characters[0].aliases == ["The Ferryman"]


def test_malformed_alias_json_is_ignored(store, seed):
    seed.timeline()
    seed.character("c1", "Mara")
    with get_db_connection() as conn:
        conn.execute("UPDATE character_bible SET aliases = 'not json' WHERE id = 'c1'")
        conn.commit()

    assert store.get_character("tl-1", "c1").aliases == []


def test_set_character_portrait(store, seed):
    seed.timeline()
    seed.character("c1", "Mara")

    assert store.set_character_portrait("tl-1", "c1", "data:image/png;base64,BBB") is True
    assert store.get_character("tl-1", "c1").reference_image_url == "data:image/png;base64,BBB"
    assert store.get_character("tl-2", "c1") is None


def test_timeline_owned_by(store, seed):
    seed.timeline(user_id="user-1")

    assert store.timeline_owned_by("tl-1", "user-1")
    assert not store.timeline_owned_by("tl-1", "user-2")
    assert not store.timeline_owned_by("tl-9", "user-1")
