"""
Database schema initialization for Storyloom.

Only the shapes the generation pipeline reads and writes live here: timelines
and their nodes, branch canon, creator profiles, the character bible, and the
usage/quota tables used by request governance.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from storyloom.observability.logging import get_logger

logger = get_logger(__name__)

REQUIRED_TABLES: dict[str, list[str]] = {
    "timelines": ["id", "user_id", "system_prompt", "visual_theme", "vision_blurb"],
    "timeline_nodes": ["id", "timeline_id", "parent_id", "title", "content", "image_url"],
    "branch_canon": ["branch_id", "timeline_id", "setting", "characters", "tone"],
    "creator_profiles": ["user_id", "exploration_ratio"],
    "character_bible": ["id", "timeline_id", "name", "aliases", "appearance_guide"],
    "usage_records": ["id", "user_id", "endpoint", "created_at"],
    "user_quotas": ["user_id", "daily_requests", "monthly_requests"],
}


def init_database(db_path: Path) -> None:
    """
    Initialize database with schema (idempotent)

    Creates the parent directory if needed. JSON-valued columns (canon lists,
    profile lists, aliases) are stored as TEXT and decoded by the storage layer.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path)

    conn.executescript("""
        CREATE TABLE IF NOT EXISTS timelines (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            title TEXT NOT NULL DEFAULT '',
            system_prompt TEXT,
            visual_theme TEXT,
            vision_blurb TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS timeline_nodes (
            id TEXT PRIMARY KEY,
            timeline_id TEXT NOT NULL,
            parent_id TEXT,
            branch_id TEXT,
            title TEXT NOT NULL DEFAULT '',
            content TEXT NOT NULL DEFAULT '',
            label TEXT,
            image_url TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (timeline_id) REFERENCES timelines(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_timeline_nodes_timeline
        ON timeline_nodes(timeline_id);

        CREATE INDEX IF NOT EXISTS idx_timeline_nodes_parent
        ON timeline_nodes(parent_id);

        CREATE TABLE IF NOT EXISTS branch_canon (
            branch_id TEXT PRIMARY KEY,
            timeline_id TEXT NOT NULL,
            setting TEXT,
            characters TEXT,  -- JSON array
            tone TEXT,
            themes TEXT,      -- JSON array
            rules TEXT,       -- JSON array
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS creator_profiles (
            user_id TEXT PRIMARY KEY,
            preferred_genres TEXT,   -- JSON array
            writing_style TEXT,
            favorite_themes TEXT,    -- JSON array
            disliked_elements TEXT,  -- JSON array
            exploration_ratio REAL,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS character_bible (
            id TEXT PRIMARY KEY,
            timeline_id TEXT NOT NULL,
            name TEXT NOT NULL,
            aliases TEXT,  -- JSON array
            description TEXT,
            appearance_guide TEXT,
            reference_image_url TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (timeline_id) REFERENCES timelines(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_character_bible_timeline
        ON character_bible(timeline_id);

        -- One row per completed AI request; quota counts read from here
        CREATE TABLE IF NOT EXISTS usage_records (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            endpoint TEXT NOT NULL,
            tokens_in INTEGER,
            tokens_out INTEGER,
            estimated_cost_usd REAL,
            created_at REAL NOT NULL  -- unix seconds
        );

        CREATE INDEX IF NOT EXISTS idx_usage_records_user_created
        ON usage_records(user_id, created_at);

        CREATE TABLE IF NOT EXISTS user_quotas (
            user_id TEXT PRIMARY KEY,
            daily_requests INTEGER,
            monthly_requests INTEGER
        );
    """)

    conn.commit()
    conn.close()

    logger.info("Database initialized: %s", db_path)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Validate database has expected schema

    Raises:
        ValueError: If tables or columns are missing
    """
    cursor = conn.cursor()
    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    existing_tables = {row[0] for row in cursor.fetchall()}

    missing_tables = set(REQUIRED_TABLES) - existing_tables
    if missing_tables:
        raise ValueError(f"Database missing tables: {missing_tables}")

    for table, required_cols in REQUIRED_TABLES.items():
        # Identifiers cannot be parameterized; names come from the dict above
        cursor.execute(f"PRAGMA table_info({table})")
        existing_cols = {row[1] for row in cursor.fetchall()}
        missing_cols = set(required_cols) - existing_cols
        if missing_cols:
            raise ValueError(f"Table '{table}' missing columns: {missing_cols}")

    return True
