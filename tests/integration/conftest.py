from __future__ import annotations

import os
import uuid
from collections.abc import Iterator
from dataclasses import dataclass

import pytest

from storybook_api.app.storage import PostgresTaskStorage

# works, storyboards and storyboard_pages are owned by the surrounding
# application; these are the columns the task pipeline reads and writes.
FIXTURE_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS works (
        id VARCHAR(64) PRIMARY KEY,
        user_id VARCHAR(36) NOT NULL,
        art_style VARCHAR(32),
        current_step VARCHAR(32),
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS storyboards (
        id VARCHAR(64) PRIMARY KEY,
        work_id VARCHAR(64) NOT NULL REFERENCES works(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS storyboard_pages (
        id VARCHAR(64) PRIMARY KEY,
        storyboard_id VARCHAR(64) NOT NULL REFERENCES storyboards(id) ON DELETE CASCADE,
        page_number INTEGER NOT NULL,
        text TEXT,
        image_prompt TEXT,
        image_url TEXT
    )
    """,
)


@dataclass
class SeededStoryboard:
    user_id: str
    work_id: str
    storyboard_id: str


@pytest.fixture
def database_url() -> str:
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip(
            "Set RUN_POSTGRES_INTEGRATION_TESTS=1 and STORYBOOK_DATABASE_URL "
            "to run integration tests against PostgreSQL."
        )
    database_url = os.getenv("STORYBOOK_DATABASE_URL")
    if not database_url:
        pytest.skip("STORYBOOK_DATABASE_URL is required for integration tests.")
    return database_url


@pytest.fixture
def pg_storage(database_url: str) -> PostgresTaskStorage:
    storage = PostgresTaskStorage(database_url=database_url)
    with storage._connect() as conn:
        for statement in FIXTURE_SCHEMA:
            conn.execute(statement)
        conn.commit()
    return storage


@pytest.fixture
def seeded_storyboard(pg_storage: PostgresTaskStorage) -> Iterator[SeededStoryboard]:
    suffix = uuid.uuid4().hex[:12]
    seeded = SeededStoryboard(
        user_id=f"user-{suffix}",
        work_id=f"work-{suffix}",
        storyboard_id=f"sb-{suffix}",
    )
    with pg_storage._connect() as conn:
        conn.execute(
            "INSERT INTO works (id, user_id) VALUES (%s, %s)",
            (seeded.work_id, seeded.user_id),
        )
        conn.execute(
            "INSERT INTO storyboards (id, work_id) VALUES (%s, %s)",
            (seeded.storyboard_id, seeded.work_id),
        )
        for page_number in (1, 2, 3):
            conn.execute(
                """
                INSERT INTO storyboard_pages (id, storyboard_id, page_number, text, image_prompt)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    f"{seeded.storyboard_id}-p{page_number}",
                    seeded.storyboard_id,
                    page_number,
                    f"Page {page_number}",
                    f"a lighthouse at dusk, scene {page_number}",
                ),
            )
        conn.commit()
    try:
        yield seeded
    finally:
        with pg_storage._connect() as conn:
            conn.execute("DELETE FROM tasks WHERE user_id = %s", (seeded.user_id,))
            conn.execute("DELETE FROM works WHERE id = %s", (seeded.work_id,))
            conn.commit()
