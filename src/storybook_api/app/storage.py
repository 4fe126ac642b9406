"""PostgreSQL storage backend for image-generation tasks and storyboard pages.

Beginner terms:
- Conditional update: an UPDATE whose WHERE clause re-checks state, so two
  concurrent callers can never both succeed on the same precondition.
- RETURNING: makes an UPDATE hand back the row values it just wrote.
- JSONB append: ``array || array`` concatenation done inside the database,
  so two writers never overwrite each other's entries.
"""

from __future__ import annotations

import json
import secrets
import string
import threading
import time
from datetime import UTC, datetime
from typing import Any

from .models import (
    PageImage,
    Reservation,
    StoryboardPage,
    StoryboardRef,
    Task,
    TaskResult,
    dump_result,
)

_BASE36 = string.digits + string.ascii_lowercase


class PostgresTaskStorage:
    """Thread-safe PostgreSQL-backed storage for tasks and the pages they illustrate."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("database_url is required")
        self.database_url = database_url
        # One statement at a time per process; row-level atomicity comes from SQL.
        self._lock = threading.Lock()
        # psycopg is imported here so a missing driver fails with an install hint.
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()
        # Ensure the task table exists before serving requests.
        self.migrate()

    def migrate(self) -> None:
        """Create the task table and indexes if they do not already exist.

        works, storyboards and storyboard_pages belong to the surrounding
        application and are expected to exist already.
        """
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id VARCHAR(64) PRIMARY KEY,
                    user_id VARCHAR(36) NOT NULL,
                    type VARCHAR(50) NOT NULL,
                    status VARCHAR(20) NOT NULL DEFAULT 'processing',
                    total_items INTEGER NOT NULL DEFAULT 0,
                    completed_items INTEGER NOT NULL DEFAULT 0,
                    result JSONB,
                    error TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    CHECK (completed_items >= 0 AND completed_items <= total_items)
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_created_at
                ON tasks(created_at)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_user_id
                ON tasks(user_id)
                """)
            conn.commit()

    # ------------------------------------------------------------------ tasks

    def create_task(self, *, owner_id: str, total_items: int, result: TaskResult) -> Task:
        """Insert a new processing task and return it."""
        task_id = new_task_id()
        now = datetime.now(tz=UTC)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tasks (
                    id,
                    user_id,
                    type,
                    status,
                    total_items,
                    completed_items,
                    result,
                    error,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    task_id,
                    owner_id,
                    "generate_images",
                    "processing",
                    total_items,
                    0,
                    self._json_wrapper(dump_result(result)),
                    None,
                    now,
                    now,
                ),
            )
            conn.commit()
        created = self.get_task(task_id)
        if created is None:
            raise KeyError(f"Task {task_id} was not persisted")
        return created

    def get_task(self, task_id: str) -> Task | None:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = %s", (task_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def reserve_next_item(self, task_id: str) -> Reservation | None:
        """Atomically bump completed_items while the task is processing and not full.

        Returns None when the conditional update matched no row.
        """
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                UPDATE tasks
                SET completed_items = completed_items + 1,
                    updated_at = %s
                WHERE id = %s
                  AND status = 'processing'
                  AND completed_items < total_items
                RETURNING completed_items, total_items, status
                """,
                (datetime.now(tz=UTC), task_id),
            ).fetchone()
            conn.commit()
        if row is None:
            return None
        return Reservation(
            completed_items=row["completed_items"],
            total_items=row["total_items"],
            status=row["status"],
        )

    def release_reservation(self, task_id: str) -> bool:
        """Undo one reservation so the next advance retries the same page."""
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                UPDATE tasks
                SET completed_items = completed_items - 1,
                    updated_at = %s
                WHERE id = %s
                  AND status = 'processing'
                  AND completed_items > 0
                RETURNING completed_items
                """,
                (datetime.now(tz=UTC), task_id),
            ).fetchone()
            conn.commit()
        return row is not None

    def append_page(self, task_id: str, entry: PageImage, *, generated: bool) -> TaskResult:
        """Append ``entry`` to result.pages (and result.generatedPages) in one statement."""
        payload = self._json_wrapper([entry.model_dump(mode="json", by_alias=True)])
        pages_expr = """
            jsonb_set(
                COALESCE(result, '{}'::jsonb),
                '{pages}',
                COALESCE(result->'pages', '[]'::jsonb) || %(entry)s::jsonb,
                true
            )
        """
        if generated:
            set_expr = f"""
                jsonb_set(
                    {pages_expr},
                    '{{generatedPages}}',
                    COALESCE(result->'generatedPages', '[]'::jsonb) || %(entry)s::jsonb,
                    true
                )
            """
        else:
            set_expr = pages_expr
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE tasks
                SET result = {set_expr},
                    updated_at = %(now)s
                WHERE id = %(task_id)s
                RETURNING result
                """,
                {"entry": payload, "now": datetime.now(tz=UTC), "task_id": task_id},
            ).fetchone()
            conn.commit()
        if row is None:
            raise KeyError(f"Task {task_id} does not exist")
        return TaskResult.model_validate(self._parse_json_object(row["result"]))

    def mark_completed(self, task_id: str) -> Task:
        """processing -> completed; the counter is closed out at total_items."""
        return self._finish(task_id, status="completed", error=None)

    def mark_failed(self, task_id: str, error: str) -> Task:
        """processing -> failed with ``error``; terminal tasks are left untouched."""
        return self._finish(task_id, status="failed", error=error)

    def delete_tasks_created_before(self, cutoff: datetime) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.execute("DELETE FROM tasks WHERE created_at < %s", (cutoff,))
            deleted = cursor.rowcount
            conn.commit()
        return max(deleted, 0)

    # ------------------------------------------------------ storyboards/pages

    def get_storyboard(self, storyboard_id: str) -> StoryboardRef | None:
        """Storyboard joined with its work so ownership can be checked."""
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT sb.id, sb.work_id, w.user_id
                FROM storyboards sb
                JOIN works w ON sb.work_id = w.id
                WHERE sb.id = %s
                """,
                (storyboard_id,),
            ).fetchone()
        if row is None:
            return None
        return StoryboardRef(id=row["id"], work_id=row["work_id"], owner_id=row["user_id"])

    def list_pages(self, storyboard_id: str) -> list[StoryboardPage]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, storyboard_id, page_number, text, image_prompt, image_url
                FROM storyboard_pages
                WHERE storyboard_id = %s
                ORDER BY page_number
                """,
                (storyboard_id,),
            ).fetchall()
        return [self._row_to_page(row) for row in rows]

    def get_page(self, storyboard_id: str, page_number: int) -> StoryboardPage | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, storyboard_id, page_number, text, image_prompt, image_url
                FROM storyboard_pages
                WHERE storyboard_id = %s AND page_number = %s
                """,
                (storyboard_id, page_number),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_page(row)

    def set_page_image(self, page_id: str, image_url: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                "UPDATE storyboard_pages SET image_url = %s WHERE id = %s",
                (image_url, page_id),
            )
            conn.commit()

    def set_work_art_style(self, work_id: str, style: str) -> None:
        self._update_work(work_id, column="art_style", value=style)

    def set_work_current_step(self, work_id: str, step: str) -> None:
        self._update_work(work_id, column="current_step", value=step)

    # ---------------------------------------------------------------- helpers

    def _finish(self, task_id: str, *, status: str, error: str | None) -> Task:
        # Completion closes the counter out; failure keeps it where it stopped.
        counter_expr = "total_items" if status == "completed" else "completed_items"
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                UPDATE tasks
                SET status = %s,
                    completed_items = {counter_expr},
                    error = %s,
                    updated_at = %s
                WHERE id = %s AND status = 'processing'
                """,
                (status, error, datetime.now(tz=UTC), task_id),
            )
            conn.commit()
        refreshed = self.get_task(task_id)
        if refreshed is None:
            raise KeyError(f"Task {task_id} does not exist")
        return refreshed

    def _update_work(self, work_id: str, *, column: str, value: str) -> None:
        if column not in {"art_style", "current_step"}:
            raise ValueError(f"Unsupported work column: {column}")
        with self._lock, self._connect() as conn:
            conn.execute(
                f"UPDATE works SET {column} = %s, updated_at = %s WHERE id = %s",
                (value, datetime.now(tz=UTC), work_id),
            )
            conn.commit()

    def _connect(self) -> Any:
        """New connection per call; rows come back as dicts."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Return (psycopg, dict_row, Jsonb)."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Jsonb
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Jsonb

    @staticmethod
    def _parse_json_object(raw: Any) -> dict[str, Any]:
        """JSONB arrives decoded from psycopg; text columns still need parsing."""
        if isinstance(raw, str):
            parsed = json.loads(raw)
        else:
            parsed = raw
        if isinstance(parsed, dict):
            return parsed
        return {}

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_task(cls, row: Any) -> Task:
        return Task(
            id=row["id"],
            owner_id=row["user_id"],
            kind=row["type"],
            status=row["status"],
            total_items=row["total_items"],
            completed_items=row["completed_items"],
            result=TaskResult.model_validate(cls._parse_json_object(row["result"])),
            error=row["error"],
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @staticmethod
    def _row_to_page(row: Any) -> StoryboardPage:
        return StoryboardPage(
            id=row["id"],
            storyboard_id=row["storyboard_id"],
            page_number=row["page_number"],
            text=row["text"] or "",
            image_prompt=row["image_prompt"],
            image_url=row["image_url"],
        )


def new_task_id() -> str:
    """Opaque, roughly time-ordered id like ``task_m1x2y3z4abcdefgh``."""
    millis = int(time.time() * 1000)
    stamp = ""
    while millis:
        millis, digit = divmod(millis, 36)
        stamp = _BASE36[digit] + stamp
    suffix = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"task_{stamp}{suffix}"
