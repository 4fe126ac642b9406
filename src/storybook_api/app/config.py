"""Environment-driven settings for the storybook service.

Adapters (image provider, blob store) read their own variables through the
``env_*`` helpers below; ``ServiceConfig`` holds what ``create_app`` needs.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class ServiceConfig:
    database_url: str
    jwt_secret: str
    image_timeout_s: float = 50.0
    task_retention_days: int = 3
    fail_task_on_first_step_error: bool = False

    @classmethod
    def from_env(cls) -> ServiceConfig:
        database_url = os.getenv("STORYBOOK_DATABASE_URL", "").strip()
        if not database_url:
            raise RuntimeError("STORYBOOK_DATABASE_URL is required.")
        return cls(
            database_url=database_url,
            jwt_secret=os.getenv("STORYBOOK_JWT_SECRET", "").strip(),
            image_timeout_s=env_float("STORYBOOK_IMAGE_TIMEOUT_S", default=50.0),
            task_retention_days=env_int("STORYBOOK_TASK_RETENTION_DAYS", default=3),
            fail_task_on_first_step_error=env_flag("STORYBOOK_FAIL_TASK_ON_FIRST_STEP_ERROR"),
        )


def env_int(name: str, *, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def env_float(name: str, *, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def env_flag(name: str) -> bool:
    """``1`` enables; anything else (or unset) disables."""
    return os.getenv(name, "0").strip() == "1"


def load_env_file(path: Path) -> None:
    """Copy ``KEY=value`` lines from a local .env into os.environ.

    Variables that are already set are left alone. Blank lines, ``#`` comments
    and lines without ``=`` are ignored; one level of matching quotes is
    stripped from values.
    """
    if not path.is_file():
        return

    for line in path.read_text(encoding="utf-8").splitlines():
        entry = line.strip()
        if not entry or entry.startswith("#") or "=" not in entry:
            continue
        name, _, raw = entry.partition("=")
        name = name.strip()
        raw = raw.strip()
        if not name:
            continue
        if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in {'"', "'"}:
            raw = raw[1:-1]
        os.environ.setdefault(name, raw)
