"""Pydantic models shared across API, controller, step executor, and storage.

Beginner terms used in this file:
- Model: a typed schema class used for validation/serialization.
- Alias: the camelCase name a field uses on the wire (``taskId``) while Python
  code keeps the snake_case attribute (``task_id``).
- computed_field: a read-only value derived from other fields and included
  in the serialized output.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

# Task lifecycle states. Only processing -> completed and processing -> failed exist.
TaskStatus = Literal["processing", "completed", "failed"]
TaskKind = Literal["generate_images"]
ArtStyle = Literal["watercolor", "cartoon", "oil", "anime", "flat", "3d"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


class CamelModel(BaseModel):
    """Base model: snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PageImage(CamelModel):
    """One ``{pageNumber, imageUrl}`` entry of a task result."""

    page_number: int
    image_url: str


class TaskResult(CamelModel):
    """Accumulating payload stored with every generate_images task."""

    storyboard_id: str
    work_id: str | None = None
    style: str
    force_regenerate: bool = False
    # Every page a step touched, skipped pages included.
    pages: list[PageImage] = Field(default_factory=list)
    # Only pages for which a new illustration was produced.
    generated_pages: list[PageImage] = Field(default_factory=list)


class Task(CamelModel):
    """Canonical task record shape returned by storage."""

    id: str
    owner_id: str
    kind: TaskKind = "generate_images"
    status: TaskStatus = "processing"
    total_items: int = Field(ge=0)
    completed_items: int = Field(default=0, ge=0)
    result: TaskResult
    error: str | None = None
    created_at: datetime
    updated_at: datetime

    @computed_field  # type: ignore[prop-decorator]
    @property
    def progress(self) -> int:
        return compute_progress(self.completed_items, self.total_items)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class StoryboardRef(BaseModel):
    """Storyboard joined with its parent work and the owning user."""

    id: str
    work_id: str
    owner_id: str


class StoryboardPage(BaseModel):
    """Per-page generation state. ``image_url`` is None until generated."""

    id: str
    storyboard_id: str
    page_number: int = Field(ge=1)
    text: str = ""
    image_prompt: str | None = None
    image_url: str | None = None


class Reservation(BaseModel):
    """Outcome of the conditional ``completed_items + 1`` update."""

    completed_items: int
    total_items: int
    status: TaskStatus


class StartTaskRequest(CamelModel):
    """Request body for POST /api/create/images."""

    storyboard_id: str = Field(min_length=1)
    style: ArtStyle
    # None means "decide from whether pages already have images".
    force_regenerate: bool | None = None


class StartTaskResponse(CamelModel):
    task_id: str
    status: TaskStatus
    total_pages: int


class TaskView(CamelModel):
    """Response body for GET /api/create/task/{task_id}."""

    task_id: str
    kind: TaskKind
    status: TaskStatus
    progress: int
    total_items: int
    completed_items: int
    result: TaskResult
    error: str | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_task(cls, task: Task) -> TaskView:
        return cls(
            task_id=task.id,
            kind=task.kind,
            status=task.status,
            progress=task.progress,
            total_items=task.total_items,
            completed_items=task.completed_items,
            result=task.result,
            error=task.error,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )


class StepResult(CamelModel):
    """Response body for POST /api/create/task/{task_id}/continue."""

    task_id: str
    status: TaskStatus
    page_number: int | None = None
    image_url: str | None = None
    skipped: bool = False
    progress: int
    completed_items: int
    total_items: int
    pages: list[PageImage] = Field(default_factory=list)
    generated_pages: list[PageImage] = Field(default_factory=list)
    error: str | None = None


class GeneratePageRequest(CamelModel):
    """Request body for POST /api/create/image."""

    storyboard_id: str = Field(min_length=1)
    page_number: int = Field(ge=1)
    style: ArtStyle


class PageImageResponse(CamelModel):
    page_number: int
    image_url: str
    model: str | None = None


def compute_progress(completed_items: int, total_items: int) -> int:
    """Percentage of attempted steps, clamped to 0..100 and rounded half up."""
    if total_items <= 0:
        return 0
    bounded = min(max(completed_items, 0), total_items)
    return (200 * bounded + total_items) // (2 * total_items)


def dump_result(result: TaskResult) -> dict[str, Any]:
    """Serialize a result payload with wire (camelCase) keys for JSON storage."""
    return result.model_dump(mode="json", by_alias=True)
