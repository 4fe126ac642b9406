"""Entry points behind the task HTTP routes: start, status, advance, single page.

Every operation checks ownership before it touches state. Advance delegates
the real work to ``StepExecutor``; this module only resolves the caller's
task/storyboard and applies the start-time policies.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from .errors import (
    NoPagesError,
    PageNotFoundError,
    PermissionDeniedError,
    StoryboardNotFoundError,
    TaskNotFoundError,
)
from .executor import StepExecutor
from .models import (
    GeneratePageRequest,
    PageImageResponse,
    StartTaskRequest,
    StartTaskResponse,
    StepResult,
    StoryboardRef,
    Task,
    TaskResult,
    TaskView,
)

logger = logging.getLogger(__name__)


class TaskController:
    def __init__(
        self,
        *,
        storage: Any,
        executor: StepExecutor,
        retention_days: int = 3,
        fail_task_on_first_step_error: bool = False,
    ) -> None:
        self.storage = storage
        self.executor = executor
        self.retention_days = retention_days
        self.fail_task_on_first_step_error = fail_task_on_first_step_error

    def start(self, user_id: str, payload: StartTaskRequest) -> StartTaskResponse:
        storyboard = self._load_owned_storyboard(user_id, payload.storyboard_id)

        pages = self.storage.list_pages(storyboard.id)
        if not pages:
            raise NoPagesError()

        # Re-running "generate all" on an illustrated storyboard redoes every page
        # unless the caller says otherwise.
        has_existing_images = any(page.image_url for page in pages)
        force_regenerate = (
            payload.force_regenerate
            if payload.force_regenerate is not None
            else has_existing_images
        )
        logger.info(
            "task_start event=received storyboard_id=%s style=%s total_pages=%d "
            "has_existing_images=%s force_regenerate=%s",
            storyboard.id,
            payload.style,
            len(pages),
            has_existing_images,
            force_regenerate,
        )

        self.storage.set_work_art_style(storyboard.work_id, payload.style)
        task = self.storage.create_task(
            owner_id=user_id,
            total_items=len(pages),
            result=TaskResult(
                storyboard_id=storyboard.id,
                work_id=storyboard.work_id,
                style=payload.style,
                force_regenerate=force_regenerate,
            ),
        )

        # Eager first step so the first poll already has something to show.
        try:
            self.executor.advance(task)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "task_start event=first_step_failed task_id=%s fail_task=%s reason=%s",
                task.id,
                self.fail_task_on_first_step_error,
                exc,
            )
            if self.fail_task_on_first_step_error:
                self.storage.mark_failed(task.id, _error_message(exc))

        current = self.storage.get_task(task.id) or task
        logger.info(
            "task_start event=created task_id=%s status=%s completed_items=%d total_items=%d",
            current.id,
            current.status,
            current.completed_items,
            current.total_items,
        )
        return StartTaskResponse(
            task_id=current.id,
            status=current.status,
            total_pages=current.total_items,
        )

    def status(self, user_id: str, task_id: str) -> TaskView:
        return TaskView.from_task(self._load_owned_task(user_id, task_id))

    def advance(self, user_id: str, task_id: str) -> StepResult:
        task = self._load_owned_task(user_id, task_id)
        return self.executor.advance(task)

    def generate_page(self, user_id: str, payload: GeneratePageRequest) -> PageImageResponse:
        """Regenerate a single page outside of any task."""
        storyboard = self._load_owned_storyboard(user_id, payload.storyboard_id)
        page = self.storage.get_page(storyboard.id, payload.page_number)
        if page is None:
            raise PageNotFoundError(f"Page {payload.page_number} does not exist")

        image = self.executor.generate_page_image(
            page,
            style=payload.style,
            work_id=storyboard.work_id,
        )
        self.storage.set_work_art_style(storyboard.work_id, payload.style)
        logger.info(
            "page_generate event=generated storyboard_id=%s page_number=%d model=%s",
            storyboard.id,
            page.page_number,
            image.model,
        )
        return PageImageResponse(
            page_number=page.page_number,
            image_url=image.source_url,
            model=image.model,
        )

    def sweep_stale_tasks(self) -> int:
        """Delete tasks older than the retention window. Never raises."""
        cutoff = datetime.now(tz=UTC) - timedelta(days=self.retention_days)
        try:
            deleted = self.storage.delete_tasks_created_before(cutoff)
        except Exception as exc:  # noqa: BLE001
            logger.warning("task_sweep event=failed reason=%s", exc)
            return 0
        if deleted:
            logger.info("task_sweep event=deleted count=%d cutoff=%s", deleted, cutoff.isoformat())
        return deleted

    def _load_owned_task(self, user_id: str, task_id: str) -> Task:
        task = self.storage.get_task(task_id)
        if task is None:
            raise TaskNotFoundError()
        if task.owner_id != user_id:
            raise PermissionDeniedError("You do not have access to this task")
        return task

    def _load_owned_storyboard(self, user_id: str, storyboard_id: str) -> StoryboardRef:
        storyboard = self.storage.get_storyboard(storyboard_id)
        if storyboard is None:
            raise StoryboardNotFoundError()
        if storyboard.owner_id != user_id:
            raise PermissionDeniedError("You do not have access to this storyboard")
        return storyboard


def _error_message(exc: Exception) -> str:
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(exc) or exc.__class__.__name__
