from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from typing import Any

from .blob import BlobStore
from .errors import (
    ImageGenerationError,
    ImageGenerationTimeoutError,
    MissingPromptError,
)
from .images import GeneratedImage, ImageGenerator
from .models import PageImage, StepResult, StoryboardPage, Task, TaskResult, compute_progress
from .prompts import STYLE_PROMPTS, build_illustration_prompt

logger = logging.getLogger(__name__)

PREVIEW_STEP = "preview"


class StepExecutor:
    """Runs at most one page of a generate_images task per call.

    All coordination between concurrent callers goes through the storage
    layer's conditional counter update; this class keeps no per-task state.
    """

    def __init__(
        self,
        *,
        storage: Any,
        image_generator: ImageGenerator,
        blob_store: BlobStore,
        image_timeout_s: float = 50.0,
        styles: Mapping[str, str] = STYLE_PROMPTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.image_generator = image_generator
        self.blob_store = blob_store
        self.image_timeout_s = image_timeout_s
        self.styles = styles
        self.clock = clock

    def advance(self, task: Task) -> StepResult:
        # 1) Terminal tasks never do more work.
        if task.is_terminal:
            return self._snapshot(task)

        # 2) Reserve the next page number. The new counter value is the page.
        reservation = self.storage.reserve_next_item(task.id)
        if reservation is None:
            logger.info("task_advance event=nothing_left task_id=%s", task.id)
            return self._complete(task.id)

        page_number = reservation.completed_items
        total_items = reservation.total_items
        logger.info(
            "task_advance event=reserved task_id=%s page_number=%d total_items=%d",
            task.id,
            page_number,
            total_items,
        )
        # 3) Counter ran past the storyboard.
        if page_number > total_items:
            return self._complete(task.id)

        # 4) Page vanished (storyboard edited concurrently): nothing to do.
        page = self.storage.get_page(task.result.storyboard_id, page_number)
        if page is None:
            logger.info(
                "task_advance event=page_missing task_id=%s page_number=%d",
                task.id,
                page_number,
            )
            return self._complete(task.id)

        # 5) Skip pages that already have an image unless regeneration was asked for.
        if page.image_url and not task.result.force_regenerate:
            entry = PageImage(page_number=page_number, image_url=page.image_url)
            result = self.storage.append_page(task.id, entry, generated=False)
            logger.info(
                "task_advance event=skipped task_id=%s page_number=%d",
                task.id,
                page_number,
            )
            return self._step_result(
                task.id,
                entry,
                result,
                completed_items=page_number,
                total_items=total_items,
                skipped=True,
            )

        # 6) Generate. Any failure hands the page back to the next advance call.
        try:
            generated = self.generate_page_image(
                page,
                style=task.result.style,
                work_id=task.result.work_id,
            )
        except Exception as exc:
            self._rollback(task.id, page_number, exc)
            raise

        entry = PageImage(page_number=page_number, image_url=generated.source_url)
        result = self.storage.append_page(task.id, entry, generated=True)
        logger.info(
            "task_advance event=generated task_id=%s page_number=%d completed_items=%d "
            "total_items=%d",
            task.id,
            page_number,
            page_number,
            total_items,
        )
        return self._step_result(
            task.id,
            entry,
            result,
            completed_items=page_number,
            total_items=total_items,
            skipped=False,
        )

    def generate_page_image(
        self,
        page: StoryboardPage,
        *,
        style: str,
        work_id: str | None,
    ) -> GeneratedImage:
        """Generate, upload and store one page's illustration.

        Returns the stored image: ``source_url`` is the final public blob URL.
        """
        if not page.image_prompt or not page.image_prompt.strip():
            raise MissingPromptError(
                f"Page {page.page_number} is missing its scene description (image_prompt)"
            )

        prompt = build_illustration_prompt(page.image_prompt, style, styles=self.styles)
        provider_image = self._generate_with_timeout(prompt)

        millis = int(self.clock() * 1000)
        path = f"storybook/{work_id or 'unknown'}/page-{page.page_number}-{millis}.png"
        try:
            final_url = self.blob_store.upload_from_url(provider_image.source_url, path)
        except Exception as exc:  # noqa: BLE001
            raise ImageGenerationError(f"Image upload failed: {exc}") from exc

        old_image_url = page.image_url
        self.storage.set_page_image(page.id, final_url)
        if old_image_url and old_image_url != final_url:
            self._delete_quietly(old_image_url)
        return GeneratedImage(source_url=final_url, model=provider_image.model)

    def _generate_with_timeout(self, prompt: str) -> GeneratedImage:
        pool = ThreadPoolExecutor(max_workers=1)
        future = pool.submit(
            self.image_generator.generate_image,
            prompt=prompt,
            timeout_s=self.image_timeout_s,
        )
        try:
            image = future.result(timeout=self.image_timeout_s)
        except TimeoutError as exc:
            raise ImageGenerationTimeoutError() from exc
        except ImageGenerationError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ImageGenerationError(f"Image generation failed: {exc}") from exc
        finally:
            # Never wait on a provider call that outlived its budget.
            pool.shutdown(wait=False, cancel_futures=True)
        if not image.source_url:
            raise ImageGenerationError("Image provider returned no image")
        return image

    def _delete_quietly(self, url: str) -> None:
        if not self.blob_store.owns(url):
            return
        try:
            self.blob_store.delete(url)
        except Exception as exc:  # noqa: BLE001
            logger.warning("blob_delete event=failed url=%s reason=%s", url, exc)

    def _rollback(self, task_id: str, page_number: int, exc: Exception) -> None:
        logger.warning(
            "task_advance event=rollback task_id=%s page_number=%d reason=%s",
            task_id,
            page_number,
            exc,
        )
        try:
            self.storage.release_reservation(task_id)
        except Exception as rollback_exc:  # noqa: BLE001
            logger.error(
                "task_advance event=rollback_failed task_id=%s page_number=%d reason=%s",
                task_id,
                page_number,
                rollback_exc,
            )

    def _complete(self, task_id: str) -> StepResult:
        return self._snapshot(self._close(task_id))

    def _close(self, task_id: str) -> Task:
        """Mark the task completed and move the parent work on to the preview step."""
        task = self.storage.mark_completed(task_id)
        if task.status == "completed" and task.result.work_id:
            self.storage.set_work_current_step(task.result.work_id, PREVIEW_STEP)
        logger.info("task_advance event=completed task_id=%s status=%s", task_id, task.status)
        return task

    def _step_result(
        self,
        task_id: str,
        entry: PageImage,
        result: TaskResult,
        *,
        completed_items: int,
        total_items: int,
        skipped: bool,
    ) -> StepResult:
        status = "processing"
        if completed_items >= total_items:
            status = self._close(task_id).status
        return StepResult(
            task_id=task_id,
            status=status,
            page_number=entry.page_number,
            image_url=entry.image_url,
            skipped=skipped,
            progress=compute_progress(completed_items, total_items),
            completed_items=completed_items,
            total_items=total_items,
            pages=result.pages,
            generated_pages=result.generated_pages,
        )

    @staticmethod
    def _snapshot(task: Task) -> StepResult:
        return StepResult(
            task_id=task.id,
            status=task.status,
            progress=task.progress,
            completed_items=task.completed_items,
            total_items=task.total_items,
            pages=task.result.pages,
            generated_pages=task.result.generated_pages,
            error=task.error,
        )
