"""Client-side poll loop that drives an image task to a terminal state.

``StorybookClient`` talks to the HTTP surface; ``ImagePollLoop`` repeatedly
calls the continue endpoint, tolerating a bounded run of consecutive errors,
and keeps a page -> image URL map that survives skipped and retried pages.

This is the client library for front ends and scripts that import it; the
service itself never calls it.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol
from urllib import error, request

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class StorybookApiError(Exception):
    """Non-2xx response (or transport failure) from the storybook API."""

    def __init__(self, status_code: int, detail: Any) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"storybook API error status={status_code} detail={detail}")


class PollingError(Exception):
    """Raised when the poll loop gives up after too many consecutive errors."""

    def __init__(self, message: str, *, last_error: Exception | None = None) -> None:
        self.last_error = last_error
        super().__init__(message)


class TaskApi(Protocol):
    def start(
        self, storyboard_id: str, style: str, force_regenerate: bool | None = None
    ) -> dict[str, Any]: ...

    def status(self, task_id: str) -> dict[str, Any]: ...

    def advance(self, task_id: str) -> dict[str, Any]: ...


class StorybookClient:
    """Thin JSON client for the task endpoints."""

    def __init__(self, *, base_url: str, token: str, timeout_s: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s

    def start(
        self, storyboard_id: str, style: str, force_regenerate: bool | None = None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"storyboardId": storyboard_id, "style": style}
        if force_regenerate is not None:
            payload["forceRegenerate"] = force_regenerate
        return self._request_json("POST", "/api/create/images", payload=payload)

    def status(self, task_id: str) -> dict[str, Any]:
        return self._request_json("GET", f"/api/create/task/{task_id}")

    def advance(self, task_id: str) -> dict[str, Any]:
        return self._request_json("POST", f"/api/create/task/{task_id}/continue")

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        raw_payload: bytes | None = None
        headers = {"Accept": "application/json", "Authorization": f"Bearer {self.token}"}
        if payload is not None:
            raw_payload = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = request.Request(
            url=f"{self.base_url}{path}", method=method, data=raw_payload, headers=headers
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                return _decode_body(response.read().decode("utf-8"))
        except error.HTTPError as exc:
            body = _decode_body(exc.read().decode("utf-8", errors="replace"))
            raise StorybookApiError(exc.code, body.get("detail", body)) from exc
        except error.URLError as exc:
            raise StorybookApiError(502, f"request failed: {exc.reason}") from exc


class PollState(BaseModel):
    """What a UI needs to render while a task is running."""

    task_id: str
    status: str = "processing"
    total_pages: int = 0
    completed_items: int = 0
    page_images: dict[int, str] = Field(default_factory=dict)
    generated_page_numbers: list[int] = Field(default_factory=list)
    error: str | None = None

    @property
    def progress(self) -> int:
        # Driven by new illustrations only so skipped pages do not inflate the bar.
        if self.total_pages <= 0:
            return 0
        generated = min(len(self.generated_page_numbers), self.total_pages)
        return (200 * generated + self.total_pages) // (2 * self.total_pages)

    @property
    def is_terminal(self) -> bool:
        return self.status in {"completed", "failed"}


class ImagePollLoop:
    def __init__(
        self,
        api: TaskApi,
        *,
        interval_s: float = 5.0,
        max_consecutive_errors: int = 5,
        resync_every: int = 3,
        sleep: Callable[[float], None] = time.sleep,
        on_update: Callable[[PollState], None] | None = None,
    ) -> None:
        self.api = api
        self.interval_s = interval_s
        self.max_consecutive_errors = max(1, max_consecutive_errors)
        self.resync_every = max(1, resync_every)
        self.sleep = sleep
        self.on_update = on_update

    def start_and_run(
        self, storyboard_id: str, style: str, force_regenerate: bool | None = None
    ) -> PollState:
        started = self.api.start(storyboard_id, style, force_regenerate)
        state = PollState(task_id=started["taskId"], total_pages=started.get("totalPages", 0))
        state.status = started.get("status", "processing")
        return self.run(state)

    def run(self, state: PollState) -> PollState:
        if state.is_terminal:
            # Start can finish a short storyboard; its page list only comes from status.
            self._sync_status(state)
            return state
        consecutive_errors = 0
        errors_since_sync = 0
        while not state.is_terminal:
            self.sleep(self.interval_s)
            try:
                step = self.api.advance(state.task_id)
            except Exception as exc:  # noqa: BLE001
                consecutive_errors += 1
                errors_since_sync += 1
                logger.warning(
                    "poll event=advance_failed task_id=%s consecutive_errors=%d reason=%s",
                    state.task_id,
                    consecutive_errors,
                    exc,
                )
                # The previous step may still be finishing upstream; re-read status.
                if errors_since_sync >= self.resync_every:
                    errors_since_sync = 0
                    self._sync_status(state)
                if consecutive_errors >= self.max_consecutive_errors:
                    self._sync_status(state)
                    if state.is_terminal:
                        break
                    raise PollingError(
                        f"Giving up on task {state.task_id} after "
                        f"{consecutive_errors} consecutive errors",
                        last_error=exc,
                    ) from exc
                continue

            consecutive_errors = 0
            errors_since_sync = 0
            self._merge_step(state, step)
            self._notify(state)
        return state

    def _sync_status(self, state: PollState) -> None:
        try:
            view = self.api.status(state.task_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("poll event=sync_failed task_id=%s reason=%s", state.task_id, exc)
            return
        state.status = view.get("status", state.status)
        state.total_pages = view.get("totalItems", state.total_pages)
        state.completed_items = view.get("completedItems", state.completed_items)
        state.error = view.get("error")
        result = view.get("result") or {}
        self._merge_pages(state, result.get("pages"), result.get("generatedPages"))
        self._notify(state)

    def _merge_step(self, state: PollState, step: dict[str, Any]) -> None:
        state.status = step.get("status", state.status)
        state.total_pages = step.get("totalItems", state.total_pages)
        state.completed_items = step.get("completedItems", state.completed_items)
        state.error = step.get("error")
        self._merge_pages(state, step.get("pages"), step.get("generatedPages"))
        page_number = step.get("pageNumber")
        image_url = step.get("imageUrl")
        if page_number is not None and image_url:
            state.page_images[int(page_number)] = image_url

    @staticmethod
    def _merge_pages(
        state: PollState,
        pages: list[dict[str, Any]] | None,
        generated_pages: list[dict[str, Any]] | None,
    ) -> None:
        for entry in pages or []:
            state.page_images[int(entry["pageNumber"])] = entry["imageUrl"]
        for entry in generated_pages or []:
            state.page_images[int(entry["pageNumber"])] = entry["imageUrl"]
            if int(entry["pageNumber"]) not in state.generated_page_numbers:
                state.generated_page_numbers.append(int(entry["pageNumber"]))

    def _notify(self, state: PollState) -> None:
        if self.on_update is not None:
            self.on_update(state)


def _decode_body(body: str) -> dict[str, Any]:
    if not body:
        return {}
    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        return {"raw": body}
    return parsed if isinstance(parsed, dict) else {"raw": parsed}
