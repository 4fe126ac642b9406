"""HTTP entry point for the storybook illustration service.

Terms used below:
- task: one "illustrate every page of this storyboard" job, advanced one page
  per ``continue`` call by whoever is polling it.
- app.state: where the storage, executor and controller built by
  ``create_app`` live for the route handlers.
- BackgroundTasks: callables FastAPI runs once the response is on the wire;
  used for the retention sweep.
"""

from __future__ import annotations

import logging
from pathlib import Path

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from .app.auth import current_user_id
from .app.blob import build_blob_store_from_env
from .app.config import ServiceConfig, load_env_file
from .app.controller import TaskController
from .app.errors import StorybookError
from .app.executor import StepExecutor
from .app.images import build_image_generator_from_env
from .app.models import (
    GeneratePageRequest,
    PageImageResponse,
    StartTaskRequest,
    StartTaskResponse,
    StepResult,
    TaskView,
)
from .app.prompts import STYLE_PROMPTS
from .app.storage import PostgresTaskStorage

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Build a fully wired app from the environment (and a local .env, if any).

    Tests call this once per test so every app gets fresh collaborators.
    """
    load_env_file(Path(".env"))
    config = ServiceConfig.from_env()
    if not config.jwt_secret:
        logger.warning("STORYBOOK_JWT_SECRET is not set; every authenticated route will reject")

    storage = PostgresTaskStorage(database_url=config.database_url)
    executor = StepExecutor(
        storage=storage,
        image_generator=build_image_generator_from_env(),
        blob_store=build_blob_store_from_env(),
        image_timeout_s=config.image_timeout_s,
    )
    controller = TaskController(
        storage=storage,
        executor=executor,
        retention_days=config.task_retention_days,
        fail_task_on_first_step_error=config.fail_task_on_first_step_error,
    )

    app = FastAPI(title="storybook_api", version="0.1.0")
    app.state.config = config
    app.state.storage = storage
    app.state.executor = executor
    app.state.controller = controller
    app.state.jwt_secret = config.jwt_secret

    @app.exception_handler(StorybookError)
    def storybook_error_handler(_: Request, exc: StorybookError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})

    # Liveness probes differ between hosts; all three answer the same way.
    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/styles")
    def list_styles() -> dict[str, dict[str, str]]:
        return {"styles": dict(STYLE_PROMPTS)}

    @app.post("/api/create/images", response_model=StartTaskResponse)
    def start_task(
        payload: StartTaskRequest,
        background_tasks: BackgroundTasks,
        user_id: str = Depends(current_user_id),
    ) -> StartTaskResponse:
        response = app.state.controller.start(user_id, payload)
        background_tasks.add_task(app.state.controller.sweep_stale_tasks)
        return response

    @app.get("/api/create/task/{task_id}", response_model=TaskView)
    def get_task(task_id: str, user_id: str = Depends(current_user_id)) -> TaskView:
        return app.state.controller.status(user_id, task_id)

    @app.post("/api/create/task/{task_id}/continue", response_model=StepResult)
    def advance_task(task_id: str, user_id: str = Depends(current_user_id)) -> StepResult:
        return app.state.controller.advance(user_id, task_id)

    @app.post("/api/create/image", response_model=PageImageResponse)
    def generate_page(
        payload: GeneratePageRequest,
        user_id: str = Depends(current_user_id),
    ) -> PageImageResponse:
        return app.state.controller.generate_page(user_id, payload)

    return app


# ``uvicorn storybook_api.main:app``
app = create_app()
