"""Domain errors raised by the task pipeline and mapped to HTTP responses in main.py."""

from __future__ import annotations


class StorybookError(Exception):
    """Base error: carries the HTTP status and a stable machine-readable code."""

    status_code = 500
    code = "SERVER_ERROR"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_detail(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class AuthenticationRequiredError(StorybookError):
    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Please sign in first"


class PermissionDeniedError(StorybookError):
    status_code = 403
    code = "PERMISSION_DENIED"
    default_message = "You do not have access to this resource"


class TaskNotFoundError(StorybookError):
    status_code = 404
    code = "TASK_NOT_FOUND"
    default_message = "Task not found"


class StoryboardNotFoundError(StorybookError):
    status_code = 404
    code = "STORYBOARD_NOT_FOUND"
    default_message = "Storyboard not found"


class PageNotFoundError(StorybookError):
    status_code = 404
    code = "PAGE_NOT_FOUND"
    default_message = "Page not found"


class NoPagesError(StorybookError):
    status_code = 400
    code = "NO_PAGES"
    default_message = "Storyboard has no pages"


class ImageGenerationError(StorybookError):
    """Retryable failure of one page's generate/upload/update sequence."""

    status_code = 502
    code = "IMAGE_GENERATION_FAILED"
    default_message = "Image generation failed"


class ImageGenerationTimeoutError(ImageGenerationError):
    status_code = 504
    code = "IMAGE_GENERATION_TIMEOUT"
    default_message = "Image generation timed out, please retry"


class MissingPromptError(ImageGenerationError):
    status_code = 422
    code = "MISSING_PROMPT"
    default_message = "Page is missing its scene description"
