from __future__ import annotations

import json
import logging
import os
import socket
import time
from typing import Any, Protocol
from urllib import error, request

from pydantic import BaseModel

from .config import env_flag, env_float, env_int
from .errors import ImageGenerationError

logger = logging.getLogger(__name__)


class GeneratedImage(BaseModel):
    """Source image returned by a provider, before it is copied into blob storage."""

    source_url: str
    model: str


class ImageGenerator(Protocol):
    """Interface for text-to-image providers."""

    def generate_image(self, *, prompt: str, timeout_s: float) -> GeneratedImage: ...


class GLMImagesAdapter:
    """Small adapter for OpenAI-compatible ``/images/generations`` endpoints (GLM by default)."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "glm-image",
        base_url: str = "https://open.bigmodel.cn/api/paas/v4",
        max_retries: int = 0,
        backoff_s: float = 0.5,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def generate_image(self, *, prompt: str, timeout_s: float) -> GeneratedImage:
        if not self.api_key:
            raise ImageGenerationError("Image provider is not configured")
        payload = {"model": self.model, "prompt": prompt}
        response_json = self._request_with_retry(payload, timeout_s=timeout_s)
        source_url = self._extract_url(response_json)
        return GeneratedImage(source_url=source_url, model=self.model)

    def _request_with_retry(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        attempts = self.max_retries + 1
        failure: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return self._request(payload, timeout_s=timeout_s)
            except (error.URLError, ValueError) as exc:
                failure = exc
                logger.warning(
                    "image_request event=attempt_failed attempt=%d/%d model=%s reason=%s",
                    attempt,
                    attempts,
                    self.model,
                    exc,
                )
            if attempt < attempts and self.backoff_s > 0:
                time.sleep(self.backoff_s * attempt)
        if isinstance(failure, error.HTTPError):
            raise ImageGenerationError(f"Image provider error ({failure.code}): {failure.reason}")
        raise ImageGenerationError(f"Image provider request failed: {failure}")

    def _request(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        url = f"{self.base_url}/images/generations"
        if _trace_enabled():
            logger.info(
                "image_request event=trace_request model=%s url=%s timeout_s=%s prompt=%r",
                self.model,
                url,
                timeout_s,
                payload.get("prompt", ""),
            )
        req = request.Request(
            url=url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(exc.url, exc.code, raw_error, exc.headers, None) from exc
        except error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise TimeoutError(
                    f"Image provider did not answer within {timeout_s:.0f}s"
                ) from exc
            raise
        except (socket.timeout, TimeoutError) as exc:
            # Not retried: a second attempt would not fit in the step budget.
            raise TimeoutError(f"Image provider did not answer within {timeout_s:.0f}s") from exc
        if _trace_enabled():
            logger.info(
                "image_request event=trace_response model=%s bytes=%d", self.model, len(body)
            )
        return json.loads(body)

    @staticmethod
    def _extract_url(response_json: dict[str, Any]) -> str:
        data = response_json.get("data") or []
        if data and isinstance(data[0], dict):
            url = data[0].get("url")
            if isinstance(url, str) and url.strip():
                return url.strip()
        raise ImageGenerationError("Image provider returned no image")


def build_image_generator_from_env() -> ImageGenerator:
    provider = os.getenv("STORYBOOK_IMAGE_PROVIDER", "glm").lower()
    if provider != "glm":
        raise RuntimeError(f"Unsupported STORYBOOK_IMAGE_PROVIDER: {provider}")

    return GLMImagesAdapter(
        api_key=os.getenv("GLM_API_KEY", "").strip(),
        model=os.getenv("GLM_IMAGE_MODEL", "glm-image"),
        base_url=os.getenv("GLM_IMAGE_BASE_URL", "https://open.bigmodel.cn/api/paas/v4"),
        max_retries=env_int("STORYBOOK_IMAGE_MAX_RETRIES", default=0),
        backoff_s=env_float("STORYBOOK_IMAGE_BACKOFF_S", default=0.5),
    )


def _trace_enabled() -> bool:
    return env_flag("STORYBOOK_IMAGE_TRACE")
