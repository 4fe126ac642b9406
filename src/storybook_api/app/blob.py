"""Blob storage for generated illustrations.

Provider images are short-lived URLs, so every image is downloaded and copied
into durable public storage before a page row points at it.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Protocol
from urllib import error, parse, request

from .config import env_float

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    def upload_from_url(self, source_url: str, path: str) -> str: ...

    def delete(self, url: str) -> None: ...

    def owns(self, url: str) -> bool: ...


class VercelBlobStore:
    """Vercel Blob REST client (public PUT + batch delete)."""

    API_VERSION = "7"

    def __init__(
        self,
        *,
        token: str,
        base_url: str = "https://blob.vercel-storage.com",
        host_marker: str = "vercel-storage.com",
        timeout_s: float = 20.0,
    ) -> None:
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.host_marker = host_marker
        self.timeout_s = timeout_s

    def owns(self, url: str) -> bool:
        host = parse.urlsplit(url).hostname if url else None
        return bool(host) and (host == self.host_marker or host.endswith("." + self.host_marker))

    def upload_from_url(self, source_url: str, path: str) -> str:
        data = self._download(source_url)
        url = f"{self.base_url}/{parse.quote(path.lstrip('/'))}"
        body = self._call(
            "PUT",
            url,
            data=data,
            headers={
                "x-content-type": "image/png",
                "x-add-random-suffix": "0",
            },
        )
        public_url = body.get("url")
        if not isinstance(public_url, str) or not public_url:
            raise ValueError("Blob upload response did not contain a url")
        return public_url

    def delete(self, url: str) -> None:
        self._call(
            "POST",
            f"{self.base_url}/delete",
            data=json.dumps({"urls": [url]}).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )

    def _download(self, source_url: str) -> bytes:
        try:
            with request.urlopen(source_url, timeout=self.timeout_s) as response:
                return response.read()
        except error.HTTPError as exc:
            raise ValueError(f"Image download failed ({exc.code}): {exc.reason}") from exc

    def _call(
        self,
        method: str,
        url: str,
        *,
        data: bytes,
        headers: dict[str, str],
    ) -> dict[str, Any]:
        req = request.Request(
            url=url,
            data=data,
            method=method,
            headers={
                "Authorization": f"Bearer {self.token}",
                "x-api-version": self.API_VERSION,
                **headers,
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise ValueError(f"Blob request failed ({exc.code}): {raw_error}") from exc
        if not raw:
            return {}
        parsed = json.loads(raw)
        return parsed if isinstance(parsed, dict) else {}


def build_blob_store_from_env() -> BlobStore:
    return VercelBlobStore(
        token=os.getenv("BLOB_READ_WRITE_TOKEN", "").strip(),
        base_url=os.getenv("STORYBOOK_BLOB_BASE_URL", "https://blob.vercel-storage.com"),
        host_marker=os.getenv("STORYBOOK_BLOB_HOST_MARKER", "vercel-storage.com"),
        timeout_s=env_float("STORYBOOK_BLOB_TIMEOUT_S", default=20.0),
    )


