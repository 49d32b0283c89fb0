"""Turns input image references into inline base64 payloads."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass

import httpx

from ..utils.image_url import split_data_uri

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/jpeg"


@dataclass
class InlineImage:
    mime_type: str
    data: str  # base64 payload, or the original reference when encoding failed
    encoded: bool = True


class ImageLoader:
    def __init__(self, client: httpx.AsyncClient, timeout_seconds: float = 30.0):
        self.client = client
        self.timeout_seconds = timeout_seconds

    async def load(self, reference: str, task_id: str = "-") -> InlineImage:
        parsed = split_data_uri(reference)
        if parsed:
            return InlineImage(mime_type=parsed[0], data=parsed[1])
        if not reference.lower().startswith(("http://", "https://")):
            # Already a bare base64 payload.
            return InlineImage(mime_type=DEFAULT_MIME_TYPE, data=reference)

        logger.info("[%s] Converting image URL to base64: %s", task_id, reference)
        try:
            response = await self.client.get(
                reference, timeout=self.timeout_seconds, follow_redirects=True
            )
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning(
                "[%s] Failed to convert image to base64, passing URL through: %s", task_id, exc
            )
            return InlineImage(mime_type=DEFAULT_MIME_TYPE, data=reference, encoded=False)

        mime_type = response.headers.get("content-type", "").split(";")[0].strip()
        if not mime_type.startswith("image/"):
            mime_type = DEFAULT_MIME_TYPE
        payload = base64.b64encode(response.content).decode("ascii")
        logger.info("[%s] Converted image to base64, length: %d", task_id, len(payload))
        return InlineImage(mime_type=mime_type, data=payload)
