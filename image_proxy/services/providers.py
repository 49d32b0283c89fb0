"""Per-provider request construction and response extraction.

Two request/response families are supported:

* chat-completion (``sora`` and any unknown model tag): an OpenAI-style
  ``/v1/chat/completions`` body whose reply text embeds the image URL.
* multimodal generation (``gemini``): a ``generateContent`` body whose reply
  carries the image as inline base64 data.

Extraction never raises. Unexpected shapes become a failed ``Outcome`` with
the raw body attached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..config import Settings
from ..models import GenerationRequest
from ..storage.schema import Outcome
from ..utils.image_url import find_image_url, to_data_uri
from .images import ImageLoader

logger = logging.getLogger(__name__)

SORA_MODELS = {"sora", "sora_image"}
GEMINI_MODELS = {"gemini"}

# Markers the chat back-end uses for moderation or generation failures.
FAILURE_MARKERS = ("生成失败", "失败原因")

NO_IMAGE_ERROR = "No image URL in response"


@dataclass
class ProviderRequest:
    url: str
    body: Dict[str, Any]


class ProviderAdapter:
    name = "base"

    def __init__(self, url: str):
        self.url = url

    async def build_request(
        self, request: GenerationRequest, images: Optional[ImageLoader] = None
    ) -> ProviderRequest:
        raise NotImplementedError

    def extract(self, data: Any) -> Outcome:
        if not isinstance(data, dict):
            return Outcome.failed("Unexpected response shape", "extraction", raw_response=data)
        try:
            result = self._extract(data)
        except (AttributeError, IndexError, KeyError, TypeError) as exc:
            logger.warning("%s extraction hit an unexpected shape: %s", self.name, exc)
            result = None
        if result is not None:
            return result
        fallback = data.get("image_url")
        if isinstance(fallback, str) and fallback:
            return Outcome.succeeded(fallback, raw_response=data)
        return Outcome.failed(NO_IMAGE_ERROR, "extraction", raw_response=data)

    def _extract(self, data: Dict[str, Any]) -> Optional[Outcome]:
        raise NotImplementedError


class ChatCompletionAdapter(ProviderAdapter):
    name = "chat"

    def __init__(self, url: str, model_name: str):
        super().__init__(url)
        self.model_name = model_name

    async def build_request(self, request, images=None):
        text = request.text_prompt
        if request.image_urls:
            content: Any = [{"type": "text", "text": text}]
            for url in request.image_urls:
                content.append({"type": "image_url", "image_url": {"url": url}})
        else:
            content = text
        body = {
            "model": self.model_name,
            "messages": [{"role": "user", "content": content}],
        }
        return ProviderRequest(url=self.url, body=body)

    def _extract(self, data):
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        message = choices[0].get("message") or {}
        content = self._message_text(message.get("content"))
        if not content:
            return None

        if any(marker in content for marker in FAILURE_MARKERS):
            return Outcome.failed(content, "extraction", raw_response=data)

        url = find_image_url(content)
        if url:
            return Outcome.succeeded(url, raw_response=data)
        return None

    @staticmethod
    def _message_text(content) -> str:
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            texts = [p.get("text") for p in content if isinstance(p, dict)]
            return " ".join(t for t in texts if isinstance(t, str))
        return ""


class GeminiAdapter(ProviderAdapter):
    name = "gemini"

    async def build_request(self, request, images=None):
        parts: List[Dict[str, Any]] = [{"text": request.text_prompt}]
        for reference in request.image_urls:
            if images is None:
                parts.append({"inline_data": {"mime_type": "image/jpeg", "data": reference}})
                continue
            inline = await images.load(reference, task_id=request.task_id)
            if not inline.encoded:
                logger.warning(
                    "[%s] Sending image reference to %s unencoded: %s", request.task_id, self.name, reference
                )
            parts.append({"inline_data": {"mime_type": inline.mime_type, "data": inline.data}})
        body = {"contents": [{"role": "user", "parts": parts}]}
        return ProviderRequest(url=self.url, body=body)

    def _extract(self, data):
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return None
        parts = (candidates[0].get("content") or {}).get("parts") or []

        url = None
        for part in parts:
            if not isinstance(part, dict):
                continue
            inline = part.get("inlineData") or part.get("inline_data") or {}
            if not isinstance(inline, dict):
                inline = {}
            mime_type = inline.get("mimeType") or inline.get("mime_type")
            payload = inline.get("data")
            if mime_type and payload:
                return Outcome.succeeded(to_data_uri(mime_type, payload), raw_response=data)
            if url is None:
                url = find_image_url(part.get("text"))

        if url:
            return Outcome.succeeded(url, raw_response=data)
        return None


def select_provider(model: str, settings: Settings) -> ProviderAdapter:
    if model in SORA_MODELS:
        return ChatCompletionAdapter(settings.chat_completions_url, settings.sora_model_name)
    if model in GEMINI_MODELS:
        return GeminiAdapter(settings.gemini_generate_url)
    return ChatCompletionAdapter(settings.chat_completions_url, model)
