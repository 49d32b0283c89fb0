import re
from typing import Optional

IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "webp", "gif")

# Whitespace, quotes, brackets, parens, braces and angle brackets end a URL.
IMAGE_URL_PATTERN = re.compile(
    r"https?://[^\s\"'()\[\]{}<>]+\.(?:" + "|".join(IMAGE_EXTENSIONS) + r")",
    re.IGNORECASE,
)

def find_image_url(text) -> Optional[str]:
    if not isinstance(text, str) or not text:
        return None
    match = IMAGE_URL_PATTERN.search(text)
    return match.group(0) if match else None

def to_data_uri(mime_type: str, payload: str) -> str:
    return f"data:{mime_type};base64,{payload}"

def split_data_uri(uri: str) -> Optional[tuple[str, str]]:
    """Return ``(mime_type, base64_payload)`` for a base64 ``data:`` URI."""
    if not uri.startswith("data:") or ";base64," not in uri:
        return None
    header, payload = uri[len("data:"):].split(";base64,", 1)
    return header or "application/octet-stream", payload
