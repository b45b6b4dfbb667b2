from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

_DATA_URI_PATTERN = re.compile(r"^data:(?P<mime>[^;,]+)?(?:;[^,]*)?;base64,(?P<data>.*)$", re.S)


class Message(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Literal["system", "user", "assistant"]
    content: str | list[dict[str, Any]] | None = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: str | None = None
    messages: list[Message] = Field(default_factory=list)
    stream: bool = False
    size: str | None = None
    enable_thinking: bool | None = None
    thinking_budget: Any = None


@dataclass(slots=True, frozen=True)
class TextPart:
    text: str


@dataclass(slots=True, frozen=True)
class InlineImagePart:
    data: bytes
    mime_type: str = "image/png"

    @property
    def extension(self) -> str:
        _, _, subtype = self.mime_type.partition("/")
        return subtype.split("+", 1)[0].strip().lower() or "png"


@dataclass(slots=True, frozen=True)
class ImageReferencePart:
    url: str


ContentPart = TextPart | InlineImagePart | ImageReferencePart


def decode_data_uri(uri: str) -> InlineImagePart:
    match = _DATA_URI_PATTERN.match(uri.strip())
    if match is None:
        raise ValueError("not a base64 data URI")
    mime_type = (match.group("mime") or "image/png").strip().lower()
    try:
        data = base64.b64decode(match.group("data"), validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid base64 payload: {exc}") from exc
    if not data:
        raise ValueError("empty image payload")
    return InlineImagePart(data=data, mime_type=mime_type)


def _image_part_from_url(url: str) -> ContentPart:
    if url.startswith("data:"):
        try:
            return decode_data_uri(url)
        except ValueError:
            return TextPart(text="[Invalid image data]")
    return ImageReferencePart(url=url)


def _image_url_value(item: dict[str, Any]) -> str | None:
    raw = item.get("image_url")
    if isinstance(raw, dict):
        raw = raw.get("url")
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    return None


def parse_content_parts(content: str | list[dict[str, Any]] | None) -> list[ContentPart]:
    if content is None:
        return []
    if isinstance(content, str):
        return [TextPart(text=content)]

    parts: list[ContentPart] = []
    for item in content:
        if not isinstance(item, dict):
            continue
        item_type = item.get("type")
        if item_type == "text":
            text = item.get("text")
            if isinstance(text, str):
                parts.append(TextPart(text=text))
        elif item_type == "image_url":
            url = _image_url_value(item)
            if url:
                parts.append(_image_part_from_url(url))
        elif item_type == "image":
            image = item.get("image")
            if isinstance(image, str) and image.strip():
                parts.append(_image_part_from_url(image.strip()))
    return parts


def flatten_text(content: str | list[dict[str, Any]] | None) -> str:
    if isinstance(content, str):
        return content
    return "".join(
        part.text for part in parse_content_parts(content) if isinstance(part, TextPart)
    )
