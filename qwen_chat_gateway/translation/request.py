from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import uuid4

from qwen_chat_gateway.errors import GatewayError, ValidationError
from qwen_chat_gateway.modes import (
    ChatMode,
    ThinkingConfig,
    classify_mode,
    parse_base_model,
    resolve_thinking,
)
from qwen_chat_gateway.schemas import (
    ChatRequest,
    ImageReferencePart,
    InlineImagePart,
    Message,
    TextPart,
    flatten_text,
    parse_content_parts,
)
from qwen_chat_gateway.uploads.uploader import AssetUploader

logger = logging.getLogger("uvicorn.error")

MAX_EDIT_IMAGES = 3

ASPECT_RATIO_PRESETS = {
    "256x256": "1:1",
    "512x512": "1:1",
    "1024x1024": "1:1",
    "1792x1024": "16:9",
    "1024x1792": "9:16",
    "1280x720": "16:9",
    "720x1280": "9:16",
    "1920x1080": "16:9",
    "1080x1920": "9:16",
    "1024x768": "4:3",
    "768x1024": "3:4",
    "1536x1024": "3:2",
    "1024x1536": "2:3",
}

_SIZE_PATTERN = re.compile(r"^(\d+)\s*[x*×:]\s*(\d+)$")
_MARKDOWN_IMAGE_PATTERN = re.compile(r"!\[[^\]]*\]\(\s*([^)\s]+)\s*\)")


class SessionFactory(Protocol):
    async def create_session(self, token: str, base_model: str, mode: ChatMode) -> str: ...


@dataclass(slots=True)
class BackendRequest:
    body: dict[str, Any]
    mode: ChatMode
    base_model: str
    chat_id: str | None = None


def size_to_aspect_ratio(size: str | None, default: str = "1:1") -> str:
    if not size:
        return default
    normalized = size.strip().lower().replace(" ", "")
    if normalized in ASPECT_RATIO_PRESETS:
        return ASPECT_RATIO_PRESETS[normalized]
    match = _SIZE_PATTERN.match(normalized)
    if match is None:
        return default
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        return default
    divisor = math.gcd(width, height)
    return f"{width // divisor}:{height // divisor}"


def _default_feature_config() -> dict[str, Any]:
    return {"output_schema": "phase", "thinking_enabled": False}


def _backend_message(role: str, content: Any) -> dict[str, Any]:
    return {
        "role": role,
        "content": content,
        "chat_type": ChatMode.TEXT.value,
        "extra": {},
        "feature_config": _default_feature_config(),
    }


def _message_image_urls(message: dict[str, Any]) -> list[str]:
    content = message.get("content")
    urls: list[str] = []
    if isinstance(content, str):
        urls.extend(_MARKDOWN_IMAGE_PATTERN.findall(content))
    elif isinstance(content, list):
        for item in content:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "image" and isinstance(item.get("image"), str):
                urls.append(item["image"])
            elif item.get("type") == "text" and isinstance(item.get("text"), str):
                urls.extend(_MARKDOWN_IMAGE_PATTERN.findall(item["text"]))
    return urls


def collect_edit_images(
    messages: list[dict[str, Any]], limit: int = MAX_EDIT_IMAGES
) -> list[str]:
    """Return up to ``limit`` of the most recent image URLs, oldest first."""
    collected: list[str] = []
    for message in reversed(messages):
        if message.get("role") not in ("user", "assistant"):
            continue
        for url in reversed(_message_image_urls(message)):
            if url in collected:
                continue
            collected.append(url)
            if len(collected) >= limit:
                return list(reversed(collected))
    return list(reversed(collected))


def _message_text(message: dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            item["text"]
            for item in content
            if isinstance(item, dict)
            and item.get("type") == "text"
            and isinstance(item.get("text"), str)
        )
    return ""


def _latest_prompt(messages: list[dict[str, Any]]) -> str:
    for message in reversed(messages):
        if message.get("role") != "user":
            continue
        text = _message_text(message).strip()
        if text:
            return text
    return ""


class RequestTranslator:
    def __init__(
        self,
        *,
        sessions: SessionFactory,
        uploader: AssetUploader | None,
        default_model: str = "qwen-max",
        image_edit_fallback_to_generate: bool = True,
    ) -> None:
        self._sessions = sessions
        self._uploader = uploader
        self._default_model = default_model
        self._image_edit_fallback_to_generate = image_edit_fallback_to_generate

    async def _upload_inline_image(
        self, part: InlineImagePart, auth_token: str
    ) -> dict[str, Any]:
        if self._uploader is None:
            return {"type": "text", "text": "[Image upload unavailable]"}
        filename = f"{uuid4()}.{part.extension}"
        try:
            url = await self._uploader.upload_and_cache(
                part.data, filename, auth_token, part.mime_type
            )
        except GatewayError as exc:
            logger.warning(
                "inline_image_upload_failed filename=%s size=%d error_type=%s error=%s",
                filename,
                len(part.data),
                exc.error_type,
                exc.message,
            )
            return {"type": "text", "text": f"[Image upload failed: {exc.message}]"}
        return {"type": "image", "image": url}

    async def rewrite_content(
        self, messages: list[Message], auth_token: str
    ) -> list[dict[str, Any]]:
        rewritten: list[dict[str, Any]] = []
        follow_ups: list[dict[str, Any]] = []
        for message in messages:
            if message.role == "system":
                rewritten.append(
                    {"role": "system", "content": flatten_text(message.content)}
                )
                continue
            if not isinstance(message.content, list):
                rewritten.append(_backend_message(message.role, message.content or ""))
                continue

            new_content: list[dict[str, Any]] = []
            for part in parse_content_parts(message.content):
                if isinstance(part, TextPart):
                    # Backend expects one media item per turn; overflow text gets its own turn.
                    if len(new_content) >= 2:
                        follow_ups.append(_backend_message("user", part.text))
                    else:
                        new_content.append({"type": "text", "text": part.text})
                elif isinstance(part, InlineImagePart):
                    new_content.append(
                        await self._upload_inline_image(part, auth_token)
                    )
                elif isinstance(part, ImageReferencePart):
                    new_content.append({"type": "image", "image": part.url})
            rewritten.append(_backend_message(message.role, new_content))
        rewritten.extend(follow_ups)
        return rewritten

    async def build_backend_request(
        self,
        mode: ChatMode,
        messages: list[dict[str, Any]],
        thinking: ThinkingConfig,
        *,
        base_model: str,
        auth_token: str,
        size: str | None = None,
    ) -> BackendRequest:
        if not mode.requires_session:
            return BackendRequest(
                body={
                    "model": base_model,
                    "messages": messages,
                    "stream": True,
                    "incremental_output": True,
                    "chat_type": mode.value,
                    "session_id": str(uuid4()),
                    "chat_id": str(uuid4()),
                    "feature_config": thinking.feature_config(),
                },
                mode=mode,
                base_model=base_model,
            )

        files: list[dict[str, Any]] = []
        if mode is ChatMode.IMAGE_EDIT:
            images = collect_edit_images(messages)
            if not images:
                if not self._image_edit_fallback_to_generate:
                    raise ValidationError(
                        "Image editing needs at least one image in the conversation."
                    )
                logger.info("image_edit_degraded_to_generate model=%s", base_model)
                mode = ChatMode.IMAGE_GENERATE
            files = [{"type": "image", "url": url} for url in images]

        prompt = _latest_prompt(messages)
        if not prompt:
            raise ValidationError(f"A text prompt is required for {mode.value} requests.")

        chat_id = await self._sessions.create_session(auth_token, base_model, mode)
        timestamp = int(time.time())
        body: dict[str, Any] = {
            "stream": True,
            "incremental_output": True,
            "chat_id": chat_id,
            "chat_mode": "normal",
            "model": base_model,
            "parent_id": None,
            "messages": [
                {
                    "fid": str(uuid4()),
                    "parentId": None,
                    "childrenIds": [],
                    "role": "user",
                    "content": prompt,
                    "user_action": "chat",
                    "files": files,
                    "timestamp": timestamp,
                    "models": [base_model],
                    "chat_type": mode.value,
                    "feature_config": _default_feature_config(),
                    "extra": {"meta": {"subChatType": mode.value}},
                    "sub_chat_type": mode.value,
                    "parent_id": None,
                }
            ],
            "timestamp": timestamp,
        }
        if mode is ChatMode.IMAGE_GENERATE:
            body["size"] = size_to_aspect_ratio(size)
        elif mode is ChatMode.VIDEO:
            body["size"] = size_to_aspect_ratio(size, default="16:9")
        return BackendRequest(body=body, mode=mode, base_model=base_model, chat_id=chat_id)

    async def translate(self, request: ChatRequest, auth_token: str) -> BackendRequest:
        if not request.messages:
            raise ValidationError("`messages` must contain at least one message.")
        model = request.model or self._default_model
        mode = classify_mode(model)
        thinking = resolve_thinking(model, request.enable_thinking, request.thinking_budget)
        base_model = parse_base_model(model, self._default_model)

        messages = await self.rewrite_content(request.messages, auth_token)
        last = messages[-1]
        last["chat_type"] = mode.value
        last["feature_config"] = thinking.feature_config()

        translated = await self.build_backend_request(
            mode,
            messages,
            thinking,
            base_model=base_model,
            auth_token=auth_token,
            size=request.size,
        )
        logger.info(
            "request_translated model=%s base_model=%s mode=%s thinking=%s messages=%d chat_id=%s",
            model,
            base_model,
            translated.mode.value,
            thinking.enabled,
            len(messages),
            translated.chat_id,
        )
        return translated
