from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse

from qwen_chat_gateway.errors import UpstreamAuthError, UpstreamTransientError
from qwen_chat_gateway.gateway.backend import QwenBackendClient
from qwen_chat_gateway.modes import ChatMode
from qwen_chat_gateway.schemas import ChatRequest
from qwen_chat_gateway.tokens import AccountTokenProvider
from qwen_chat_gateway.translation.request import RequestTranslator
from qwen_chat_gateway.translation.stream import (
    DEFAULT_MAX_BUFFER_CHARS,
    StreamTranslator,
)

logger = logging.getLogger("uvicorn.error")

_MODEL_VARIANTS: tuple[tuple[str, str], ...] = (
    (ChatMode.SEARCH.value, "-search"),
    (ChatMode.IMAGE_GENERATE.value, "-image"),
    (ChatMode.IMAGE_EDIT.value, "-image-edit"),
    (ChatMode.VIDEO.value, "-video"),
    (ChatMode.DEEP_RESEARCH.value, "-deep-research"),
)


def _model_meta(model: dict[str, Any]) -> dict[str, Any]:
    info = model.get("info")
    meta = info.get("meta") if isinstance(info, dict) else None
    return meta if isinstance(meta, dict) else {}


def expand_model_variants(models: list[dict[str, Any]]) -> list[dict[str, Any]]:
    expanded: list[dict[str, Any]] = []
    for model in models:
        model_id = model.get("id")
        if not isinstance(model_id, str) or not model_id:
            continue
        expanded.append(model)
        meta = _model_meta(model)
        abilities = meta.get("abilities")
        if isinstance(abilities, dict) and abilities.get("thinking"):
            expanded.append({**model, "id": f"{model_id}-thinking"})
        chat_types = meta.get("chat_type")
        if not isinstance(chat_types, list):
            continue
        for chat_type, suffix in _MODEL_VARIANTS:
            if chat_type in chat_types:
                expanded.append({**model, "id": f"{model_id}{suffix}"})
    return expanded


def _upstream_error_response(status_code: int, body: bytes) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": "Upstream API request failed",
                "type": "upstream_error",
                "code": str(status_code),
                "details": body.decode("utf-8", errors="replace")[:2000],
            }
        },
    )


class ChatCompletionService:
    def __init__(
        self,
        *,
        backend: QwenBackendClient,
        translator: RequestTranslator,
        token_provider: AccountTokenProvider,
        default_model: str = "qwen-max",
        max_buffer_chars: int = DEFAULT_MAX_BUFFER_CHARS,
    ) -> None:
        self._backend = backend
        self._translator = translator
        self._token_provider = token_provider
        self._default_model = default_model
        self._max_buffer_chars = max_buffer_chars

    def _account_token(self) -> str:
        token = self._token_provider.get_token()
        if not token:
            raise UpstreamAuthError(
                "No upstream account token is configured.", code="no_account_token"
            )
        return token

    async def list_models(self) -> dict[str, Any]:
        models = await self._backend.list_models(self._account_token())
        return {"object": "list", "data": expand_model_variants(models)}

    async def complete(self, request: ChatRequest, request_id: str) -> Response:
        token = self._account_token()
        translated = await self._translator.translate(request, token)
        upstream = await self._backend.open_chat_stream(
            translated.body, token, translated.chat_id
        )
        if upstream.status_code >= 400:
            body = await upstream.aread()
            await upstream.aclose()
            logger.warning(
                "chat_upstream_rejected request_id=%s status=%d body=%s",
                request_id,
                upstream.status_code,
                body[:300],
            )
            return _upstream_error_response(upstream.status_code, body)

        translator = StreamTranslator(
            model=request.model or self._default_model,
            mode=translated.mode,
            request_id=request_id,
            max_buffer_chars=self._max_buffer_chars,
        )
        if request.stream:
            return StreamingResponse(
                self._stream(upstream, translator, request_id),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            )
        return await self._aggregate(upstream, translator, request_id)

    async def _stream(
        self,
        upstream: httpx.Response,
        translator: StreamTranslator,
        request_id: str,
    ) -> AsyncIterator[bytes]:
        try:
            async for frame in translator.translate(upstream.aiter_bytes()):
                yield frame
        except httpx.RequestError as exc:
            logger.warning(
                "chat_upstream_stream_error request_id=%s error_type=%s error=%s",
                request_id,
                exc.__class__.__name__,
                exc,
            )
            for frame in translator.finish():
                yield frame
        finally:
            await upstream.aclose()

    async def _aggregate(
        self,
        upstream: httpx.Response,
        translator: StreamTranslator,
        request_id: str,
    ) -> JSONResponse:
        try:
            async for _ in translator.translate(upstream.aiter_bytes()):
                pass
        except httpx.RequestError as exc:
            raise UpstreamTransientError(
                f"Backend stream interrupted ({exc.__class__.__name__})."
            ) from exc
        finally:
            await upstream.aclose()

        if translator.error is not None:
            raise translator.error
        return JSONResponse(
            content={
                "id": translator.completion_id,
                "object": "chat.completion",
                "created": translator.created,
                "model": translator.model,
                "choices": [
                    {
                        "index": 0,
                        "message": {"role": "assistant", "content": translator.text},
                        "finish_reason": translator.finish_reason or "stop",
                    }
                ],
                "usage": {
                    "prompt_tokens": 0,
                    "completion_tokens": 0,
                    "total_tokens": 0,
                },
            },
            headers={"x-request-id": request_id},
        )
