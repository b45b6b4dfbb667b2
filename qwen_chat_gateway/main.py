from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

import httpx
import pydantic
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from qwen_chat_gateway.errors import GatewayError, ValidationError
from qwen_chat_gateway.gateway.auth import AuthConfigurationError, Authenticator
from qwen_chat_gateway.gateway.backend import QwenBackendClient
from qwen_chat_gateway.gateway.service import ChatCompletionService
from qwen_chat_gateway.schemas import ChatRequest
from qwen_chat_gateway.settings import Settings, get_settings
from qwen_chat_gateway.tokens import RoundRobinTokenProvider
from qwen_chat_gateway.translation.request import RequestTranslator
from qwen_chat_gateway.uploads.cache import ContentCache
from qwen_chat_gateway.uploads.object_store import ObjectStoreWriter
from qwen_chat_gateway.uploads.retry import RetryPolicy
from qwen_chat_gateway.uploads.uploader import AssetUploader

app = FastAPI(
    title="Qwen Chat Gateway",
    description="OpenAI-compatible chat completions in front of the Qwen chat backend.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def auth_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if not request.url.path.startswith("/v1"):
        return await call_next(request)

    authenticator: Authenticator | None = getattr(app.state, "authenticator", None)
    if authenticator is not None:
        auth_error = await authenticator.authenticate_request(request)
        if auth_error is not None:
            return auth_error

    return await call_next(request)


def build_chat_service(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    object_store: ObjectStoreWriter | None = None,
) -> tuple[QwenBackendClient, ChatCompletionService]:
    backend = QwenBackendClient(
        settings.backend_base_url,
        connect_timeout_seconds=settings.backend_connect_timeout_seconds,
        read_timeout_seconds=settings.backend_read_timeout_seconds,
        write_timeout_seconds=settings.backend_write_timeout_seconds,
        pool_timeout_seconds=settings.backend_pool_timeout_seconds,
        ssxmod_itna=settings.backend_ssxmod_itna,
        transport=transport,
    )
    uploader = AssetUploader(
        client=backend.client,
        cache=ContentCache(max_entries=settings.content_cache_max_entries),
        base_url=settings.backend_base_url,
        object_store=object_store,
        retry_policy=RetryPolicy(
            max_retries=max(0, settings.upload_max_retries),
            base_delay_seconds=max(0.0, settings.upload_retry_base_delay_seconds),
        ),
        max_file_bytes=settings.upload_max_file_bytes,
        timeout_seconds=settings.upload_timeout_seconds,
        extra_headers=backend.cookie_headers,
    )
    translator = RequestTranslator(
        sessions=backend,
        uploader=uploader,
        default_model=settings.default_model,
        image_edit_fallback_to_generate=settings.image_edit_fallback_to_generate,
    )
    service = ChatCompletionService(
        backend=backend,
        translator=translator,
        token_provider=RoundRobinTokenProvider(settings.backend_api_keys_list),
        default_model=settings.default_model,
        max_buffer_chars=settings.stream_max_buffer_chars,
    )
    return backend, service


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    app.state.settings = settings
    app.state.authenticator = Authenticator(settings)
    backend, service = build_chat_service(
        settings,
        transport=getattr(app.state, "upstream_transport", None),
        object_store=getattr(app.state, "object_store", None),
    )
    app.state.backend_client = backend
    app.state.chat_service = service
    if not settings.backend_api_keys_list:
        logger.warning("startup backend_api_keys=0 upstream calls will be rejected")
    logger.info(
        "startup complete backend_base_url=%s accounts=%d ingress_auth_required=%s default_model=%s",
        settings.backend_base_url,
        len(settings.backend_api_keys_list),
        settings.ingress_auth_required,
        settings.default_model,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    backend: QwenBackendClient | None = getattr(app.state, "backend_client", None)
    if backend is not None:
        await backend.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    service: ChatCompletionService = app.state.chat_service
    return await service.list_models()


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise ValidationError(f"Expected JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Expected a JSON object request body.")
    try:
        chat_request = ChatRequest.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            f"Invalid chat completion request: {exc.errors()[0].get('msg', exc)}"
        ) from exc

    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    logger.info(
        "chat_request request_id=%s model=%s stream=%s messages=%d",
        request_id,
        chat_request.model,
        chat_request.stream,
        len(chat_request.messages),
    )
    service: ChatCompletionService = app.state.chat_service
    return await service.complete(chat_request, request_id)


@app.exception_handler(GatewayError)
async def gateway_error_handler(_: Request, exc: GatewayError) -> JSONResponse:
    logger.info(
        "gateway_error type=%s status=%d code=%s message=%s",
        exc.error_type,
        exc.status_code,
        exc.code,
        exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(AuthConfigurationError)
async def auth_config_handler(_: Request, exc: AuthConfigurationError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run() -> None:
    import uvicorn

    uvicorn.run("qwen_chat_gateway.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
