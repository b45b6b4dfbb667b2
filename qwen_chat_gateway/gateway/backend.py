from __future__ import annotations

import logging
import time
from typing import Any
from uuid import uuid4

import httpx

from qwen_chat_gateway.errors import (
    SessionCreationFailure,
    UpstreamAuthError,
    UpstreamTransientError,
)
from qwen_chat_gateway.modes import ChatMode
from qwen_chat_gateway.uploads.uploader import BROWSER_USER_AGENT

logger = logging.getLogger("uvicorn.error")

CHAT_COMPLETIONS_PATH = "/api/chat/completions"
SESSION_CHAT_COMPLETIONS_PATH = "/api/v2/chat/completions"
SESSION_CREATE_PATH = "/api/v2/chats/new"
MODELS_PATH = "/api/models"


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    return {
        "error": str(exc).strip() or repr(exc),
        "error_type": exc.__class__.__name__,
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }


class QwenBackendClient:
    def __init__(
        self,
        base_url: str,
        *,
        connect_timeout_seconds: float = 5.0,
        read_timeout_seconds: float = 120.0,
        write_timeout_seconds: float = 30.0,
        pool_timeout_seconds: float = 5.0,
        ssxmod_itna: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._ssxmod_itna = ssxmod_itna
        self.client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(
                timeout=None,
                connect=max(0.1, connect_timeout_seconds),
                read=max(0.1, read_timeout_seconds),
                write=max(0.1, write_timeout_seconds),
                pool=max(0.1, pool_timeout_seconds),
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
        )

    async def close(self) -> None:
        await self.client.aclose()

    @property
    def cookie_headers(self) -> dict[str, str]:
        if not self._ssxmod_itna:
            return {}
        return {"Cookie": f"ssxmod_itna={self._ssxmod_itna}"}

    def build_headers(self, token: str, *, stream: bool = False) -> dict[str, str]:
        headers = {
            "Authorization": token if token.startswith("Bearer ") else f"Bearer {token}",
            "Content-Type": "application/json",
            "User-Agent": BROWSER_USER_AGENT,
            "x-request-id": str(uuid4()),
            "source": "web",
        }
        if stream:
            headers["Accept"] = "text/event-stream"
        headers.update(self.cookie_headers)
        return headers

    async def create_session(self, token: str, base_model: str, mode: ChatMode) -> str:
        payload = {
            "title": "New Chat",
            "models": [base_model],
            "chat_mode": "normal",
            "chat_type": mode.value,
            "timestamp": int(time.time() * 1000),
        }
        try:
            response = await self.client.post(
                f"{self.base_url}{SESSION_CREATE_PATH}",
                json=payload,
                headers=self.build_headers(token),
            )
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "session_create_error model=%s mode=%s error_type=%s error=%s",
                base_model,
                mode.value,
                details["error_type"],
                details["error"],
            )
            raise SessionCreationFailure(
                f"Could not reach backend to create a session ({details['error_type']})."
            ) from exc

        body: Any = None
        try:
            body = response.json()
        except ValueError:
            body = None
        chat_id = None
        if isinstance(body, dict) and body.get("success") is not False:
            data = body.get("data")
            if isinstance(data, dict):
                chat_id = data.get("id") or data.get("chat_id")
            chat_id = chat_id or body.get("id")
        if not response.is_success or not isinstance(chat_id, str) or not chat_id:
            logger.warning(
                "session_create_failed model=%s mode=%s status=%d",
                base_model,
                mode.value,
                response.status_code,
            )
            raise SessionCreationFailure(
                f"Backend did not create a {mode.value} session "
                f"(status {response.status_code}).",
                code=str(response.status_code),
            )
        logger.info(
            "session_created model=%s mode=%s chat_id=%s",
            base_model,
            mode.value,
            chat_id,
        )
        return chat_id

    async def open_chat_stream(
        self,
        body: dict[str, Any],
        token: str,
        chat_id: str | None = None,
    ) -> httpx.Response:
        if chat_id:
            url = f"{self.base_url}{SESSION_CHAT_COMPLETIONS_PATH}"
            params = {"chat_id": chat_id}
        else:
            url = f"{self.base_url}{CHAT_COMPLETIONS_PATH}"
            params = None
        request = self.client.build_request(
            method="POST",
            url=url,
            params=params,
            json=body,
            headers=self.build_headers(token, stream=True),
        )
        started = time.perf_counter()
        try:
            upstream = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "chat_upstream_error url=%s error_type=%s is_timeout=%s error=%s",
                url,
                details["error_type"],
                details["is_timeout"],
                details["error"],
            )
            raise UpstreamTransientError(
                f"Could not reach backend ({details['error_type']}): {details['error']}"
            ) from exc
        logger.info(
            "chat_upstream_connected url=%s chat_id=%s status=%d connect_ms=%.2f",
            url,
            chat_id,
            upstream.status_code,
            (time.perf_counter() - started) * 1000.0,
        )
        return upstream

    async def list_models(self, token: str) -> list[dict[str, Any]]:
        try:
            response = await self.client.get(
                f"{self.base_url}{MODELS_PATH}",
                headers=self.build_headers(token),
            )
        except httpx.RequestError as exc:
            raise UpstreamTransientError(
                f"Could not fetch models from backend: {exc}"
            ) from exc
        if response.status_code in (401, 403):
            raise UpstreamAuthError(
                f"Backend rejected the account token ({response.status_code}).",
                code=str(response.status_code),
            )
        if not response.is_success:
            raise UpstreamTransientError(
                f"Backend model listing returned {response.status_code}.",
                code=str(response.status_code),
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamTransientError("Backend model listing was not JSON.") from exc
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            return []
        return [item for item in data if isinstance(item, dict)]
