from __future__ import annotations

import logging
import mimetypes
import time
from typing import Any
from uuid import uuid4

import httpx

from qwen_chat_gateway.errors import (
    UploadFailure,
    UpstreamAuthError,
    UpstreamTransientError,
    ValidationError,
)
from qwen_chat_gateway.uploads.cache import ContentCache, fingerprint
from qwen_chat_gateway.uploads.object_store import (
    AssetDescriptor,
    ObjectStoreWriter,
    S3CompatibleObjectStore,
    UploadCredential,
)
from qwen_chat_gateway.uploads.retry import RetryPolicy

logger = logging.getLogger("uvicorn.error")

CREDENTIAL_PATH = "/api/v1/files/getstsToken"
DEFAULT_MAX_FILE_BYTES = 100 * 1024 * 1024
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

_SIMPLE_ASSET_KINDS = {"image", "video", "audio"}
_DOCUMENT_MIME_TYPES = {"application/pdf", "text/plain", "application/msword"}

_CREDENTIAL_FIELDS = {
    "access_key_id": "access_key_id",
    "access_key_secret": "access_key_secret",
    "security_token": "session_token",
}
_DESCRIPTOR_FIELDS = {
    "bucketname": "bucket",
    "region": "region",
    "file_path": "object_path",
    "file_url": "public_url",
    "file_id": "asset_id",
}


def asset_kind_for(mime_type: str | None) -> str:
    if not mime_type:
        return "file"
    normalized = mime_type.strip().lower()
    main_type = normalized.split("/", 1)[0]
    if main_type in _SIMPLE_ASSET_KINDS:
        return main_type
    if normalized in _DOCUMENT_MIME_TYPES:
        return "document"
    return "file"


def _bearer(token: str) -> str:
    return token if token.startswith("Bearer ") else f"Bearer {token}"


def _credential_payload(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        return {}
    if "access_key_id" not in body and isinstance(body.get("data"), dict):
        return body["data"]
    return body


class AssetUploader:
    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        cache: ContentCache,
        base_url: str,
        object_store: ObjectStoreWriter | None = None,
        retry_policy: RetryPolicy | None = None,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        timeout_seconds: float = 30.0,
        extra_headers: dict[str, str] | None = None,
    ) -> None:
        self._client = client
        self.cache = cache
        self._credential_url = f"{base_url.rstrip('/')}{CREDENTIAL_PATH}"
        self._object_store = object_store or S3CompatibleObjectStore(timeout_seconds)
        self._retry_policy = retry_policy or RetryPolicy()
        self._max_file_bytes = max_file_bytes
        self._timeout = httpx.Timeout(timeout_seconds)
        self._extra_headers = dict(extra_headers or {})

    def _validate_size(self, size_bytes: int) -> None:
        if size_bytes <= 0 or size_bytes > self._max_file_bytes:
            raise ValidationError(
                f"File size {size_bytes} bytes is outside the allowed range "
                f"(1..{self._max_file_bytes} bytes)."
            )

    async def request_write_credential(
        self,
        filename: str,
        size_bytes: int,
        asset_kind: str,
        auth_token: str,
    ) -> tuple[UploadCredential, AssetDescriptor]:
        if not filename or not auth_token:
            raise ValidationError("Upload filename and auth token must not be empty.")
        self._validate_size(size_bytes)
        return await self._retry_policy.run(
            lambda: self._request_write_credential_once(
                filename, size_bytes, asset_kind, auth_token
            )
        )

    async def _request_write_credential_once(
        self,
        filename: str,
        size_bytes: int,
        asset_kind: str,
        auth_token: str,
    ) -> tuple[UploadCredential, AssetDescriptor]:
        request_id = str(uuid4())
        headers = {
            "Authorization": _bearer(auth_token),
            "Content-Type": "application/json",
            "User-Agent": BROWSER_USER_AGENT,
            "x-request-id": request_id,
            **self._extra_headers,
        }
        logger.info(
            "upload_credential_requested request_id=%s filename=%s size=%d kind=%s",
            request_id,
            filename,
            size_bytes,
            asset_kind,
        )
        try:
            response = await self._client.post(
                self._credential_url,
                json={
                    "filename": filename,
                    "filesize": size_bytes,
                    "filetype": asset_kind,
                },
                headers=headers,
                timeout=self._timeout,
            )
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            raise UpstreamTransientError(
                f"Credential request failed ({exc.__class__.__name__}): {exc}"
            ) from exc
        except httpx.RequestError as exc:
            raise UploadFailure(f"Credential request failed: {exc}") from exc

        if response.status_code == 403:
            raise UpstreamAuthError(
                "Upload credential request was forbidden; check the account token.",
                code="403",
            )
        if response.status_code >= 500:
            raise UpstreamTransientError(
                f"Credential endpoint returned {response.status_code}.",
                code=str(response.status_code),
            )
        if not response.is_success:
            raise UploadFailure(
                f"Credential endpoint returned {response.status_code}.",
                code=str(response.status_code),
            )

        try:
            payload = _credential_payload(response.json())
        except ValueError as exc:
            raise UploadFailure("Credential endpoint returned a non-JSON body.") from exc

        missing = [
            field
            for field in (*_CREDENTIAL_FIELDS, *_DESCRIPTOR_FIELDS)
            if not payload.get(field)
        ]
        if missing:
            raise UploadFailure(
                f"Credential response is incomplete, missing: {', '.join(missing)}"
            )

        credential = UploadCredential(
            **{
                target: str(payload[source])
                for source, target in _CREDENTIAL_FIELDS.items()
            }
        )
        descriptor_fields = {
            target: str(payload[source])
            for source, target in _DESCRIPTOR_FIELDS.items()
        }
        descriptor = AssetDescriptor(
            endpoint=f"{descriptor_fields['region']}.aliyuncs.com",
            **descriptor_fields,
        )
        logger.info(
            "upload_credential_granted request_id=%s bucket=%s asset_id=%s",
            request_id,
            descriptor.bucket,
            descriptor.asset_id,
        )
        return credential, descriptor

    async def put_asset(
        self,
        data: bytes,
        credential: UploadCredential,
        descriptor: AssetDescriptor,
        mime_type: str | None = None,
    ) -> bool:
        if not data:
            raise ValidationError("Refusing to upload an empty asset.")
        content_type = mime_type or "application/octet-stream"
        started = time.perf_counter()
        await self._retry_policy.run(
            lambda: self._object_store.put_object(
                data=data,
                credential=credential,
                descriptor=descriptor,
                content_type=content_type,
            )
        )
        logger.info(
            "upload_put_complete bucket=%s path=%s size=%d elapsed_ms=%.2f",
            descriptor.bucket,
            descriptor.object_path,
            len(data),
            (time.perf_counter() - started) * 1000.0,
        )
        return True

    async def upload_and_cache(
        self,
        data: bytes,
        filename: str,
        auth_token: str,
        mime_type: str | None = None,
    ) -> str:
        key = fingerprint(data)
        cached_url = self.cache.lookup(key)
        if cached_url is not None:
            logger.info("content_cache_hit fingerprint=%s", key[:16])
            return cached_url

        resolved_mime = (
            mime_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        )
        credential, descriptor = await self.request_write_credential(
            filename,
            len(data),
            asset_kind_for(resolved_mime),
            auth_token,
        )
        await self.put_asset(data, credential, descriptor, resolved_mime)
        self.cache.insert(key, descriptor.public_url)
        return descriptor.public_url
