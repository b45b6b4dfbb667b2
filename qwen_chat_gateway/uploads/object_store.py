from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import boto3
import boto3.session
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from qwen_chat_gateway.errors import (
    UploadFailure,
    UpstreamAuthError,
    UpstreamTransientError,
)

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True, frozen=True)
class UploadCredential:
    access_key_id: str
    access_key_secret: str
    session_token: str

    def __repr__(self) -> str:
        return f"UploadCredential(access_key_id={self.access_key_id[:4]}***)"


@dataclass(slots=True, frozen=True)
class AssetDescriptor:
    bucket: str
    endpoint: str
    object_path: str
    public_url: str
    asset_id: str
    region: str | None = None


class ObjectStoreWriter(Protocol):
    async def put_object(
        self,
        *,
        data: bytes,
        credential: UploadCredential,
        descriptor: AssetDescriptor,
        content_type: str,
    ) -> None: ...


def _region_name(descriptor: AssetDescriptor) -> str | None:
    if not descriptor.region:
        return None
    # OSS reports regions as "oss-<region>"; the S3-compatible API wants the bare region.
    return descriptor.region.removeprefix("oss-")


class S3CompatibleObjectStore:
    """Writes objects through the S3-compatible API of the bucket's endpoint."""

    def __init__(self, timeout_seconds: float = 30.0) -> None:
        self._timeout_seconds = timeout_seconds

    def _client(self, credential: UploadCredential, descriptor: AssetDescriptor) -> Any:
        endpoint = descriptor.endpoint
        if not endpoint.startswith(("http://", "https://")):
            endpoint = f"https://{endpoint}"
        # Runs on worker threads; boto3's default session is not thread-safe.
        session = boto3.session.Session()
        return session.client(
            "s3",
            aws_access_key_id=credential.access_key_id,
            aws_secret_access_key=credential.access_key_secret,
            aws_session_token=credential.session_token,
            endpoint_url=endpoint,
            region_name=_region_name(descriptor),
            config=Config(
                s3={"addressing_style": "virtual"},
                connect_timeout=self._timeout_seconds,
                read_timeout=self._timeout_seconds,
                retries={"max_attempts": 1, "mode": "standard"},
            ),
        )

    def _put_sync(
        self,
        data: bytes,
        credential: UploadCredential,
        descriptor: AssetDescriptor,
        content_type: str,
    ) -> None:
        client = self._client(credential, descriptor)
        client.put_object(
            Bucket=descriptor.bucket,
            Key=descriptor.object_path,
            Body=data,
            ContentType=content_type,
        )

    async def put_object(
        self,
        *,
        data: bytes,
        credential: UploadCredential,
        descriptor: AssetDescriptor,
        content_type: str,
    ) -> None:
        try:
            await asyncio.to_thread(
                self._put_sync, data, credential, descriptor, content_type
            )
        except ClientError as exc:
            status_code = int(
                exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
            )
            error_code = str(exc.response.get("Error", {}).get("Code") or "")
            if status_code == 403:
                raise UpstreamAuthError(
                    f"Object storage rejected the upload credential: {error_code or exc}",
                    code=error_code or None,
                ) from exc
            if status_code >= 500:
                raise UpstreamTransientError(
                    f"Object storage returned {status_code}: {error_code or exc}",
                    code=error_code or None,
                ) from exc
            raise UploadFailure(
                f"Object storage write failed ({status_code}): {error_code or exc}",
                code=error_code or None,
            ) from exc
        except BotoCoreError as exc:
            raise UpstreamTransientError(
                f"Object storage unreachable: {exc}"
            ) from exc
