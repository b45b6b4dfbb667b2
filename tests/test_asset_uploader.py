from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from qwen_chat_gateway.errors import (
    UploadFailure,
    UpstreamAuthError,
    UpstreamTransientError,
    ValidationError,
)
from qwen_chat_gateway.uploads.cache import ContentCache, fingerprint
from qwen_chat_gateway.uploads.retry import RetryPolicy
from qwen_chat_gateway.uploads.uploader import AssetUploader, asset_kind_for
from tests.client_test_utils import STS_RESPONSE, TEST_BACKEND_BASE_URL, FakeObjectStore

Handler = Callable[[httpx.Request], httpx.Response]


def _build_uploader(
    handler: Handler,
    *,
    object_store: FakeObjectStore | None = None,
    cache: ContentCache | None = None,
    max_retries: int = 3,
) -> AssetUploader:
    return AssetUploader(
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        cache=cache if cache is not None else ContentCache(),
        base_url=TEST_BACKEND_BASE_URL,
        object_store=object_store or FakeObjectStore(),
        retry_policy=RetryPolicy(max_retries=max_retries, base_delay_seconds=0.0),
        max_file_bytes=1024,
    )


def _sts_handler(requests: list[httpx.Request]) -> Handler:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=STS_RESPONSE)

    return handler


def test_credential_request_payload_and_headers() -> None:
    requests: list[httpx.Request] = []
    uploader = _build_uploader(_sts_handler(requests))

    credential, descriptor = asyncio.run(
        uploader.request_write_credential("cat.png", 12, "image", "raw-token")
    )

    assert len(requests) == 1
    request = requests[0]
    assert str(request.url) == f"{TEST_BACKEND_BASE_URL}/api/v1/files/getstsToken"
    assert request.headers["Authorization"] == "Bearer raw-token"
    assert request.headers["x-request-id"]
    assert json.loads(request.content) == {
        "filename": "cat.png",
        "filesize": 12,
        "filetype": "image",
    }
    assert credential.access_key_id == "AKID"
    assert credential.session_token == "STS-TOKEN"
    assert descriptor.bucket == "qwen-assets"
    assert descriptor.endpoint == "oss-ap-southeast-1.aliyuncs.com"
    assert descriptor.object_path == "uploads/asset.png"
    assert descriptor.public_url == STS_RESPONSE["file_url"]
    assert descriptor.asset_id == "file-1"


def test_credential_response_wrapped_in_data_is_accepted() -> None:
    uploader = _build_uploader(
        lambda _request: httpx.Response(200, json={"success": True, "data": STS_RESPONSE})
    )

    _, descriptor = asyncio.run(
        uploader.request_write_credential("cat.png", 12, "image", "token")
    )

    assert descriptor.asset_id == "file-1"


def test_each_attempt_gets_a_fresh_request_id() -> None:
    request_ids: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        request_ids.append(request.headers["x-request-id"])
        if len(request_ids) < 3:
            return httpx.Response(503)
        return httpx.Response(200, json=STS_RESPONSE)

    uploader = _build_uploader(handler)
    asyncio.run(uploader.request_write_credential("cat.png", 12, "image", "token"))

    assert len(request_ids) == 3
    assert len(set(request_ids)) == 3


def test_credential_request_retries_timeouts_then_gives_up() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        raise httpx.ReadTimeout("timed out", request=request)

    uploader = _build_uploader(handler, max_retries=2)

    with pytest.raises(UpstreamTransientError):
        asyncio.run(uploader.request_write_credential("cat.png", 12, "image", "token"))
    assert len(attempts) == 3


def test_credential_request_403_is_not_retried() -> None:
    attempts: list[int] = []

    def handler(_request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(403, json={"detail": "forbidden"})

    uploader = _build_uploader(handler)

    with pytest.raises(UpstreamAuthError):
        asyncio.run(uploader.request_write_credential("cat.png", 12, "image", "token"))
    assert len(attempts) == 1


def test_credential_request_missing_fields_fails() -> None:
    incomplete = {key: value for key, value in STS_RESPONSE.items() if key != "file_id"}
    uploader = _build_uploader(lambda _request: httpx.Response(200, json=incomplete))

    with pytest.raises(UploadFailure, match="file_id"):
        asyncio.run(uploader.request_write_credential("cat.png", 12, "image", "token"))


def test_credential_request_4xx_is_not_retried() -> None:
    attempts: list[int] = []

    def handler(_request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        return httpx.Response(400)

    uploader = _build_uploader(handler)

    with pytest.raises(UploadFailure):
        asyncio.run(uploader.request_write_credential("cat.png", 12, "image", "token"))
    assert len(attempts) == 1


@pytest.mark.parametrize(
    ("filename", "size", "token"),
    [("", 12, "token"), ("cat.png", 12, ""), ("cat.png", 0, "token"), ("cat.png", 4096, "token")],
)
def test_credential_request_validates_before_network(
    filename: str, size: int, token: str
) -> None:
    requests: list[httpx.Request] = []
    uploader = _build_uploader(_sts_handler(requests))

    with pytest.raises(ValidationError):
        asyncio.run(uploader.request_write_credential(filename, size, "image", token))
    assert requests == []


def test_put_asset_retries_transient_failures_with_same_credential() -> None:
    requests: list[httpx.Request] = []
    store = FakeObjectStore(
        failures=[UpstreamTransientError("503"), UpstreamTransientError("503")]
    )
    uploader = _build_uploader(_sts_handler(requests), object_store=store)

    async def run() -> bool:
        credential, descriptor = await uploader.request_write_credential(
            "cat.png", 3, "image", "token"
        )
        return await uploader.put_asset(b"abc", credential, descriptor, "image/png")

    assert asyncio.run(run()) is True
    assert len(store.calls) == 3
    assert len(requests) == 1
    assert {call["credential"].access_key_id for call in store.calls} == {"AKID"}
    assert store.calls[-1]["content_type"] == "image/png"


def test_put_asset_auth_failure_is_not_retried() -> None:
    store = FakeObjectStore(failures=[UpstreamAuthError("denied")])
    uploader = _build_uploader(_sts_handler([]), object_store=store)

    async def run() -> Any:
        credential, descriptor = await uploader.request_write_credential(
            "cat.png", 3, "image", "token"
        )
        return await uploader.put_asset(b"abc", credential, descriptor)

    with pytest.raises(UpstreamAuthError):
        asyncio.run(run())
    assert len(store.calls) == 1


def test_identical_bytes_upload_once() -> None:
    requests: list[httpx.Request] = []
    store = FakeObjectStore()
    cache = ContentCache()
    uploader = _build_uploader(_sts_handler(requests), object_store=store, cache=cache)

    async def run() -> tuple[str, str]:
        first = await uploader.upload_and_cache(b"same-bytes", "a.png", "token")
        second = await uploader.upload_and_cache(b"same-bytes", "b.png", "token")
        return first, second

    first, second = asyncio.run(run())

    assert first == second == STS_RESPONSE["file_url"]
    assert len(requests) == 1
    assert len(store.calls) == 1
    assert cache.lookup(fingerprint(b"same-bytes")) == first


def test_cache_shared_across_uploader_instances() -> None:
    cache = ContentCache()
    first_requests: list[httpx.Request] = []
    second_requests: list[httpx.Request] = []
    first = _build_uploader(_sts_handler(first_requests), cache=cache)
    second = _build_uploader(_sts_handler(second_requests), cache=cache)

    asyncio.run(first.upload_and_cache(b"payload", "a.png", "token"))
    url = asyncio.run(second.upload_and_cache(b"payload", "b.png", "token"))

    assert url == STS_RESPONSE["file_url"]
    assert len(first_requests) == 1
    assert second_requests == []


def test_upload_and_cache_guesses_mime_from_filename() -> None:
    requests: list[httpx.Request] = []
    store = FakeObjectStore()
    uploader = _build_uploader(_sts_handler(requests), object_store=store)

    asyncio.run(uploader.upload_and_cache(b"jpeg-bytes", "photo.jpg", "token"))

    assert json.loads(requests[0].content)["filetype"] == "image"
    assert store.calls[0]["content_type"] == "image/jpeg"


def test_failed_upload_is_not_cached() -> None:
    cache = ContentCache()
    uploader = _build_uploader(
        lambda _request: httpx.Response(403), cache=cache
    )

    with pytest.raises(UpstreamAuthError):
        asyncio.run(uploader.upload_and_cache(b"bytes", "a.png", "token"))
    assert len(cache) == 0


@pytest.mark.parametrize(
    ("mime_type", "expected"),
    [
        ("image/png", "image"),
        ("video/mp4", "video"),
        ("audio/ogg", "audio"),
        ("application/pdf", "document"),
        ("application/zip", "file"),
        (None, "file"),
    ],
)
def test_asset_kind_for(mime_type: str | None, expected: str) -> None:
    assert asset_kind_for(mime_type) == expected
