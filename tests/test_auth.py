from __future__ import annotations

from typing import Any

import httpx
import pytest

from qwen_chat_gateway.gateway.auth import AuthConfigurationError, Authenticator
from qwen_chat_gateway.settings import Settings
from tests.client_test_utils import build_test_client

MODELS_BODY = {"data": [{"id": "qwen-max", "object": "model"}]}


def _models_transport() -> httpx.MockTransport:
    return httpx.MockTransport(lambda _request: httpx.Response(200, json=MODELS_BODY))


def _build_client(monkeypatch: Any, **env: Any) -> Any:
    return build_test_client(monkeypatch, transport=_models_transport(), **env)


def test_v1_models_allows_when_auth_disabled(monkeypatch: Any) -> None:
    with _build_client(monkeypatch, INGRESS_AUTH_REQUIRED="false") as client:
        response = client.get("/v1/models")
        assert response.status_code == 200
        ids = [item["id"] for item in response.json().get("data", [])]
        assert ids == ["qwen-max"]


def test_v1_models_rejects_without_token_when_auth_required(monkeypatch: Any) -> None:
    with _build_client(
        monkeypatch,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="gateway-key-1",
    ) as client:
        response = client.get("/v1/models")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"]["type"] == "authentication_error"


def test_v1_models_rejects_unknown_key(monkeypatch: Any) -> None:
    with _build_client(
        monkeypatch,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="gateway-key-1",
    ) as client:
        response = client.get(
            "/v1/models", headers={"Authorization": "Bearer not-a-key"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid API key."


def test_v1_models_accepts_valid_api_key(monkeypatch: Any) -> None:
    with _build_client(
        monkeypatch,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="gateway-key-1,gateway-key-2",
    ) as client:
        response = client.get(
            "/v1/models", headers={"Authorization": "Bearer gateway-key-2"}
        )
        assert response.status_code == 200


def test_health_is_public_when_auth_required(monkeypatch: Any) -> None:
    with _build_client(
        monkeypatch,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="gateway-key-1",
    ) as client:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


def test_auth_required_without_keys_is_a_configuration_error() -> None:
    settings = Settings(ingress_auth_required=True, ingress_api_keys="")

    with pytest.raises(AuthConfigurationError):
        Authenticator(settings)
