"""
Tests for AtlasClient in embedling.client.
"""

import json

import httpx
import pytest

from embedling.client import AtlasClient
from embedling.config import ClientSettings
from embedling.exceptions import APIError
from embedling.version import __version__


def _client_with_handler(*, handler, api_key: str | None = "nk-test-key") -> AtlasClient:
    """
    Build a client whose HTTP calls are served by ``handler``.

    Parameters
    ----------
    handler : typing.Callable[[httpx.Request], httpx.Response]
        Mock transport handler.
    api_key : str | None, optional
        Key configured on the client.

    Returns
    -------
    AtlasClient
        Client wired to a mock transport.
    """
    client = AtlasClient(
        settings=ClientSettings(
            api_key=api_key,
            api_domain="api-atlas.nomic.ai",
            timeout_seconds=5.0,
        )
    )
    transport = httpx.MockTransport(handler=handler)
    client._client_factory = lambda: httpx.AsyncClient(transport=transport)
    return client


@pytest.mark.asyncio
async def test_post_json_sends_headers_and_body():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status_code=200, json={"ok": True})

    client = _client_with_handler(handler=handler)

    result = await client.post_json(path="v1/embedding/text", payload={"texts": ["a"]})

    assert result == {"ok": True}
    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == "https://api-atlas.nomic.ai/v1/embedding/text"
    assert request.headers["Authorization"] == "Bearer nk-test-key"
    assert request.headers["User-Agent"] == f"embedling/{__version__}"
    assert request.headers["Content-Type"] == "application/json"
    assert json.loads(request.read()) == {"texts": ["a"]}


@pytest.mark.asyncio
async def test_post_json_raises_structured_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=429, text="rate limited")

    client = _client_with_handler(handler=handler)

    with pytest.raises(APIError) as exc_info:
        await client.post_json(path="/v1/embedding/text", payload={})

    assert exc_info.value.status_code == 429
    assert exc_info.value.body == "rate limited"
    assert exc_info.value.is_retryable


def test_anonymous_client_sends_no_authorization():
    client = AtlasClient(
        settings=ClientSettings(api_key=None, api_domain="localhost:8000", timeout_seconds=1.0)
    )

    assert "Authorization" not in client.build_headers()
    assert client.build_url(path="/v1/x") == "http://localhost:8000/v1/x"


def test_client_loads_settings_from_environment():
    client = AtlasClient()

    assert client.settings.api_key == "nk-test-key"
    assert client.settings.base_url == "https://api-atlas.nomic.ai"
