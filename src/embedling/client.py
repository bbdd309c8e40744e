"""
Authenticated HTTP access to the Atlas API.
"""

from __future__ import annotations

import typing as t

import httpx
import structlog

from embedling.config import ClientSettings, load_settings
from embedling.exceptions import APIError
from embedling.version import __version__

log = structlog.get_logger(__name__)


class AtlasClient:
    """
    Send JSON requests to the Atlas API and decode JSON responses.

    Parameters
    ----------
    settings : ClientSettings | None, optional
        Resolved settings. Loaded from the environment when omitted.
    """

    def __init__(self, settings: ClientSettings | None = None) -> None:
        self._settings = settings or load_settings()
        self._client_factory: t.Callable[[], httpx.AsyncClient] = lambda: httpx.AsyncClient(
            timeout=self._settings.timeout_seconds
        )

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    def build_headers(self) -> dict[str, str]:
        """
        Build headers sent with every call.

        Returns
        -------
        dict[str, str]
            Authorization (when a key is configured), user agent and content type.
        """
        headers = {
            "User-Agent": f"embedling/{__version__}",
            "Content-Type": "application/json",
        }
        if self._settings.api_key:
            headers["Authorization"] = f"Bearer {self._settings.api_key}"
        return headers

    def build_url(self, *, path: str) -> str:
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self._settings.base_url}{path}"

    async def post_json(self, *, path: str, payload: dict[str, t.Any]) -> t.Any:
        """
        POST a JSON payload and return the decoded JSON response.

        Parameters
        ----------
        path : str
            Endpoint path, with or without leading slash.
        payload : dict[str, typing.Any]
            JSON-serializable body.

        Returns
        -------
        typing.Any
            Decoded JSON body.

        Raises
        ------
        APIError
            If the response status is not 2xx.
        """
        url = self.build_url(path=path)
        async with self._client_factory() as client:
            response = await client.post(
                url=url,
                headers=self.build_headers(),
                json=payload,
            )
        if not response.is_success:
            log.debug(
                event="API call failed",
                url=url,
                status_code=response.status_code,
            )
            raise APIError(
                status_code=response.status_code,
                reason=response.reason_phrase,
                headers=response.headers,
                body=response.text or None,
            )
        return response.json()
