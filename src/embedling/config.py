"""
Settings resolution for the API client.

Explicit arguments win over environment variables, which win over defaults.
A ``.env`` file in the working directory is loaded without overriding
variables already set in the process environment.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

from embedling.exceptions import MissingCredentialsError

API_KEY_ENV_VAR = "ATLAS_API_KEY"
API_DOMAIN_ENV_VAR = "ATLAS_API_DOMAIN"
TIMEOUT_ENV_VAR = "EMBEDLING_TIMEOUT_SECONDS"
LOG_LEVEL_ENV_VAR = "EMBEDLING_LOG_LEVEL"

DEFAULT_API_DOMAIN = "api-atlas.nomic.ai"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_LOG_LEVEL = "DEBUG"


@dataclass(frozen=True)
class ClientSettings:
    """
    Resolved connection settings.

    Parameters
    ----------
    api_key : str | None
        API key sent as a bearer token, ``None`` for anonymous calls.
    api_domain : str
        Host (and optional port) of the API.
    timeout_seconds : float
        Per-request HTTP timeout.
    """

    api_key: str | None
    api_domain: str
    timeout_seconds: float

    @property
    def base_url(self) -> str:
        """
        Return the API base URL.

        Returns
        -------
        str
            ``http://`` for local deployments, ``https://`` otherwise.
        """
        protocol = "http" if self.api_domain.startswith("localhost") else "https"
        return f"{protocol}://{self.api_domain}"

    def require_api_key(self) -> str:
        """
        Return the API key or fail.

        Returns
        -------
        str
            Configured API key.

        Raises
        ------
        MissingCredentialsError
            If no key was configured.
        """
        if not self.api_key:
            raise MissingCredentialsError(
                "Could not authorize you with Nomic. "
                f"Pass api_key explicitly or set {API_KEY_ENV_VAR} in your environment."
            )
        return self.api_key


def _resolve_timeout(*, timeout_seconds: float | None) -> float:
    if timeout_seconds is not None:
        resolved = float(timeout_seconds)
    else:
        env_value = os.getenv(TIMEOUT_ENV_VAR)
        if not env_value:
            return DEFAULT_TIMEOUT_SECONDS
        try:
            resolved = float(env_value)
        except ValueError as error:
            raise ValueError(
                f"{TIMEOUT_ENV_VAR} must be a number of seconds, got {env_value!r}"
            ) from error
    if resolved <= 0:
        raise ValueError(f"timeout_seconds must be positive, got {resolved}")
    return resolved


def load_settings(
    *,
    api_key: str | None = None,
    api_domain: str | None = None,
    timeout_seconds: float | None = None,
) -> ClientSettings:
    """
    Resolve client settings from arguments, environment and defaults.

    Parameters
    ----------
    api_key : str | None, optional
        Explicit API key.
    api_domain : str | None, optional
        Explicit API domain, e.g. ``localhost:8000`` in testing.
    timeout_seconds : float | None, optional
        Explicit HTTP timeout.

    Returns
    -------
    ClientSettings
        Resolved settings.
    """
    load_dotenv(override=False)
    return ClientSettings(
        api_key=api_key or os.getenv(API_KEY_ENV_VAR) or None,
        api_domain=api_domain or os.getenv(API_DOMAIN_ENV_VAR) or DEFAULT_API_DOMAIN,
        timeout_seconds=_resolve_timeout(timeout_seconds=timeout_seconds),
    )


def resolve_log_level(*, level: int | str | None = None) -> int:
    """
    Resolve the package log level from an argument, the environment or the default.

    Parameters
    ----------
    level : int | str | None, optional
        Explicit level, numeric or a name such as ``"INFO"``.

    Returns
    -------
    int
        Numeric logging level.

    Raises
    ------
    ValueError
        If the level is not a known level name or a number.
    """
    if level is None:
        load_dotenv(override=False)
        level = os.getenv(LOG_LEVEL_ENV_VAR) or DEFAULT_LOG_LEVEL
    if isinstance(level, int):
        return level
    if level.strip().isdigit():
        return int(level)
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"{LOG_LEVEL_ENV_VAR} must be a logging level name, got {level!r}")
    return resolved
