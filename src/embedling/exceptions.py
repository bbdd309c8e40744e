"""
Embedling-specific runtime exceptions.
"""

from __future__ import annotations

import typing as t

RETRYABLE_STATUS_CODES = frozenset({429})


class EmbedlingError(Exception):
    """Base class for every error raised by embedling."""


class APIError(EmbedlingError):
    """
    Non-2xx response returned by the remote API.

    Parameters
    ----------
    status_code : int
        HTTP status code.
    reason : str
        HTTP reason phrase.
    headers : typing.Mapping[str, str] | None, optional
        Response headers.
    body : str | None, optional
        Raw response body, when one was sent.
    """

    def __init__(
        self,
        status_code: int,
        reason: str,
        headers: t.Mapping[str, str] | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(f"Error {status_code}: {reason}")
        self.status_code = status_code
        self.reason = reason
        self.headers = dict(headers or {})
        self.body = body

    @property
    def is_retryable(self) -> bool:
        """
        Whether the status signals server overload or rate limiting.

        Returns
        -------
        bool
            ``True`` for 429 and every 5xx status.
        """
        return is_retryable_status(status_code=self.status_code)


class MissingCredentialsError(EmbedlingError):
    """No API key was passed and none was found in the environment."""


class QueueFullError(EmbedlingError):
    """Too much work is already queued on this engine."""


class PermanentFailureError(EmbedlingError):
    """
    The engine gave up after sustained retryable failures.

    Notes
    -----
    The state is terminal for the engine instance; create a new one to recover.
    """


class BatchFailedError(EmbedlingError):
    """
    A batch failed with a non-retryable error.

    Parameters
    ----------
    batch_id : str
        Identifier of the failing batch.
    payload : typing.Any
        Payload of the item this error is attached to.
    cause : BaseException
        Underlying error.
    """

    def __init__(self, *, batch_id: str, payload: t.Any, cause: BaseException) -> None:
        super().__init__(
            f"Batch {batch_id}: call for {preview_payload(payload=payload)!r}... "
            f"failed with error {cause}"
        )
        self.batch_id = batch_id
        self.payload = payload
        self.__cause__ = cause


class ResultCountMismatchError(EmbedlingError):
    """The collaborator returned a result list whose length differs from the batch."""


class ItemTimeoutError(EmbedlingError, TimeoutError):
    """An item did not settle within the configured per-item timeout."""


def preview_payload(*, payload: t.Any, length: int = 30) -> str:
    """
    Return a short prefix of a payload for error messages.

    Parameters
    ----------
    payload : typing.Any
        Payload to describe.
    length : int, optional
        Maximum number of characters kept.

    Returns
    -------
    str
        Truncated string form of the payload.
    """
    return str(payload)[:length]


def is_retryable_status(*, status_code: int) -> bool:
    """
    Classify an HTTP status code.

    Parameters
    ----------
    status_code : int
        HTTP status code.

    Returns
    -------
    bool
        ``True`` for rate limiting (429) and server errors (5xx).
    """
    return status_code in RETRYABLE_STATUS_CODES or 500 <= status_code <= 599


def is_retryable_error(*, error: BaseException) -> bool:
    """
    Detect whether an exception chain was caused by a retryable API response.

    Parameters
    ----------
    error : BaseException
        Top-level exception to inspect.

    Returns
    -------
    bool
        ``True`` when the exception or any nested cause/context carries a
        429 or 5xx status code.
    """
    seen: set[int] = set()
    to_visit: list[BaseException] = [error]
    while to_visit:
        current = to_visit.pop()
        current_id = id(current)
        if current_id in seen:
            continue
        seen.add(current_id)

        status_code = getattr(current, "status_code", None)
        if status_code is None:
            response = getattr(current, "response", None)
            status_code = getattr(response, "status_code", None)
        if isinstance(status_code, int) and is_retryable_status(status_code=status_code):
            return True

        cause = getattr(current, "__cause__", None)
        if isinstance(cause, BaseException):
            to_visit.append(cause)
        context = getattr(current, "__context__", None)
        if isinstance(context, BaseException):
            to_visit.append(context)

    return False
