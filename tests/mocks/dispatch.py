import asyncio
import time
import typing as t

from embedling.core import BatchResponse
from embedling.exceptions import APIError


def api_error(*, status_code: int) -> APIError:
    return APIError(status_code=status_code, reason="scripted")


class ScriptedDispatch:
    """
    Dispatch collaborator replaying scripted outcomes.

    Each call consumes the next outcome: an exception is raised, a callable is
    applied to the payloads, anything else falls back to echoing results.

    Parameters
    ----------
    outcomes : list[typing.Any] | None, optional
        Outcomes for successive calls.
    delay_seconds : float, optional
        Simulated network latency.
    """

    def __init__(
        self,
        outcomes: list[t.Any] | None = None,
        *,
        delay_seconds: float = 0.0,
    ) -> None:
        self._outcomes = list(outcomes or [])
        self._delay_seconds = delay_seconds
        self.calls: list[list[t.Any]] = []
        self.call_times: list[float] = []

    @staticmethod
    def echo(payloads: list[t.Any]) -> BatchResponse[str]:
        return BatchResponse(results=[f"result:{p}" for p in payloads], usage=len(payloads))

    async def __call__(self, payloads: list[t.Any]) -> BatchResponse[t.Any]:
        self.calls.append(list(payloads))
        self.call_times.append(time.monotonic())
        await asyncio.sleep(self._delay_seconds)
        outcome = self._outcomes.pop(0) if self._outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(payloads)
        return self.echo(payloads)
