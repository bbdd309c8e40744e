"""
Consecutive-failure tracking for the batching engine.
"""

from __future__ import annotations

import structlog

from embedling.exceptions import PermanentFailureError

log = structlog.get_logger(__name__)

DEFAULT_BACKOFF_SEED_SECONDS = 1.0
DEFAULT_BACKOFF_CEILING_SECONDS = 8.0


class BackoffController:
    """
    Track retry delays and latch a permanent failure.

    The delay starts at ``seed_seconds`` and doubles on each consecutive
    retryable failure. Once the next delay would exceed ``ceiling_seconds``
    the controller latches instead; a latched controller never recovers.

    Parameters
    ----------
    seed_seconds : float
        First retry delay.
    ceiling_seconds : float
        Largest delay allowed before giving up.
    """

    def __init__(
        self,
        *,
        seed_seconds: float = DEFAULT_BACKOFF_SEED_SECONDS,
        ceiling_seconds: float = DEFAULT_BACKOFF_CEILING_SECONDS,
    ) -> None:
        if seed_seconds <= 0:
            raise ValueError(f"seed_seconds must be positive, got {seed_seconds}")
        if ceiling_seconds < seed_seconds:
            raise ValueError(
                f"ceiling_seconds ({ceiling_seconds}) must be >= seed_seconds ({seed_seconds})"
            )
        self._seed_seconds = seed_seconds
        self._ceiling_seconds = ceiling_seconds
        self.delay_seconds: float | None = None
        self.permanent_failure: PermanentFailureError | None = None
        self.resume_at: float = 0.0

    @property
    def latched(self) -> bool:
        return self.permanent_failure is not None

    def is_backing_off(self, *, now: float) -> bool:
        """
        Whether a retry delay is still running.

        Parameters
        ----------
        now : float
            Current loop time.

        Returns
        -------
        bool
            ``True`` until ``resume_at`` is reached.
        """
        return self.delay_seconds is not None and now < self.resume_at

    def remaining(self, *, now: float) -> float:
        return max(0.0, self.resume_at - now) if self.delay_seconds is not None else 0.0

    def escalate(self, *, now: float) -> float | None:
        """
        Register a retryable failure.

        Parameters
        ----------
        now : float
            Current loop time.

        Returns
        -------
        float | None
            Delay to wait before retrying, or ``None`` when the controller
            just latched (or already had).
        """
        if self.permanent_failure is not None:
            return None

        next_delay = self._seed_seconds if self.delay_seconds is None else self.delay_seconds * 2
        if next_delay > self._ceiling_seconds:
            self.permanent_failure = PermanentFailureError(
                "Too many requests have failed, disabling embedder. Please try again later."
            )
            log.error(
                event="Backoff ceiling exceeded, latching permanent failure",
                last_delay_seconds=self.delay_seconds,
                ceiling_seconds=self._ceiling_seconds,
            )
            return None

        self.delay_seconds = next_delay
        self.resume_at = now + next_delay
        log.warning(
            event="Backing off after retryable failure",
            delay_seconds=next_delay,
        )
        return next_delay

    def reset(self) -> None:
        """Clear the retry delay after a successful batch."""
        if self.delay_seconds is not None:
            log.debug(event="Backoff reset", previous_delay_seconds=self.delay_seconds)
        self.delay_seconds = None
        self.resume_at = 0.0
