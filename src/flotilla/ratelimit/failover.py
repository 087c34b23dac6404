"""Reacting to throttled invocations."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..events import EventBus
from ..sessions.models import IntegrationStats, Session
from .credentials import CredentialPool

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FailoverDecision:
    credential_index: int
    delay: float
    exhausted: bool


class FailoverPolicy:
    """Rotate credentials for throttled sessions so their work can be retried."""

    def __init__(
        self,
        pool: CredentialPool,
        stats: IntegrationStats,
        *,
        exhausted_retry_delay: float = 30.0,
        exhausted_retry_cap: float = 300.0,
        events: EventBus | None = None,
    ) -> None:
        self._pool = pool
        self._stats = stats
        self._exhausted_retry_delay = exhausted_retry_delay
        self._exhausted_retry_cap = exhausted_retry_cap
        self._events = events

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    def handle(self, session: Session) -> FailoverDecision:
        """Move ``session`` to a fresh credential and clear its resumable handle.

        Only the rate-limit counter changes; the session's assignment is
        retried unchanged by the caller after ``delay`` seconds.
        """

        self._stats.rate_limits += 1
        previous = session.credential_index
        session.resumable_handle = None

        replacement = self._pool.rotate(previous)
        if replacement is None:
            wait = self._pool.seconds_until_available()
            delay = max(self._exhausted_retry_delay, min(wait, self._exhausted_retry_cap))
            logger.warning(
                "All credentials cooling down; delaying retry",
                extra={"session_id": session.id, "delay": delay},
            )
            self._publish("ratelimit:exhausted", session.id, delay=delay)
            return FailoverDecision(credential_index=previous, delay=delay, exhausted=True)

        session.credential_index = replacement
        logger.info(
            "Rotated credential after rate limit",
            extra={
                "session_id": session.id,
                "from_credential": self._pool.name(previous),
                "to_credential": self._pool.name(replacement),
            },
        )
        self._publish(
            "ratelimit:rotated",
            session.id,
            from_credential=self._pool.name(previous),
            to_credential=self._pool.name(replacement),
        )
        return FailoverDecision(credential_index=replacement, delay=0.0, exhausted=False)

    def reselect(self, session: Session) -> int:
        """Move a session off a credential that is still cooling after a delayed retry."""

        current = session.credential_index
        if not self._pool.is_cooling(current):
            return current
        replacement = self._pool.next_available(current)
        if replacement is None:
            return current
        session.credential_index = replacement
        logger.info(
            "Credential recovered; switching before retry",
            extra={
                "session_id": session.id,
                "from_credential": self._pool.name(current),
                "to_credential": self._pool.name(replacement),
            },
        )
        self._publish(
            "ratelimit:rotated",
            session.id,
            from_credential=self._pool.name(current),
            to_credential=self._pool.name(replacement),
        )
        return replacement

    def _publish(self, event_type: str, session_id: str, **data) -> None:
        if self._events is not None:
            self._events.publish(event_type, session_id=session_id, **data)


__all__ = ["FailoverDecision", "FailoverPolicy"]
