"""Single-flight coordination of upstream fetches.

For each cache key at most one fetch is in progress. The first caller to
``acquire`` a key becomes the leader and performs the fetch; callers that
arrive while the fetch is running (or after it was published but before the
last waiter left) are followers and receive the leader's outcome.

State transitions never ``await``, so on a single event loop they run
atomically; nothing is locked across upstream or storage I/O.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .exceptions import CoordinationError, UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class FetchState:
    """In-memory record for one key being fetched."""

    future: "asyncio.Future[Any]"
    waiters: int = 0
    published: bool = False


@dataclass
class FetchTicket:
    """Handle returned by ``FetchCoordinator.acquire``."""

    key: str
    is_leader: bool
    state: FetchState
    released: bool = False

    async def wait(self) -> Any:
        """Wait for the leader's outcome; raises the leader's exception on failure."""
        # shield: a cancelled follower must not cancel the shared outcome
        return await asyncio.shield(self.state.future)


class FetchCoordinator:
    """Guarantees at most one in-flight fetch per key."""

    def __init__(self) -> None:
        self._states: Dict[str, FetchState] = {}

    def acquire(self, key: str) -> FetchTicket:
        state = self._states.get(key)
        if state is None:
            state = FetchState(future=asyncio.get_running_loop().create_future())
            self._states[key] = state
            state.waiters = 1
            logger.debug("Leader acquired fetch for %s", key)
            return FetchTicket(key=key, is_leader=True, state=state)
        state.waiters += 1
        logger.debug("Follower joined fetch for %s (%d waiters)", key, state.waiters)
        return FetchTicket(key=key, is_leader=False, state=state)

    def publish(
        self,
        ticket: FetchTicket,
        value: Any = None,
        error: Optional[BaseException] = None,
    ) -> None:
        """Publish the leader's outcome to every follower.

        Raises:
            CoordinationError: Called by a follower, or called twice.
        """
        state = ticket.state
        if not ticket.is_leader:
            raise CoordinationError(f"Follower attempted to publish {ticket.key}")
        if state.published or state.future.done():
            raise CoordinationError(f"Outcome for {ticket.key} already published")
        if self._states.get(ticket.key) is not state:
            raise CoordinationError(f"No fetch in progress for {ticket.key}")

        state.published = True
        if error is not None:
            state.future.set_exception(error)
            # Mark retrieved so an unobserved failure is not reported at GC time
            state.future.exception()
        else:
            state.future.set_result(value)

    def release(self, ticket: FetchTicket) -> None:
        """Drop a waiter; clears the key's state once published and drained."""
        if ticket.released:
            return
        ticket.released = True
        state = ticket.state
        state.waiters -= 1
        if state.waiters <= 0 and state.published and self._states.get(ticket.key) is state:
            del self._states[ticket.key]
            logger.debug("Fetch state for %s cleared", ticket.key)

    async def run(self, key: str, fetch: Callable[[], Awaitable[T]]) -> T:
        """Run ``fetch`` once for all concurrent callers of ``key``.

        The leader publishes whatever ``fetch`` produced, including
        failures and its own cancellation, so followers never hang.
        """
        ticket = self.acquire(key)
        try:
            if not ticket.is_leader:
                return await ticket.wait()
            try:
                result = await fetch()
            except asyncio.CancelledError:
                self.publish(ticket, error=UpstreamError(f"Fetch for {key} was cancelled"))
                raise
            except Exception as exc:
                self.publish(ticket, error=exc)
                raise
            self.publish(ticket, value=result)
            return result
        finally:
            self.release(ticket)

    def in_flight(self) -> int:
        """Number of keys with coordination state."""
        return len(self._states)
