"""Correlation of worker responses with the calls that are waiting for them.

Each in-flight call is a PendingCall keyed by its JSON-RPC id. A call is
settled exactly once, by whichever comes first: the matching response,
its timeout, or the worker exiting.

All methods are synchronous and must be used from the event loop thread,
so registration, resolution and expiry never interleave.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from kiwi_tcms_mcp.errors import BridgeError, CallTimeout, DuplicateId

logger = logging.getLogger(__name__)

RequestId = str | int

# Long window suited to slow Kiwi TCMS operations (bulk runs, reports)
DEFAULT_TIMEOUT_SECONDS = 120.0


@dataclass
class PendingCall:
    """A request awaiting its correlated response."""

    id: RequestId
    future: asyncio.Future
    timeout: float
    submitted_at: float = field(default_factory=time.monotonic)
    timer: asyncio.TimerHandle | None = None

    @property
    def deadline(self) -> float:
        return self.submitted_at + self.timeout

    @property
    def done(self) -> bool:
        return self.future.done()

    def settle(self, payload: dict[str, Any]) -> bool:
        """Resolve with a response. Returns False if already settled."""
        if self.future.done():
            return False
        self._cancel_timer()
        self.future.set_result(payload)
        return True

    def fail(self, error: BaseException) -> bool:
        """Resolve with an error. Returns False if already settled."""
        if self.future.done():
            return False
        self._cancel_timer()
        self.future.set_exception(error)
        return True

    def cancel(self) -> None:
        self._cancel_timer()
        self.future.cancel()

    async def wait(self) -> dict[str, Any]:
        return await self.future

    def _cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class CallCorrelator:
    """In-flight call registry with per-call deadlines."""

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        """Initialize the correlator.

        Args:
            timeout_seconds: Deadline applied to every call, measured from
                registration.
        """
        self._timeout = timeout_seconds
        self._pending: dict[RequestId, PendingCall] = {}

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def register(self, request_id: RequestId, timeout: float | None = None) -> PendingCall:
        """Add a call to the in-flight set and arm its timeout.

        Args:
            request_id: Correlation id, unique among in-flight calls.
            timeout: Override of the default deadline, in seconds.

        Returns:
            The registered call.

        Raises:
            DuplicateId: If a call with this id is already in flight.
        """
        if request_id in self._pending:
            raise DuplicateId(
                f"Request id {request_id!r} is already in flight", request_id=request_id
            )

        loop = asyncio.get_running_loop()
        call = PendingCall(
            id=request_id,
            future=loop.create_future(),
            timeout=self._timeout if timeout is None else timeout,
        )
        call.timer = loop.call_later(call.timeout, self._expire_call, call)
        self._pending[request_id] = call
        logger.debug("Registered call", extra={"request_id": request_id})
        return call

    def resolve(self, request_id: RequestId, payload: dict[str, Any]) -> bool:
        """Deliver a response to the call waiting for it.

        Unknown ids (late, duplicate or stray responses) are dropped.

        Returns:
            True if a pending call was resolved.
        """
        call = self._pending.pop(request_id, None)
        if call is None:
            logger.debug("Dropping unmatched response", extra={"request_id": request_id})
            return False
        return call.settle(payload)

    def expire(self, request_id: RequestId) -> bool:
        """Fail a still-pending call with CallTimeout.

        Returns:
            True if the call was still in flight.
        """
        call = self._pending.get(request_id)
        if call is None:
            return False
        return self._expire_call(call)

    def fail_all(self, error_factory: Callable[[RequestId], BridgeError]) -> int:
        """Fail every in-flight call.

        Calls registered after this returns are not affected.

        Args:
            error_factory: Builds the error for a given call id.

        Returns:
            Number of calls failed.
        """
        calls = list(self._pending.values())
        self._pending.clear()
        for call in calls:
            call.fail(error_factory(call.id))
        return len(calls)

    def discard(self, request_id: RequestId) -> bool:
        """Forget a call whose caller stopped waiting.

        The worker is not told; a response arriving later is dropped as
        unmatched.
        """
        call = self._pending.pop(request_id, None)
        if call is None:
            return False
        call.cancel()
        logger.debug("Discarded call", extra={"request_id": request_id})
        return True

    def _expire_call(self, call: PendingCall) -> bool:
        # A newer call may have reused the id since this timer was armed
        if self._pending.get(call.id) is not call:
            return False
        del self._pending[call.id]
        logger.warning(
            "Request %r timed out after %.1fs", call.id, call.timeout,
            extra={"request_id": call.id},
        )
        return call.fail(
            CallTimeout(
                f"Request timeout after {call.timeout:g} seconds",
                request_id=call.id,
                timeout_seconds=call.timeout,
            )
        )
