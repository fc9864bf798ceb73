"""Call Registry - bookkeeping for outbound calls and subscriptions.

Tracks every in-flight unary call and every open subscription issued by
one endpoint, keyed by a call id from that endpoint's own id space.

Settlement is exactly-once: every path that settles an entry (response,
error, timeout, cancel, teardown) first pops it from the table. Whoever
pops it owns the settlement; everyone else finds nothing and does nothing.
All methods run on the endpoint's event loop, so the pop is atomic.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from .errors import CallCancelledError, CallIdExhaustedError, CallTimeoutError, RpcError

logger = logging.getLogger(__name__)

# Largest integer a JavaScript view can represent exactly
DEFAULT_MAX_CALL_ID = 2**53 - 1


class SubscriptionState(str, Enum):
    """Subscription lifecycle."""

    OPEN = "open"
    CLOSED = "closed"


@runtime_checkable
class SubscriptionSink(Protocol):
    """Consumer side of a subscription.

    on_event is called for each event in arrival order. Exactly one of
    on_complete / on_error is called once the subscription closes.
    """

    def on_event(self, value: Any) -> None: ...

    def on_complete(self) -> None: ...

    def on_error(self, error: RpcError) -> None: ...


@dataclass
class PendingCall:
    """One outstanding unary call.

    Attributes:
        call_id: Correlation id sent in the REQUEST frame
        future: Settled once with the result or an RpcError
        created_at: Monotonic creation time
        deadline: Monotonic time after which the call times out, if any
    """

    call_id: int
    future: asyncio.Future[Any]
    created_at: float = field(default_factory=time.monotonic)
    deadline: float | None = None
    label: str = ""
    _timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def elapsed(self) -> float:
        """Seconds since the call was issued."""
        return time.monotonic() - self.created_at


@dataclass
class Subscription:
    """One open server-streaming call."""

    call_id: int
    sink: SubscriptionSink
    state: SubscriptionState = SubscriptionState.OPEN
    label: str = ""
    events_delivered: int = 0


class CallRegistry:
    """Per-endpoint table of pending calls and subscriptions.

    Usage:
        registry = CallRegistry()

        pending = registry.register_call(deadline=5.0)
        transport.send(encode(Frame.request(pending.call_id, ...)))
        result = await pending.future

        call_id = registry.open_subscription(sink)
        registry.feed_event(call_id, value)   # from the dispatcher
        registry.close_subscription(call_id)  # STREAM_END

    Ids come from a single counter shared by calls and subscriptions, so
    an id never refers to both.
    """

    def __init__(
        self,
        max_call_id: int = DEFAULT_MAX_CALL_ID,
        *,
        on_timeout: Callable[[int], None] | None = None,
    ) -> None:
        if max_call_id < 1:
            raise ValueError("max_call_id must be at least 1")
        self._max_call_id = max_call_id
        self._on_timeout = on_timeout
        self._last_id = 0
        self._exhausted = False
        self._calls: dict[int, PendingCall] = {}
        self._subscriptions: dict[int, Subscription] = {}

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def exhausted(self) -> bool:
        """True once the call id space has run out."""
        return self._exhausted

    @property
    def pending_count(self) -> int:
        """Number of unsettled unary calls."""
        return len(self._calls)

    @property
    def subscription_count(self) -> int:
        """Number of open subscriptions."""
        return len(self._subscriptions)

    def __len__(self) -> int:
        return len(self._calls) + len(self._subscriptions)

    def is_empty(self) -> bool:
        """Check if nothing is in flight."""
        return not self._calls and not self._subscriptions

    def has_call(self, call_id: int) -> bool:
        return call_id in self._calls

    def has_subscription(self, call_id: int) -> bool:
        return call_id in self._subscriptions

    def get_call(self, call_id: int) -> PendingCall | None:
        return self._calls.get(call_id)

    def get_subscription(self, call_id: int) -> Subscription | None:
        return self._subscriptions.get(call_id)

    # =========================================================================
    # Id allocation
    # =========================================================================

    def _next_id(self) -> int:
        if self._exhausted or self._last_id >= self._max_call_id:
            if not self._exhausted:
                self._exhausted = True
                logger.error(
                    f"Call id space exhausted after {self._last_id} ids; "
                    "endpoint can no longer issue calls"
                )
            raise CallIdExhaustedError("Call id space exhausted")
        self._last_id += 1
        return self._last_id

    # =========================================================================
    # Unary calls
    # =========================================================================

    def register_call(self, deadline: float | None = None, *, label: str = "") -> PendingCall:
        """Allocate an id and a pending entry for a unary call.

        Args:
            deadline: Seconds until the call fails with TIMEOUT (None = never)
            label: Free-form text for log lines (usually "service/method")

        Returns:
            The PendingCall; await `pending.future` for the outcome

        Raises:
            CallIdExhaustedError: If the id space is used up
        """
        loop = asyncio.get_running_loop()
        call_id = self._next_id()
        pending = PendingCall(call_id=call_id, future=loop.create_future(), label=label)

        if deadline is not None:
            pending.deadline = pending.created_at + deadline
            pending._timer = loop.call_later(deadline, self._expire, call_id)

        self._calls[call_id] = pending
        return pending

    def resolve(self, call_id: int, value: Any) -> bool:
        """Settle a call with a result.

        Returns:
            True if this call settled the entry, False if it was unknown
            or already settled
        """
        pending = self._take_call(call_id)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_result(value)
        return True

    def reject(self, call_id: int, error: RpcError) -> bool:
        """Settle a call with an error. Same contract as resolve()."""
        pending = self._take_call(call_id)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.set_exception(error)
        return True

    def discard(self, call_id: int) -> bool:
        """Drop a pending call whose caller is no longer waiting.

        The future is cancelled instead of settled. Returns True if the
        entry was still pending.
        """
        pending = self._take_call(call_id)
        if pending is None:
            return False
        pending.future.cancel()
        return True

    def _take_call(self, call_id: int) -> PendingCall | None:
        pending = self._calls.pop(call_id, None)
        if pending is not None and pending._timer is not None:
            pending._timer.cancel()
            pending._timer = None
        return pending

    def _expire(self, call_id: int) -> None:
        pending = self._calls.get(call_id)
        if pending is None:
            return
        timeout = pending.deadline - pending.created_at if pending.deadline else 0.0
        logger.debug(f"Call #{call_id} {pending.label} timed out after {timeout:.3f}s")
        self.reject(call_id, CallTimeoutError(f"Call timed out after {timeout:g}s"))
        if self._on_timeout is not None:
            self._on_timeout(call_id)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def open_subscription(self, sink: SubscriptionSink, *, label: str = "") -> int:
        """Allocate an id and register a sink for a server-streaming call.

        Raises:
            CallIdExhaustedError: If the id space is used up
        """
        call_id = self._next_id()
        self._subscriptions[call_id] = Subscription(call_id=call_id, sink=sink, label=label)
        return call_id

    def feed_event(self, call_id: int, value: Any) -> bool:
        """Deliver one event to an open subscription.

        Returns:
            True if delivered, False if the subscription is unknown or closed
        """
        subscription = self._subscriptions.get(call_id)
        if subscription is None or subscription.state != SubscriptionState.OPEN:
            return False
        subscription.events_delivered += 1
        try:
            subscription.sink.on_event(value)
        except Exception:
            logger.exception(f"Error in subscription sink for #{call_id} {subscription.label}")
        return True

    def close_subscription(self, call_id: int, error: RpcError | None = None) -> bool:
        """Close a subscription and send its terminal signal exactly once.

        Args:
            call_id: Subscription id
            error: Close with on_error(error) instead of on_complete()

        Returns:
            True if this call closed the subscription
        """
        subscription = self._subscriptions.pop(call_id, None)
        if subscription is None or subscription.state != SubscriptionState.OPEN:
            return False
        subscription.state = SubscriptionState.CLOSED
        try:
            if error is None:
                subscription.sink.on_complete()
            else:
                subscription.sink.on_error(error)
        except Exception:
            logger.exception(f"Error closing subscription sink for #{call_id} {subscription.label}")
        return True

    # =========================================================================
    # Teardown
    # =========================================================================

    def cancel_all(self, error: RpcError | None = None) -> int:
        """Reject every pending call and close every subscription.

        Args:
            error: Error to deliver (default: CallCancelledError)

        Returns:
            Number of entries settled
        """
        if error is None:
            error = CallCancelledError("Endpoint disposed")

        settled = 0
        for call_id in list(self._calls):
            if self.reject(call_id, _clone(error)):
                settled += 1
        for call_id in list(self._subscriptions):
            if self.close_subscription(call_id, _clone(error)):
                settled += 1

        if settled:
            logger.info(f"Cancelled {settled} in-flight call(s) [{error.code}]")
        return settled


def _clone(error: RpcError) -> RpcError:
    # Each consumer gets its own exception instance
    return type(error)(error.message, code=error.code, details=error.details)
