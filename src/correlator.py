"""
Correlation of asynchronous replies with the flows waiting for them.

Two keyspaces share one Correlator:

- ResponseKey(id): a response to a request we sent, matched by JSON-RPC id
- MethodKey(method): a request the peer is expected to send us, matched by
  method name (e.g. waiting for "sampling/createMessage" during a tool call)

Keeping them apart means an id can never collide with a method name. Only one
waiter per method name can be outstanding at a time; waiting for two
concurrent identical peer requests would need a richer key.

Every waiter ends exactly once: completed, failed, or timed out. A completion
that arrives after the waiter is gone is an orphan and is logged and dropped.

All transitions run on the event loop thread, so each one is atomic with
respect to the others without a lock.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Hashable

from src.errors import ConnectionClosed, DuplicateKey, RequestTimeout

logger = logging.getLogger("mcp-client")


# Dataclass equality also compares the class, so ResponseKey("x") != MethodKey("x").
@dataclass(frozen=True)
class ResponseKey:
    request_id: Hashable


@dataclass(frozen=True)
class MethodKey:
    method: str


CorrelationKey = ResponseKey | MethodKey


@dataclass
class PendingRequest:
    """A single-fire completion slot owned by the Correlator."""

    key: CorrelationKey
    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)


class Correlator:
    def __init__(self) -> None:
        self._pending: dict[CorrelationKey, PendingRequest] = {}
        self._closed: ConnectionClosed | None = None

    def __contains__(self, key: CorrelationKey) -> bool:
        return key in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def get(self, key: CorrelationKey) -> PendingRequest | None:
        return self._pending.get(key)

    def register(
        self,
        key: CorrelationKey,
        on_complete: Callable[[asyncio.Future], Any] | None = None,
    ) -> PendingRequest:
        """
        Install a waiter for `key`.

        Args:
            key: ResponseKey or MethodKey
            on_complete: Optional callback run with the future once it resolves

        Raises:
            DuplicateKey: A waiter for `key` is already installed
            ConnectionClosed: The session has already shut down
        """
        if self._closed is not None:
            raise self._closed
        if key in self._pending:
            raise DuplicateKey(key)

        future = asyncio.get_running_loop().create_future()
        if on_complete is not None:
            future.add_done_callback(on_complete)
        pending = PendingRequest(key=key, future=future)
        self._pending[key] = pending
        return pending

    def complete(self, key: CorrelationKey, value: Any) -> bool:
        """
        Resolve and remove the waiter for `key`.

        Returns False, after logging, when no waiter is registered: the reply
        is late (its waiter timed out) or a duplicate.
        """
        pending = self._pending.pop(key, None)
        if pending is None or pending.future.done():
            logger.warning(
                "Orphan reply dropped",
                extra={"log_data": {"code": "ORPHAN_RESPONSE", "key": repr(key)}},
            )
            return False
        pending.future.set_result(value)
        return True

    def fail(self, key: CorrelationKey, exc: BaseException) -> bool:
        """Fail the waiter for `key` with `exc`. Same orphan rule as complete()."""
        pending = self._pending.pop(key, None)
        if pending is None or pending.future.done():
            return False
        pending.future.set_exception(exc)
        return True

    def discard(self, key: CorrelationKey) -> None:
        """Drop a waiter without resolving it (e.g. its request never got sent)."""
        pending = self._pending.pop(key, None)
        if pending is not None and not pending.future.done():
            pending.future.cancel()

    async def wait(self, pending: PendingRequest, timeout: float) -> Any:
        """
        Suspend until a waiter returned by register() resolves or `timeout` elapses.

        Takes the PendingRequest rather than its key so that a waiter failed by
        fail_all() between register() and wait() still reports ConnectionClosed.
        On timeout the waiter is unregistered, so a reply arriving later becomes
        an orphan instead of resolving a dead waiter.

        Raises:
            RequestTimeout: The deadline elapsed
            ConnectionClosed: The session shut down while waiting
        """
        key = pending.key
        try:
            return await asyncio.wait_for(pending.future, timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Request timed out",
                extra={
                    "log_data": {
                        "code": RequestTimeout.code,
                        "key": repr(key),
                        "timeout": timeout,
                        "waited": round(time.monotonic() - pending.created_at, 3),
                    }
                },
            )
            raise RequestTimeout(key, timeout) from None
        finally:
            # Timeout, cancellation of the waiting task, or normal completion:
            # in every case this waiter is finished.
            if self._pending.get(key) is pending:
                del self._pending[key]

    def fail_all(self, exc: ConnectionClosed) -> int:
        """
        Fail every pending waiter with `exc` and refuse new registrations.

        Returns the number of waiters failed.
        """
        self._closed = exc
        pending, self._pending = self._pending, {}
        failed = 0
        for entry in pending.values():
            if not entry.future.done():
                entry.future.set_exception(exc)
                failed += 1
        return failed
