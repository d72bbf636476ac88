"""
A JSON-RPC session over one pair of ordered byte streams.

DuplexSession owns a FrameCodec and a Correlator and runs a single reader task
that turns incoming bytes into frames and dispatches each one:

    response (id, no method)            -> Correlator, by ResponseKey(id)
    request/notification whose method
      has a waiter (see expect())       -> Correlator, by MethodKey(method)
    other request/notification          -> on_unsolicited(method) handler;
                                           without one a request is answered
                                           with "Method not found" and a
                                           notification is dropped

Outgoing calls do not block the reader: call() registers a waiter, writes the
frame and suspends on its own future, so any number of calls can be in flight
while frames keep flowing.

Handlers for unsolicited requests are awaited inline by the reader task. A
slow handler therefore delays every frame queued behind it on this session,
and a handler must not await a call() on the same session (its response could
never be read). Handlers that need to do either should hand off to a task.

Typical use with a child process speaking JSON-RPC on stdio:

    proc = await asyncio.create_subprocess_exec(..., stdin=PIPE, stdout=PIPE)
    async with DuplexSession(proc.stdout, proc.stdin) as session:
        tools = await session.call("tools/list")
"""

import asyncio
import itertools
import logging
from typing import Any, Awaitable, Callable, Protocol

from pydantic import ValidationError

from src.config import settings
from src.correlator import Correlator, MethodKey, PendingRequest, ResponseKey
from src.errors import ApplicationError, ConnectionClosed, DuplicateKey, MalformedFrame
from src.framing import Frame, FrameCodec
from src.messages import (
    INTERNAL_ERROR,
    METHOD_NOT_FOUND,
    JSONRPCMessage,
    make_error,
    make_notification,
    make_request,
    make_result,
)

logger = logging.getLogger("mcp-client")

UnsolicitedHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class ByteReader(Protocol):
    async def read(self, n: int = -1) -> bytes: ...


class ByteWriter(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...


class DuplexSession:
    def __init__(
        self,
        reader: ByteReader,
        writer: ByteWriter,
        *,
        timeout: float | None = None,
        chunk_size: int | None = None,
    ):
        self._reader = reader
        self._writer = writer
        self._codec = FrameCodec()
        self._correlator = Correlator()
        self._handlers: dict[str, UnsolicitedHandler] = {}
        self._expected: dict[str, PendingRequest] = {}
        self._ids = itertools.count(1)
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task | None = None
        self._closed = False
        self.timeout = settings.request_timeout_seconds if timeout is None else timeout
        self.chunk_size = chunk_size or settings.read_chunk_size

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    async def __aenter__(self) -> "DuplexSession":
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def start(self) -> None:
        """Start the reader task. Must be called from a running event loop."""
        if self._reader_task is None:
            self._reader_task = asyncio.get_running_loop().create_task(self._read_loop())

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._correlator)

    async def close(self) -> None:
        """Stop reading, close the writer and fail anything still pending."""
        task, self._reader_task = self._reader_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._shutdown(ConnectionClosed("Session closed"))

    def _shutdown(self, exc: ConnectionClosed) -> None:
        if self._closed:
            return
        self._closed = True
        failed = self._correlator.fail_all(exc)
        self._writer.close()
        logger.info(
            "Session closed",
            extra={"log_data": {"reason": exc.message, "failed_waiters": failed}},
        )

    # -----------------------------------------------------------------------
    # Outgoing
    # -----------------------------------------------------------------------

    async def send(self, message: dict[str, Any]) -> None:
        """Write one framed message. Raises ConnectionClosed once the session is down."""
        if self._closed:
            raise ConnectionClosed()
        data = self._codec.encode(message)
        async with self._write_lock:
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, OSError) as e:
                self._shutdown(ConnectionClosed(f"Write failed: {e}"))
                raise ConnectionClosed(f"Write failed: {e}") from e

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self.send(make_notification(method, params))

    async def call(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Send a request and wait for its correlated response.

        Returns the response's `result`. A request that times out is not
        retracted: the peer may still answer, and that late answer is dropped
        as an orphan.

        Raises:
            ApplicationError: The peer answered with an error object
            RequestTimeout: No response within `timeout` seconds
            ConnectionClosed: The stream closed before a response arrived
        """
        request_id = next(self._ids)
        key = ResponseKey(request_id)
        pending = self._correlator.register(key)
        try:
            await self.send(make_request(request_id, method, params))
        except BaseException:
            self._correlator.discard(key)
            # A failed write has already failed this waiter with ConnectionClosed.
            if pending.future.done() and not pending.future.cancelled():
                pending.future.exception()
            raise

        response: JSONRPCMessage = await self._correlator.wait(
            pending, self.timeout if timeout is None else timeout
        )
        if response.error is not None:
            raise ApplicationError(
                response.error.message,
                rpc_code=response.error.code,
                data=response.error.data,
            )
        return response.result

    # -----------------------------------------------------------------------
    # Peer-initiated requests
    # -----------------------------------------------------------------------

    def on_unsolicited(self, method: str, handler: UnsolicitedHandler) -> None:
        """
        Route peer requests/notifications for `method` to `handler`.

        The handler receives the params dict. For requests, its return value
        is sent back as the result; ApplicationError becomes an error response
        with its rpc_code, any other exception an internal error.
        """
        self._handlers[method] = handler

    def expect(self, method: str) -> None:
        """
        Register interest in the next peer request for `method`.

        Call before triggering the peer, then collect the message with
        wait_for_request(). Only one waiter per method at a time.
        """
        if method in self._expected:
            raise DuplicateKey(MethodKey(method))
        self._expected[method] = self._correlator.register(MethodKey(method))

    async def wait_for_request(self, method: str, timeout: float | None = None) -> JSONRPCMessage:
        """Wait for the request registered with expect(method)."""
        # The request may already have arrived; its future then holds it.
        pending = self._expected.pop(method, None)
        if pending is None:
            raise KeyError(f"expect({method!r}) was not called")
        return await self._correlator.wait(pending, self.timeout if timeout is None else timeout)

    async def respond(self, request_id: Any, result: Any) -> None:
        await self.send(make_result(request_id, result))

    async def respond_error(self, request_id: Any, code: int, message: str, data: Any = None) -> None:
        await self.send(make_error(request_id, code, message, data))

    # -----------------------------------------------------------------------
    # Incoming
    # -----------------------------------------------------------------------

    async def _read_loop(self) -> None:
        reason = "Peer closed the stream"
        try:
            while True:
                chunk = await self._reader.read(self.chunk_size)
                if not chunk:
                    for frame in self._codec.flush():
                        await self._dispatch(frame)
                    break
                for frame in self._codec.feed(chunk):
                    await self._dispatch(frame)
        except asyncio.CancelledError:
            reason = "Session closed"
            raise
        except (ConnectionError, OSError) as e:
            reason = f"Read failed: {e}"
        except ConnectionClosed as e:
            reason = e.message
        finally:
            self._shutdown(ConnectionClosed(reason))

    def _report_malformed(self, error: MalformedFrame) -> None:
        logger.warning(
            "Malformed frame skipped",
            extra={"log_data": {"code": error.code, "error": error.message, "line": error.line[:200]}},
        )

    async def _dispatch(self, frame: Frame) -> None:
        if not frame.ok:
            self._report_malformed(frame.error)
            return
        try:
            message = JSONRPCMessage.model_validate(frame.message)
        except ValidationError as e:
            self._report_malformed(MalformedFrame(f"Not a JSON-RPC message: {e}", line=frame.line))
            return

        if message.is_response:
            self._correlator.complete(ResponseKey(message.id), message)
            return

        method_key = MethodKey(message.method)
        if method_key in self._correlator:
            self._correlator.complete(method_key, message)
            return

        handler = self._handlers.get(message.method)
        if handler is None:
            logger.warning(
                "No handler for peer request",
                extra={"log_data": {"method": message.method, "id": message.id}},
            )
            if not message.is_notification:
                await self.respond_error(
                    message.id, METHOD_NOT_FOUND, "Method not found", {"method": message.method}
                )
            return
        await self._run_handler(handler, message)

    async def _run_handler(self, handler: UnsolicitedHandler, message: JSONRPCMessage) -> None:
        params = message.params if isinstance(message.params, dict) else {}
        try:
            result = await handler(params)
        except ApplicationError as e:
            if not message.is_notification:
                await self.respond_error(message.id, e.rpc_code or INTERNAL_ERROR, e.message, e.data)
            return
        except Exception as e:
            logger.exception(
                "Handler for peer request failed",
                extra={"log_data": {"method": message.method, "id": message.id}},
            )
            if not message.is_notification:
                await self.respond_error(message.id, INTERNAL_ERROR, str(e))
            return
        if not message.is_notification:
            await self.respond(message.id, result)
