"""
Error taxonomy for requirement evaluation and the duplex transport.

Every error carries a short machine-readable `code` so log records and
diagnostics can be filtered without matching on message text.

Transport errors are local to one call unless stated otherwise:
- MalformedFrame: one line failed to parse; the session skips it and continues.
- DuplicateKey: two waiters for one key; fatal to that call only.
- RequestTimeout: no response within the deadline; the caller may retry.
- ConnectionClosed: the byte stream is gone; every pending waiter gets it once.

Orchestration errors:
- RequirementsNotMet: the evaluator vetoed a call before anything was sent.
- ApplicationError: the peer answered with an error object or an isError result.
- TooDeepRequirement: a requirement tree exceeds the depth ceiling.
"""

from typing import Any


class RequirementsError(Exception):
    """Base class for all errors raised by this package."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class TransportError(RequirementsError):
    code = "TRANSPORT_ERROR"


class MalformedFrame(TransportError):
    """
    A single line could not be decoded into a JSON-RPC message.

    The codec returns these instead of raising them so that one bad line never
    interrupts the frames that follow it.
    """

    code = "MALFORMED_FRAME"

    def __init__(self, message: str, *, line: str):
        super().__init__(message)
        self.line = line


class DuplicateKey(TransportError):
    code = "DUPLICATE_KEY"

    def __init__(self, key: Any):
        super().__init__(f"A waiter is already registered for {key!r}")
        self.key = key


class RequestTimeout(TransportError, TimeoutError):
    code = "TIMEOUT"

    def __init__(self, key: Any, timeout: float):
        super().__init__(f"No response for {key!r} within {timeout:g}s")
        self.key = key
        self.timeout = timeout


class ConnectionClosed(TransportError):
    code = "CONNECTION_CLOSED"

    def __init__(self, message: str = "Connection to peer closed"):
        super().__init__(message)


class ProtocolError(RequirementsError):
    """A well-formed message whose result does not have the expected shape."""

    code = "PROTOCOL_ERROR"


# ---------------------------------------------------------------------------
# Requirements
# ---------------------------------------------------------------------------


class RequirementSchemaError(RequirementsError, ValueError):
    code = "INVALID_REQUIREMENT"


class TooDeepRequirement(RequirementsError):
    code = "TOO_DEEP"

    def __init__(self, depth: int, limit: int):
        super().__init__(f"Requirement nesting depth {depth} exceeds the limit of {limit}")
        self.depth = depth
        self.limit = limit


class RequirementsNotMet(RequirementsError):
    """
    The caller's context does not satisfy a tool's requirements.

    Raised by CapabilityClient.invoke before any frame is sent.

    Attributes:
        tool: Name of the vetoed tool
        unmet: Unsatisfied requirement units, in tree order
    """

    code = "REQUIREMENTS_NOT_MET"

    def __init__(self, tool: str, unmet: tuple):
        details = "; ".join(str(expr) for expr in unmet) or "requirement evaluation failed"
        super().__init__(f"Cannot invoke '{tool}': {details}")
        self.tool = tool
        self.unmet = unmet


class ApplicationError(RequirementsError):
    """
    The peer reported a failure for a call.

    Covers both a JSON-RPC `error` object (rpc_code/data set) and a tool result
    with `isError: true` (result set). Never retried automatically.

    Attributes:
        rpc_code: JSON-RPC error code, None for isError results
        data: Optional `data` member of the error object
        result: The CallToolResult for isError results
        missing_scopes: Scopes a classifier extracted from the failure text
    """

    code = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        rpc_code: int | None = None,
        data: Any = None,
        result: Any = None,
    ):
        super().__init__(message)
        self.rpc_code = rpc_code
        self.data = data
        self.result = result
        self.missing_scopes: tuple[str, ...] = ()
