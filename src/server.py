"""
Demo MCP peer using FastMCP v2: tools that declare their requirements.

This module creates and runs a server that:
- Advertises each tool's requirement tree in the tool's `_meta.requires`
  (see src/tools.py), so a client can check before calling
- Re-evaluates the same tree on every tools/call in RequirementsMiddleware,
  so a client that skips the check is still refused
- Authenticates callers with HS256 bearer tokens (src/auth.py)
- Logs every decision as structured JSON

Architecture:
    The flow for every tools/call:

    1. The client sends tools/call, with its bearer token either in the HTTP
       "Authorization" header (streamable-http) or in the request's
       `_meta.authorization` (stdio)
    2. RequirementsMiddleware builds a CallerContext from:
       - the token's scopes and identity claims (no token = anonymous)
       - the capabilities the client advertised in initialize
         ("sampling" becomes "mcp:sampling")
       - the call's arguments (for input predicates)
    3. evaluator.check_requirements() evaluates the tool's tree
    4. A veto raises PermissionError naming the missing scopes; FastMCP turns
       it into an isError result the client can classify and renegotiate on

    `legacyFileManager` declares nothing and fails at run time instead: the
    situation declared requirements exist to prevent.

Running the server:
    python -m src.server                                        # stdio
    MCP_TRANSPORT=streamable-http python -m src.server          # HTTP on :8080

    Over HTTP the MCP endpoint is /mcp and a liveness check is at /health.
"""

import logging
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from fastmcp import Context, FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.server.dependencies import get_http_request
from fastmcp.server.middleware import CallNext, Middleware, MiddlewareContext
from fastmcp.tools.tool import ToolResult
from mcp.types import CallToolRequestParams
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from src.auth import AuthError, TokenInfo, validate_token
from src.client import CAPABILITY_PREFIX
from src.config import settings
from src.context import CallerContext
from src.evaluator import Evaluation, check_requirements, unmet_scopes
from src.logging_config import configure_logging
from src.requirements import ScopePermission
from src.tools import TOOL_EXPRESSIONS, TOOL_REQUIREMENTS

logger = logging.getLogger("mcp-server")


# ---------------------------------------------------------------------------
# Building the caller's context
# ---------------------------------------------------------------------------


def bearer_from_meta(meta: Any) -> str | None:
    """Read `_meta.authorization` from a request's meta object, if present."""
    if meta is None:
        return None
    if isinstance(meta, dict):
        return meta.get("authorization")
    # mcp's RequestParams.Meta allows extra fields, exposed as attributes.
    return getattr(meta, "authorization", None)


def advertised_capabilities(client_params: Any) -> frozenset[str]:
    """
    Capability names from the client's initialize params.

    {"sampling": {}, "roots": {...}} becomes {"mcp:sampling", "mcp:roots"}.
    """
    if client_params is None or client_params.capabilities is None:
        return frozenset()
    advertised = client_params.capabilities.model_dump(exclude_none=True)
    return frozenset(f"{CAPABILITY_PREFIX}{name}" for name in advertised)


def build_caller_context(
    token_info: TokenInfo | None,
    capabilities: frozenset[str],
    arguments: dict[str, Any] | None,
) -> CallerContext:
    """Assemble what the server knows about the caller of one tools/call."""
    if token_info is None:
        return CallerContext(capabilities=capabilities, inputs=arguments or {})
    return CallerContext(
        capabilities=capabilities,
        scopes=token_info.scopes,
        claims=token_info.claims,
        inputs=arguments or {},
    )


def denial_message(tool_name: str, evaluation: Evaluation) -> str:
    """
    Describe a veto so a client can tell which scopes would fix it.

    Example:
        Access denied for tool 'transferFunds': missing required scopes:
        accounts:read, accounts:write
    """
    parts = []
    scopes = unmet_scopes(evaluation)
    if scopes:
        parts.append(f"missing required scopes: {', '.join(scopes)}")
    others = [str(expr) for expr in evaluation.unmet if not isinstance(expr, ScopePermission)]
    if others:
        parts.append(f"unmet requirements: {'; '.join(others)}")
    return f"Access denied for tool '{tool_name}': " + "; ".join(parts)


# ---------------------------------------------------------------------------
# Requirements middleware
# ---------------------------------------------------------------------------
# Runs on every tools/call before the tool handler executes:
#
#   1. Find the bearer token (HTTP header, else _meta.authorization)
#   2. Validate it; no token means an anonymous caller with no scopes
#   3. Build the CallerContext and evaluate the tool's requirements
#   4. Allow, or deny with a PermissionError
#   5. Log the decision with structured data


class RequirementsMiddleware(Middleware):
    """
    Enforces each tool's declared requirements on tools/call.

    A tool without a declaration (legacyFileManager) passes through; whatever
    it needs is only discovered when it fails.
    """

    def _get_auth_header(self, context: MiddlewareContext[CallToolRequestParams]) -> str | None:
        """
        Find the caller's "Bearer <token>" value.

        Over streamable-http it comes from the HTTP request that FastMCP stores
        in a ContextVar. get_http_request() raises RuntimeError on stdio, where
        the token travels in the request's _meta instead.
        """
        try:
            header = get_http_request().headers.get("authorization")
            if header:
                return header
        except RuntimeError:
            pass

        header = bearer_from_meta(getattr(context.message, "meta", None))
        if header:
            return header
        request_context = self._request_context(context)
        return bearer_from_meta(getattr(request_context, "meta", None))

    @staticmethod
    def _request_context(context: MiddlewareContext) -> Any:
        if context.fastmcp_context is None:
            return None
        try:
            return context.fastmcp_context.request_context
        except (LookupError, RuntimeError, ValueError):
            return None

    def _client_params(self, context: MiddlewareContext) -> Any:
        request_context = self._request_context(context)
        session = getattr(request_context, "session", None)
        return getattr(session, "client_params", None)

    def _authenticate(self, header: str | None, request_id: str) -> TokenInfo | None:
        """
        Validate the token, if one was presented.

        Raises:
            AuthError: A token was presented but is not valid
        """
        if not header:
            return None
        try:
            token_info = validate_token(header)
        except AuthError as e:
            logger.warning(
                "Authentication failed",
                extra={
                    "log_data": {
                        "request_id": request_id,
                        "decision": "rejected",
                        "reason": e.message,
                    }
                },
            )
            raise
        logger.info(
            "Authentication successful",
            extra={
                "log_data": {
                    "request_id": request_id,
                    "subject": token_info.subject,
                    "scopes": token_info.scopes,
                    "decision": "authenticated",
                }
            },
        )
        return token_info

    async def on_call_tool(
        self,
        context: MiddlewareContext[CallToolRequestParams],
        call_next: CallNext[CallToolRequestParams, ToolResult],
    ) -> ToolResult:
        """
        Evaluate the requested tool's requirements before it runs.

        A PermissionError is raised for a vetoed call, which FastMCP converts
        to a tool result with isError set.
        """
        request_id = str(uuid.uuid4())[:8]
        tool_name = context.message.name
        requirements = TOOL_EXPRESSIONS.get(tool_name)

        if requirements is None:
            logger.info(
                "Tool declares no requirements",
                extra={"log_data": {"request_id": request_id, "tool": tool_name, "decision": "undeclared"}},
            )
            return await call_next(context)

        token_info = self._authenticate(self._get_auth_header(context), request_id)
        caller = build_caller_context(
            token_info,
            advertised_capabilities(self._client_params(context)),
            context.message.arguments,
        )
        evaluation = check_requirements(requirements, caller)

        if not evaluation.satisfied:
            logger.warning(
                "Tool call denied: requirements not met",
                extra={
                    "log_data": {
                        "request_id": request_id,
                        "subject": token_info.subject if token_info else None,
                        "tool": tool_name,
                        "unmet": [str(expr) for expr in evaluation.unmet],
                        "decision": "denied",
                    }
                },
            )
            raise PermissionError(denial_message(tool_name, evaluation))

        logger.info(
            "Tool call authorized",
            extra={
                "log_data": {
                    "request_id": request_id,
                    "subject": token_info.subject if token_info else None,
                    "tool": tool_name,
                    "decision": "allowed",
                }
            },
        )
        return await call_next(context)


# ---------------------------------------------------------------------------
# Create the MCP server
# ---------------------------------------------------------------------------
mcp = FastMCP(
    name="mcp-requirements-demo",
    instructions=(
        "Demo server whose tools declare what they need from the caller "
        "(capabilities, scopes, identity claims, argument constraints) in "
        "_meta.requires."
    ),
    middleware=[RequirementsMiddleware()],
)


def _requires(name: str) -> dict | None:
    """The `_meta` advertised for a tool; None when it declares nothing."""
    if name not in TOOL_REQUIREMENTS:
        return None
    return {"requires": TOOL_REQUIREMENTS[name]}


FileAction = Literal["read", "write", "delete"]


@mcp.tool(name="summarize", description="Summarize any text using an LLM", meta=_requires("summarize"))
async def summarize(text: str, ctx: Context) -> str:
    """Asks the caller's LLM (MCP sampling) for a summary."""
    response = await ctx.sample(
        f"Please summarize the following text concisely:\n\n{text}",
        max_tokens=500,
    )
    return getattr(response, "text", None) or "Unable to generate summary"


@mcp.tool(
    name="imageGenerator",
    description="Generate or edit an image and store it in an image repository",
    meta=_requires("imageGenerator"),
)
def image_generator(prompt: str, imageRepo: str, baseImage: str | None = None) -> dict:
    now = datetime.now(timezone.utc)
    reference = f"{imageRepo}/generated_{int(now.timestamp() * 1000)}.jpg"
    return {
        "imageReference": reference,
        "metadata": {"size": "1024x1024", "format": "JPEG", "generatedAt": now.isoformat()},
    }


@mcp.tool(
    name="basicCalculator",
    description="Performs basic arithmetic calculations",
    meta=_requires("basicCalculator"),
)
def basic_calculator(operation: Literal["add", "subtract", "multiply", "divide"], a: float, b: float) -> dict:
    if operation == "add":
        result = a + b
    elif operation == "subtract":
        result = a - b
    elif operation == "multiply":
        result = a * b
    else:
        if b == 0:
            raise ToolError("Division by zero is not allowed")
        result = a / b
    return {"result": result, "operation": operation}


@mcp.tool(
    name="legacyFileManager",
    description="Legacy file management tool that needs file system access but doesn't declare it",
)
def legacy_file_manager(action: FileAction, path: str, content: str | None = None) -> dict:
    # Stands in for a runtime permission check that always fails.
    raise ToolError(
        "Missing required scope 'filesystem:access' - this failure could have been "
        "prevented with a requirements declaration"
    )


@mcp.tool(
    name="modernFileManager",
    description="File management tool that declares its requirements",
    meta=_requires("modernFileManager"),
)
def modern_file_manager(action: FileAction, path: str, content: str | None = None) -> dict:
    if action == "read":
        return {"success": True, "message": f"Successfully read {path}", "content": "File content here..."}
    if action == "write":
        return {"success": True, "message": f"Wrote {len(content or '')} characters to {path}"}
    return {"success": True, "message": f"Deleted {path}"}


@mcp.tool(name="readUserProfile", description="Read user profile information", meta=_requires("readUserProfile"))
def read_user_profile(userId: str) -> str:
    return f"User Profile for {userId}:\n- Name: John Doe\n- Email: john@example.com\n- Role: User"


@mcp.tool(
    name="deleteUser",
    description="Delete a user account (requires admin privileges)",
    meta=_requires("deleteUser"),
)
def delete_user(userId: str) -> str:
    return f"User {userId} has been deleted successfully"


@mcp.tool(name="transferFunds", description="Transfer funds between accounts", meta=_requires("transferFunds"))
def transfer_funds(fromAccount: str, toAccount: str, amount: float) -> str:
    return f"Transferred {amount:.2f} from {fromAccount} to {toAccount}"


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------
# Plain HTTP (not MCP), only served with the streamable-http transport. It is
# not authenticated: probes don't carry a token and it exposes nothing.


@mcp.custom_route("/health", methods=["GET"])
async def health_check(request: Request) -> Response:
    """Liveness probe: is the server process alive and responsive?"""
    return JSONResponse({"status": "healthy"})


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------


def main() -> None:
    # On stdio, stdout carries the JSON-RPC stream.
    configure_logging(settings.log_level, stream=sys.stderr)

    if settings.transport == "stdio":
        logger.info("Starting MCP server (transport=stdio)")
        mcp.run(transport="stdio")
        return

    logger.info(
        "Starting MCP server on %s:%d (transport=%s)",
        settings.host,
        settings.port,
        settings.transport,
    )
    mcp.run(
        transport=settings.transport,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
