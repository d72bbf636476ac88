"""
Requirement-aware MCP client: list, check, invoke, renegotiate.

The flow this module drives:

    1. initialize()      handshake, advertising the context's capabilities
    2. list_tools()      fetch ToolDescriptors, each with its requirement list
    3. can_invoke()      evaluate a tool's requirements against a CallerContext
    4. invoke()          veto locally (RequirementsNotMet, nothing sent) or
                         send tools/call and return the CallToolResult
    5. renegotiate()     on a scope failure, grant the missing scopes through
                         the authorization collaborator and return the new
                         context; the caller decides whether to retry

Renegotiation is never automatic: invoke() reports the failure (with the
scopes it could identify) and returns control to the caller, so a peer that
keeps rejecting a call can't trap the client in a retry loop.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from pydantic import ValidationError

from src.auth import ScopeGrantService
from src.config import settings
from src.context import CallerContext
from src.errors import ApplicationError, ProtocolError, RequirementsNotMet, TooDeepRequirement
from src.evaluator import Evaluation, check_requirements
from src.messages import CallToolResult, InitializeResult, ListToolsResult, WireTool
from src.requirements import NestedTooDeep, RequirementExpr, parse_requirements
from src.session import DuplexSession

logger = logging.getLogger("mcp-client")

ScopeClassifier = Callable[[str], Iterable[str]]

CAPABILITY_PREFIX = "mcp:"


# ---------------------------------------------------------------------------
# Missing-scope classification
# ---------------------------------------------------------------------------
# Peers report scope failures as free text. The default classifier understands
# the two phrasings in common use:
#   "Access denied: Missing required scope 'admin:users:delete'"
#   "Access denied: missing required scopes: accounts:read, accounts:write"

_SCOPE = r"['\"`]?[\w:./-]+['\"`]?"
_MISSING_SCOPES = re.compile(
    rf"missing required scopes?:?\s*(?P<scopes>{_SCOPE}(?:\s*,\s*{_SCOPE})*)", re.IGNORECASE
)


def default_scope_classifier(text: str) -> list[str]:
    """Extract scope names from a failure message. Empty if none are named."""
    scopes: list[str] = []
    for match in _MISSING_SCOPES.finditer(text):
        for part in match.group("scopes").split(","):
            scope = part.strip().strip("'\"`").rstrip(".")
            if scope and scope not in scopes:
                scopes.append(scope)
    return scopes


# ---------------------------------------------------------------------------
# Tool descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolDescriptor:
    """
    A listed tool. Immutable once listed.

    Attributes:
        name: Tool name used in tools/call
        description: Human description, if the peer gave one
        input_schema: Declared input shape (JSON Schema)
        output_schema: Declared output shape (JSON Schema)
        requires: Top-level requirements, implicitly conjoined; () means none.
            An entry nested past the depth ceiling is listed as NestedTooDeep
    """

    name: str
    description: str | None = None
    input_schema: dict[str, Any] | None = None
    output_schema: dict[str, Any] | None = None
    requires: tuple[RequirementExpr, ...] = field(default=())

    @classmethod
    def from_wire(cls, tool: WireTool) -> "ToolDescriptor":
        # FastMCP peers carry custom tool metadata under _meta.
        raw_requires = tool.requires
        if raw_requires is None and tool.meta:
            raw_requires = tool.meta.get("requires")
        requires = parse_requirements(raw_requires, fail_closed=True)
        too_deep = [expr for expr in requires if isinstance(expr, NestedTooDeep)]
        if too_deep:
            logger.warning(
                "Listed requirement too deep, tool will be vetoed",
                extra={
                    "log_data": {
                        "code": TooDeepRequirement.code,
                        "tool": tool.name,
                        "limit": too_deep[0].limit,
                    }
                },
            )
        return cls(
            name=tool.name,
            description=tool.description,
            input_schema=tool.input_schema,
            output_schema=tool.output_schema,
            requires=requires,
        )


def client_capabilities(ctx: CallerContext) -> dict[str, dict]:
    """Map "mcp:<name>" capability names to the initialize capabilities object."""
    return {
        name[len(CAPABILITY_PREFIX):]: {}
        for name in sorted(ctx.capabilities)
        if name.startswith(CAPABILITY_PREFIX)
    }


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class CapabilityClient:
    """
    Drives listing, requirement checks, invocation and scope renegotiation.

    Args:
        session: An open DuplexSession to the peer
        authorizer: Authorization collaborator used by renegotiate()
        classify_missing_scopes: Extracts scope names from failure text
        timeout: Per-call deadline, defaults to the session's
    """

    def __init__(
        self,
        session: DuplexSession,
        *,
        authorizer: ScopeGrantService | None = None,
        classify_missing_scopes: ScopeClassifier = default_scope_classifier,
        timeout: float | None = None,
    ):
        self.session = session
        self.authorizer = authorizer
        self.classify_missing_scopes = classify_missing_scopes
        self.timeout = timeout
        self.server_info: InitializeResult | None = None

    async def initialize(self, ctx: CallerContext) -> InitializeResult:
        """Run the initialize handshake and send notifications/initialized."""
        raw = await self.session.call(
            "initialize",
            {
                "protocolVersion": settings.protocol_version,
                "capabilities": client_capabilities(ctx),
                "clientInfo": {"name": settings.client_name, "version": settings.client_version},
            },
            timeout=self.timeout,
        )
        try:
            self.server_info = InitializeResult.model_validate(raw)
        except ValidationError as e:
            raise ProtocolError(f"Invalid initialize result: {e}") from e

        await self.session.notify("notifications/initialized")
        logger.info(
            "Session initialized",
            extra={
                "log_data": {
                    "server": self.server_info.server_info.name,
                    "server_version": self.server_info.server_info.version,
                    "protocol_version": self.server_info.protocol_version,
                }
            },
        )
        return self.server_info

    async def list_tools(self) -> list[ToolDescriptor]:
        """
        Fetch every tool the peer lists, following pagination cursors.

        Raises:
            ProtocolError: A result or requirement does not have the expected shape
        """
        tools: list[ToolDescriptor] = []
        cursor: str | None = None
        while True:
            params = {"cursor": cursor} if cursor else None
            raw = await self.session.call("tools/list", params, timeout=self.timeout)
            try:
                page = ListToolsResult.model_validate(raw)
                tools.extend(ToolDescriptor.from_wire(tool) for tool in page.tools)
            except (ValidationError, ValueError) as e:
                raise ProtocolError(f"Invalid tools/list result: {e}") from e
            cursor = page.next_cursor
            if not cursor:
                return tools

    def can_invoke(self, tool: ToolDescriptor, ctx: CallerContext) -> Evaluation:
        """Evaluate `tool`'s requirements against `ctx` (too-deep trees fail closed)."""
        return check_requirements(tool.requires, ctx)

    async def invoke(
        self,
        tool: ToolDescriptor,
        arguments: dict[str, Any],
        ctx: CallerContext,
    ) -> CallToolResult:
        """
        Check requirements, then call the tool.

        The requirements are evaluated with `arguments` as the context's inputs.

        Raises:
            RequirementsNotMet: Vetoed locally; no frame was sent
            ApplicationError: The peer returned an error or an isError result;
                `missing_scopes` holds whatever the classifier found
        """
        evaluation = self.can_invoke(tool, ctx.with_inputs(arguments))
        if not evaluation.satisfied:
            logger.info(
                "Invocation vetoed by requirements",
                extra={
                    "log_data": {
                        "code": RequirementsNotMet.code,
                        "tool": tool.name,
                        "unmet": [str(expr) for expr in evaluation.unmet],
                    }
                },
            )
            raise RequirementsNotMet(tool.name, evaluation.unmet)

        params: dict[str, Any] = {"name": tool.name, "arguments": arguments}
        if ctx.bearer_token:
            params["_meta"] = {"authorization": f"Bearer {ctx.bearer_token}"}

        try:
            raw = await self.session.call("tools/call", params, timeout=self.timeout)
        except ApplicationError as e:
            e.missing_scopes = tuple(self.classify_missing_scopes(e.message))
            raise

        try:
            result = CallToolResult.model_validate(raw)
        except ValidationError as e:
            raise ProtocolError(f"Invalid tools/call result: {e}") from e

        if result.is_error:
            error = ApplicationError(result.text or f"Tool '{tool.name}' failed", result=result)
            error.missing_scopes = tuple(self.classify_missing_scopes(result.text))
            raise error
        return result

    def renegotiate(self, ctx: CallerContext, scopes: Iterable[str]) -> CallerContext:
        """
        Acquire `scopes` and return the updated context.

        With an authorizer and a bearer token, the token is re-issued with the
        extra scopes and the context adopts it. Otherwise the scopes are
        granted on the context directly.
        """
        scopes = list(scopes)
        if self.authorizer is not None and ctx.bearer_token:
            token = self.authorizer.grant(ctx.bearer_token, scopes)
            updated = ctx.with_token(token, self.authorizer.introspect(token))
        else:
            updated = ctx.grant_scopes(scopes)
        logger.info(
            "Scopes renegotiated",
            extra={"log_data": {"requested": scopes, "scopes": sorted(updated.scopes)}},
        )
        return updated
